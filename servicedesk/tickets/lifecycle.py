"""Ticket lifecycle state machine: authorize, apply and commit transitions."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Sequence

from opentelemetry import trace

from .codes import CodeAllocator
from .directory import ActorDirectory
from .equipment_sync import EquipmentStatusSync
from .errors import ConflictError, NotFound, ValidationError
from .models import (
    Actor,
    EquipmentStatus,
    Role,
    ServiceReport,
    ServiceReportDraft,
    Ticket,
    TicketAction,
    TicketAggregate,
    TicketPriority,
    TicketSnapshot,
    TimelineEntry,
    TransitionPayload,
    VerificationStatus,
)
from .notifications import TicketNotifier
from .state import TicketStateMachine
from .store import EquipmentStore, TicketMutation, TicketStore
from .timeline import TimelineLog

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_DESCRIPTION_LENGTH = 2000
MAX_REASON_LENGTH = 500

_DEFAULT_NOTES: dict[TicketAction, str] = {
    TicketAction.ASSIGN: "Ticket assigned to engineer",
    TicketAction.START_SERVICE: "Service started",
    TicketAction.COMPLETE_SERVICE: "Service completed, pending supervisor verification",
    TicketAction.APPROVE: "Service verified and approved by supervisor",
    TicketAction.REOPEN: "Ticket reopened",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TransitionResult:
    ticket: Ticket
    report: ServiceReport | None = None


def validate_report_draft(draft: ServiceReportDraft) -> None:
    """Reject empty or out-of-range report content before anything is written."""

    if not draft.work_description or not draft.work_description.strip():
        raise ValidationError("Work description is required")
    if len(draft.work_description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"Work description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")
    if isinstance(draft.time_spent, bool) or not isinstance(draft.time_spent, int) or draft.time_spent < 1:
        raise ValidationError("Time spent must be at least 1 minute")
    for part in draft.parts_replaced:
        if not part.name.strip():
            raise ValidationError("Replaced part name is required")
        if part.quantity < 1:
            raise ValidationError(f"Quantity for part {part.name!r} must be at least 1")
        if part.cost is not None and part.cost < 0:
            raise ValidationError(f"Cost for part {part.name!r} cannot be negative")


class TicketLifecycle:
    """Entry point for ticket creation and every subsequent status transition.

    A transition is planned against a fresh ``load_for_update`` snapshot and
    committed with ``compare_and_swap``; a lost race re-reads, re-validates
    and re-applies up to ``max_retries`` times before ``ConflictError`` is
    surfaced to the caller.
    """

    def __init__(
        self,
        store: TicketStore,
        *,
        equipment_store: EquipmentStore,
        directory: ActorDirectory,
        notifier: TicketNotifier | None = None,
        allocator: CodeAllocator | None = None,
        state_machine: TicketStateMachine | None = None,
        equipment_sync: EquipmentStatusSync | None = None,
        max_retries: int = 3,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._store = store
        self._equipment_store = equipment_store
        self._directory = directory
        self._notifier = notifier
        self._allocator = allocator or CodeAllocator()
        self._state_machine = state_machine or TicketStateMachine()
        self._equipment_sync = equipment_sync or EquipmentStatusSync()
        self._max_retries = max_retries
        self._clock = clock or _utcnow

    @property
    def state_machine(self) -> TicketStateMachine:
        return self._state_machine

    async def create_ticket(
        self,
        *,
        equipment_id: str,
        raised_by: Actor,
        issue_type: str,
        description: str,
        priority: TicketPriority | str = TicketPriority.MEDIUM,
    ) -> Ticket:
        issue_type = (issue_type or "").strip()
        if not issue_type:
            raise ValidationError("Issue type is required")
        if not description or not description.strip():
            raise ValidationError("Description is required")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")
        try:
            priority = TicketPriority(priority)
        except ValueError:
            raise ValidationError(f"Unknown priority: {priority}") from None

        equipment = await self._equipment_store.get_equipment(equipment_id)
        if equipment is None:
            raise NotFound(f"Equipment {equipment_id} not found")
        if EquipmentStatus.RETIRED in (equipment.status, equipment.status_override):
            raise ValidationError(f"Equipment {equipment.code} is retired")

        status = TicketStateMachine.initial_state()

        async def insert(ticket_number: str) -> Ticket:
            now = self._clock()
            ticket = Ticket(
                id=str(uuid.uuid4()),
                ticket_number=ticket_number,
                equipment_id=equipment_id,
                raised_by=raised_by.id,
                priority=priority,
                status=status,
                issue_type=issue_type,
                description=description,
                timeline=TimelineLog.start(status, actor_id=raised_by.id, at=now, notes="Ticket created"),
                created_at=now,
                updated_at=now,
            )
            return await self._store.insert_ticket(
                ticket, effects=[self._equipment_sync.effect(equipment_id, status, at=now)]
            )

        with tracer.start_as_current_span("ticket.create") as span:
            span.set_attribute("equipment.code", equipment.code)
            ticket = await self._allocator.claim_ticket_number(self._store.ticket_number_exists, insert)
            span.set_attribute("ticket.number", ticket.ticket_number)

        logger.info(
            "Ticket %s raised by %s on %s",
            ticket.ticket_number,
            raised_by.id,
            equipment.code,
            extra={"ticket_number": ticket.ticket_number, "equipment_code": equipment.code, "actor_id": raised_by.id},
        )
        if self._notifier is not None:
            self._notifier.ticket_created(ticket, equipment)
        return ticket

    async def transition(
        self,
        ticket_id: str,
        actor: Actor,
        action: TicketAction | str,
        payload: TransitionPayload | None = None,
    ) -> Ticket:
        result = await self.apply(ticket_id, actor, action, payload)
        return result.ticket

    async def apply(
        self,
        ticket_id: str,
        actor: Actor,
        action: TicketAction | str,
        payload: TransitionPayload | None = None,
    ) -> TransitionResult:
        """Like ``transition`` but also return the report written alongside the ticket."""

        try:
            action = TicketAction(action)
        except ValueError:
            raise ValidationError(f"Unknown action: {action}") from None
        payload = payload or TransitionPayload()

        with tracer.start_as_current_span("ticket.transition") as span:
            span.set_attribute("ticket.id", ticket_id)
            span.set_attribute("ticket.action", action.value)
            span.set_attribute("actor.role", actor.role.value)
            for attempt in range(1, self._max_retries + 1):
                snapshot = await self._store.load_for_update(ticket_id)
                mutation = await self._plan(snapshot, actor, action, payload)
                try:
                    ticket = await self._store.compare_and_swap(
                        ticket_id,
                        snapshot.ticket.status,
                        mutation,
                        expected_version=snapshot.ticket.version,
                    )
                except ConflictError:
                    logger.info(
                        "Conflict applying %s to ticket %s (attempt %d/%d)",
                        action.value,
                        snapshot.ticket.ticket_number,
                        attempt,
                        self._max_retries,
                        extra={"ticket_number": snapshot.ticket.ticket_number, "action": action.value},
                    )
                    continue
                span.set_attribute("ticket.status", ticket.status.value)
                break
            else:
                raise ConflictError(
                    f"Ticket {ticket_id} is being modified concurrently; retry the {action.value} request"
                )

        logger.info(
            "Ticket %s %s -> %s by %s",
            ticket.ticket_number,
            snapshot.ticket.status.value,
            ticket.status.value,
            actor.id,
            extra={
                "ticket_number": ticket.ticket_number,
                "equipment_code": snapshot.equipment.code,
                "actor_id": actor.id,
                "action": action.value,
                "status": ticket.status.value,
            },
        )
        self._notify(action, ticket, snapshot)
        return TransitionResult(ticket=ticket, report=mutation.report)

    async def get_ticket(self, ticket_id: str) -> TicketAggregate:
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")
        comments = await self._store.list_comments(ticket_id)
        reports = await self._store.list_reports(ticket_id)
        return TicketAggregate(ticket=ticket, comments=comments, reports=reports)

    async def timeline(self, ticket_id: str) -> Sequence[TimelineEntry]:
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")
        return ticket.timeline

    async def _plan(
        self,
        snapshot: TicketSnapshot,
        actor: Actor,
        action: TicketAction,
        payload: TransitionPayload,
    ) -> TicketMutation:
        ticket = snapshot.ticket
        rule = self._state_machine.assert_transition(ticket.status, action)
        self._state_machine.authorize(rule, actor, ticket)

        now = self._clock()
        notes = payload.notes or _DEFAULT_NOTES.get(action)
        changes: dict[str, object] = {}
        report: ServiceReport | None = None

        if action is TicketAction.ASSIGN:
            changes["assigned_to"] = await self._resolve_engineer(payload.assigned_to)
        elif action is TicketAction.COMPLETE_SERVICE:
            report = self._new_report(ticket, actor, payload.report, at=now)
        elif action is TicketAction.APPROVE:
            report = replace(
                self._require_pending_report(snapshot),
                verification_status=VerificationStatus.APPROVED,
                verified_by=actor.id,
                verified_at=now,
            )
            changes["closed_at"] = now
        elif action is TicketAction.REJECT:
            reason = self._require_reason(payload.reason)
            report = replace(
                self._require_pending_report(snapshot),
                verification_status=VerificationStatus.REJECTED,
                verified_by=actor.id,
                verified_at=now,
                rejection_reason=reason,
            )
            notes = payload.notes or f"Service rejected: {reason}"
        elif action is TicketAction.REOPEN:
            changes["reopen_count"] = ticket.reopen_count + 1
            changes["closed_at"] = None

        updated, entry = TimelineLog.append(
            ticket, rule.target, actor_id=actor.id, at=now, notes=notes, **changes
        )
        return TicketMutation(
            ticket=updated,
            entry=entry,
            report=report,
            effects=[self._equipment_sync.effect(ticket.equipment_id, rule.target, at=now)],
        )

    async def _resolve_engineer(self, assigned_to: str | None) -> str:
        if not assigned_to:
            raise ValidationError("assigned_to is required to assign a ticket")
        role = await self._directory.role_of(assigned_to)
        if role is None:
            raise NotFound(f"User {assigned_to} not found")
        if role is not Role.ENGINEER:
            raise ValidationError(f"User {assigned_to} is not an engineer")
        return assigned_to

    @staticmethod
    def _new_report(
        ticket: Ticket, actor: Actor, draft: ServiceReportDraft | None, *, at: datetime
    ) -> ServiceReport:
        if draft is None:
            raise ValidationError("A service report is required to complete service")
        validate_report_draft(draft)
        return ServiceReport(
            id=str(uuid.uuid4()),
            ticket_id=ticket.id,
            engineer_id=actor.id,
            work_description=draft.work_description.strip(),
            time_spent=draft.time_spent,
            parts_replaced=tuple(draft.parts_replaced),
            submitted_at=at,
        )

    @staticmethod
    def _require_pending_report(snapshot: TicketSnapshot) -> ServiceReport:
        if snapshot.pending_report is None:
            raise NotFound(f"No pending service report for ticket {snapshot.ticket.ticket_number}")
        return snapshot.pending_report

    @staticmethod
    def _require_reason(reason: str | None) -> str:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"Rejection reason cannot exceed {MAX_REASON_LENGTH} characters")
        return reason

    def _notify(self, action: TicketAction, ticket: Ticket, snapshot: TicketSnapshot) -> None:
        if self._notifier is None:
            return
        if action is TicketAction.ASSIGN:
            self._notifier.ticket_assigned(ticket, snapshot.equipment)
        elif action is TicketAction.APPROVE:
            self._notifier.ticket_closed(ticket, snapshot.equipment)
