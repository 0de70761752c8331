from __future__ import annotations

import logging
from typing import Sequence

from .errors import Forbidden, NotFound, ValidationError
from .lifecycle import TicketLifecycle, validate_report_draft
from .models import (
    Actor,
    Role,
    ServiceReport,
    ServiceReportDraft,
    Ticket,
    TicketAction,
    TicketStatus,
    TransitionPayload,
    VerificationDecision,
)
from .store import TicketStore

logger = logging.getLogger(__name__)


class ServiceVerificationWorkflow:
    """Engineer completion reports and the supervisor decision on them."""

    def __init__(self, lifecycle: TicketLifecycle, store: TicketStore) -> None:
        self._lifecycle = lifecycle
        self._store = store

    async def submit_report(
        self,
        ticket_id: str,
        engineer: Actor,
        report: ServiceReportDraft,
        *,
        notes: str | None = None,
    ) -> ServiceReport:
        ticket = await self._get(ticket_id)
        if ticket.assigned_to != engineer.id or ticket.status is not TicketStatus.IN_PROGRESS:
            raise Forbidden(
                f"Only the assigned engineer may report on ticket {ticket.ticket_number} while it is in progress"
            )
        validate_report_draft(report)

        result = await self._lifecycle.apply(
            ticket_id,
            engineer,
            TicketAction.COMPLETE_SERVICE,
            TransitionPayload(report=report, notes=notes),
        )
        completed, submitted = result.ticket, result.report
        if submitted is None:
            raise NotFound(f"No service report recorded for ticket {completed.ticket_number}")
        logger.info(
            "Service report %s submitted for ticket %s (%d min)",
            submitted.id,
            completed.ticket_number,
            submitted.time_spent,
        )
        return submitted

    async def verify(
        self,
        ticket_id: str,
        supervisor: Actor,
        decision: VerificationDecision | str,
        reason: str | None = None,
    ) -> Ticket:
        try:
            decision = VerificationDecision(decision)
        except ValueError:
            raise ValidationError(f"Unknown verification decision: {decision}") from None

        ticket = await self._get(ticket_id)
        if not supervisor.has_role(Role.SUPERVISOR, Role.ADMIN):
            raise Forbidden(f"Actor {supervisor.id} may not verify service reports")
        if ticket.status is not TicketStatus.PENDING_VERIFICATION:
            raise Forbidden(f"Ticket {ticket.ticket_number} is not awaiting verification")

        if decision is VerificationDecision.APPROVE:
            return await self._lifecycle.transition(ticket_id, supervisor, TicketAction.APPROVE)
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        return await self._lifecycle.transition(
            ticket_id, supervisor, TicketAction.REJECT, TransitionPayload(reason=reason)
        )

    async def list_reports(self, ticket_id: str) -> Sequence[ServiceReport]:
        await self._get(ticket_id)
        return await self._store.list_reports(ticket_id)

    async def _get(self, ticket_id: str) -> Ticket:
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")
        return ticket

