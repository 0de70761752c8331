from __future__ import annotations

import asyncio
import logging

import pytest

from conftest import ADMIN, ENGINEER, OTHER_ENGINEER, OTHER_USER, RAISER, SUPERVISOR, make_equipment
from servicedesk.core.config import RejectPolicy
from servicedesk.tickets.codes import CodeAllocator
from servicedesk.tickets.equipment_sync import EquipmentStatusSync
from servicedesk.tickets.errors import (
    CapacityError,
    ConflictError,
    DuplicateCodeError,
    Forbidden,
    InvalidTransition,
    NotFound,
    StoreError,
    ValidationError,
)
from servicedesk.tickets.lifecycle import TicketLifecycle
from servicedesk.tickets.models import (
    EquipmentStatus,
    PartReplaced,
    ServiceReportDraft,
    TicketAction,
    TicketPriority,
    TicketStatus,
    TransitionPayload,
    VerificationStatus,
)
from servicedesk.tickets.notifications import NotificationKind, TicketNotifier
from servicedesk.tickets.state import TicketStateMachine
from servicedesk.tickets.store import InMemoryTicketStore
from servicedesk.tickets.timeline import TimelineLog

REPORT = ServiceReportDraft(
    work_description="Replaced blown fuse and tested rotor",
    time_spent=45,
    parts_replaced=(PartReplaced(name="fuse", quantity=2, cost=1.5),),
)


async def _raise(lifecycle, equipment, **overrides):
    values = {
        "equipment_id": equipment.id,
        "raised_by": RAISER,
        "issue_type": "electrical",
        "description": "Rotor does not spin up",
        "priority": TicketPriority.HIGH,
    }
    values.update(overrides)
    return await lifecycle.create_ticket(**values)


async def _to_in_progress(lifecycle, ticket):
    await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.ASSIGN, TransitionPayload(assigned_to=ENGINEER.id))
    return await lifecycle.transition(ticket.id, ENGINEER, TicketAction.START_SERVICE)


async def _to_pending(lifecycle, ticket):
    await _to_in_progress(lifecycle, ticket)
    return await lifecycle.transition(
        ticket.id, ENGINEER, TicketAction.COMPLETE_SERVICE, TransitionPayload(report=REPORT)
    )


async def _to_closed(lifecycle, ticket):
    await _to_pending(lifecycle, ticket)
    return await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.APPROVE)


def _assert_invariants(ticket):
    assert TimelineLog.is_consistent(ticket)
    assert (ticket.closed_at is not None) == (ticket.status is TicketStatus.CLOSED)


@pytest.mark.asyncio
async def test_full_service_cycle(lifecycle, store, equipment):
    # raising a ticket takes the equipment out of service
    ticket = await _raise(lifecycle, equipment)
    assert ticket.status is TicketStatus.OPEN
    assert ticket.ticket_number.startswith("TKT-")
    assert len(ticket.timeline) == 1
    assert (await store.get_equipment(equipment.id)).status is EquipmentStatus.UNDER_SERVICE

    assigned = await lifecycle.transition(
        ticket.id, SUPERVISOR, TicketAction.ASSIGN, TransitionPayload(assigned_to=ENGINEER.id)
    )
    assert assigned.status is TicketStatus.ASSIGNED
    assert assigned.assigned_to == ENGINEER.id
    assert len(assigned.timeline) == 2

    with pytest.raises(Forbidden):
        await lifecycle.transition(ticket.id, OTHER_ENGINEER, TicketAction.START_SERVICE)
    started = await lifecycle.transition(ticket.id, ENGINEER, TicketAction.START_SERVICE)
    assert started.status is TicketStatus.IN_PROGRESS

    pending = await lifecycle.transition(
        ticket.id, ENGINEER, TicketAction.COMPLETE_SERVICE, TransitionPayload(report=REPORT)
    )
    assert pending.status is TicketStatus.PENDING_VERIFICATION
    assert (await store.get_equipment(equipment.id)).status is EquipmentStatus.UNDER_SERVICE

    closed = await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.APPROVE)
    assert closed.status is TicketStatus.CLOSED
    assert closed.closed_at is not None
    machine = await store.get_equipment(equipment.id)
    assert machine.status is EquipmentStatus.ACTIVE
    assert machine.last_service_date == closed.closed_at
    [report] = await store.list_reports(ticket.id)
    assert report.verification_status is VerificationStatus.APPROVED
    assert report.verified_by == SUPERVISOR.id

    reopened = await lifecycle.transition(ticket.id, RAISER, TicketAction.REOPEN)
    assert reopened.status is TicketStatus.REOPENED
    assert reopened.reopen_count == 1
    assert reopened.closed_at is None
    assert (await store.get_equipment(equipment.id)).status is EquipmentStatus.UNDER_SERVICE

    stored = await store.get_ticket(ticket.id)
    assert [entry.status for entry in stored.timeline] == [
        TicketStatus.OPEN,
        TicketStatus.ASSIGNED,
        TicketStatus.IN_PROGRESS,
        TicketStatus.PENDING_VERIFICATION,
        TicketStatus.CLOSED,
        TicketStatus.REOPENED,
    ]
    for snapshot in (ticket, assigned, started, pending, closed, reopened, stored):
        _assert_invariants(snapshot)


@pytest.mark.asyncio
async def test_concurrent_approvals_close_the_ticket_once(lifecycle, store, equipment):
    ticket = await _raise(lifecycle, equipment)
    await _to_pending(lifecycle, ticket)

    results = await asyncio.gather(
        lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.APPROVE),
        lifecycle.transition(ticket.id, ADMIN, TicketAction.APPROVE),
        return_exceptions=True,
    )

    closed = [result for result in results if not isinstance(result, Exception)]
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(closed) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], (ConflictError, InvalidTransition))

    stored = await store.get_ticket(ticket.id)
    assert [entry.status for entry in stored.timeline].count(TicketStatus.CLOSED) == 1
    assert stored.status is TicketStatus.CLOSED


@pytest.mark.asyncio
async def test_approve_on_closed_ticket_is_rejected(lifecycle, store, equipment):
    ticket = await _raise(lifecycle, equipment)
    closed = await _to_closed(lifecycle, ticket)

    with pytest.raises(InvalidTransition):
        await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.APPROVE)

    stored = await store.get_ticket(ticket.id)
    assert stored.version == closed.version
    assert len(stored.timeline) == len(closed.timeline)


@pytest.mark.asyncio
async def test_reopen_count_increases_by_one_per_reopen(lifecycle, equipment):
    ticket = await _raise(lifecycle, equipment)
    await _to_closed(lifecycle, ticket)
    first = await lifecycle.transition(ticket.id, RAISER, TicketAction.REOPEN)

    await lifecycle.transition(first.id, ENGINEER, TicketAction.START_SERVICE)
    await lifecycle.transition(ticket.id, ENGINEER, TicketAction.COMPLETE_SERVICE, TransitionPayload(report=REPORT))
    closed_again = await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.APPROVE)
    assert closed_again.reopen_count == 1

    second = await lifecycle.transition(ticket.id, ADMIN, TicketAction.REOPEN)
    assert second.reopen_count == 2


@pytest.mark.asyncio
async def test_reopen_by_unrelated_actor_is_forbidden(lifecycle, equipment):
    ticket = await _raise(lifecycle, equipment)
    await _to_closed(lifecycle, ticket)

    with pytest.raises(Forbidden):
        await lifecycle.transition(ticket.id, OTHER_USER, TicketAction.REOPEN)


@pytest.mark.asyncio
async def test_rejection_sends_ticket_back_for_rework(lifecycle, store, equipment):
    ticket = await _raise(lifecycle, equipment)
    await _to_pending(lifecycle, ticket)

    with pytest.raises(ValidationError):
        await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.REJECT, TransitionPayload(reason="  "))

    rework = await lifecycle.transition(
        ticket.id, SUPERVISOR, TicketAction.REJECT, TransitionPayload(reason="Rotor still wobbles")
    )
    assert rework.status is TicketStatus.IN_PROGRESS
    assert rework.timeline[-1].notes == "Service rejected: Rotor still wobbles"
    assert (await store.get_equipment(equipment.id)).status is EquipmentStatus.UNDER_SERVICE

    await lifecycle.transition(ticket.id, ENGINEER, TicketAction.COMPLETE_SERVICE, TransitionPayload(report=REPORT))
    reports = await store.list_reports(ticket.id)
    assert [report.verification_status for report in reports] == [
        VerificationStatus.REJECTED,
        VerificationStatus.PENDING,
    ]
    assert reports[0].rejection_reason == "Rotor still wobbles"


@pytest.mark.asyncio
async def test_terminal_reject_policy_releases_equipment(store, directory, equipment):
    lifecycle = TicketLifecycle(
        store,
        equipment_store=store,
        directory=directory,
        state_machine=TicketStateMachine(reject_policy=RejectPolicy.TERMINAL),
    )
    ticket = await _raise(lifecycle, equipment)
    await _to_pending(lifecycle, ticket)

    rejected = await lifecycle.transition(
        ticket.id, SUPERVISOR, TicketAction.REJECT, TransitionPayload(reason="Not repairable")
    )

    assert rejected.status is TicketStatus.REJECTED
    assert rejected.closed_at is None
    assert (await store.get_equipment(equipment.id)).status is EquipmentStatus.ACTIVE
    with pytest.raises(InvalidTransition):
        await lifecycle.transition(ticket.id, RAISER, TicketAction.REOPEN)


@pytest.mark.asyncio
async def test_assign_requires_an_engineer(lifecycle, equipment):
    ticket = await _raise(lifecycle, equipment)

    with pytest.raises(ValidationError):
        await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.ASSIGN)
    with pytest.raises(NotFound):
        await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.ASSIGN, TransitionPayload(assigned_to="ghost"))
    with pytest.raises(ValidationError):
        await lifecycle.transition(
            ticket.id, SUPERVISOR, TicketAction.ASSIGN, TransitionPayload(assigned_to=SUPERVISOR.id)
        )
    with pytest.raises(Forbidden):
        await lifecycle.transition(
            ticket.id, ENGINEER, TicketAction.ASSIGN, TransitionPayload(assigned_to=ENGINEER.id)
        )


@pytest.mark.asyncio
async def test_invalid_report_leaves_ticket_untouched(lifecycle, store, equipment):
    ticket = await _raise(lifecycle, equipment)
    started = await _to_in_progress(lifecycle, ticket)

    with pytest.raises(ValidationError):
        await lifecycle.transition(
            ticket.id,
            ENGINEER,
            TicketAction.COMPLETE_SERVICE,
            TransitionPayload(report=ServiceReportDraft(work_description="Done", time_spent=0)),
        )
    with pytest.raises(ValidationError):
        await lifecycle.transition(ticket.id, ENGINEER, TicketAction.COMPLETE_SERVICE)

    stored = await store.get_ticket(ticket.id)
    assert stored.status is TicketStatus.IN_PROGRESS
    assert stored.version == started.version
    assert await store.list_reports(ticket.id) == []


@pytest.mark.asyncio
async def test_unknown_ticket_and_action(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.transition("missing", SUPERVISOR, TicketAction.APPROVE)
    with pytest.raises(ValidationError):
        await lifecycle.transition("missing", SUPERVISOR, "teleport")


@pytest.mark.asyncio
async def test_create_ticket_validation(lifecycle, store, equipment):
    with pytest.raises(NotFound):
        await _raise(lifecycle, make_equipment())
    with pytest.raises(ValidationError):
        await _raise(lifecycle, equipment, description="   ")
    with pytest.raises(ValidationError):
        await _raise(lifecycle, equipment, description="x" * 2001)
    with pytest.raises(ValidationError):
        await _raise(lifecycle, equipment, issue_type="")
    with pytest.raises(ValidationError):
        await _raise(lifecycle, equipment, priority="urgent")

    retired = await store.insert_equipment(make_equipment(status=EquipmentStatus.RETIRED))
    with pytest.raises(ValidationError):
        await _raise(lifecycle, retired)
    assert (await store.get_equipment(equipment.id)).status is EquipmentStatus.ACTIVE


@pytest.mark.asyncio
async def test_equipment_stays_under_service_while_another_ticket_is_open(lifecycle, store, equipment):
    first = await _raise(lifecycle, equipment)
    await _raise(lifecycle, equipment, description="Lid latch broken")

    await _to_closed(lifecycle, first)

    assert (await store.get_equipment(equipment.id)).status is EquipmentStatus.UNDER_SERVICE


@pytest.mark.asyncio
async def test_concurrent_creation_yields_unique_ticket_numbers(lifecycle, store, equipment):
    tickets = await asyncio.gather(*(_raise(lifecycle, equipment) for _ in range(25)))

    numbers = {ticket.ticket_number for ticket in tickets}
    assert len(numbers) == 25
    for ticket in tickets:
        assert await store.get_ticket(ticket.id) == ticket


class UncheckedNumberStore(InMemoryTicketStore):
    """Store whose pre-check never sees collisions, leaving the unique index to catch them."""

    async def ticket_number_exists(self, ticket_number: str) -> bool:
        return False


@pytest.mark.asyncio
async def test_duplicate_ticket_number_is_reallocated(directory):
    store = UncheckedNumberStore()
    equipment = await store.insert_equipment(make_equipment())
    suffixes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
    lifecycle = TicketLifecycle(
        store,
        equipment_store=store,
        directory=directory,
        allocator=CodeAllocator(random_source=lambda length: next(suffixes)),
    )

    first = await _raise(lifecycle, equipment)
    second = await _raise(lifecycle, equipment)

    assert first.ticket_number.endswith("-AAAAAA")
    assert second.ticket_number.endswith("-BBBBBB")


class CrowdedNumberStore(InMemoryTicketStore):
    """Nine of every ten numbers look taken and every insert loses the race."""

    def __init__(self) -> None:
        super().__init__()
        self.checked: list[str] = []

    async def ticket_number_exists(self, ticket_number: str) -> bool:
        self.checked.append(ticket_number)
        return len(self.checked) % 10 != 0

    async def insert_ticket(self, ticket, *, effects=()):
        raise DuplicateCodeError(f"Ticket number {ticket.ticket_number} already exists")


@pytest.mark.asyncio
async def test_ticket_number_allocation_stops_at_max_attempts(directory):
    store = CrowdedNumberStore()
    equipment = await store.insert_equipment(make_equipment())
    lifecycle = TicketLifecycle(
        store, equipment_store=store, directory=directory, allocator=CodeAllocator(max_attempts=10)
    )

    with pytest.raises(CapacityError):
        await _raise(lifecycle, equipment)

    assert len(store.checked) <= 10
    assert (await store.get_equipment(equipment.id)).status is EquipmentStatus.ACTIVE


class ConflictingStore(InMemoryTicketStore):
    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.attempts = 0

    async def compare_and_swap(self, ticket_id, expected_status, mutation, *, expected_version=None):
        self.attempts += 1
        if self.attempts <= self.conflicts:
            raise ConflictError("lost a race")
        return await super().compare_and_swap(
            ticket_id, expected_status, mutation, expected_version=expected_version
        )


@pytest.mark.asyncio
async def test_transient_conflict_is_retried(directory):
    store = ConflictingStore(conflicts=1)
    equipment = await store.insert_equipment(make_equipment())
    lifecycle = TicketLifecycle(store, equipment_store=store, directory=directory)
    ticket = await _raise(lifecycle, equipment)

    assigned = await lifecycle.transition(
        ticket.id, SUPERVISOR, TicketAction.ASSIGN, TransitionPayload(assigned_to=ENGINEER.id)
    )

    assert assigned.status is TicketStatus.ASSIGNED
    assert store.attempts == 2


@pytest.mark.asyncio
async def test_persistent_conflict_surfaces_after_bounded_retries(directory):
    store = ConflictingStore(conflicts=100)
    equipment = await store.insert_equipment(make_equipment())
    lifecycle = TicketLifecycle(store, equipment_store=store, directory=directory, max_retries=3)
    ticket = await _raise(lifecycle, equipment)

    with pytest.raises(ConflictError) as exc:
        await lifecycle.transition(
            ticket.id, SUPERVISOR, TicketAction.ASSIGN, TransitionPayload(assigned_to=ENGINEER.id)
        )

    assert exc.value.retryable
    assert store.attempts == 3
    assert (await store.get_ticket(ticket.id)).status is TicketStatus.OPEN


@pytest.mark.asyncio
async def test_notifications_follow_committed_transitions(lifecycle, notifier, dispatcher, equipment):
    ticket = await _raise(lifecycle, equipment)
    await _to_closed(lifecycle, ticket)
    await notifier.drain()

    sent = [(item.kind, item.recipient_id) for item in dispatcher.sent]
    assert sent == [
        (NotificationKind.TICKET_CREATED, SUPERVISOR.id),
        (NotificationKind.TICKET_ASSIGNED, ENGINEER.id),
        (NotificationKind.TICKET_CLOSED, RAISER.id),
    ]
    assert ticket.ticket_number in dispatcher.sent[0].message


class FailingDispatcher:
    async def dispatch(self, notification) -> None:
        raise RuntimeError("smtp down")


@pytest.mark.asyncio
async def test_notification_failure_does_not_roll_back(store, directory, equipment, caplog):
    caplog.set_level(logging.ERROR, logger="servicedesk.tickets.notifications")
    notifier = TicketNotifier(FailingDispatcher(), directory)
    lifecycle = TicketLifecycle(store, equipment_store=store, directory=directory, notifier=notifier)

    ticket = await _raise(lifecycle, equipment)
    await notifier.drain()

    assert (await store.get_ticket(ticket.id)).status is TicketStatus.OPEN
    assert any("Failed to deliver" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_get_ticket_bundles_comments_and_reports(lifecycle, store, equipment):
    ticket = await _raise(lifecycle, equipment)
    await _to_pending(lifecycle, ticket)

    aggregate = await lifecycle.get_ticket(ticket.id)

    assert aggregate.ticket.status is TicketStatus.PENDING_VERIFICATION
    assert len(aggregate.reports) == 1
    assert aggregate.comments == []
    assert [entry.status for entry in await lifecycle.timeline(ticket.id)][-1] is TicketStatus.PENDING_VERIFICATION
    with pytest.raises(NotFound):
        await lifecycle.get_ticket("missing")


class FailingEquipmentSync(EquipmentStatusSync):
    """Stages the equipment write, then fails once armed."""

    def __init__(self) -> None:
        self.armed = False

    async def on_ticket_status_changed(self, ledger, equipment_id, new_ticket_status, *, at):
        updated = await super().on_ticket_status_changed(ledger, equipment_id, new_ticket_status, at=at)
        if self.armed:
            raise StoreError("equipment write failed")
        return updated


@pytest.mark.asyncio
async def test_failed_effect_leaves_transition_unapplied(store, directory, equipment):
    sync = FailingEquipmentSync()
    lifecycle = TicketLifecycle(store, equipment_store=store, directory=directory, equipment_sync=sync)
    ticket = await _raise(lifecycle, equipment)
    pending = await _to_pending(lifecycle, ticket)
    reports_before = await store.list_reports(ticket.id)

    sync.armed = True
    with pytest.raises(StoreError):
        await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.APPROVE)

    stored = await store.get_ticket(ticket.id)
    assert stored.status is TicketStatus.PENDING_VERIFICATION
    assert stored.version == pending.version
    assert len(stored.timeline) == len(pending.timeline)
    assert stored.closed_at is None
    assert await store.list_reports(ticket.id) == reports_before
    assert reports_before[0].verification_status is VerificationStatus.PENDING
    machine = await store.get_equipment(equipment.id)
    assert machine.status is EquipmentStatus.UNDER_SERVICE
    assert machine.last_service_date is None

    sync.armed = False
    closed = await lifecycle.transition(ticket.id, SUPERVISOR, TicketAction.APPROVE)
    assert closed.status is TicketStatus.CLOSED


@pytest.mark.asyncio
async def test_transition_logs_carry_ticket_context(lifecycle, equipment, caplog):
    ticket = await _raise(lifecycle, equipment)

    with caplog.at_level(logging.INFO, logger="servicedesk.tickets.lifecycle"):
        await lifecycle.transition(
            ticket.id, SUPERVISOR, TicketAction.ASSIGN, TransitionPayload(assigned_to=ENGINEER.id)
        )

    [record] = [item for item in caplog.records if getattr(item, "action", None) == "assign"]
    assert record.ticket_number == ticket.ticket_number
    assert record.equipment_code == equipment.code
    assert record.actor_id == SUPERVISOR.id
    assert record.status == TicketStatus.ASSIGNED.value
