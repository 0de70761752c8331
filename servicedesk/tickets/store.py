"""Persistence contract for the ticket core and its in-process implementation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol, Sequence

from .equipment_sync import TransactionEffect
from .errors import ConflictError, DuplicateCodeError, NotFound
from .models import (
    ACTIVE_TICKET_STATUSES,
    Comment,
    Equipment,
    EquipmentStatus,
    ServiceReport,
    Ticket,
    TicketSnapshot,
    TicketStatus,
    TimelineEntry,
    VerificationStatus,
)


@dataclass(slots=True)
class TicketMutation:
    """Everything one transition writes, committed together or not at all."""

    ticket: Ticket
    entry: TimelineEntry
    report: ServiceReport | None = None
    effects: Sequence[TransactionEffect] = ()


class TicketStore(Protocol):
    async def load_for_update(self, ticket_id: str) -> TicketSnapshot:
        ...

    async def compare_and_swap(
        self,
        ticket_id: str,
        expected_status: TicketStatus,
        mutation: TicketMutation,
        *,
        expected_version: int | None = None,
    ) -> Ticket:
        ...

    async def insert_ticket(self, ticket: Ticket, *, effects: Sequence[TransactionEffect] = ()) -> Ticket:
        ...

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ...

    async def ticket_number_exists(self, ticket_number: str) -> bool:
        ...

    async def list_reports(self, ticket_id: str) -> list[ServiceReport]:
        ...

    async def add_comment(self, comment: Comment) -> Comment:
        ...

    async def list_comments(self, ticket_id: str) -> list[Comment]:
        ...

    async def get_comment(self, ticket_id: str, comment_id: str) -> Comment | None:
        ...

    async def delete_comment(self, ticket_id: str, comment_id: str) -> bool:
        ...


class EquipmentStore(Protocol):
    async def get_equipment(self, equipment_id: str) -> Equipment | None:
        ...

    async def get_equipment_by_code(self, code: str) -> Equipment | None:
        ...

    async def list_equipment(self, status: EquipmentStatus | None = None) -> list[Equipment]:
        ...

    async def equipment_code_exists(self, code: str) -> bool:
        ...

    async def insert_equipment(self, equipment: Equipment) -> Equipment:
        ...

    async def update_equipment(self, equipment_id: str, effect: TransactionEffect) -> Equipment:
        ...


def latest_pending_report(reports: Sequence[ServiceReport]) -> ServiceReport | None:
    pending = [report for report in reports if report.verification_status is VerificationStatus.PENDING]
    if not pending:
        return None
    return max(pending, key=lambda report: report.submitted_at)


class _MemoryTransaction:
    """Staged copy of the store's collections; swapped in on commit."""

    def __init__(self, store: InMemoryTicketStore) -> None:
        self._store = store
        self.tickets = dict(store._tickets)
        self.equipment = dict(store._equipment)
        self.reports = dict(store._reports)

    async def lock_equipment(self, equipment_id: str) -> Equipment:
        equipment = self.equipment.get(equipment_id)
        if equipment is None:
            raise NotFound(f"Equipment {equipment_id} not found")
        return equipment

    async def count_active_tickets(self, equipment_id: str) -> int:
        return sum(
            1
            for ticket in self.tickets.values()
            if ticket.equipment_id == equipment_id and ticket.status in ACTIVE_TICKET_STATUSES
        )

    async def save_equipment(self, equipment: Equipment) -> None:
        self.equipment[equipment.id] = equipment

    def commit(self) -> None:
        self._store._tickets = self.tickets
        self._store._equipment = self.equipment
        self._store._reports = self.reports


class InMemoryTicketStore:
    """Process-local store used for development and tests.

    Writes are serialised by a single lock and applied to a staged copy of
    the collections, so a failing side effect leaves nothing behind.
    """

    def __init__(self) -> None:
        self._tickets: dict[str, Ticket] = {}
        self._equipment: dict[str, Equipment] = {}
        self._reports: dict[str, ServiceReport] = {}
        self._comments: dict[str, list[Comment]] = {}
        self._lock = asyncio.Lock()

    async def load_for_update(self, ticket_id: str) -> TicketSnapshot:
        ticket = self._tickets.get(ticket_id)
        # yield like a database round-trip would, letting concurrent callers interleave
        await asyncio.sleep(0)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")
        equipment = self._equipment.get(ticket.equipment_id)
        if equipment is None:
            raise NotFound(f"Equipment {ticket.equipment_id} not found")
        reports = [report for report in self._reports.values() if report.ticket_id == ticket_id]
        return TicketSnapshot(ticket=ticket, equipment=equipment, pending_report=latest_pending_report(reports))

    async def compare_and_swap(
        self,
        ticket_id: str,
        expected_status: TicketStatus,
        mutation: TicketMutation,
        *,
        expected_version: int | None = None,
    ) -> Ticket:
        async with self._lock:
            current = self._tickets.get(ticket_id)
            if current is None:
                raise NotFound(f"Ticket {ticket_id} not found")
            if current.status is not expected_status or (
                expected_version is not None and current.version != expected_version
            ):
                raise ConflictError(
                    f"Ticket {current.ticket_number} changed concurrently "
                    f"(expected {expected_status.value}, found {current.status.value})"
                )
            txn = _MemoryTransaction(self)
            txn.tickets[ticket_id] = mutation.ticket
            if mutation.report is not None:
                txn.reports[mutation.report.id] = mutation.report
            for effect in mutation.effects:
                await effect(txn)
            txn.commit()
        return mutation.ticket

    async def insert_ticket(self, ticket: Ticket, *, effects: Sequence[TransactionEffect] = ()) -> Ticket:
        async with self._lock:
            if any(existing.ticket_number == ticket.ticket_number for existing in self._tickets.values()):
                raise DuplicateCodeError(f"Ticket number {ticket.ticket_number} already exists")
            txn = _MemoryTransaction(self)
            txn.tickets[ticket.id] = ticket
            for effect in effects:
                await effect(txn)
            txn.commit()
        return ticket

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        return self._tickets.get(ticket_id)

    async def ticket_number_exists(self, ticket_number: str) -> bool:
        return any(ticket.ticket_number == ticket_number for ticket in self._tickets.values())

    async def list_reports(self, ticket_id: str) -> list[ServiceReport]:
        reports = [report for report in self._reports.values() if report.ticket_id == ticket_id]
        return sorted(reports, key=lambda report: report.submitted_at)

    async def add_comment(self, comment: Comment) -> Comment:
        if comment.ticket_id not in self._tickets:
            raise NotFound(f"Ticket {comment.ticket_id} not found")
        self._comments.setdefault(comment.ticket_id, []).append(comment)
        return comment

    async def list_comments(self, ticket_id: str) -> list[Comment]:
        return list(self._comments.get(ticket_id, []))

    async def get_comment(self, ticket_id: str, comment_id: str) -> Comment | None:
        for comment in self._comments.get(ticket_id, []):
            if comment.id == comment_id:
                return comment
        return None

    async def delete_comment(self, ticket_id: str, comment_id: str) -> bool:
        comments = self._comments.get(ticket_id, [])
        for index, comment in enumerate(comments):
            if comment.id == comment_id:
                del comments[index]
                return True
        return False

    async def get_equipment(self, equipment_id: str) -> Equipment | None:
        return self._equipment.get(equipment_id)

    async def get_equipment_by_code(self, code: str) -> Equipment | None:
        code = code.upper()
        for equipment in self._equipment.values():
            if equipment.code == code:
                return equipment
        return None

    async def list_equipment(self, status: EquipmentStatus | None = None) -> list[Equipment]:
        items = [equipment for equipment in self._equipment.values() if status is None or equipment.status is status]
        return sorted(items, key=lambda equipment: equipment.code)

    async def equipment_code_exists(self, code: str) -> bool:
        return await self.get_equipment_by_code(code) is not None

    async def insert_equipment(self, equipment: Equipment) -> Equipment:
        async with self._lock:
            if any(existing.code == equipment.code for existing in self._equipment.values()):
                raise DuplicateCodeError(f"Equipment code {equipment.code} already exists")
            self._equipment[equipment.id] = equipment
        return equipment

    async def update_equipment(self, equipment_id: str, effect: TransactionEffect) -> Equipment:
        async with self._lock:
            txn = _MemoryTransaction(self)
            await txn.lock_equipment(equipment_id)
            await effect(txn)
            txn.commit()
            return self._equipment[equipment_id]
