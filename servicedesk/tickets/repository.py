from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, AsyncIterator, Sequence

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, col, select

from servicedesk.db.models import (
    EquipmentTable,
    ServiceReportTable,
    TicketCommentTable,
    TicketTable,
    TicketTimelineTable,
)

from .equipment_sync import TransactionEffect
from .errors import ConflictError, DuplicateCodeError, NotFound, StoreError
from .models import (
    ACTIVE_TICKET_STATUSES,
    Comment,
    Equipment,
    EquipmentStatus,
    PartReplaced,
    ServiceReport,
    Ticket,
    TicketPriority,
    TicketSnapshot,
    TicketStatus,
    TimelineEntry,
    VerificationStatus,
)
from .store import TicketMutation

logger = logging.getLogger(__name__)


def store_failure(operation: str, exc: SQLAlchemyError) -> StoreError:
    logger.exception("Persistence failure during %s", operation)
    return StoreError(f"Failed to {operation}: {exc.__class__.__name__}")


@asynccontextmanager
async def guarded_session(
    session_factory: async_sessionmaker[AsyncSession], operation: str
) -> AsyncIterator[AsyncSession]:
    """Open a session whose SQLAlchemy failures surface as ``StoreError``."""

    try:
        async with session_factory() as session:
            yield session
    except SQLAlchemyError as exc:
        raise store_failure(operation, exc) from exc


class _SqlLedger:
    """Equipment access inside the session of the triggering ticket write."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._locked: dict[str, EquipmentTable] = {}

    async def lock_equipment(self, equipment_id: str) -> Equipment:
        row = self._locked.get(equipment_id)
        if row is None:
            result = await self._session.execute(
                select(EquipmentTable).where(col(EquipmentTable.id) == equipment_id).with_for_update()
            )
            row = result.scalars().first()
            if row is None:
                raise NotFound(f"Equipment {equipment_id} not found")
            self._locked[equipment_id] = row
        return SqlTicketStore._table_to_equipment(row)

    async def count_active_tickets(self, equipment_id: str) -> int:
        await self._session.flush()
        result = await self._session.execute(
            select(func.count())
            .select_from(TicketTable)
            .where(
                col(TicketTable.equipment_id) == equipment_id,
                col(TicketTable.status).in_([status.value for status in ACTIVE_TICKET_STATUSES]),
            )
        )
        return int(result.scalar_one())

    async def save_equipment(self, equipment: Equipment) -> None:
        row = self._locked.get(equipment.id)
        if row is None:
            await self.lock_equipment(equipment.id)
            row = self._locked[equipment.id]
        row.status = equipment.status.value
        row.status_override = equipment.status_override.value if equipment.status_override else None
        row.last_service_date = equipment.last_service_date
        row.service_interval_days = equipment.service_interval_days
        row.next_service_date = equipment.next_service_date
        await self._session.flush()


class SqlTicketStore:
    """Ticket and equipment persistence over SQLModel tables.

    Each conditional update runs in one transaction: the guarded ``UPDATE`` of
    the ticket row, the timeline insert, the report upsert and every
    transactional effect (equipment recompute) commit together.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def load_for_update(self, ticket_id: str) -> TicketSnapshot:
        try:
            async with self._session_factory() as session:
                ticket_row = await session.get(TicketTable, ticket_id)
                if ticket_row is None:
                    raise NotFound(f"Ticket {ticket_id} not found")
                ticket = await self._load_ticket(session, ticket_row)
                equipment_row = await session.get(EquipmentTable, ticket.equipment_id)
                if equipment_row is None:
                    raise NotFound(f"Equipment {ticket.equipment_id} not found")
                report_result = await session.execute(
                    select(ServiceReportTable)
                    .where(
                        col(ServiceReportTable.ticket_id) == ticket_id,
                        col(ServiceReportTable.verification_status) == VerificationStatus.PENDING.value,
                    )
                    .order_by(col(ServiceReportTable.submitted_at).desc())
                    .limit(1)
                )
                report_row = report_result.scalars().first()
        except SQLAlchemyError as exc:
            raise store_failure("load ticket", exc) from exc

        return TicketSnapshot(
            ticket=ticket,
            equipment=self._table_to_equipment(equipment_row),
            pending_report=self._table_to_report(report_row) if report_row is not None else None,
        )

    async def compare_and_swap(
        self,
        ticket_id: str,
        expected_status: TicketStatus,
        mutation: TicketMutation,
        *,
        expected_version: int | None = None,
    ) -> Ticket:
        ticket = mutation.ticket
        conditions = [col(TicketTable.id) == ticket_id, col(TicketTable.status) == expected_status.value]
        if expected_version is not None:
            conditions.append(col(TicketTable.version) == expected_version)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(TicketTable)
                        .where(*conditions)
                        .values(
                            status=ticket.status.value,
                            assigned_to=ticket.assigned_to,
                            reopen_count=ticket.reopen_count,
                            closed_at=ticket.closed_at,
                            updated_at=ticket.updated_at,
                            version=ticket.version,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        if await session.get(TicketTable, ticket_id) is None:
                            raise NotFound(f"Ticket {ticket_id} not found")
                        raise ConflictError(
                            f"Ticket {ticket.ticket_number} changed concurrently (expected {expected_status.value})"
                        )
                    session.add(self._entry_to_table(ticket_id, len(ticket.timeline) - 1, mutation.entry))
                    if mutation.report is not None:
                        await self._upsert_report(session, mutation.report)
                    ledger = _SqlLedger(session)
                    for effect in mutation.effects:
                        await effect(ledger)
        except IntegrityError as exc:
            # a concurrent writer took the same timeline position
            raise ConflictError(f"Ticket {ticket.ticket_number} changed concurrently") from exc
        except SQLAlchemyError as exc:
            raise store_failure("update ticket", exc) from exc
        return ticket

    async def insert_ticket(self, ticket: Ticket, *, effects: Sequence[TransactionEffect] = ()) -> Ticket:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        TicketTable(
                            id=ticket.id,
                            ticket_number=ticket.ticket_number,
                            equipment_id=ticket.equipment_id,
                            raised_by=ticket.raised_by,
                            assigned_to=ticket.assigned_to,
                            priority=ticket.priority.value,
                            status=ticket.status.value,
                            issue_type=ticket.issue_type,
                            description=ticket.description,
                            reopen_count=ticket.reopen_count,
                            version=ticket.version,
                            created_at=ticket.created_at,
                            updated_at=ticket.updated_at,
                            closed_at=ticket.closed_at,
                        )
                    )
                    await session.flush()
                    for position, entry in enumerate(ticket.timeline):
                        session.add(self._entry_to_table(ticket.id, position, entry))
                    await session.flush()
                    ledger = _SqlLedger(session)
                    for effect in effects:
                        await effect(ledger)
        except IntegrityError as exc:
            # a dangling equipment id or a reused ticket id is not a number collision
            if await self.ticket_number_exists(ticket.ticket_number):
                raise DuplicateCodeError(f"Ticket number {ticket.ticket_number} already exists") from exc
            raise store_failure("insert ticket", exc) from exc
        except SQLAlchemyError as exc:
            raise store_failure("insert ticket", exc) from exc
        return ticket

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(TicketTable, ticket_id)
                if row is None:
                    return None
                return await self._load_ticket(session, row)
        except SQLAlchemyError as exc:
            raise store_failure("get ticket", exc) from exc

    async def ticket_number_exists(self, ticket_number: str) -> bool:
        async with self._session("check ticket number") as session:
            result = await session.execute(
                select(TicketTable.id).where(col(TicketTable.ticket_number) == ticket_number)
            )
            return result.first() is not None

    async def list_reports(self, ticket_id: str) -> list[ServiceReport]:
        async with self._session("list reports") as session:
            result = await session.execute(
                select(ServiceReportTable)
                .where(col(ServiceReportTable.ticket_id) == ticket_id)
                .order_by(col(ServiceReportTable.submitted_at).asc())
            )
            return [self._table_to_report(row) for row in result.scalars().all()]

    async def add_comment(self, comment: Comment) -> Comment:
        async with self._session("add comment") as session:
            async with session.begin():
                if await session.get(TicketTable, comment.ticket_id) is None:
                    raise NotFound(f"Ticket {comment.ticket_id} not found")
                session.add(
                    TicketCommentTable(
                        id=comment.id,
                        ticket_id=comment.ticket_id,
                        author_id=comment.author_id,
                        message=comment.message,
                        created_at=comment.created_at,
                    )
                )
        return comment

    async def list_comments(self, ticket_id: str) -> list[Comment]:
        async with self._session("list comments") as session:
            result = await session.execute(
                select(TicketCommentTable)
                .where(col(TicketCommentTable.ticket_id) == ticket_id)
                .order_by(col(TicketCommentTable.created_at).asc())
            )
            return [self._table_to_comment(row) for row in result.scalars().all()]

    async def get_comment(self, ticket_id: str, comment_id: str) -> Comment | None:
        async with self._session("get comment") as session:
            row = await session.get(TicketCommentTable, comment_id)
            if row is None or row.ticket_id != ticket_id:
                return None
            return self._table_to_comment(row)

    async def delete_comment(self, ticket_id: str, comment_id: str) -> bool:
        async with self._session("delete comment") as session:
            row = await session.get(TicketCommentTable, comment_id)
            if row is None or row.ticket_id != ticket_id:
                return False
            await session.delete(row)
            await session.commit()
            return True

    async def get_equipment(self, equipment_id: str) -> Equipment | None:
        async with self._session("get equipment") as session:
            row = await session.get(EquipmentTable, equipment_id)
            return self._table_to_equipment(row) if row is not None else None

    async def get_equipment_by_code(self, code: str) -> Equipment | None:
        async with self._session("get equipment by code") as session:
            result = await session.execute(
                select(EquipmentTable).where(col(EquipmentTable.code) == code.upper())
            )
            row = result.scalars().first()
            return self._table_to_equipment(row) if row is not None else None

    async def list_equipment(self, status: EquipmentStatus | None = None) -> list[Equipment]:
        async with self._session("list equipment") as session:
            query = select(EquipmentTable).order_by(col(EquipmentTable.code).asc())
            if status is not None:
                query = query.where(col(EquipmentTable.status) == status.value)
            result = await session.execute(query)
            return [self._table_to_equipment(row) for row in result.scalars().all()]

    async def equipment_code_exists(self, code: str) -> bool:
        return await self.get_equipment_by_code(code) is not None

    async def insert_equipment(self, equipment: Equipment) -> Equipment:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        EquipmentTable(
                            id=equipment.id,
                            code=equipment.code,
                            name=equipment.name,
                            equipment_type=equipment.equipment_type,
                            location=equipment.location,
                            status=equipment.status.value,
                            status_override=equipment.status_override.value if equipment.status_override else None,
                            last_service_date=equipment.last_service_date,
                            service_interval_days=equipment.service_interval_days,
                            next_service_date=equipment.next_service_date,
                            created_at=equipment.created_at,
                        )
                    )
        except IntegrityError as exc:
            if await self.equipment_code_exists(equipment.code):
                raise DuplicateCodeError(f"Equipment code {equipment.code} already exists") from exc
            raise store_failure("insert equipment", exc) from exc
        except SQLAlchemyError as exc:
            raise store_failure("insert equipment", exc) from exc
        return equipment

    async def update_equipment(self, equipment_id: str, effect: TransactionEffect) -> Equipment:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    ledger = _SqlLedger(session)
                    await ledger.lock_equipment(equipment_id)
                    await effect(ledger)
                    return await ledger.lock_equipment(equipment_id)
        except SQLAlchemyError as exc:
            raise store_failure("update equipment", exc) from exc

    def _session(self, operation: str) -> AsyncContextManager[AsyncSession]:
        return guarded_session(self._session_factory, operation)

    async def _load_ticket(self, session: AsyncSession, row: TicketTable) -> Ticket:
        result = await session.execute(
            select(TicketTimelineTable)
            .where(col(TicketTimelineTable.ticket_id) == row.id)
            .order_by(col(TicketTimelineTable.position).asc())
        )
        timeline = tuple(self._table_to_entry(entry) for entry in result.scalars().all())
        return self._table_to_ticket(row, timeline)

    async def _upsert_report(self, session: AsyncSession, report: ServiceReport) -> None:
        row = await session.get(ServiceReportTable, report.id)
        if row is None:
            row = ServiceReportTable(id=report.id, ticket_id=report.ticket_id)
            session.add(row)
        row.engineer_id = report.engineer_id
        row.work_description = report.work_description
        row.time_spent = report.time_spent
        row.parts_replaced = [asdict(part) for part in report.parts_replaced]
        row.verification_status = report.verification_status.value
        row.verified_by = report.verified_by
        row.rejection_reason = report.rejection_reason
        row.submitted_at = report.submitted_at
        row.verified_at = report.verified_at

    @staticmethod
    def _entry_to_table(ticket_id: str, position: int, entry: TimelineEntry) -> TicketTimelineTable:
        return TicketTimelineTable(
            id=f"{ticket_id}:{position}",
            ticket_id=ticket_id,
            position=position,
            status=entry.status.value,
            actor_id=entry.actor_id,
            notes=entry.notes,
            timestamp=entry.timestamp,
        )

    @staticmethod
    def _table_to_entry(row: TicketTimelineTable) -> TimelineEntry:
        return TimelineEntry(
            status=TicketStatus(row.status),
            timestamp=_ensure_datetime(row.timestamp),
            actor_id=row.actor_id,
            notes=row.notes,
        )

    @staticmethod
    def _table_to_ticket(row: TicketTable, timeline: tuple[TimelineEntry, ...]) -> Ticket:
        return Ticket(
            id=row.id,
            ticket_number=row.ticket_number,
            equipment_id=row.equipment_id,
            raised_by=row.raised_by,
            assigned_to=row.assigned_to,
            priority=TicketPriority(row.priority),
            status=TicketStatus(row.status),
            issue_type=row.issue_type,
            description=row.description,
            timeline=timeline,
            reopen_count=row.reopen_count,
            version=row.version,
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            closed_at=_optional_datetime(row.closed_at),
        )

    @staticmethod
    def _table_to_equipment(row: EquipmentTable) -> Equipment:
        return Equipment(
            id=row.id,
            code=row.code,
            name=row.name,
            equipment_type=row.equipment_type,
            location=row.location,
            status=EquipmentStatus(row.status),
            status_override=EquipmentStatus(row.status_override) if row.status_override else None,
            last_service_date=_optional_datetime(row.last_service_date),
            service_interval_days=row.service_interval_days,
            next_service_date=_optional_datetime(row.next_service_date),
            created_at=_ensure_datetime(row.created_at),
        )

    @staticmethod
    def _table_to_report(row: ServiceReportTable) -> ServiceReport:
        parts: list[dict[str, Any]] = row.parts_replaced or []
        return ServiceReport(
            id=row.id,
            ticket_id=row.ticket_id,
            engineer_id=row.engineer_id,
            work_description=row.work_description,
            time_spent=row.time_spent,
            parts_replaced=tuple(PartReplaced(**part) for part in parts),
            verification_status=VerificationStatus(row.verification_status),
            verified_by=row.verified_by,
            rejection_reason=row.rejection_reason,
            submitted_at=_ensure_datetime(row.submitted_at),
            verified_at=_optional_datetime(row.verified_at),
        )

    @staticmethod
    def _table_to_comment(row: TicketCommentTable) -> Comment:
        return Comment(
            id=row.id,
            ticket_id=row.ticket_id,
            author_id=row.author_id,
            message=row.message,
            created_at=_ensure_datetime(row.created_at),
        )


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else _ensure_datetime(value)
