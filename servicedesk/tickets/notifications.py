"""Fire-and-forget notifications emitted after committed transitions, and the inbox they land in."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Protocol, Sequence

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import col, select

from servicedesk.db.models import NotificationTable

from .directory import ActorDirectory
from .errors import ValidationError
from .models import Actor, Equipment, Role, Ticket
from .repository import guarded_session

logger = logging.getLogger(__name__)

DEFAULT_INBOX_LIMIT = 20
MAX_INBOX_LIMIT = 100


class NotificationKind(str, Enum):
    TICKET_CREATED = "ticket_created"
    TICKET_ASSIGNED = "ticket_assigned"
    TICKET_CLOSED = "ticket_closed"
    COMMENT_ADDED = "comment_added"


@dataclass(frozen=True, slots=True)
class Notification:
    recipient_id: str
    kind: NotificationKind
    title: str
    message: str
    link: str | None = None


@dataclass(frozen=True, slots=True)
class InboxItem:
    """A delivered notification as its recipient sees it."""

    id: str
    recipient_id: str
    kind: NotificationKind
    title: str
    message: str
    created_at: datetime
    link: str | None = None
    read: bool = False


@dataclass(frozen=True, slots=True)
class InboxPage:
    items: list[InboxItem]
    unread_count: int


class NotificationDispatcher(Protocol):
    async def dispatch(self, notification: Notification) -> None:
        ...


class NotificationInbox(Protocol):
    async def list_for(self, recipient_id: str, *, unread_only: bool = False, limit: int) -> list[InboxItem]:
        ...

    async def unread_count(self, recipient_id: str) -> int:
        ...

    async def mark_read(self, recipient_id: str, notification_ids: Sequence[str] | None = None) -> int:
        """Mark the given notifications (or all when ``None``) read; return how many changed."""
        ...


class LoggingNotificationDispatcher:
    """Dispatcher that only records notifications in the log."""

    async def dispatch(self, notification: Notification) -> None:
        logger.info(
            "Notify %s [%s]: %s", notification.recipient_id, notification.kind.value, notification.message
        )


class InMemoryNotificationInbox(LoggingNotificationDispatcher):
    """Process-local inbox; logs every notification and keeps it for its recipient."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._items: list[InboxItem] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def dispatch(self, notification: Notification) -> None:
        await super().dispatch(notification)
        self._items.append(
            InboxItem(
                id=str(uuid.uuid4()),
                recipient_id=notification.recipient_id,
                kind=notification.kind,
                title=notification.title,
                message=notification.message,
                link=notification.link,
                created_at=self._clock(),
            )
        )

    async def list_for(self, recipient_id: str, *, unread_only: bool = False, limit: int) -> list[InboxItem]:
        items = [
            item
            for item in reversed(self._items)
            if item.recipient_id == recipient_id and not (unread_only and item.read)
        ]
        return items[:limit]

    async def unread_count(self, recipient_id: str) -> int:
        return sum(1 for item in self._items if item.recipient_id == recipient_id and not item.read)

    async def mark_read(self, recipient_id: str, notification_ids: Sequence[str] | None = None) -> int:
        wanted = None if notification_ids is None else set(notification_ids)
        changed = 0
        for index, item in enumerate(self._items):
            if item.recipient_id != recipient_id or item.read:
                continue
            if wanted is not None and item.id not in wanted:
                continue
            self._items[index] = replace(item, read=True)
            changed += 1
        return changed


class SqlNotificationInbox:
    """Inbox backed by the ``notifications`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def dispatch(self, notification: Notification) -> None:
        async with guarded_session(self._session_factory, "store notification") as session:
            async with session.begin():
                session.add(
                    NotificationTable(
                        id=str(uuid.uuid4()),
                        recipient_id=notification.recipient_id,
                        kind=notification.kind.value,
                        title=notification.title,
                        message=notification.message,
                        link=notification.link,
                        created_at=datetime.now(timezone.utc),
                    )
                )

    async def list_for(self, recipient_id: str, *, unread_only: bool = False, limit: int) -> list[InboxItem]:
        query = select(NotificationTable).where(col(NotificationTable.recipient_id) == recipient_id)
        if unread_only:
            query = query.where(col(NotificationTable.read).is_(False))
        query = query.order_by(col(NotificationTable.created_at).desc()).limit(limit)
        async with guarded_session(self._session_factory, "list notifications") as session:
            result = await session.execute(query)
            return [self._table_to_item(row) for row in result.scalars().all()]

    async def unread_count(self, recipient_id: str) -> int:
        async with guarded_session(self._session_factory, "count notifications") as session:
            result = await session.execute(
                select(func.count())
                .select_from(NotificationTable)
                .where(
                    col(NotificationTable.recipient_id) == recipient_id,
                    col(NotificationTable.read).is_(False),
                )
            )
            return int(result.scalar_one())

    async def mark_read(self, recipient_id: str, notification_ids: Sequence[str] | None = None) -> int:
        conditions = [col(NotificationTable.recipient_id) == recipient_id, col(NotificationTable.read).is_(False)]
        if notification_ids is not None:
            if not notification_ids:
                return 0
            conditions.append(col(NotificationTable.id).in_(list(notification_ids)))
        async with guarded_session(self._session_factory, "mark notifications read") as session:
            async with session.begin():
                result = await session.execute(
                    update(NotificationTable)
                    .where(*conditions)
                    .values(read=True)
                    .execution_options(synchronize_session=False)
                )
            return int(result.rowcount or 0)

    @staticmethod
    def _table_to_item(row: NotificationTable) -> InboxItem:
        created_at = row.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return InboxItem(
            id=row.id,
            recipient_id=row.recipient_id,
            kind=NotificationKind(row.kind),
            title=row.title,
            message=row.message,
            link=row.link,
            read=row.read,
            created_at=created_at,
        )


class NotificationCenter:
    """The current actor's view of their inbox."""

    def __init__(self, inbox: NotificationInbox) -> None:
        self._inbox = inbox

    async def inbox(self, actor: Actor, *, unread_only: bool = False, limit: int = DEFAULT_INBOX_LIMIT) -> InboxPage:
        if not 1 <= limit <= MAX_INBOX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_INBOX_LIMIT}")
        items = await self._inbox.list_for(actor.id, unread_only=unread_only, limit=limit)
        return InboxPage(items=items, unread_count=await self._inbox.unread_count(actor.id))

    async def mark_read(
        self,
        actor: Actor,
        *,
        notification_ids: Sequence[str] | None = None,
        mark_all: bool = False,
    ) -> int:
        if mark_all:
            changed = await self._inbox.mark_read(actor.id)
        elif notification_ids:
            changed = await self._inbox.mark_read(actor.id, notification_ids)
        else:
            raise ValidationError("Pass notification_ids or set mark_all")
        logger.info("%d notifications marked read by %s", changed, actor.id)
        return changed


class TicketNotifier:
    """Schedule notifications without letting their failures reach the caller."""

    def __init__(self, dispatcher: NotificationDispatcher, directory: ActorDirectory) -> None:
        self._dispatcher = dispatcher
        self._directory = directory
        self._pending: set[asyncio.Task[None]] = set()

    def ticket_created(self, ticket: Ticket, equipment: Equipment) -> None:
        async def recipients() -> list[str]:
            return await self._directory.ids_with_role(Role.SUPERVISOR)

        self._schedule(
            recipients,
            NotificationKind.TICKET_CREATED,
            "New Ticket Created",
            f"Ticket {ticket.ticket_number} has been created for {equipment.name}",
        )

    def ticket_assigned(self, ticket: Ticket, equipment: Equipment) -> None:
        if ticket.assigned_to is None:
            return
        engineer_id = ticket.assigned_to

        async def recipients() -> list[str]:
            return [engineer_id]

        self._schedule(
            recipients,
            NotificationKind.TICKET_ASSIGNED,
            "Ticket Assigned to You",
            f"Ticket {ticket.ticket_number} for {equipment.name} has been assigned to you",
        )

    def ticket_closed(self, ticket: Ticket, equipment: Equipment) -> None:
        raiser_id = ticket.raised_by

        async def recipients() -> list[str]:
            return [raiser_id]

        self._schedule(
            recipients,
            NotificationKind.TICKET_CLOSED,
            "Ticket Resolved",
            f"Ticket {ticket.ticket_number} for {equipment.name} has been closed",
        )

    def comment_added(self, ticket: Ticket, author: Actor) -> None:
        participants = {ticket.raised_by, ticket.assigned_to} - {None, author.id}

        async def recipients() -> list[str]:
            return sorted(participants)

        self._schedule(
            recipients,
            NotificationKind.COMMENT_ADDED,
            "New Comment",
            f"{author.id} commented on ticket {ticket.ticket_number}",
        )

    async def drain(self) -> None:
        """Wait for in-flight notifications; used on shutdown and in tests."""

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _schedule(
        self,
        recipients: Callable[[], Awaitable[list[str]]],
        kind: NotificationKind,
        title: str,
        message: str,
    ) -> None:
        task = asyncio.create_task(self._deliver(recipients, kind, title, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(
        self,
        recipients: Callable[[], Awaitable[list[str]]],
        kind: NotificationKind,
        title: str,
        message: str,
    ) -> None:
        try:
            for recipient_id in await recipients():
                await self._dispatcher.dispatch(
                    Notification(recipient_id=recipient_id, kind=kind, title=title, message=message, link="/tickets")
                )
        except Exception:
            logger.exception("Failed to deliver %s notification", kind.value)
