from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Sequence

from .models import Ticket, TicketStatus, TimelineEntry


class TimelineLog:
    """Append-only status history; a ticket's status always mirrors its last entry."""

    @staticmethod
    def start(status: TicketStatus, *, actor_id: str, at: datetime, notes: str | None = None) -> tuple[TimelineEntry, ...]:
        return (TimelineEntry(status=status, timestamp=at, actor_id=actor_id, notes=notes),)

    @staticmethod
    def append(
        ticket: Ticket,
        status: TicketStatus,
        *,
        actor_id: str,
        at: datetime,
        notes: str | None = None,
        **changes: object,
    ) -> tuple[Ticket, TimelineEntry]:
        """Return ``ticket`` moved to ``status`` with one entry appended.

        Extra keyword ``changes`` are applied to the ticket in the same step so
        callers never observe a status that disagrees with the timeline.
        """

        entry = TimelineEntry(status=status, timestamp=at, actor_id=actor_id, notes=notes)
        updated = replace(
            ticket,
            status=status,
            timeline=(*ticket.timeline, entry),
            updated_at=at,
            version=ticket.version + 1,
            **changes,
        )
        return updated, entry

    @staticmethod
    def current_status(entries: Sequence[TimelineEntry]) -> TicketStatus | None:
        return entries[-1].status if entries else None

    @classmethod
    def is_consistent(cls, ticket: Ticket) -> bool:
        if cls.current_status(ticket.timeline) != ticket.status:
            return False
        return all(
            earlier.timestamp <= later.timestamp for earlier, later in zip(ticket.timeline, ticket.timeline[1:])
        )
