from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from .errors import Forbidden, NotFound, ValidationError
from .models import Actor, Comment, Role
from .notifications import TicketNotifier
from .store import TicketStore

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 2000


class CommentThread:
    """Free-form discussion attached to a ticket."""

    def __init__(
        self,
        store: TicketStore,
        *,
        notifier: TicketNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def add(self, ticket_id: str, author: Actor, message: str) -> Comment:
        message = (message or "").strip()
        if not message:
            raise ValidationError("Comment message is required")
        if len(message) > MAX_COMMENT_LENGTH:
            raise ValidationError(f"Comment cannot exceed {MAX_COMMENT_LENGTH} characters")
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")

        comment = Comment(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            author_id=author.id,
            message=message,
            created_at=self._clock(),
        )
        comment = await self._store.add_comment(comment)
        if self._notifier is not None:
            self._notifier.comment_added(ticket, author)
        return comment

    async def list(self, ticket_id: str) -> list[Comment]:
        if await self._store.get_ticket(ticket_id) is None:
            raise NotFound(f"Ticket {ticket_id} not found")
        return await self._store.list_comments(ticket_id)

    async def delete(self, ticket_id: str, comment_id: str, actor: Actor) -> None:
        comment = await self._store.get_comment(ticket_id, comment_id)
        if comment is None:
            raise NotFound(f"Comment {comment_id} not found")
        if comment.author_id != actor.id and not actor.has_role(Role.ADMIN):
            raise Forbidden("Only the author or an admin may delete a comment")
        if not await self._store.delete_comment(ticket_id, comment_id):
            raise NotFound(f"Comment {comment_id} not found")
        logger.info("Comment %s on ticket %s deleted by %s", comment_id, ticket_id, actor.id)
