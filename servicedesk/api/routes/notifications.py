from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, Field

from servicedesk.api.errors import to_http_error
from servicedesk.dependencies.auth import CurrentActor
from servicedesk.dependencies.services import NotificationCenterDep
from servicedesk.tickets.errors import TicketError
from servicedesk.tickets.notifications import DEFAULT_INBOX_LIMIT, NotificationKind

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: NotificationKind
    title: str
    message: str
    link: str | None
    read: bool
    created_at: datetime


class InboxResponse(BaseModel):
    notifications: list[NotificationResponse]
    unread_count: int


class MarkReadRequest(BaseModel):
    notification_ids: list[str] = Field(default_factory=list)
    mark_all: bool = False


class MarkReadResponse(BaseModel):
    updated: int


@router.get("", response_model=InboxResponse)
async def list_notifications(
    center: NotificationCenterDep,
    actor: CurrentActor,
    unread: bool = Query(default=False, description="Only return unread notifications"),
    limit: int = Query(default=DEFAULT_INBOX_LIMIT),
) -> InboxResponse:
    try:
        page = await center.inbox(actor, unread_only=unread, limit=limit)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return InboxResponse(
        notifications=[NotificationResponse.model_validate(item) for item in page.items],
        unread_count=page.unread_count,
    )


@router.put("", response_model=MarkReadResponse)
async def mark_notifications_read(
    payload: MarkReadRequest,
    center: NotificationCenterDep,
    actor: CurrentActor,
) -> MarkReadResponse:
    try:
        updated = await center.mark_read(actor, notification_ids=payload.notification_ids, mark_all=payload.mark_all)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return MarkReadResponse(updated=updated)
