from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from servicedesk.tickets.comments import CommentThread
from servicedesk.tickets.equipment import EquipmentRegistry
from servicedesk.tickets.lifecycle import TicketLifecycle
from servicedesk.tickets.notifications import NotificationCenter
from servicedesk.tickets.verification import ServiceVerificationWorkflow


def _service(request: Request, name: str, label: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{label} is not configured")
    return service


async def get_lifecycle(request: Request) -> TicketLifecycle:
    return _service(request, "lifecycle", "Ticket lifecycle")


async def get_verification(request: Request) -> ServiceVerificationWorkflow:
    return _service(request, "verification", "Service verification")


async def get_equipment_registry(request: Request) -> EquipmentRegistry:
    return _service(request, "equipment_registry", "Equipment registry")


async def get_comments(request: Request) -> CommentThread:
    return _service(request, "comments", "Comment thread")


async def get_notification_center(request: Request) -> NotificationCenter:
    return _service(request, "notifications", "Notification inbox")


LifecycleDep = Annotated[TicketLifecycle, Depends(get_lifecycle)]
VerificationDep = Annotated[ServiceVerificationWorkflow, Depends(get_verification)]
EquipmentRegistryDep = Annotated[EquipmentRegistry, Depends(get_equipment_registry)]
CommentsDep = Annotated[CommentThread, Depends(get_comments)]
NotificationCenterDep = Annotated[NotificationCenter, Depends(get_notification_center)]
