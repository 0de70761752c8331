from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, ConfigDict, Field

from servicedesk.api.errors import to_http_error
from servicedesk.dependencies.auth import CurrentActor, ManagerActor
from servicedesk.dependencies.services import EquipmentRegistryDep
from servicedesk.tickets.errors import TicketError
from servicedesk.tickets.models import Equipment, EquipmentStatus, MaintenanceDue

router = APIRouter(prefix="/equipment", tags=["equipment"])


class EquipmentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    equipment_type: str = Field(..., min_length=1, max_length=100)
    location: str | None = Field(default=None, max_length=255)
    service_interval_days: int | None = Field(default=None, ge=1)


class EquipmentScheduleRequest(BaseModel):
    service_interval_days: int | None = Field(default=None, ge=1)
    next_service_date: datetime | None = None


class EquipmentOverrideRequest(BaseModel):
    status_override: EquipmentStatus | None = None


class EquipmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    name: str
    equipment_type: str
    location: str | None
    status: EquipmentStatus
    status_override: EquipmentStatus | None
    last_service_date: datetime | None
    service_interval_days: int | None
    next_service_date: datetime | None
    created_at: datetime


class MaintenanceDueResponse(BaseModel):
    equipment: EquipmentResponse
    due_date: datetime
    days_until_due: int
    overdue: bool


def _to_response(equipment: Equipment) -> EquipmentResponse:
    return EquipmentResponse.model_validate(equipment)


def _to_due_response(item: MaintenanceDue) -> MaintenanceDueResponse:
    return MaintenanceDueResponse(
        equipment=_to_response(item.equipment),
        due_date=item.due_date,
        days_until_due=item.days_until_due,
        overdue=item.is_overdue,
    )


@router.post("", response_model=EquipmentResponse, status_code=status.HTTP_201_CREATED)
async def register_equipment(
    payload: EquipmentCreateRequest,
    registry: EquipmentRegistryDep,
    actor: ManagerActor,
) -> EquipmentResponse:
    try:
        equipment = await registry.register(
            actor,
            name=payload.name,
            equipment_type=payload.equipment_type,
            location=payload.location,
            service_interval_days=payload.service_interval_days,
        )
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_response(equipment)


@router.get("/code/{code}", response_model=EquipmentResponse, summary="Look up equipment by scanned code")
async def get_equipment_by_code(code: str, registry: EquipmentRegistryDep, _: CurrentActor) -> EquipmentResponse:
    try:
        equipment = await registry.by_code(code)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_response(equipment)


@router.get("/maintenance-due", response_model=list[MaintenanceDueResponse])
async def list_maintenance_due(
    registry: EquipmentRegistryDep,
    _: CurrentActor,
    days: int = Query(default=30, description="Include equipment due within this many days"),
) -> list[MaintenanceDueResponse]:
    try:
        due = await registry.maintenance_due(days=days)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return [_to_due_response(item) for item in due]


@router.get("/{equipment_id}", response_model=EquipmentResponse)
async def get_equipment(equipment_id: str, registry: EquipmentRegistryDep, _: CurrentActor) -> EquipmentResponse:
    try:
        equipment = await registry.get(equipment_id)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_response(equipment)


@router.put("/{equipment_id}/override", response_model=EquipmentResponse)
async def set_equipment_override(
    equipment_id: str,
    payload: EquipmentOverrideRequest,
    registry: EquipmentRegistryDep,
    actor: ManagerActor,
) -> EquipmentResponse:
    try:
        equipment = await registry.set_override(equipment_id, actor, payload.status_override)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_response(equipment)


@router.put("/{equipment_id}/schedule", response_model=EquipmentResponse)
async def set_equipment_schedule(
    equipment_id: str,
    payload: EquipmentScheduleRequest,
    registry: EquipmentRegistryDep,
    actor: ManagerActor,
) -> EquipmentResponse:
    try:
        equipment = await registry.set_service_schedule(
            equipment_id,
            actor,
            service_interval_days=payload.service_interval_days,
            next_service_date=payload.next_service_date,
        )
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_response(equipment)
