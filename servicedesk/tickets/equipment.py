from __future__ import annotations

import logging
import math
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable

from .codes import CodeAllocator
from .equipment_sync import EquipmentLedger, EquipmentStatusSync
from .errors import Forbidden, NotFound, ValidationError
from .models import Actor, Equipment, EquipmentStatus, MaintenanceDue, Role
from .store import EquipmentStore

logger = logging.getLogger(__name__)

OVERRIDE_STATUSES = frozenset({EquipmentStatus.INACTIVE, EquipmentStatus.RETIRED})


class EquipmentRegistry:
    """Register equipment, manage its availability override and its service schedule."""

    def __init__(
        self,
        store: EquipmentStore,
        *,
        allocator: CodeAllocator | None = None,
        equipment_sync: EquipmentStatusSync | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._allocator = allocator or CodeAllocator()
        self._equipment_sync = equipment_sync or EquipmentStatusSync()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def register(
        self,
        actor: Actor,
        *,
        name: str,
        equipment_type: str,
        location: str | None = None,
        service_interval_days: int | None = None,
    ) -> Equipment:
        self._require_manager(actor)
        name = (name or "").strip()
        equipment_type = (equipment_type or "").strip()
        if not name:
            raise ValidationError("Equipment name is required")
        if not equipment_type:
            raise ValidationError("Equipment type is required")
        _validate_interval(service_interval_days)

        async def insert(code: str) -> Equipment:
            equipment = Equipment(
                id=str(uuid.uuid4()),
                code=code,
                name=name,
                equipment_type=equipment_type,
                location=(location or "").strip() or None,
                status=EquipmentStatus.ACTIVE,
                created_at=self._clock(),
                service_interval_days=service_interval_days,
            )
            return await self._store.insert_equipment(equipment)

        equipment = await self._allocator.claim_equipment_code(self._store.equipment_code_exists, insert)
        logger.info("Equipment %s registered by %s", equipment.code, actor.id)
        return equipment

    async def get(self, equipment_id: str) -> Equipment:
        equipment = await self._store.get_equipment(equipment_id)
        if equipment is None:
            raise NotFound(f"Equipment {equipment_id} not found")
        return equipment

    async def by_code(self, code: str) -> Equipment:
        equipment = await self._store.get_equipment_by_code(code.strip())
        if equipment is None:
            raise NotFound(f"Equipment with code {code} not found")
        return equipment

    async def set_override(
        self,
        equipment_id: str,
        actor: Actor,
        override: EquipmentStatus | str | None,
    ) -> Equipment:
        """Set or clear the status used while no active ticket references the equipment."""

        self._require_manager(actor)
        if override is not None:
            try:
                override = EquipmentStatus(override)
            except ValueError:
                raise ValidationError(f"Unknown equipment status: {override}") from None
            if override not in OVERRIDE_STATUSES:
                raise ValidationError(f"Equipment status {override.value} cannot be set manually")

        async def apply(ledger: EquipmentLedger) -> None:
            equipment = await ledger.lock_equipment(equipment_id)
            await ledger.save_equipment(replace(equipment, status_override=override))
            await self._equipment_sync.recompute(ledger, equipment_id)

        if await self._store.get_equipment(equipment_id) is None:
            raise NotFound(f"Equipment {equipment_id} not found")
        updated = await self._store.update_equipment(equipment_id, apply)
        logger.info(
            "Equipment %s override set to %s by %s",
            updated.code,
            override.value if override is not None else "none",
            actor.id,
        )
        return updated

    async def set_service_schedule(
        self,
        equipment_id: str,
        actor: Actor,
        *,
        service_interval_days: int | None,
        next_service_date: datetime | None = None,
    ) -> Equipment:
        """Set the preventive service interval and, optionally, the next due date."""

        self._require_manager(actor)
        _validate_interval(service_interval_days)

        async def apply(ledger: EquipmentLedger) -> None:
            equipment = await ledger.lock_equipment(equipment_id)
            await ledger.save_equipment(
                replace(equipment, service_interval_days=service_interval_days, next_service_date=next_service_date)
            )

        if await self._store.get_equipment(equipment_id) is None:
            raise NotFound(f"Equipment {equipment_id} not found")
        updated = await self._store.update_equipment(equipment_id, apply)
        logger.info(
            "Equipment %s service interval set to %s days by %s",
            updated.code,
            service_interval_days,
            actor.id,
        )
        return updated

    async def maintenance_due(self, *, days: int = 30, now: datetime | None = None) -> list[MaintenanceDue]:
        """Active equipment whose next service falls within ``days``, overdue first."""

        if days < 0:
            raise ValidationError("days cannot be negative")
        now = now or self._clock()
        horizon = now + timedelta(days=days)
        due: list[MaintenanceDue] = []
        for equipment in await self._store.list_equipment(EquipmentStatus.ACTIVE):
            due_date = service_due_date(equipment)
            if due_date is None or due_date > horizon:
                continue
            due.append(
                MaintenanceDue(
                    equipment=equipment,
                    due_date=due_date,
                    days_until_due=math.ceil((due_date - now) / timedelta(days=1)),
                )
            )
        return sorted(due, key=lambda item: (item.days_until_due, item.equipment.code))

    @staticmethod
    def _require_manager(actor: Actor) -> None:
        if not actor.has_role(Role.SUPERVISOR, Role.ADMIN):
            raise Forbidden(f"Actor {actor.id} may not administer equipment")


def service_due_date(equipment: Equipment) -> datetime | None:
    if equipment.next_service_date is not None:
        return equipment.next_service_date
    if equipment.last_service_date is not None and equipment.service_interval_days:
        return equipment.last_service_date + timedelta(days=equipment.service_interval_days)
    return None


def _validate_interval(service_interval_days: int | None) -> None:
    if service_interval_days is not None and service_interval_days < 1:
        raise ValidationError("Service interval must be at least one day")
