from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Protocol

from .models import Equipment, EquipmentStatus, TicketStatus

logger = logging.getLogger(__name__)


class EquipmentLedger(Protocol):
    """Equipment access bound to the transaction of the triggering ticket write."""

    async def lock_equipment(self, equipment_id: str) -> Equipment:
        ...

    async def count_active_tickets(self, equipment_id: str) -> int:
        ...

    async def save_equipment(self, equipment: Equipment) -> None:
        ...


TransactionEffect = Callable[[EquipmentLedger], Awaitable[None]]


def derive_equipment_status(active_tickets: int, override: EquipmentStatus | None) -> EquipmentStatus:
    if active_tickets > 0:
        return EquipmentStatus.UNDER_SERVICE
    if override is not None:
        return override
    return EquipmentStatus.ACTIVE


class EquipmentStatusSync:
    """Keep ``Equipment.status`` consistent with the tickets referencing it.

    The status is recomputed from every referencing ticket rather than from
    the one transition that triggered the call, so closing one of several
    open tickets leaves the equipment under service.
    """

    async def on_ticket_status_changed(
        self,
        ledger: EquipmentLedger,
        equipment_id: str,
        new_ticket_status: TicketStatus,
        *,
        at: datetime,
    ) -> Equipment:
        equipment = await ledger.lock_equipment(equipment_id)
        active = await ledger.count_active_tickets(equipment_id)
        status = derive_equipment_status(active, equipment.status_override)
        last_service_date = equipment.last_service_date
        next_service_date = equipment.next_service_date
        if new_ticket_status is TicketStatus.CLOSED:
            last_service_date = at
            if equipment.service_interval_days:
                next_service_date = at + timedelta(days=equipment.service_interval_days)

        if (
            status is equipment.status
            and last_service_date == equipment.last_service_date
            and next_service_date == equipment.next_service_date
        ):
            return equipment

        updated = replace(
            equipment, status=status, last_service_date=last_service_date, next_service_date=next_service_date
        )
        await ledger.save_equipment(updated)
        if status is not equipment.status:
            logger.info(
                "Equipment %s status %s -> %s (%d active tickets)",
                equipment.code,
                equipment.status.value,
                status.value,
                active,
            )
        return updated

    async def recompute(self, ledger: EquipmentLedger, equipment_id: str) -> Equipment:
        """Re-derive status without a ticket transition, e.g. after an override change."""

        equipment = await ledger.lock_equipment(equipment_id)
        active = await ledger.count_active_tickets(equipment_id)
        status = derive_equipment_status(active, equipment.status_override)
        if status is equipment.status:
            return equipment
        updated = replace(equipment, status=status)
        await ledger.save_equipment(updated)
        return updated

    def effect(self, equipment_id: str, new_ticket_status: TicketStatus, *, at: datetime) -> TransactionEffect:
        async def apply(ledger: EquipmentLedger) -> None:
            await self.on_ticket_status_changed(ledger, equipment_id, new_ticket_status, at=at)

        return apply
