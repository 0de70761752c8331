from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from servicedesk.tickets.directory import StaticActorDirectory
from servicedesk.tickets.lifecycle import TicketLifecycle
from servicedesk.tickets.models import Actor, Equipment, EquipmentStatus, Role
from servicedesk.tickets.notifications import TicketNotifier
from servicedesk.tickets.store import InMemoryTicketStore
from servicedesk.tickets.verification import ServiceVerificationWorkflow

RAISER = Actor("requester", Role.USER)
OTHER_USER = Actor("bystander", Role.USER)
ENGINEER = Actor("engineer-x", Role.ENGINEER)
OTHER_ENGINEER = Actor("engineer-y", Role.ENGINEER)
SUPERVISOR = Actor("supervisor", Role.SUPERVISOR)
ADMIN = Actor("admin", Role.ADMIN)


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent = []

    async def dispatch(self, notification) -> None:
        self.sent.append(notification)


def make_equipment(**overrides) -> Equipment:
    values = {
        "id": str(uuid.uuid4()),
        "code": f"EQ-{uuid.uuid4().hex[:8].upper()}",
        "name": "Centrifuge",
        "equipment_type": "lab",
        "status": EquipmentStatus.ACTIVE,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Equipment(**values)


@pytest.fixture
def directory() -> StaticActorDirectory:
    return StaticActorDirectory(
        {actor.id: actor.role for actor in (RAISER, OTHER_USER, ENGINEER, OTHER_ENGINEER, SUPERVISOR, ADMIN)}
    )


@pytest.fixture
def store() -> InMemoryTicketStore:
    return InMemoryTicketStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def notifier(dispatcher, directory) -> TicketNotifier:
    return TicketNotifier(dispatcher, directory)


@pytest_asyncio.fixture
async def lifecycle(store, directory, notifier):
    yield TicketLifecycle(store, equipment_store=store, directory=directory, notifier=notifier)
    await notifier.drain()


@pytest.fixture
def verification(lifecycle, store) -> ServiceVerificationWorkflow:
    return ServiceVerificationWorkflow(lifecycle, store)


@pytest_asyncio.fixture
async def equipment(store) -> Equipment:
    return await store.insert_equipment(make_equipment())
