from __future__ import annotations

from typing import Mapping, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import col, select

from servicedesk.db.models import UserTable

from .models import Role
from .repository import guarded_session


class ActorDirectory(Protocol):
    """Read-only view of the identity provider's accounts."""

    async def role_of(self, actor_id: str) -> Role | None:
        ...

    async def ids_with_role(self, role: Role) -> list[str]:
        ...


class StaticActorDirectory:
    """Directory backed by a fixed mapping of actor id to role."""

    def __init__(self, roles: Mapping[str, Role] | None = None) -> None:
        self._roles = dict(roles or {})

    def add(self, actor_id: str, role: Role) -> None:
        self._roles[actor_id] = role

    async def role_of(self, actor_id: str) -> Role | None:
        return self._roles.get(actor_id)

    async def ids_with_role(self, role: Role) -> list[str]:
        return sorted(actor_id for actor_id, actor_role in self._roles.items() if actor_role is role)


class SqlActorDirectory:
    """Directory reading the ``users`` table mirrored from the identity provider."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def role_of(self, actor_id: str) -> Role | None:
        async with guarded_session(self._session_factory, "look up user role") as session:
            row = await session.get(UserTable, actor_id)
            if row is None or not row.is_active:
                return None
            return Role(row.role)

    async def ids_with_role(self, role: Role) -> list[str]:
        async with guarded_session(self._session_factory, "list users by role") as session:
            result = await session.execute(
                select(UserTable.id)
                .where(col(UserTable.role) == role.value, col(UserTable.is_active).is_(True))
                .order_by(col(UserTable.id))
            )
            return [str(value) for value in result.scalars().all()]
