from collections.abc import Callable, Mapping
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from servicedesk.core.config import get_settings
from servicedesk.tickets.models import Actor, Role

bearer_scheme = HTTPBearer(auto_error=False)


def parse_token_table(tokens: Mapping[str, str]) -> dict[str, Actor]:
    """Turn the configured ``token -> "actor_id:role"`` table into actors."""

    table: dict[str, Actor] = {}
    for token, identity in tokens.items():
        actor_id, separator, role = identity.rpartition(":")
        if not separator or not actor_id:
            raise ValueError(f"Token identity {identity!r} must look like 'actor_id:role'")
        table[token] = Actor(id=actor_id, role=Role(role))
    return table


def resolve_actor_from_token(token: str | None, tokens: Mapping[str, str] | None = None) -> Actor | None:
    """Return the actor bound to ``token``; ``None`` when no token was sent."""

    if token is None:
        return None

    table = parse_token_table(tokens if tokens is not None else get_settings().auth_tokens)
    actor = table.get(token)
    if actor is None:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return actor


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> Actor:
    cached = getattr(request.state, "actor", None)
    if isinstance(cached, Actor):
        return cached

    token = credentials.credentials if credentials is not None else None
    settings = getattr(request.app.state, "settings", None)
    actor = resolve_actor_from_token(token, settings.auth_tokens if settings is not None else None)
    if actor is None:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    request.state.actor = actor
    return actor


def role_required(*roles: Role) -> Callable[[Actor], Actor]:
    """Dependency factory ensuring the current actor holds one of ``roles``."""

    async def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if not actor.has_role(*roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor

    return dependency


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
ManagerActor = Annotated[Actor, Depends(role_required(Role.SUPERVISOR, Role.ADMIN))]
