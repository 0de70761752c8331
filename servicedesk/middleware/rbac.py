"""Identity middleware resolving bearer tokens into actors."""

from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from servicedesk.dependencies.auth import resolve_actor_from_token


def _token_table(request: Request) -> dict[str, str] | None:
    settings = getattr(request.app.state, "settings", None)
    return settings.auth_tokens if settings is not None else None


class ActorMiddleware(BaseHTTPMiddleware):
    """Populate the request state with the authenticated actor, if any.

    Requests without a token pass through with ``request.state.actor`` set to
    ``None``; protected routes reject them through ``get_current_actor``.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        authorization = request.headers.get("Authorization")
        token: str | None = None

        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() != "bearer":
                return JSONResponse(
                    status_code=401, content={"detail": "Invalid authentication credentials"}
                )
            token = credentials or None

        try:
            actor = resolve_actor_from_token(token, _token_table(request))
        except HTTPException as exc:
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

        request.state.actor = actor
        response = await call_next(request)
        return response
