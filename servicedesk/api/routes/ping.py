from fastapi import APIRouter

from servicedesk.dependencies.auth import CurrentActor

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health check")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/whoami", summary="Echo the authenticated actor")
async def whoami(actor: CurrentActor) -> dict[str, str]:
    return {"status": "ok", "actor": actor.id, "role": actor.role.value}
