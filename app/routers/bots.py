"""Bot endpoints — add, list, inspect, toggle and remove managed bots.

Add and toggle only report the synchronous part; the real connection outcome
arrives later on the updates WebSocket.
"""

from fastapi import APIRouter, Depends, HTTPException

from app.routers.deps import get_manager, get_owner
from app.schemas.bot import (
    ActionResult,
    BotCreate,
    BotCreated,
    BotDetailResponse,
    BotListResponse,
    ToggleResult,
)
from app.services.bot_manager import BotManager
from app.services.errors import BotManagerError, CreationError, NotFoundError, NotRunningError

router = APIRouter()

_ERROR_STATUS = {
    CreationError: 400,
    NotFoundError: 404,
    NotRunningError: 409,
}


def _http_error(exc: BotManagerError) -> HTTPException:
    return HTTPException(status_code=_ERROR_STATUS.get(type(exc), 400), detail=str(exc))


@router.get("/", response_model=BotListResponse)
async def list_bots(
    manager: BotManager = Depends(get_manager), owner_id: int | None = Depends(get_owner)
):
    return BotListResponse(
        bots=await manager.list_all(owner_id),
        stats=await manager.status_counts(owner_id),
    )


@router.post("/", response_model=BotCreated, status_code=201)
async def add_bot(
    data: BotCreate,
    manager: BotManager = Depends(get_manager),
    owner_id: int | None = Depends(get_owner),
):
    try:
        result = await manager.add(owner_id, data.token)
    except CreationError as exc:
        raise _http_error(exc) from exc
    return BotCreated(id=result.id, status=result.status)


@router.get("/{bot_id}", response_model=BotDetailResponse)
async def get_bot(
    bot_id: int,
    manager: BotManager = Depends(get_manager),
    owner_id: int | None = Depends(get_owner),
):
    bot = await manager.get(bot_id, owner_id)
    if bot is None:
        raise HTTPException(status_code=404, detail="Bot not found")
    return BotDetailResponse(bot=bot)


@router.put("/{bot_id}/toggle", response_model=ToggleResult)
async def toggle_bot(
    bot_id: int,
    manager: BotManager = Depends(get_manager),
    owner_id: int | None = Depends(get_owner),
):
    try:
        status = await manager.toggle(bot_id, owner_id)
    except (NotFoundError, NotRunningError) as exc:
        raise _http_error(exc) from exc
    return ToggleResult(status=status, message=f"Bot {status.value}")


@router.delete("/{bot_id}", response_model=ActionResult)
async def remove_bot(
    bot_id: int,
    manager: BotManager = Depends(get_manager),
    owner_id: int | None = Depends(get_owner),
):
    try:
        await manager.remove(bot_id, owner_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc
    return ActionResult(success=True, message="Bot removed successfully")
