"""Live update WebSocket — pushes bot and stats snapshots to the dashboard."""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.config import settings
from app.database import async_session
from app.services import session_service
from app.services.bot_manager import BotManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/updates")
async def updates_ws(ws: WebSocket):
    """Server sends ``{"type": "botsUpdate", ...}`` and ``{"type": "statsUpdate", ...}``.

    The current snapshot is sent on connect; later ones follow every change.
    Multi-tenant clients must present their session cookie.
    """
    manager: BotManager = ws.app.state.bot_manager
    owner_id: int | None = None
    if manager.multi_tenant:
        async with async_session() as db:
            user = await session_service.validate_session(
                db, ws.cookies.get(settings.session_cookie_name)
            )
        if user is None:
            await ws.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        owner_id = user.id

    await ws.accept()
    logger.info("Update WS connected (owner=%s)", owner_id)
    manager.broadcaster.register(owner_id, ws)
    try:
        await manager.broadcaster.send_snapshot(
            ws, await manager.list_all(owner_id), await manager.status_counts(owner_id)
        )
        while True:
            # Clients do not send anything meaningful; this just waits for close
            await ws.receive_text()
    except WebSocketDisconnect:
        logger.info("Update WS disconnected (owner=%s)", owner_id)
    finally:
        manager.broadcaster.unregister(owner_id, ws)
