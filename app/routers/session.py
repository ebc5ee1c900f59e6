"""Session endpoints (multi-tenant mode)."""

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.routers.deps import get_manager
from app.schemas.bot import ActionResult
from app.schemas.session import SessionInfo
from app.services import session_service
from app.services.bot_manager import BotManager

router = APIRouter()


@router.get("/", response_model=SessionInfo)
async def get_session(
    request: Request,
    manager: BotManager = Depends(get_manager),
    db: AsyncSession = Depends(get_db),
):
    if not manager.multi_tenant:
        return SessionInfo(session_id=None, user_id=None, is_authenticated=False)
    session_id = request.cookies.get(settings.session_cookie_name)
    user = await session_service.validate_session(db, session_id)
    return SessionInfo(
        session_id=user.session_id if user else None,
        user_id=user.id if user else None,
        is_authenticated=user is not None,
    )


@router.delete("/", response_model=ActionResult)
async def end_session(response: Response):
    """Forget the session cookie. Bots keep running under the old user."""
    response.delete_cookie(settings.session_cookie_name)
    return ActionResult(success=True, message="Session cleared")
