"""Shared request dependencies: the bot manager and the requesting owner."""

from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.services import session_service
from app.services.bot_manager import BotManager


def get_manager(request: Request) -> BotManager:
    return request.app.state.bot_manager


def set_session_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        session_id,
        max_age=settings.session_max_age_days * 24 * 60 * 60,
        httponly=True,
        samesite="lax",
    )


async def get_owner(
    request: Request,
    response: Response,
    manager: BotManager = Depends(get_manager),
    db: AsyncSession = Depends(get_db),
) -> int | None:
    """Owner id for this request, ``None`` in single-tenant mode.

    Multi-tenant: resolves (or creates) the user behind the session cookie.
    """
    if not manager.multi_tenant:
        return None
    session_id = request.cookies.get(settings.session_cookie_name)
    user = await session_service.create_or_get_session(db, session_id)
    if user.session_id != session_id:
        set_session_cookie(response, user.session_id)
    return user.id
