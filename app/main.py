"""FastAPI application entrypoint."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import async_session, init_db
from app.routers import bots, session, updates
from app.routers.deps import get_manager
from app.schemas.bot import HealthResponse
from app.services import bot_store, session_service
from app.services.bot_manager import BotManager

# ── Logging setup ────────────────────────────────────────────────────
_log_level = os.environ.get("STAYONLINE_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# websockets logs every frame at DEBUG; keep it quiet unless asked
logging.getLogger("websockets").setLevel(logging.INFO)

logger = logging.getLogger(__name__)


async def expire_sessions(manager: BotManager) -> int:
    """Delete inactive users (their bots cascade) and drop their live sessions."""
    async with async_session() as db:
        expired = await session_service.cleanup_old_sessions(db, settings.session_max_age_days)
    for user_id in expired:
        await manager.forget_owner(user_id)
    return len(expired)


async def _session_cleanup_loop(manager: BotManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await expire_sessions(manager)
        except Exception:
            logger.exception("Session cleanup failed")


async def _prepare_storage(manager: BotManager) -> None:
    """Multi-tenant startup: expire old sessions and mark orphaned bots offline."""
    await expire_sessions(manager)
    async with async_session() as db:
        reset = await bot_store.reset_stale_statuses(db)
    if reset:
        logger.info("Marked %d bots from a previous run as offline (not resumed)", reset)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await init_db()
    manager = BotManager()
    cleanup_task: asyncio.Task | None = None
    if manager.multi_tenant:
        await _prepare_storage(manager)
        cleanup_task = asyncio.create_task(
            _session_cleanup_loop(manager, settings.session_cleanup_interval_hours * 3600)
        )
    app.state.bot_manager = manager
    logger.info(
        "Bot manager ready (%s mode)", "multi-tenant" if manager.multi_tenant else "single-tenant"
    )

    yield

    # Shutdown: stop the cleanup loop, then drop every gateway session
    if cleanup_task is not None:
        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task
    await manager.shutdown()


app = FastAPI(
    title="Discord Stay Online",
    description="Keep Discord bot gateway sessions online and watch them live",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(bots.router, prefix="/api/bots", tags=["bots"])
app.include_router(session.router, prefix="/api/session", tags=["session"])
app.include_router(updates.router, prefix="/ws", tags=["updates"])


@app.get("/health", response_model=HealthResponse)
async def health(manager: BotManager = Depends(get_manager)):
    return HealthResponse(bot_count=manager.bot_count, stats=await manager.status_counts())
