"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from helpdesk.core.async_utils import run_sync
from helpdesk.core.config import settings
from helpdesk.core.event_channel import channel
from helpdesk.core.structured_logging import configure_logging
from helpdesk.core.websocket import manager
from helpdesk.db import session as db_session
from helpdesk.services import presence_service, viewer_service

logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
    )
    logging.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from helpdesk.core.rate_limit import limiter


# ============================================================================
# Housekeeping
# ============================================================================

def sweep_once() -> tuple[int, int]:
    """Expire presence records and purge abandoned viewer rows."""
    expired = presence_service.sweep_trackers()
    db = db_session.SessionLocal()
    try:
        purged = viewer_service.purge_stale_viewers(db)
    finally:
        db.close()
    return expired, purged


async def run_sweeper(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_sync(sweep_once)
        except Exception:
            logger.exception("Presence sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await channel.start_listener()
    sweeper = asyncio.create_task(run_sweeper(settings.GLOBAL_HEARTBEAT_SECONDS))
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await channel.stop_listener()


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Helpdesk Realtime API",
    description="Ticket chat, status workflow, presence and notifications",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for cookies
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

# ============================================================================
# Routers
# ============================================================================

from helpdesk.routers import messages, notifications, presence, tickets, websocket

app.include_router(tickets.router, prefix="/tickets", tags=["tickets"])
app.include_router(messages.router, prefix="/tickets", tags=["messages"])

# Mixed paths: /presence/... and /tickets/{id}/viewers
app.include_router(presence.router, tags=["presence"])

# Notifications (user-scoped)
app.include_router(notifications.router, prefix="/me", tags=["notifications"])

app.include_router(websocket.router)


@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with db_session.engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "env": settings.ENV,
        "version": settings.VERSION,
        "websocket_connections": manager.get_total_connections(),
    }
