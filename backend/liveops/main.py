"""
Live Ops: FastAPI backend
Live campaign hierarchy for Meta, TikTok, NewsBreak and Google Ads: reads
the campaign -> ad set -> ad tree straight from the platforms and applies
operator changes back to them. Only the activity log and the account map
are persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from liveops.config import get_settings
from liveops.database import async_session, check_db_connection, init_db
from liveops.auth import require_auth
from liveops.engine import LiveEngine
from liveops.errors import install_exception_handlers
from liveops.routers import accounts, account_map, live_campaigns, sync, webhooks

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Live Ops...")
    try:
        await init_db()
        logger.info("Database initialized, all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    if getattr(app.state, "engine", None) is None:
        app.state.engine = LiveEngine.from_settings(settings, async_session)
    yield
    logger.info("Shutting down...")
    await app.state.engine.aclose()


app = FastAPI(
    title="Live Ops",
    description="Live campaign management across ad platforms",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_exception_handlers(app)

# ── Register Routers (all require auth) ──────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(live_campaigns.router, prefix="/api/campaigns/live", tags=["Live Campaigns"], dependencies=_auth)
app.include_router(sync.router, prefix="/api/campaigns/sync", tags=["Sync"], dependencies=_auth)
app.include_router(account_map.router, prefix="/api/campaigns/account-map", tags=["Account Map"], dependencies=_auth)
app.include_router(accounts.router, prefix="/api/accounts", tags=["Accounts"], dependencies=_auth)
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])  # HMAC-signed, no bearer auth


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    engine = getattr(app.state, "engine", None)
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Live Ops",
        "database": "connected" if db_ok else "disconnected",
        "platforms": engine.registry.platforms() if engine is not None else [],
    }
