import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from config.settings import settings
from gate.keygate import KeyGate
from monitoring.logging_config import setup_logging
from scripts.seed_tiers import seed_tiers
from storage.database import close_db, get_session, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    # Startup
    setup_logging(level=settings.log_level, json_format=settings.json_logging)
    logger.info("Starting KeyGate...")

    await init_db()
    logger.info("Database initialized")

    await seed_tiers()
    logger.info("Subscription tiers seeded")

    app.state.key_gate = KeyGate(
        get_session, cache_ttl_seconds=settings.key_cache_ttl_seconds
    )
    if settings.key_cache_ttl_seconds > 0:
        logger.info(f"Key lookup cache enabled (ttl={settings.key_cache_ttl_seconds}s)")
    if not settings.admin_token:
        logger.warning("ADMIN_TOKEN is not set; admin endpoints are disabled")

    yield

    # Shutdown
    await close_db()


app = FastAPI(
    title="KeyGate API",
    description="API key validation, quota and usage metering",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")
