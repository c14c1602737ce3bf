from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lead_engine.shared.core.config import settings
from lead_engine.shared.core.logging import setup_logging
from lead_engine.shared.db.session import dispose_engine
from lead_engine.shared.middleware.correlation import CorrelationIdMiddleware
from lead_engine.shared.utils.counter_store import build_counter_store
from lead_engine.shared.utils.http_client import http_client_manager
from lead_engine.modules.automation.api import automation_endpoints
from lead_engine.modules.automation.services.rate_limiter import RateLimiter
from lead_engine.modules.automation.services.scheduler import Scheduler

logger = logging.getLogger("lead_engine")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    http_client_manager.configure(timeout=settings.WHATSAPP_PROVIDER_TIMEOUT_SECONDS)

    counter_store = build_counter_store(settings.REDIS_URL)
    app.state.rate_limiter = RateLimiter(counter_store)
    app.state.scheduler = None

    if settings.SCHEDULER_ENABLED and settings.DATABASE_URL:
        app.state.scheduler = Scheduler(app.state.rate_limiter)
        app.state.scheduler.start()
    else:
        logger.warning("Scheduler disabled (SCHEDULER_ENABLED is off or DATABASE_URL is missing)")

    yield

    if app.state.scheduler is not None:
        await app.state.scheduler.stop()
    await http_client_manager.close()
    await counter_store.close()
    await dispose_engine()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.CORS_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

# Automation router (triggers, runs, webhooks)
app.include_router(
    automation_endpoints.router,
    prefix=f"{settings.API_V1_STR}/automation",
    tags=["Automation"]
)


@app.get("/")
def root():
    return {"message": "Lead Engine Automation API is running"}


@app.get("/health")
def health():
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "ok",
        "scheduler_running": bool(scheduler and scheduler.is_running),
        "http_client": http_client_manager.get_status()["active"],
    }
