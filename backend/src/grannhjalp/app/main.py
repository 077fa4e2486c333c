"""FastAPI application entry point for the Grannhjalp API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from grannhjalp.app.config import get_settings
from grannhjalp.infra.database import async_session, init_db
from grannhjalp.infra.stripe_gateway import get_stripe_gateway
from grannhjalp.services.payment_orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)


async def transfer_retry_loop():
    """Retry failed and stuck helper transfers on a fixed interval."""
    interval = get_settings().transfer_retry_interval_minutes * 60
    while True:
        try:
            async with async_session() as db:
                orchestrator = PaymentOrchestrator(db, get_stripe_gateway())
                completed = await orchestrator.retry_failed_transfers()
                if completed:
                    logger.info("Transfer retry: completed %d commissions", completed)
        except Exception as e:
            logger.error("Transfer retry error: %s", e)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the retry loop."""
    await init_db()

    settings = get_settings()
    retry_task = None
    if settings.stripe_configured:
        retry_task = asyncio.create_task(transfer_retry_loop())
    else:
        logger.warning("STRIPE_SECRET_KEY not set, payments are disabled")
    yield
    if retry_task:
        retry_task.cancel()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Grannhjalp API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware, all origins in debug mode
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from grannhjalp.app.routes.profile import router as profile_router
from grannhjalp.app.routes.needs import router as needs_router
from grannhjalp.app.routes.offers import router as offers_router
from grannhjalp.app.routes.payments import router as payments_router, admin_router
from grannhjalp.app.routes.notifications import router as notifications_router
from grannhjalp.app.routes.stripe_webhook import router as stripe_webhook_router

app.include_router(profile_router)
app.include_router(needs_router)
app.include_router(offers_router)
app.include_router(payments_router)
app.include_router(admin_router)
app.include_router(notifications_router)
app.include_router(stripe_webhook_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "grannhjalp"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "grannhjalp.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
