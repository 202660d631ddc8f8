"""FastAPI application entry point for the Pre-Market Platform API."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from premarket_platform.app.config import get_grant_config, get_settings
from premarket_platform.app.routes.errors import http_error
from premarket_platform.domain.errors import PreMarketError
from premarket_platform.infra.database import async_session, init_db
from premarket_platform.services.pricing_resolver import PricingResolver
from premarket_platform.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


async def payment_timeout_loop():
    """Fail outstanding charges whose webhook never arrived."""
    interval = get_settings().timeout_sweep_interval_seconds
    while True:
        try:
            async with async_session() as db:
                timed_out = await WebhookReconciler(db, get_grant_config()).sweep_timeouts()
                if timed_out:
                    logger.info("Payment timeout sweep: %d charges timed out", timed_out)
        except Exception as e:
            logger.error("Payment timeout sweep error: %s", e)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: check pricing config, initialize database, start the sweep."""
    PricingResolver(get_grant_config()).validate_config()
    await init_db()
    sweep = asyncio.create_task(payment_timeout_loop())
    yield
    sweep.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Pre-Market Platform API",
    lifespan=lifespan,
    debug=settings.debug,
)

_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PreMarketError)
async def domain_error_handler(request: Request, exc: PreMarketError):
    """Domain errors that escape a route still get their mapped status code."""
    error = http_error(exc)
    if error.status_code >= 500:
        logger.error("Unhandled domain error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=error.status_code, content={"detail": error.detail})


# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from premarket_platform.app.routes.pre_market import router as pre_market_router
from premarket_platform.app.routes.grant_access import router as grant_access_router
from premarket_platform.app.routes.payment_webhook import router as payment_webhook_router

app.include_router(pre_market_router)
app.include_router(grant_access_router)
app.include_router(payment_webhook_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "premarket-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "premarket_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
