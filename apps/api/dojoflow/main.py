"""FastAPI application entry point."""
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from dojoflow.core.config import settings
from dojoflow.db.session import engine
from dojoflow.services import credit_service

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
        traces_sample_rate=0.1,  # 10% of requests for performance monitoring
        send_default_pii=False,  # Don't send PII to Sentry
    )
    logging.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from dojoflow.core.rate_limit import limiter

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="DojoFlow API",
    description="AI credit metering and automation engine",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Organization-Id"],
    expose_headers=["X-Request-ID"],
)


# ============================================================================
# Ledger errors
# ============================================================================


@app.exception_handler(credit_service.InsufficientCreditsError)
async def insufficient_credits_handler(request: Request, exc: credit_service.InsufficientCreditsError):
    return JSONResponse(
        status_code=402,
        content={
            "detail": str(exc),
            "required": exc.required,
            "available": exc.available,
        },
    )


@app.exception_handler(credit_service.LedgerUnavailableError)
async def ledger_unavailable_handler(request: Request, exc: credit_service.LedgerUnavailableError):
    logger.error("Credit ledger unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Credit ledger temporarily unavailable"},
    )


# ============================================================================
# Routers
# ============================================================================

from dojoflow.routers import automations_router, credits_router

app.include_router(credits_router)
app.include_router(automations_router)


# ============================================================================
# Background jobs (single-instance deployments only)
# ============================================================================

from dojoflow.services.automation_scheduler import AutomationScheduler, CreditResetJob

app.state.scheduler_jobs = []


@app.on_event("startup")
async def _start_scheduler_jobs() -> None:
    if not settings.RUN_SCHEDULERS_IN_API:
        return
    app.state.scheduler_jobs = [AutomationScheduler(), CreditResetJob()]
    for job in app.state.scheduler_jobs:
        job.start()


@app.on_event("shutdown")
async def _stop_scheduler_jobs() -> None:
    await asyncio.gather(*(job.stop() for job in app.state.scheduler_jobs))


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
