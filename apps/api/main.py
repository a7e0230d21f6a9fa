"""
Credits Ledger - FastAPI Backend
Main application entry point with payment reconciliation and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import require_paystack_secret, settings, validate_payment_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import admin, credits, health, payments, webhooks
from services.errors import LedgerError, RateLimited
from services.paystack import PaystackClient
from services.reconciler import Reconciler
from services.retry_queue import recover_unsettled_events, run_reconciliation_tick

logger = logging.getLogger(__name__)


async def _periodic_reconciliation(reconciler: Reconciler) -> None:
    interval_seconds = max(int(settings.RETRY_DRAIN_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await run_reconciliation_tick(async_session_maker, reconciler)
            drained = result["drained"]
            recovered = result["recovered"]
            if drained["scanned"] or recovered["scanned"]:
                print(
                    f"🔁 Reconciliation tick: settled={drained['settled']} pending={drained['pending']} "
                    f"failed={drained['failed']} recovered={recovered['recovered']}"
                )
        except Exception as exc:
            logger.exception("Reconciliation tick failed")
            print(f"⚠️ Reconciliation tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credits Ledger API...")
    validate_payment_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    provider = PaystackClient(require_paystack_secret())
    app.state.payment_provider = provider
    reconciler = Reconciler(provider)
    try:
        recovered = await recover_unsettled_events(async_session_maker, reconciler, unbounded=True)
        if recovered["recovered"]:
            print(f"♻️ Recovered {recovered['recovered']} unsettled payment events after startup.")
    except Exception as exc:
        logger.exception("Startup recovery sweep failed")
        print(f"⚠️ Unsettled payment recovery skipped: {exc}")

    reconciliation_task = None
    if int(settings.RETRY_DRAIN_INTERVAL_SECONDS) > 0:
        reconciliation_task = asyncio.create_task(_periodic_reconciliation(reconciler))
        print(
            "📅 Retry queue drain loop enabled "
            f"(every {int(settings.RETRY_DRAIN_INTERVAL_SECONDS)} s)."
        )
    yield
    # Shutdown
    if reconciliation_task is not None:
        reconciliation_task.cancel()
        try:
            await reconciliation_task
        except asyncio.CancelledError:
            pass
    await provider.aclose()
    app.state.payment_provider = None
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credits Ledger API",
    description="Client credit balances topped up through reconciled Paystack payments",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    payload = exc.to_payload()
    retryable = getattr(exc, "retryable", None)
    if retryable is not None:
        payload["retryable"] = retryable
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.kind, exc.message)
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.extra.get("retry_after", 60))}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_payload", "message": "Request body could not be parsed.", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "internal_error"})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credits Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
