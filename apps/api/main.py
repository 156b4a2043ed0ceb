"""
Poster Commerce API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    credits,
    images,
    checkout,
    subscriptions,
    webhooks,
    admin,
)
from services.checkout import expire_stale_checkouts
from services.errors import CommerceError
from services.payments import get_payment_provider
from services.reconciliation import reconcile_orders


async def run_commerce_sweep() -> dict:
    """Expire stale checkouts, then reconcile orders with unfinished commits."""
    async with async_session_maker() as db:
        expired = await expire_stale_checkouts(db, get_payment_provider())
    reconciled = {}
    if settings.RECONCILIATION_ENABLED:
        async with async_session_maker() as db:
            reconciled = await reconcile_orders(db)
    return {"expired": expired, "reconciled": reconciled}


async def _periodic_commerce_sweep() -> None:
    interval_seconds = max(int(settings.CHECKOUT_SWEEP_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await run_commerce_sweep()
            abandoned = int(result["expired"].get("abandoned", 0))
            repaired = len(result["reconciled"].get("reconciled", []) or [])
            if abandoned or repaired:
                print(f"🧹 Commerce sweep: abandoned={abandoned} reconciled={repaired}")
        except Exception as exc:
            print(f"⚠️ Commerce sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Poster Commerce API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        result = await run_commerce_sweep()
        repaired = len(result["reconciled"].get("reconciled", []) or [])
        if repaired:
            print(f"♻️ Reconciled {repaired} orders after startup.")
    except Exception as exc:
        print(f"⚠️ Startup commerce recovery skipped: {exc}")

    sweep_task = None
    if int(settings.CHECKOUT_SWEEP_INTERVAL_SECONDS) > 0:
        sweep_task = asyncio.create_task(_periodic_commerce_sweep())
        print(f"📅 Checkout sweep loop enabled (every {int(settings.CHECKOUT_SWEEP_INTERVAL_SECONDS)} s).")
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Poster Commerce API",
    description="Generation credits, limited-edition inventory and checkout for AI posters",
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


@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/api", tags=["Credits"])
app.include_router(images.router, prefix="/api", tags=["Editions"])
app.include_router(checkout.router, prefix="/api", tags=["Checkout"])
app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Poster Commerce API",
        "version": "0.1.0",
        "status": "running"
    }
