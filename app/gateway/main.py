"""Credit Ledger Gateway.

Stripe webhook ingress, checkout/portal sessions and per-turn credit charges.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from config.settings import Settings, get_settings
from app.core.db import SessionLocal, run_migrations
from app.core.instrumentation import router as metrics_router, setup_instrumentation

logger = structlog.get_logger()

VERSION = "1.0.0"

# --- Globals ---
settings: Settings = get_settings()


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [item.strip() for item in (raw or "").split(",") if item.strip()]
    return origins or ["http://localhost:3000"]


def _enforce_startup_guards() -> None:
    if not settings.is_production:
        return

    weak_auth_secret = settings.auth_secret in {"", "change-me-long-random-secret", "changeme", "password123"}
    if weak_auth_secret:
        raise RuntimeError("Refusing startup in production due to weak/default secrets.")
    if not settings.stripe_webhook_secret:
        raise RuntimeError("Refusing startup in production without STRIPE_WEBHOOK_SECRET.")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: schema bootstrap and the free allowance scheduler."""
    background_tasks: list[asyncio.Task] = []
    _enforce_startup_guards()
    run_migrations()
    logger.info("ledger.gateway.startup", version=VERSION, env=settings.environment)

    if settings.free_credits_scheduler_enabled:
        from app.billing.free_credits import free_allowance_loop
        background_tasks.append(asyncio.create_task(free_allowance_loop()))

    yield
    for task in background_tasks:
        task.cancel()
    logger.info("ledger.gateway.shutdown")


app = FastAPI(
    title="Credit Ledger Gateway",
    description="Subscription plans, credit grants and usage charges – FastAPI + Stripe",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, settings.log_level)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(metrics_router)

# --- Stripe Billing Router ---
from app.gateway.routers.billing import router as billing_router
app.include_router(billing_router)

# --- Credits Router ---
from app.gateway.routers.credits import router as credits_router
app.include_router(credits_router)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health endpoint – returns service and database status."""
    db_ok = True
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        db_ok = False
        logger.warning("ledger.gateway.db_unavailable", error=str(e))
    finally:
        db.close()
    return {
        "status": "ok" if db_ok else "degraded",
        "service": "credit-ledger",
        "version": VERSION,
        "database": "connected" if db_ok else "disconnected",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
