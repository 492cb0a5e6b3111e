"""Credit Ledger – Pytest Configuration.

Shared fixtures for all tests.
"""

import os

# Force testing mode to allow SQLite fallback in app/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret_1234567890abcdef"
os.environ["STRIPE_PLAN_PRICE_IDS"] = '{"starter": "price_starter", "plus": "price_plus", "pro": "price_pro"}'
os.environ["STRIPE_TOPUP_PRICE_ID"] = "price_topup"
os.environ["FREE_CREDITS_SCHEDULER_ENABLED"] = "false"
os.environ["AUTH_SECRET"] = "test-auth-secret-for-ledger"
# Accounts start empty unless a test opts into welcome credits.
os.environ["USER_INITIAL_CREDITS"] = "0"
os.environ["ANONYMOUS_INITIAL_CREDITS"] = "0"

import pytest
from httpx import ASGITransport, AsyncClient

from app.core import models  # noqa: F401  (registers tables)
from app.core.db import Base, SessionLocal, engine
from app.core.models import Account
from app.gateway.main import app


@pytest.fixture(autouse=True)
def clean_database():
    """Fresh schema per test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client():
    """Async test client for the FastAPI gateway."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_account():
    """Insert an account row directly and return its id."""

    def _make(**fields) -> int:
        fields.setdefault("plan", "none")
        fields.setdefault("credit_balance", 0)
        db = SessionLocal()
        try:
            account = Account(**fields)
            db.add(account)
            db.commit()
            return account.id
        finally:
            db.close()

    return _make


@pytest.fixture
def load_account():
    def _load(account_id: int) -> Account:
        db = SessionLocal()
        try:
            account = db.query(Account).filter(Account.id == account_id).one()
            db.expunge(account)
            return account
        finally:
            db.close()

    return _load
