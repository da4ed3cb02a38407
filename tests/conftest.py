"""
Global pytest configuration and fixtures for flowledger tests.

Each test gets its own SQLite database file (through aiosqlite) with
foreign keys enforced, so constraint violations surface the way they do
on PostgreSQL.
"""

import os
import tempfile

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import entity modules to register every table with Base.metadata
import flowledger.platform.billing.core.entities  # noqa: F401
import flowledger.platform.billing.ledger.entities  # noqa: F401
from flowledger.platform.billing.config import BillingConfig, StripeConfig, set_billing_config
from flowledger.platform.db import Base, configure_sqlite_engine

TEST_WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def billing_config():
    """Deterministic billing configuration, independent of the environment."""
    config = BillingConfig(
        stripe=StripeConfig(api_key="sk_test_123", webhook_secret=TEST_WEBHOOK_SECRET)
    )
    set_billing_config(config)
    yield config
    set_billing_config(None)


@pytest_asyncio.fixture
async def async_test_engine():
    """File-backed SQLite engine with the full schema."""
    fd, db_path = tempfile.mkstemp(suffix=".sqlite")
    os.close(fd)

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=False)
    configure_sqlite_engine(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def async_session_maker(async_test_engine):
    return async_sessionmaker(async_test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_db_session(async_session_maker):
    """Session for a single test; rolled back at teardown."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
