"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration, fresh database per test, seeded marketplace data
WHY: Enable test organization, filtering, and shared test utilities
HOW: Point settings at a throwaway SQLite file before the app is imported,
     recreate tables around every test, tear down leaked feed channels
"""

import os
import tempfile
from pathlib import Path

# Must happen before sportswap.core.config is imported anywhere
_TEST_DIR = Path(tempfile.mkdtemp(prefix="sportswap-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR / 'test.db'}"
os.environ["LOG_FILE"] = str(_TEST_DIR / "logs" / "test.log")

import pytest

from sportswap.core.database import Base, engine, init_db
from sportswap.core.feed import change_feed
from tests.fixtures.marketplace import create_conversation, create_listing, create_profile


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (multiple components)"
    )


@pytest.fixture(autouse=True)
def fresh_database():
    """
    Recreate all tables before each test.

    WHAT: Setup and teardown test database
    WHY: Ensure test isolation
    HOW: drop_all + init_db around every test
    """
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
async def feed_cleanup():
    """Remove any channel a test left subscribed."""
    yield
    await change_feed.remove_all_channels()


# ========== Marketplace fixtures ==========

@pytest.fixture
def seller_id():
    return create_profile("sam_seller")


@pytest.fixture
def buyer_id():
    return create_profile("bea_buyer")


@pytest.fixture
def other_buyer_id():
    return create_profile("otto_buyer")


@pytest.fixture
def listing_id(seller_id):
    """A €100 active listing with two images."""
    return create_listing(
        seller_id,
        title="Carbon road bike",
        price=100.0,
        images=["https://img.example/bike-front.jpg", "https://img.example/bike-side.jpg"]
    )


@pytest.fixture
def conversation_id(listing_id, buyer_id, seller_id):
    return create_conversation(listing_id, buyer_id, seller_id)
