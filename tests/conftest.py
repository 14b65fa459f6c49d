"""
Shared fixtures: a fresh SQLite store per test and one registered merchant.
"""

import pytest
import pytest_asyncio

from margin_sync.db import AppSettings, Merchant, SQLiteDatabase
from margin_sync.processor import PagingPolicy


@pytest_asyncio.fixture
async def db(tmp_path):
    database = SQLiteDatabase(str(tmp_path / "margin_sync.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def merchant(db):
    merchant = await db.create_merchant(Merchant(
        shop_domain="acme.myshopify.com",
        access_token="shpat_test",
        shop_currency="USD",
    ))
    await db.save_app_settings(AppSettings(merchant_id=merchant.id, default_currency="USD"))
    return merchant


@pytest.fixture
def scope(db, merchant):
    return db.scope(merchant.id)


@pytest.fixture
def policy():
    """No waiting between retries."""
    return PagingPolicy(page_size=50, fetch_timeout=5.0, max_attempts=3, backoff_base=0, backoff_max=0)
