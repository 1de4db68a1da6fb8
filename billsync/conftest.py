# billsync/conftest.py
import sys
from pathlib import Path

import pytest

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(scope="function", autouse=True)
def sqlite_db():
    """
    Fresh in-memory SQLite database for every test.

    The engine uses a single shared connection, so every get_db_session()
    inside the code under test sees the same data.
    """
    from billsync.core.database import init_engine, dispose_engine, create_all_tables

    init_engine("sqlite://")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture
def fake_provider():
    from billsync.tests.mocks import FakeProvider

    return FakeProvider()


@pytest.fixture
def run_settings():
    """Settings for a reconciliation run with no time budget and no webhook."""
    from billsync.core.config import Settings

    return Settings(
        STRIPE_SECRET_KEY="sk_test_dummy",
        RECONCILE_WEBHOOK_URL=None,
        RECONCILE_EXCLUDED_IDENTITIES="",
        RECONCILE_TIME_BUDGET_SECONDS=0,
        RECONCILE_DRY_RUN=False,
    )
