# coachmeter/conftest.py
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Repository root on PYTHONPATH so `coachmeter.*` imports resolve
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Must be set before coachmeter.core.config builds its Settings
_TMP_DIR = tempfile.mkdtemp(prefix="coachmeter-tests-")
os.environ["ENV"] = "test"
os.environ.setdefault(
    "TEST_DATABASE_URL", f"sqlite:///{os.path.join(_TMP_DIR, 'coachmeter_test.db')}"
)

from sqlalchemy import update  # noqa: E402

from coachmeter.core.database import (  # noqa: E402
    clear_all_tables,
    coaching_subscriptions,
    create_all_tables,
    drop_all_tables,
    get_db_session,
    init_engine,
)
from coachmeter.features.children.service import register_child  # noqa: E402
from coachmeter.features.plans.service import create_plan  # noqa: E402
from coachmeter.models.plan import PlanInput  # noqa: E402

# Tuesday, mid-March; the March calendar period is [03-01, 04-01)
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """
    Create all database tables before running tests.

    Runs once per test session against TEST_DATABASE_URL.
    """
    init_engine()
    create_all_tables()
    yield
    drop_all_tables()


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Delete all rows before each test to prevent cross-test contamination."""
    clear_all_tables()
    yield


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def child():
    return register_child("child-ava", "Ava", now=NOW)


@pytest.fixture
def recurring_plan():
    return create_plan(
        PlanInput(name="4-Session Monthly", billing_type="recurring", default_sessions_per_period=4),
        now=NOW,
    )


@pytest.fixture
def fixed_plan():
    return create_plan(
        PlanInput(name="12-Week Program", billing_type="fixed", default_duration_weeks=12),
        now=NOW,
    )


@pytest.fixture
def force_subscription():
    """
    Overwrite stored columns on a subscription row.

    Lets tests place a subscription at an arbitrary point in time without
    going through the service layer.
    """

    def _force(subscription_id: str, **values):
        with get_db_session() as session:
            session.execute(
                update(coaching_subscriptions)
                .where(coaching_subscriptions.c.id == subscription_id)
                .values(**values)
            )

    return _force


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from coachmeter.main import app

    with TestClient(app) as test_client:
        yield test_client
