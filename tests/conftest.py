"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import Generator
from datetime import datetime, timezone

import pytest

from gatekeeper.clock import ManualClock
from gatekeeper.db.manager import DatabaseManager
from gatekeeper.quota.config import QuotaLimits, StaticQuotaConfigProvider
from gatekeeper.quota.models import QuotaPeriod, QuotaType
from gatekeeper.store.durable import DurableStore
from gatekeeper.store.memory import InMemoryStore

# Wednesday 2025-01-15 10:30:00 UTC
START = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc).timestamp()


@pytest.fixture
def clock() -> ManualClock:
    """Deterministic clock frozen at START."""
    return ManualClock(start=START)


@pytest.fixture
def store(clock: ManualClock) -> InMemoryStore:
    """In-memory store sharing the test clock."""
    return InMemoryStore(clock=clock)


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    # Cleanup
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def durable_store(db_manager: DatabaseManager, clock: ManualClock) -> DurableStore:
    """SQL-backed store on the temporary database."""
    return DurableStore(db_manager, clock=clock)


def limits(
    requests: dict[QuotaPeriod, float] | None = None,
    tokens: dict[QuotaPeriod, float] | None = None,
    cost: dict[QuotaPeriod, float] | None = None,
    warn: float = 80.0,
    alert: float = 90.0,
) -> QuotaLimits:
    """Build QuotaLimits from per-type period maps."""
    table = {}
    if requests:
        table[QuotaType.REQUESTS] = requests
    if tokens:
        table[QuotaType.TOKENS] = tokens
    if cost:
        table[QuotaType.COST] = cost
    return QuotaLimits(limits=table, warn_threshold=warn, alert_threshold=alert)


@pytest.fixture
def quota_provider() -> StaticQuotaConfigProvider:
    """User quotas of 10 requests/day and 1000 tokens/day under a larger global budget."""
    return StaticQuotaConfigProvider(
        {
            "user": limits(
                requests={QuotaPeriod.DAILY: 10},
                tokens={QuotaPeriod.DAILY: 1000},
            ),
            "global": limits(
                requests={QuotaPeriod.DAILY: 100},
                tokens={QuotaPeriod.DAILY: 10000},
            ),
        }
    )
