"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool

from tally.database.models import Base
from tally.engine.award import AwardEngine
from tally.engine.counters import MemoryCounterStore
from tally.engine.levels import LevelResolver, LevelTier, TierLadder
from tally.engine.rules import ActionRule, RuleRegistry

# ---------------------------------------------------------------------------
# Canonical configuration used across tests
# ---------------------------------------------------------------------------
THRESHOLDS = [0, 200, 500, 1000, 2500, 5000, 10000, 25000]
TIER_NAMES = [
    "Newcomer", "Enthusiast", "Explorer", "Scholar",
    "Influencer", "Expert", "Master", "Virtuoso",
]

DAY_ONE = datetime(2026, 3, 14, 9, 30, tzinfo=UTC)


def make_tiers() -> list[LevelTier]:
    return [
        LevelTier(
            level=i + 1,
            name=name,
            points_required=threshold,
            description=f"{name} tier",
            rewards={"badge": f"{name.lower()}_badge"},
        )
        for i, (name, threshold) in enumerate(zip(TIER_NAMES, THRESHOLDS))
    ]


def make_rules() -> list[ActionRule]:
    return [
        ActionRule("user_registered", 100, "Signed up", is_one_time=True, daily_limit=1,
                   category="onboarding"),
        ActionRule("daily_login", 5, "Daily login bonus", daily_limit=1,
                   category="engagement"),
        ActionRule("receive_like", 2, "Received a like", daily_limit=50, category="social"),
        ActionRule("create_post", 10, "Created a post", daily_limit=5, category="content"),
        ActionRule("gift_point", 1, "Single point, unlimited"),
        ActionRule("big_bonus", 300, "Large unlimited bonus"),
        ActionRule("retired_action", 40, "No longer awarded", is_active=False),
    ]


@pytest.fixture
def ladder() -> TierLadder:
    return TierLadder(make_tiers())


@pytest.fixture
def resolver(ladder) -> LevelResolver:
    return LevelResolver(ladder)


@pytest.fixture
def registry() -> RuleRegistry:
    return RuleRegistry(make_rules())


@pytest.fixture
def memory_store() -> MemoryCounterStore:
    return MemoryCounterStore(shards=8, lock_timeout=2.0)


@pytest.fixture
def notifier():
    """Records every LevelTransition it receives."""

    class _Recorder:
        def __init__(self) -> None:
            self.events = []

        def notify(self, event) -> None:
            self.events.append(event)

    return _Recorder()


@pytest.fixture
def clock():
    """Settable clock; starts mid-morning UTC on a fixed day."""

    class _Clock:
        def __init__(self, now: datetime) -> None:
            self.now = now

        def __call__(self) -> datetime:
            return self.now

        def advance(self, **kwargs) -> None:
            self.now = self.now + timedelta(**kwargs)

    return _Clock(DAY_ONE)


@pytest.fixture
def award_engine(registry, resolver, memory_store, notifier, clock) -> AwardEngine:
    return AwardEngine(registry, resolver, memory_store, notifier=notifier, clock=clock)


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all Tally tables.

    Uses StaticPool so every session (and any worker thread) shares the
    same in-memory database.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_db_engine(tmp_path) -> Iterator[Engine]:
    """File-backed SQLite engine with a real connection pool.

    Each worker thread gets its own connection, so concurrent units of
    work contend on the database's own locks.  ``timeout`` is SQLite's
    busy timeout: writers wait for the lock instead of failing.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tally.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=20,
        max_overflow=0,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()
