"""
tally.app — Wiring
===================

Builds a ready-to-use :class:`~tally.engine.award.AwardEngine` from a
:class:`~tally.config.TallyConfig`:

1. Pick the store (SQL via *db_engine*, or in-memory).
2. Load and validate rules + ladder into a :class:`PointsCatalog`
   (fails fast on a bad ladder).
3. Assemble the notifier fan-out from ``notify_channels``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tally.engine.award import AwardEngine
from tally.engine.counters import CounterStore, MemoryCounterStore
from tally.engine.events import (
    FanoutNotifier,
    LoggingNotifier,
    NullNotifier,
    TransitionNotifier,
)
from tally.services.catalog import PointsCatalog
from tally.services.notification_service import SqlNotifier
from tally.services.sql_store import SqlCounterStore

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.config import TallyConfig

logger = logging.getLogger(__name__)


def build_store(cfg: TallyConfig, db_engine: Engine | None) -> CounterStore:
    if cfg.store == "memory":
        return MemoryCounterStore(
            shards=cfg.lock_shards, lock_timeout=cfg.lock_timeout_seconds
        )
    if db_engine is None:
        raise RuntimeError("store 'sql' needs a database engine")
    return SqlCounterStore(db_engine)


def build_notifier(cfg: TallyConfig, db_engine: Engine | None) -> TransitionNotifier:
    notifiers: list[TransitionNotifier] = []
    if "log" in cfg.notify_channels:
        notifiers.append(LoggingNotifier())
    if "database" in cfg.notify_channels:
        if db_engine is None:
            logger.warning("notify channel 'database' skipped: no database engine")
        else:
            notifiers.append(SqlNotifier(db_engine))
    if not notifiers:
        return NullNotifier()
    return FanoutNotifier(notifiers)


def build_award_engine(
    cfg: TallyConfig, db_engine: Engine | None = None
) -> tuple[AwardEngine, PointsCatalog]:
    """Return the engine and the catalog backing it (for later reloads)."""
    catalog = PointsCatalog(db_engine, seeds_dir=cfg.seeds_dir)
    catalog.load_all()
    engine = AwardEngine(
        catalog.registry,
        catalog.resolver,
        build_store(cfg, db_engine),
        notifier=build_notifier(cfg, db_engine),
        day_timezone=cfg.day_timezone,
    )
    return engine, catalog
