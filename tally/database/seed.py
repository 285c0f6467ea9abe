"""
tally.database.seed — Rule & Level Seeder
==========================================

Upserts the rule table and tier ladder from ``tally/seeds/rules.yaml`` and
``tally/seeds/levels.yaml``.  Keyed by ``action_type`` and ``level``: running
it again updates existing rows in place rather than duplicating them.

The resulting ladder is validated before commit, so a seed file that
would break level ordering never reaches the database.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from tally.database.models import PointsLevel, PointsRule
from tally.engine.levels import TierLadder
from tally.services.catalog import (
    DEFAULT_SEEDS_DIR,
    LEVELS_FILE,
    RULES_FILE,
    RuleEntry,
    TierEntry,
    load_yaml,
    parse_rule_entries,
    parse_tier_entries,
    tier_from_row,
)

logger = logging.getLogger(__name__)


def upsert_rule(session: Session, entry: RuleEntry) -> tuple[PointsRule, bool]:
    """Insert or update one rule.  Returns ``(row, created)``."""
    rule = entry.to_rule()
    row = session.get(PointsRule, rule.action_type)
    created = row is None
    if row is None:
        row = PointsRule(action_type=rule.action_type)
        session.add(row)
    row.points = rule.points
    row.description = rule.description
    row.is_active = rule.is_active
    row.is_one_time = rule.is_one_time
    row.daily_limit = rule.daily_limit
    row.category = rule.category
    return row, created


def upsert_level(session: Session, entry: TierEntry) -> tuple[PointsLevel, bool]:
    """Insert or update one level.  Returns ``(row, created)``."""
    row = session.get(PointsLevel, entry.level)
    created = row is None
    if row is None:
        row = PointsLevel(level=entry.level)
        session.add(row)
    row.name = entry.name
    row.points_required = entry.points_required
    row.description = entry.description
    row.rewards = dict(entry.rewards)
    return row, created


def validate_ladder(session: Session) -> TierLadder:
    """Build a ladder from the rows visible in *session* (pending included)."""
    session.flush()
    rows = session.scalars(select(PointsLevel).order_by(PointsLevel.level)).all()
    return TierLadder(tier_from_row(r) for r in rows)


def seed_points_system(engine: Engine, seeds_dir: str | Path | None = None) -> tuple[int, int]:
    """Upsert rules and levels from the seed files.

    Returns ``(rules_written, levels_written)``.

    Raises
    ------
    ConfigurationError
        If an entry is malformed or the resulting ladder is not strictly
        ordered.  Nothing is committed in that case.
    """
    base = Path(seeds_dir) if seeds_dir else DEFAULT_SEEDS_DIR
    rule_entries = parse_rule_entries(load_yaml(base / RULES_FILE))
    tier_entries = parse_tier_entries(load_yaml(base / LEVELS_FILE))

    session = Session(engine)
    try:
        for entry in rule_entries:
            _, created = upsert_rule(session, entry)
            logger.debug(
                "%s rule: %s", "Seeded" if created else "Updated", entry.action_type
            )
        for tier in tier_entries:
            _, created = upsert_level(session, tier)
            logger.debug(
                "%s level: %s (Level %d)",
                "Seeded" if created else "Updated", tier.name, tier.level,
            )
        validate_ladder(session)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    logger.info(
        "Points system seeded: %d rules, %d levels.", len(rule_entries), len(tier_entries)
    )
    return len(rule_entries), len(tier_entries)
