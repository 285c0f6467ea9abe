"""
tally.services.admin_service — Rule & Level Mutations
======================================================

Every write follows the pattern:
  1. Validate the payload (pydantic)
  2. Upsert inside a transaction
  3. For levels, re-validate the whole ladder before commit
  4. Commit
  5. Reload the affected snapshot in the live catalog

Readers never observe a half-applied change: the catalog swaps in a
complete new table only after the commit succeeded.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.database.models import PointsRule
from tally.database.seed import upsert_level, upsert_rule, validate_ladder
from tally.engine.rules import ActionRule
from tally.errors import ConfigurationError
from tally.services.catalog import (
    LEVELS_TABLE,
    RULES_TABLE,
    parse_rule_entries,
    parse_tier_entries,
    rule_from_row,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.engine.levels import LevelTier
    from tally.services.catalog import PointsCatalog

logger = logging.getLogger(__name__)


def _refresh(catalog: PointsCatalog | None, table_name: str) -> None:
    if catalog is not None:
        catalog.handle_notify(table_name)


def save_rule(
    engine: Engine,
    payload: dict[str, Any],
    *,
    catalog: PointsCatalog | None = None,
) -> ActionRule:
    """Create or update the rule keyed by ``payload["action_type"]``."""
    (entry,) = parse_rule_entries([payload])
    with Session(engine) as session:
        row, created = upsert_rule(session, entry)
        session.commit()
        rule = rule_from_row(row)

    logger.info("%s rule %r (%d points)", "Created" if created else "Updated",
                rule.action_type, rule.points)
    _refresh(catalog, RULES_TABLE)
    return rule


def set_rule_active(
    engine: Engine,
    action_type: str,
    active: bool,
    *,
    catalog: PointsCatalog | None = None,
) -> ActionRule:
    """Enable or disable a rule without touching its other fields."""
    with Session(engine) as session:
        row = session.get(PointsRule, action_type)
        if row is None:
            raise KeyError(f"No rule for action_type {action_type!r}")
        row.is_active = active
        session.commit()
        rule = rule_from_row(row)

    logger.info("Rule %r %s", action_type, "enabled" if active else "disabled")
    _refresh(catalog, RULES_TABLE)
    return rule


def save_level(
    engine: Engine,
    payload: dict[str, Any],
    *,
    catalog: PointsCatalog | None = None,
) -> LevelTier:
    """Create or update the tier keyed by ``payload["level"]``.

    Raises
    ------
    ConfigurationError
        If the change would leave the ladder unordered.  Nothing is
        written in that case.
    """
    (entry,) = parse_tier_entries([payload])
    session = Session(engine)
    try:
        _, created = upsert_level(session, entry)
        ladder = validate_ladder(session)
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConfigurationError(
            f"points_required {entry.points_required} is already used by another level"
        ) from exc
    except ConfigurationError:
        session.rollback()
        logger.warning("Rejected level %d update: ladder would be invalid", entry.level)
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    tier = next(t for t in ladder if t.level == entry.level)
    logger.info("%s level %d (%s @ %d)", "Created" if created else "Updated",
                tier.level, tier.name, tier.points_required)
    _refresh(catalog, LEVELS_TABLE)
    return tier
