"""
tally.services.catalog — Rule & Tier Catalog
=============================================

Turns raw configuration (YAML seed files or the ``points_rules`` /
``points_levels`` tables) into a validated :class:`RuleRegistry` and
:class:`TierLadder`.

Every entry is validated with pydantic before anything is swapped in.
A malformed entry raises :class:`~tally.errors.ConfigurationError` and
leaves the live snapshot untouched.

:class:`PointsCatalog` owns the live registry + resolver for a process
and knows how to reload either one when its table changes::

    catalog = PointsCatalog(engine)
    catalog.load_all()
    award_engine = AwardEngine(catalog.registry, catalog.resolver, store)

    # after an admin edit
    catalog.handle_notify("points_rules")
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from tally.database.models import PointsLevel, PointsRule
from tally.engine.levels import LevelResolver, LevelTier, TierLadder
from tally.engine.rules import ActionRule, RuleRegistry
from tally.errors import ConfigurationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Seed files shipped inside the package (tally/seeds)
DEFAULT_SEEDS_DIR = Path(__file__).resolve().parent.parent / "seeds"
RULES_FILE = "rules.yaml"
LEVELS_FILE = "levels.yaml"

RULES_TABLE = "points_rules"
LEVELS_TABLE = "points_levels"


# ---------------------------------------------------------------------------
# Entry schemas
# ---------------------------------------------------------------------------
class RuleEntry(BaseModel):
    """One rule as written in configuration."""

    model_config = ConfigDict(extra="ignore")

    action_type: str = Field(min_length=1, max_length=100)
    points: int = Field(ge=0)
    description: str = ""
    is_active: bool = True
    is_one_time: bool = False
    daily_limit: int | None = Field(default=0, ge=0)
    category: str | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("action_type")
    @classmethod
    def _strip_action_type(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("action_type cannot be blank")
        return value

    def to_rule(self) -> ActionRule:
        category = self.category
        if category is None and self.metadata:
            category = self.metadata.get("category")
        return ActionRule(
            action_type=self.action_type,
            points=self.points,
            description=self.description,
            is_active=self.is_active,
            is_one_time=self.is_one_time,
            daily_limit=self.daily_limit or 0,
            category=category,
        )


class TierEntry(BaseModel):
    """One level as written in configuration."""

    model_config = ConfigDict(extra="ignore")

    level: int = Field(gt=0)
    name: str = Field(min_length=1, max_length=100)
    points_required: int = Field(ge=0)
    description: str = ""
    rewards: dict[str, Any] = Field(default_factory=dict)

    @field_validator("rewards", mode="before")
    @classmethod
    def _none_rewards(cls, value: Any) -> Any:
        return {} if value is None else value

    def to_tier(self) -> LevelTier:
        return LevelTier(
            level=self.level,
            name=self.name,
            points_required=self.points_required,
            description=self.description,
            rewards=dict(self.rewards),
        )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


def parse_rule_entries(items: Iterable[dict[str, Any]]) -> list[RuleEntry]:
    entries: list[RuleEntry] = []
    for index, item in enumerate(items):
        try:
            entries.append(RuleEntry.model_validate(item))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid rule #{index}: {_describe(exc)}") from exc
    return entries


def parse_tier_entries(items: Iterable[dict[str, Any]]) -> list[TierEntry]:
    entries: list[TierEntry] = []
    for index, item in enumerate(items):
        try:
            entries.append(TierEntry.model_validate(item))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid level #{index}: {_describe(exc)}") from exc
    return entries


def parse_rules(items: Iterable[dict[str, Any]]) -> list[ActionRule]:
    return [entry.to_rule() for entry in parse_rule_entries(items)]


def parse_ladder(items: Iterable[dict[str, Any]]) -> TierLadder:
    return TierLadder(entry.to_tier() for entry in parse_tier_entries(items))


# ---------------------------------------------------------------------------
# YAML sources
# ---------------------------------------------------------------------------
def load_yaml(path: str | Path) -> list[dict[str, Any]]:
    """Read a YAML list (or a mapping with a single list value)."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Seed file not found: {path.resolve()}")
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or []
    if isinstance(data, dict):
        lists = [v for v in data.values() if isinstance(v, list)]
        if len(lists) != 1:
            raise ConfigurationError(f"Expected a single list in {path}")
        data = lists[0]
    if not isinstance(data, list):
        raise ConfigurationError(f"Expected a list of entries in {path}")
    return data


def load_rules_file(path: str | Path) -> list[ActionRule]:
    return parse_rules(load_yaml(path))


def load_ladder_file(path: str | Path) -> TierLadder:
    return parse_ladder(load_yaml(path))


# ---------------------------------------------------------------------------
# Database sources
# ---------------------------------------------------------------------------
def _rule_payload(row: PointsRule) -> dict[str, Any]:
    return {
        "action_type": row.action_type,
        "points": row.points,
        "description": row.description or "",
        "is_active": bool(row.is_active),
        "is_one_time": bool(row.is_one_time),
        "daily_limit": row.daily_limit,
        "category": row.category,
    }


def _tier_payload(row: PointsLevel) -> dict[str, Any]:
    return {
        "level": row.level,
        "name": row.name,
        "points_required": row.points_required,
        "description": row.description or "",
        "rewards": row.rewards,
    }


def rule_from_row(row: PointsRule) -> ActionRule:
    """Validated :class:`ActionRule` for one ``points_rules`` row."""
    return parse_rules([_rule_payload(row)])[0]


def tier_from_row(row: PointsLevel) -> LevelTier:
    """Validated :class:`LevelTier` for one ``points_levels`` row."""
    return parse_tier_entries([_tier_payload(row)])[0].to_tier()


def load_rules_from_db(engine: Engine) -> list[ActionRule]:
    """Every rule row, validated the same way as the seed files."""
    with Session(engine) as session:
        rows = session.scalars(select(PointsRule)).all()
        return parse_rules(_rule_payload(r) for r in rows)


def load_ladder_from_db(engine: Engine) -> TierLadder:
    with Session(engine) as session:
        rows = session.scalars(select(PointsLevel).order_by(PointsLevel.level)).all()
        return parse_ladder(_tier_payload(r) for r in rows)


# ---------------------------------------------------------------------------
# PointsCatalog — live snapshots for one process
# ---------------------------------------------------------------------------
class PointsCatalog:
    """Owns the live :class:`RuleRegistry` and :class:`LevelResolver`.

    Loads from the database when an engine is given, otherwise from the
    YAML files in *seeds_dir*.  :meth:`load_all` fails fast on a bad
    ladder, so no :class:`~tally.engine.award.AwardEngine` can be built
    from an unvalidated configuration.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        seeds_dir: str | Path | None = None,
    ) -> None:
        self._engine = engine
        self._seeds_dir = Path(seeds_dir) if seeds_dir else DEFAULT_SEEDS_DIR
        self.registry = RuleRegistry()
        self._resolver: LevelResolver | None = None

    @property
    def resolver(self) -> LevelResolver:
        if self._resolver is None:
            raise ConfigurationError("Tier ladder not loaded; call load_all() first")
        return self._resolver

    def load_all(self) -> None:
        """Load rules and ladder.  Call on startup."""
        self.reload_levels()
        self.reload_rules()
        logger.info(
            "PointsCatalog loaded: %d rules (%d active), %d tiers",
            len(self.registry),
            len(self.registry.active_rules()),
            len(self.resolver.ladder),
        )

    def reload_rules(self) -> None:
        if self._engine is not None:
            rules = load_rules_from_db(self._engine)
        else:
            rules = load_rules_file(self._seeds_dir / RULES_FILE)
        self.registry.reload(rules)

    def reload_levels(self) -> None:
        if self._engine is not None:
            ladder = load_ladder_from_db(self._engine)
        else:
            ladder = load_ladder_file(self._seeds_dir / LEVELS_FILE)
        if self._resolver is None:
            self._resolver = LevelResolver(ladder)
        else:
            self._resolver.reload(ladder)

    def handle_notify(self, table_name: str) -> None:
        """Reload the snapshot backed by *table_name*."""
        table_name = table_name.strip().lower()
        logger.info("Catalog invalidation for table: %s", table_name)

        if table_name == RULES_TABLE:
            self.reload_rules()
        elif table_name == LEVELS_TABLE:
            self.reload_levels()
        else:
            logger.warning("Unknown table in notify: %s — ignoring", table_name)
