"""
tests/test_catalog.py — Catalog, Seeder & Admin Mutation Tests
===============================================================

Covers YAML parsing and validation, idempotent seeding, live reloads
through :meth:`PointsCatalog.handle_notify`, and the admin write paths.
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

import tally
from tally.database.models import PointsLevel, PointsRule
from tally.database.seed import seed_points_system
from tally.errors import ConfigurationError
from tally.services import admin_service
from tally.services.catalog import (
    DEFAULT_SEEDS_DIR,
    LEVELS_TABLE,
    RULES_TABLE,
    PointsCatalog,
    load_ladder_file,
    load_rules_file,
    parse_ladder,
    parse_rules,
)

RULES_YAML = textwrap.dedent("""\
    rules:
      - action_type: daily_login
        points: 5
        description: Daily login bonus
        daily_limit: 1
      - action_type: user_registered
        points: 100
        is_one_time: true
        daily_limit: 1
        metadata:
          category: onboarding
      - action_type: old_thing
        points: 3
        is_active: false
""")

LEVELS_YAML = textwrap.dedent("""\
    levels:
      - level: 1
        name: Newcomer
        points_required: 0
      - level: 2
        name: Enthusiast
        points_required: 200
        rewards:
          badge: enthusiast_badge
      - level: 3
        name: Explorer
        points_required: 500
        rewards: null
""")


@pytest.fixture
def seeds_dir(tmp_path):
    (tmp_path / "rules.yaml").write_text(RULES_YAML, encoding="utf-8")
    (tmp_path / "levels.yaml").write_text(LEVELS_YAML, encoding="utf-8")
    return tmp_path


def _count(db_engine, model) -> int:
    with Session(db_engine) as session:
        return session.scalar(select(func.count()).select_from(model))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
class TestParsing:
    def test_load_rules_file(self, seeds_dir):
        rules = {r.action_type: r for r in load_rules_file(seeds_dir / "rules.yaml")}
        assert rules["daily_login"].daily_limit == 1
        assert rules["user_registered"].is_one_time
        assert rules["user_registered"].category == "onboarding"
        assert rules["old_thing"].is_active is False

    def test_load_ladder_file(self, seeds_dir):
        ladder = load_ladder_file(seeds_dir / "levels.yaml")
        assert len(ladder) == 3
        assert ladder.tier_for(200).rewards == {"badge": "enthusiast_badge"}
        assert ladder.tier_for(600).rewards == {}

    def test_null_daily_limit_means_unlimited(self):
        [rule] = parse_rules([{"action_type": "x", "points": 1, "daily_limit": None}])
        assert rule.daily_limit == 0

    def test_negative_points_rejected(self):
        with pytest.raises(ConfigurationError, match="Invalid rule #0"):
            parse_rules([{"action_type": "x", "points": -1}])

    def test_blank_action_type_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rules([{"action_type": "   ", "points": 1}])

    def test_non_integer_points_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rules([{"action_type": "x", "points": 1.5}])

    def test_bad_level_entry(self):
        with pytest.raises(ConfigurationError, match="Invalid level #1"):
            parse_ladder([
                {"level": 1, "name": "A", "points_required": 0},
                {"level": 2, "name": "B"},
            ])

    def test_unordered_ladder_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_ladder([
                {"level": 1, "name": "A", "points_required": 0},
                {"level": 2, "name": "B", "points_required": 500},
                {"level": 3, "name": "C", "points_required": 400},
            ])

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_rules_file(tmp_path / "nope.yaml")

    def test_bare_list_accepted(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("- action_type: a\n  points: 1\n", encoding="utf-8")
        assert [r.action_type for r in load_rules_file(path)] == ["a"]

    def test_bundled_seeds_are_valid(self):
        catalog = PointsCatalog()
        catalog.load_all()
        assert len(catalog.registry) == 22
        assert len(catalog.resolver.ladder) == 8
        assert catalog.registry.lookup("receive_like").daily_limit == 50

    def test_bundled_seeds_ship_inside_package(self):
        assert DEFAULT_SEEDS_DIR.parent == Path(tally.__file__).resolve().parent
        assert (DEFAULT_SEEDS_DIR / "rules.yaml").is_file()
        assert (DEFAULT_SEEDS_DIR / "levels.yaml").is_file()


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------
class TestSeed:
    def test_seed_writes_rows(self, db_engine, seeds_dir):
        assert seed_points_system(db_engine, seeds_dir) == (3, 3)
        assert _count(db_engine, PointsRule) == 3
        assert _count(db_engine, PointsLevel) == 3

    def test_reseed_updates_in_place(self, db_engine, seeds_dir):
        seed_points_system(db_engine, seeds_dir)
        (seeds_dir / "rules.yaml").write_text(
            RULES_YAML.replace("points: 5", "points: 8"), encoding="utf-8"
        )
        seed_points_system(db_engine, seeds_dir)

        assert _count(db_engine, PointsRule) == 3
        with Session(db_engine) as session:
            assert session.get(PointsRule, "daily_login").points == 8

    def test_bad_ladder_commits_nothing(self, db_engine, seeds_dir):
        (seeds_dir / "levels.yaml").write_text(
            LEVELS_YAML.replace("points_required: 500", "points_required: 100"),
            encoding="utf-8",
        )
        with pytest.raises(ConfigurationError):
            seed_points_system(db_engine, seeds_dir)
        assert _count(db_engine, PointsRule) == 0
        assert _count(db_engine, PointsLevel) == 0


# ---------------------------------------------------------------------------
# Live catalog
# ---------------------------------------------------------------------------
class TestPointsCatalog:
    def test_resolver_requires_load(self):
        with pytest.raises(ConfigurationError):
            PointsCatalog().resolver

    def test_load_from_yaml(self, seeds_dir):
        catalog = PointsCatalog(seeds_dir=seeds_dir)
        catalog.load_all()
        assert catalog.registry.lookup("daily_login").points == 5
        assert catalog.resolver.ladder.level_of(250) == 2

    def test_load_from_db(self, db_engine, seeds_dir):
        seed_points_system(db_engine, seeds_dir)
        catalog = PointsCatalog(db_engine)
        catalog.load_all()
        assert catalog.registry.lookup("user_registered").category == "onboarding"
        assert catalog.registry.lookup("old_thing") is None
        assert len(catalog.resolver.ladder) == 3

    def test_handle_notify_reloads_rules(self, db_engine, seeds_dir):
        seed_points_system(db_engine, seeds_dir)
        catalog = PointsCatalog(db_engine)
        catalog.load_all()

        with Session(db_engine) as session:
            session.get(PointsRule, "daily_login").points = 9
            session.commit()
        assert catalog.registry.lookup("daily_login").points == 5

        catalog.handle_notify(RULES_TABLE)
        assert catalog.registry.lookup("daily_login").points == 9

    def test_invalid_db_row_rejected_on_reload(self, db_engine, seeds_dir):
        """Hand-edited rows go through the same validation as the seed files."""
        seed_points_system(db_engine, seeds_dir)
        catalog = PointsCatalog(db_engine)
        catalog.load_all()

        with Session(db_engine) as session:
            session.get(PointsRule, "daily_login").points = -5
            session.commit()

        with pytest.raises(ConfigurationError, match="Invalid rule"):
            catalog.handle_notify(RULES_TABLE)
        assert catalog.registry.lookup("daily_login").points == 5

    def test_invalid_db_level_rejected(self, db_engine, seeds_dir):
        seed_points_system(db_engine, seeds_dir)
        with Session(db_engine) as session:
            session.get(PointsLevel, 2).name = ""
            session.commit()

        with pytest.raises(ConfigurationError):
            PointsCatalog(db_engine).load_all()

    def test_handle_notify_keeps_resolver_identity(self, db_engine, seeds_dir):
        """Engines built earlier see the reloaded ladder through the same resolver."""
        seed_points_system(db_engine, seeds_dir)
        catalog = PointsCatalog(db_engine)
        catalog.load_all()
        resolver = catalog.resolver

        with Session(db_engine) as session:
            session.get(PointsLevel, 2).points_required = 250
            session.commit()
        catalog.handle_notify(f"  {LEVELS_TABLE.upper()} ")

        assert catalog.resolver is resolver
        assert resolver.ladder.level_of(220) == 1

    def test_unknown_table_ignored(self, seeds_dir, caplog):
        catalog = PointsCatalog(seeds_dir=seeds_dir)
        catalog.load_all()
        with caplog.at_level("WARNING"):
            catalog.handle_notify("user_points")
        assert "Unknown table" in caplog.text


# ---------------------------------------------------------------------------
# Admin mutations
# ---------------------------------------------------------------------------
class TestAdminService:
    @pytest.fixture
    def catalog(self, db_engine, seeds_dir) -> PointsCatalog:
        seed_points_system(db_engine, seeds_dir)
        catalog = PointsCatalog(db_engine)
        catalog.load_all()
        return catalog

    def test_create_rule_reloads_registry(self, db_engine, catalog):
        rule = admin_service.save_rule(
            db_engine,
            {"action_type": "share_post", "points": 3, "daily_limit": 10},
            catalog=catalog,
        )
        assert rule.points == 3
        assert catalog.registry.lookup("share_post").daily_limit == 10

    def test_update_rule(self, db_engine, catalog):
        admin_service.save_rule(
            db_engine, {"action_type": "daily_login", "points": 7, "daily_limit": 1},
            catalog=catalog,
        )
        assert catalog.registry.lookup("daily_login").points == 7
        assert _count(db_engine, PointsRule) == 3

    def test_invalid_rule_payload(self, db_engine, catalog):
        with pytest.raises(ConfigurationError):
            admin_service.save_rule(db_engine, {"action_type": "x"}, catalog=catalog)
        assert _count(db_engine, PointsRule) == 3

    def test_toggle_rule(self, db_engine, catalog):
        admin_service.set_rule_active(db_engine, "daily_login", False, catalog=catalog)
        assert catalog.registry.lookup("daily_login") is None
        admin_service.set_rule_active(db_engine, "daily_login", True, catalog=catalog)
        assert catalog.registry.lookup("daily_login") is not None

    def test_toggle_missing_rule(self, db_engine, catalog):
        with pytest.raises(KeyError):
            admin_service.set_rule_active(db_engine, "nope", True)

    def test_add_level(self, db_engine, catalog):
        tier = admin_service.save_level(
            db_engine,
            {"level": 4, "name": "Scholar", "points_required": 1000},
            catalog=catalog,
        )
        assert tier.name == "Scholar"
        assert catalog.resolver.ladder.level_of(1000) == 4

    def test_level_breaking_order_rejected(self, db_engine, catalog):
        with pytest.raises(ConfigurationError):
            admin_service.save_level(
                db_engine,
                {"level": 4, "name": "Broken", "points_required": 300},
                catalog=catalog,
            )
        assert _count(db_engine, PointsLevel) == 3
        assert len(catalog.resolver.ladder) == 3

    def test_duplicate_threshold_rejected(self, db_engine, catalog):
        with pytest.raises(ConfigurationError):
            admin_service.save_level(
                db_engine,
                {"level": 4, "name": "Clone", "points_required": 500},
                catalog=catalog,
            )
        assert _count(db_engine, PointsLevel) == 3
