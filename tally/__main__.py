"""
tally.__main__ — Entry point for ``python -m tally``
=====================================================

Subcommands::

    python -m tally seed                     # upsert tally/seeds/*.yaml into the DB
    python -m tally award 42 daily_login     # award one action, print result
    python -m tally summary 42               # points, level, next level
    python -m tally adjust 42 150 "Contest prize"   # manual credit
    python -m tally rule daily_login --disable     # toggle a rule

Wiring:
1. Load .env (``DATABASE_URL``).
2. Load config.yaml (falls back to defaults if absent).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Run the subcommand.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from dotenv import load_dotenv

from tally.app import build_award_engine
from tally.config import TallyConfig, load_config
from tally.database.engine import create_db_engine, init_db
from tally.database.seed import seed_points_system
from tally.engine.award import Credited
from tally.errors import TallyError
from tally.services.admin_service import set_rule_active
from tally.services.points_service import get_summary

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("tally")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tally", description="Points & leveling engine")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed", help="Upsert rules and levels from the seed files")

    award = sub.add_parser("award", help="Award one action to a user")
    award.add_argument("user_id", type=int)
    award.add_argument("action_type")
    award.add_argument("--reference-type")
    award.add_argument("--reference-id")

    summary = sub.add_parser("summary", help="Show a user's points summary")
    summary.add_argument("user_id", type=int)

    adjust = sub.add_parser("adjust", help="Grant points outside the rule table")
    adjust.add_argument("user_id", type=int)
    adjust.add_argument("points", type=int)
    adjust.add_argument("reason")
    adjust.add_argument("--admin-id", type=int)

    rule = sub.add_parser("rule", help="Enable or disable a rule")
    rule.add_argument("action_type")
    state = rule.add_mutually_exclusive_group(required=True)
    state.add_argument("--enable", dest="active", action="store_true")
    state.add_argument("--disable", dest="active", action="store_false")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    try:
        cfg = load_config(args.config)
    except FileNotFoundError:
        logger.info("No %s found — using defaults", args.config)
        cfg = TallyConfig()

    # 3. Database.
    db_engine = create_db_engine()
    init_db(db_engine)

    try:
        if args.command == "seed":
            rules, levels = seed_points_system(db_engine, cfg.seeds_dir)
            print(f"Seeded {rules} rules and {levels} levels.")
            return 0

        award_engine, catalog = build_award_engine(cfg, db_engine)

        if args.command == "award":
            result = award_engine.award(
                args.user_id,
                args.action_type,
                reference_type=args.reference_type,
                reference_id=args.reference_id,
            )
            if isinstance(result, Credited):
                print(
                    f"Credited {result.points} points → total {result.total_points}, "
                    f"level {result.level}" + (" (level up!)" if result.leveled_up else "")
                )
            else:
                print(f"Denied: {result.reason}")
            return 0

        if args.command == "summary":
            data = get_summary(award_engine.store, catalog.resolver, args.user_id)
            print(json.dumps(data, indent=2, default=str))
            return 0

        if args.command == "adjust":
            result = award_engine.adjust_points(
                args.user_id, args.points, args.reason, admin_id=args.admin_id
            )
            print(f"Adjusted by {result.points} points → total {result.total_points}, "
                  f"level {result.level}")
            return 0

        if args.command == "rule":
            rule = set_rule_active(db_engine, args.action_type, args.active, catalog=catalog)
            print(f"Rule {rule.action_type} is now {'active' if rule.is_active else 'inactive'}")
            return 0
    except KeyError as exc:
        logger.error("%s", exc.args[0])
        return 1
    except ValueError as exc:
        logger.error("%s", exc)
        return 1
    except TallyError as exc:
        logger.critical("%s", exc)
        return 1

    return 2


if __name__ == "__main__":
    sys.exit(main())
