"""
tally.services.points_service — Read Models & Async Bridge
===========================================================

Shared helpers callable from request handlers and background jobs:
profile summary, level progress, award history, leaderboard, and an
``await``-able wrapper around :meth:`AwardEngine.award`.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from tally.database.engine import run_db
from tally.engine.award import AwardEngine, AwardResult
from tally.engine.counters import CounterStore
from tally.engine.levels import LevelResolver, LevelTier

logger = logging.getLogger(__name__)

MAX_LEADERBOARD_LIMIT = 100
MAX_HISTORY_LIMIT = 100


def _tier_dict(tier: LevelTier | None) -> dict[str, Any] | None:
    if tier is None:
        return None
    data = asdict(tier)
    data["rewards"] = dict(tier.rewards)
    return data


def get_summary(store: CounterStore, resolver: LevelResolver, user_id: int) -> dict[str, Any]:
    """Points, current level, next level and the gap to it.

    The level is derived from the total against the live ladder rather
    than read from the cached column.
    """
    account = store.get_account(user_id)
    summary = resolver.ladder.summary(account.total_points)
    return {
        "user_id": user_id,
        "points": account.total_points,
        "current_level": _tier_dict(summary.current),
        "next_level": _tier_dict(summary.next),
        "points_to_next_level": summary.points_to_next,
    }


def get_levels_with_progress(
    store: CounterStore, resolver: LevelResolver, user_id: int
) -> list[dict[str, Any]]:
    account = store.get_account(user_id)
    rows = []
    for row in resolver.ladder.progress(account.total_points):
        data = _tier_dict(row.tier)
        data.update(
            is_current=row.is_current,
            is_achieved=row.is_achieved,
            progress_percentage=row.progress_percentage,
        )
        rows.append(data)
    return rows


def get_history(
    store: CounterStore, user_id: int, *, page: int = 1, per_page: int = 15
) -> list[dict[str, Any]]:
    """A page of the user's ledger, newest first."""
    per_page = max(1, min(per_page, MAX_HISTORY_LIMIT))
    page = max(1, page)
    records = store.list_records(user_id, limit=per_page, offset=(page - 1) * per_page)
    return [
        {
            "action_type": r.action_type,
            "points": r.points,
            "awarded_at": r.awarded_at.isoformat(),
            "reference_type": r.reference_type,
            "reference_id": r.reference_id,
            "description": r.description,
            "metadata": r.metadata,
        }
        for r in records
    ]


def get_leaderboard(
    store: CounterStore, resolver: LevelResolver, *, limit: int = 20, page: int = 1
) -> list[dict[str, Any]]:
    """Ranked accounts with a positive total.  *limit* is capped at 100."""
    limit = max(1, min(limit, MAX_LEADERBOARD_LIMIT))
    page = max(1, page)
    offset = (page - 1) * limit
    ladder = resolver.ladder
    return [
        {
            "rank": offset + index + 1,
            "user_id": account.user_id,
            "points": account.total_points,
            "level": ladder.level_of(account.total_points),
        }
        for index, account in enumerate(store.leaderboard(limit=limit, offset=offset))
    ]


async def award_async(
    engine: AwardEngine,
    user_id: int,
    action_type: str,
    metadata: dict[str, Any] | None = None,
    **kwargs: Any,
) -> AwardResult:
    """``await``-able :meth:`AwardEngine.award` for asyncio callers."""
    return await run_db(engine.award, user_id, action_type, metadata, **kwargs)
