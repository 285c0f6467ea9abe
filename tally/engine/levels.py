"""
tally.engine.levels — Tier Ladder & Level Resolution
=====================================================

Maps a lifetime point total onto the highest :class:`LevelTier` whose
threshold it meets.  The ladder is validated once at construction; the
resolver refuses to exist without a strictly ordered ladder.

Pure calculation — no database I/O.
"""

from __future__ import annotations

import bisect
import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from tally.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "LevelResolver",
    "LevelSummary",
    "LevelTier",
    "Resolution",
    "TierLadder",
    "TierProgress",
]


@dataclass(frozen=True, slots=True)
class LevelTier:
    """A named rank unlocked once a total meets ``points_required``."""

    level: int
    name: str
    points_required: int
    description: str = ""
    rewards: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Resolution:
    """Outcome of :meth:`LevelResolver.resolve`."""

    tier: LevelTier
    previous: LevelTier
    crossed: bool

    @property
    def level(self) -> int:
        return self.tier.level


@dataclass(frozen=True, slots=True)
class TierProgress:
    """One row of the progress table shown on a profile."""

    tier: LevelTier
    is_current: bool
    is_achieved: bool
    progress_percentage: int


@dataclass(frozen=True, slots=True)
class LevelSummary:
    total_points: int
    current: LevelTier
    next: LevelTier | None
    points_to_next: int


# ---------------------------------------------------------------------------
# TierLadder — validated, immutable
# ---------------------------------------------------------------------------
class TierLadder:
    """Ordered tier list with floor lookup.

    Invariants checked at construction:

    * at least one tier;
    * the lowest tier requires 0 points;
    * ``level`` and ``points_required`` both strictly increase.

    Raises
    ------
    ConfigurationError
        If any invariant is violated.
    """

    __slots__ = ("_tiers", "_thresholds")

    def __init__(self, tiers: Iterable[LevelTier]) -> None:
        ordered = sorted(tiers, key=lambda t: t.level)
        if not ordered:
            raise ConfigurationError("Tier ladder must contain at least one tier")
        if ordered[0].points_required != 0:
            raise ConfigurationError(
                f"Lowest tier (level {ordered[0].level}) must require 0 points, "
                f"got {ordered[0].points_required}"
            )
        for lower, upper in zip(ordered, ordered[1:]):
            if upper.level == lower.level:
                raise ConfigurationError(f"Duplicate tier level {upper.level}")
            if upper.points_required <= lower.points_required:
                raise ConfigurationError(
                    f"points_required must strictly increase with level: "
                    f"level {lower.level} needs {lower.points_required}, "
                    f"level {upper.level} needs {upper.points_required}"
                )
        self._tiers: tuple[LevelTier, ...] = tuple(ordered)
        self._thresholds: tuple[int, ...] = tuple(t.points_required for t in ordered)

    @property
    def tiers(self) -> tuple[LevelTier, ...]:
        return self._tiers

    def __len__(self) -> int:
        return len(self._tiers)

    def __iter__(self):
        return iter(self._tiers)

    def tier_for(self, total: int) -> LevelTier:
        """Highest tier whose threshold *total* meets."""
        if total < 0:
            raise ValueError(f"total_points cannot be negative: {total}")
        index = bisect.bisect_right(self._thresholds, total) - 1
        return self._tiers[index]

    def level_of(self, total: int) -> int:
        return self.tier_for(total).level

    def next_tier(self, total: int) -> LevelTier | None:
        """The first tier *total* has not reached yet, or ``None`` at the top."""
        index = bisect.bisect_right(self._thresholds, total)
        if index >= len(self._tiers):
            return None
        return self._tiers[index]

    def points_to_next(self, total: int) -> int:
        upcoming = self.next_tier(total)
        return upcoming.points_required - total if upcoming else 0

    def summary(self, total: int) -> LevelSummary:
        return LevelSummary(
            total_points=total,
            current=self.tier_for(total),
            next=self.next_tier(total),
            points_to_next=self.points_to_next(total),
        )

    def progress(self, total: int) -> list[TierProgress]:
        """Per-tier progress for a user with *total* points.

        Reached tiers are 100%.  An unreached tier reports progress made
        since the previous tier's threshold, capped at 99%.
        """
        current = self.tier_for(total)
        rows: list[TierProgress] = []
        previous_threshold = 0
        for tier in self._tiers:
            achieved = tier.points_required <= total
            if achieved:
                pct = 100
            else:
                needed = tier.points_required - previous_threshold
                made = total - previous_threshold
                pct = 0
                if needed > 0 and made > 0:
                    pct = min(round(made / needed * 100), 99)
            rows.append(TierProgress(
                tier=tier,
                is_current=tier.level == current.level,
                is_achieved=achieved,
                progress_percentage=pct,
            ))
            previous_threshold = tier.points_required
        return rows


# ---------------------------------------------------------------------------
# LevelResolver — holds the live ladder snapshot
# ---------------------------------------------------------------------------
class LevelResolver:
    """Resolves totals to tiers and detects tier crossings.

    Usage::

        resolver = LevelResolver(ladder)
        res = resolver.resolve(199, 200)
        res.crossed      # True
        res.tier.name    # "Enthusiast"
    """

    def __init__(self, ladder: TierLadder) -> None:
        self._lock = threading.Lock()
        self._ladder = ladder

    @property
    def ladder(self) -> TierLadder:
        with self._lock:
            return self._ladder

    def reload(self, ladder: TierLadder) -> None:
        """Swap in an already-validated ladder."""
        with self._lock:
            self._ladder = ladder
        logger.info("Tier ladder reloaded: %d tiers", len(ladder))

    def resolve(
        self, old_total: int, new_total: int, *, ladder: TierLadder | None = None
    ) -> Resolution:
        """Return the tier for *new_total* and whether it differs from *old_total*'s.

        Pass *ladder* to resolve against a snapshot captured earlier in
        the same evaluation.
        """
        ladder = ladder or self.ladder
        before = ladder.tier_for(old_total)
        after = ladder.tier_for(new_total)
        return Resolution(tier=after, previous=before, crossed=before.level != after.level)
