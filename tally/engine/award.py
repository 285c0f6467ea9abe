"""
tally.engine.award — Award Pipeline
====================================

Single entry point used by the rest of the application::

    result = engine.award(user_id, "daily_login")
    if isinstance(result, Credited):
        ...

Pipeline stages:
  Rule lookup → Eligibility (one-time | daily slot | unlimited)
  → Credit + ledger (same unit of work) → Level resolve → Notify

Denials are ordinary return values.  Only store failures raise
(:class:`~tally.errors.StoreUnavailableError`), and a failed unit of work
leaves no trace, so the whole call can be retried.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, cast

from tally.engine.counters import AwardRecord, CounterStore, UnitOfWork, day_key_for
from tally.engine.events import LevelTransition, LoggingNotifier, TransitionNotifier
from tally.engine.levels import LevelResolver, Resolution
from tally.engine.rules import ActionRule, RuleRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "MANUAL_ADJUSTMENT",
    "AwardEngine",
    "AwardResult",
    "Credited",
    "Denied",
    "DenialReason",
]

# Ledger action type used for administrative credits
MANUAL_ADJUSTMENT = "manual_adjustment"


# ---------------------------------------------------------------------------
# AwardResult — tagged union
# ---------------------------------------------------------------------------
class DenialReason(enum.StrEnum):
    RULE_INACTIVE_OR_UNKNOWN = "rule_inactive_or_unknown"
    ALREADY_AWARDED_ONE_TIME = "already_awarded_one_time"
    DAILY_LIMIT_REACHED = "daily_limit_reached"


@dataclass(frozen=True, slots=True)
class Credited:
    """Points were added to the account."""

    points: int
    total_points: int
    level: int
    leveled_up: bool = False
    transition: LevelTransition | None = field(default=None, compare=False)

    @property
    def credited(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Denied:
    """The action was not eligible.  Nothing was changed."""

    reason: DenialReason

    @property
    def credited(self) -> bool:
        return False


AwardResult = Credited | Denied


# ---------------------------------------------------------------------------
# AwardEngine
# ---------------------------------------------------------------------------
class AwardEngine:
    """Evaluates rules against the counter store and credits points.

    Parameters
    ----------
    rules:
        Live rule registry.  Each call captures one snapshot of the rule
        it needs; a concurrent reload only affects later calls.
    resolver:
        Level resolver holding the validated tier ladder.
    store:
        Counter/account store.
    notifier:
        Receives :class:`LevelTransition` events.  Defaults to
        :class:`LoggingNotifier`.
    day_timezone:
        Timezone whose calendar day bounds daily limits.
    clock:
        Returns the current aware datetime (tests inject a fixed clock).
    """

    def __init__(
        self,
        rules: RuleRegistry,
        resolver: LevelResolver,
        store: CounterStore,
        *,
        notifier: TransitionNotifier | None = None,
        day_timezone: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.rules = rules
        self.resolver = resolver
        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self.day_timezone = day_timezone
        self._clock = clock or (lambda: datetime.now(UTC))

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    def award(
        self,
        user_id: int,
        action_type: str,
        metadata: dict[str, Any] | None = None,
        *,
        reference_type: str | None = None,
        reference_id: str | int | None = None,
        description: str | None = None,
        now: datetime | None = None,
    ) -> AwardResult:
        """Credit *action_type* to *user_id* if its rule allows it.

        Raises
        ------
        StoreUnavailableError
            The store failed; nothing was committed.
        """
        rule = self.rules.lookup(action_type)
        if rule is None:
            logger.debug("No active rule for %r (user %s)", action_type, user_id)
            return Denied(DenialReason.RULE_INACTIVE_OR_UNKNOWN)

        moment = self._moment(now)
        record = AwardRecord(
            user_id=user_id,
            action_type=rule.action_type,
            points=rule.points,
            awarded_at=moment,
            day_key=day_key_for(moment, self.day_timezone),
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            description=description or rule.description or None,
            metadata=dict(metadata or {}),
        )
        return self._apply(rule, record)

    def adjust_points(
        self,
        user_id: int,
        points: int,
        reason: str,
        *,
        admin_id: int | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Credited:
        """Credit *points* outside the rule table (administrative grant).

        Totals never decrease, so negative adjustments are rejected.
        """
        if points < 0:
            raise ValueError("Point adjustments must be non-negative")
        moment = self._moment(now)
        meta = dict(metadata or {})
        if admin_id is not None:
            meta["admin_id"] = admin_id
        record = AwardRecord(
            user_id=user_id,
            action_type=MANUAL_ADJUSTMENT,
            points=points,
            awarded_at=moment,
            day_key=day_key_for(moment, self.day_timezone),
            reference_type=MANUAL_ADJUSTMENT,
            description=reason,
            metadata=meta,
        )
        return cast(Credited, self._apply(None, record))

    # -------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------
    def _moment(self, now: datetime | None) -> datetime:
        """Award time as an aware UTC datetime.  Naive values are taken as UTC."""
        moment = now or self._clock()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return moment.astimezone(UTC)

    def _apply(self, rule: ActionRule | None, record: AwardRecord) -> AwardResult:
        ladder = self.resolver.ladder

        with self.store.unit_of_work(record.user_id) as uow:
            # 1. Eligibility
            if rule is not None:
                denial = self._check_eligibility(uow, rule, record.day_key)
                if denial is not None:
                    logger.debug(
                        "Denied %r for user %s: %s",
                        rule.action_type, record.user_id, denial.reason,
                    )
                    return denial

            # 2. Credit + ledger
            old_total, new_total = uow.credit(record)

            # 3. Cached level
            resolution = self.resolver.resolve(old_total, new_total, ladder=ladder)
            uow.set_level(resolution.level)

        logger.info(
            "Credited %d points to user %s for %r (total %d)",
            record.points, record.user_id, record.action_type, new_total,
        )

        # 4. Notify (after commit, failures isolated)
        transition = None
        if resolution.crossed:
            transition = self._emit(record.user_id, resolution, new_total)

        return Credited(
            points=record.points,
            total_points=new_total,
            level=resolution.level,
            leveled_up=resolution.crossed,
            transition=transition,
        )

    @staticmethod
    def _check_eligibility(
        uow: UnitOfWork, rule: ActionRule, day_key: str
    ) -> Denied | None:
        if rule.is_one_time:
            if not uow.try_consume_one_time(rule.action_type):
                return Denied(DenialReason.ALREADY_AWARDED_ONE_TIME)
        elif rule.is_capped:
            if not uow.try_consume_daily_slot(rule.action_type, day_key, rule.daily_limit):
                return Denied(DenialReason.DAILY_LIMIT_REACHED)
        return None

    def _emit(
        self, user_id: int, resolution: Resolution, total: int
    ) -> LevelTransition:
        tier = resolution.tier
        event = LevelTransition(
            user_id=user_id,
            old_level=resolution.previous.level,
            new_level=tier.level,
            tier_name=tier.name,
            description=tier.description,
            rewards=tier.rewards,
            total_points=total,
            occurred_at=self._clock(),
        )
        logger.info(
            "User %s leveled up: %d → %d (%s)",
            user_id, event.old_level, event.new_level, event.tier_name,
        )
        try:
            self.notifier.notify(event)
        except Exception:
            logger.exception(
                "Level transition notifier failed for user %s (level %d)",
                user_id, event.new_level,
            )
        return event
