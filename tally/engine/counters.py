"""
tally.engine.counters — CounterStore Contract & In-Memory Store
================================================================

All mutable award state lives behind :class:`CounterStore`:

* one-time claims keyed by ``(user_id, action_type)``;
* per-day counters keyed by ``(user_id, action_type, day_key)``;
* the user's lifetime total and cached level;
* the append-only award ledger.

Mutations happen inside a per-user :class:`UnitOfWork`.  Leaving the
``with`` block normally commits; any exception (including timeouts and
cancellation) undoes every change made in the unit, so a user never
loses a daily slot without receiving the matching credit.

:class:`MemoryCounterStore` is the single-process implementation: locks
are sharded by user id, so unrelated users never serialize on each other
while every key belonging to one user is guarded by the same lock.
The SQL implementation lives in :mod:`tally.services.sql_store`.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from functools import partial
from typing import Any
from zoneinfo import ZoneInfo

from tally.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

__all__ = [
    "AwardRecord",
    "CounterStore",
    "MemoryCounterStore",
    "PointsAccount",
    "UnitOfWork",
    "day_key_for",
]


def day_key_for(moment: datetime, timezone: str = "UTC") -> str:
    """Calendar day of *moment* in *timezone*, as ``YYYY-MM-DD``.

    Naive datetimes are taken to be UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    tz = UTC if timezone.upper() == "UTC" else ZoneInfo(timezone)
    return moment.astimezone(tz).date().isoformat()


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PointsAccount:
    user_id: int
    total_points: int = 0
    current_level: int = 1


@dataclass(frozen=True, slots=True)
class AwardRecord:
    """Immutable ledger entry proving one award happened."""

    user_id: int
    action_type: str
    points: int
    awarded_at: datetime
    day_key: str
    reference_type: str | None = None
    reference_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------
class UnitOfWork(ABC):
    """Mutations for a single user, committed or undone as a whole."""

    user_id: int

    @abstractmethod
    def try_consume_one_time(self, action_type: str) -> bool:
        """Claim the one-time action.  True only for the first claim ever."""

    @abstractmethod
    def try_consume_daily_slot(self, action_type: str, day_key: str, limit: int) -> bool:
        """Take one of today's *limit* slots.  False (and no change) when full."""

    @abstractmethod
    def credit(self, record: AwardRecord) -> tuple[int, int]:
        """Add ``record.points`` to the total and append *record*.

        Returns ``(old_total, new_total)``.
        """

    @abstractmethod
    def set_level(self, level: int) -> None:
        """Update the cached level on the account."""


class CounterStore(ABC):
    """Shared mutable award state.  See module docstring."""

    @abstractmethod
    def unit_of_work(self, user_id: int) -> AbstractContextManager[UnitOfWork]:
        """Context manager yielding a :class:`UnitOfWork` for *user_id*.

        Raises
        ------
        StoreUnavailableError
            If the store cannot be reached or the lock/transaction times
            out.  Nothing is committed in that case.
        """

    @abstractmethod
    def get_account(self, user_id: int) -> PointsAccount:
        """Current account; a zero account for users never credited."""

    @abstractmethod
    def list_records(
        self, user_id: int, *, limit: int = 15, offset: int = 0
    ) -> list[AwardRecord]:
        """Ledger entries for *user_id*, newest first."""

    @abstractmethod
    def count_records(
        self, user_id: int, action_type: str, *, day_key: str | None = None
    ) -> int:
        """How many times *action_type* was credited (optionally on *day_key*)."""

    @abstractmethod
    def leaderboard(self, *, limit: int = 20, offset: int = 0) -> list[PointsAccount]:
        """Accounts with a positive total, highest first."""

    @abstractmethod
    def prune_daily_counters(self, before_day_key: str) -> int:
        """Drop day counters older than *before_day_key*.  Returns rows removed."""

    # -------------------------------------------------------------------
    # Standalone atomic operations
    # -------------------------------------------------------------------
    def try_consume_one_time(self, user_id: int, action_type: str) -> bool:
        with self.unit_of_work(user_id) as uow:
            return uow.try_consume_one_time(action_type)

    def try_consume_daily_slot(
        self, user_id: int, action_type: str, day_key: str, limit: int
    ) -> bool:
        with self.unit_of_work(user_id) as uow:
            return uow.try_consume_daily_slot(action_type, day_key, limit)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------
class _Shard:
    """State for every user whose id hashes to this shard."""

    __slots__ = ("lock", "one_time", "daily", "accounts", "records")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.one_time: set[tuple[int, str]] = set()
        self.daily: dict[tuple[int, str, str], int] = {}
        self.accounts: dict[int, PointsAccount] = {}
        self.records: dict[int, list[AwardRecord]] = {}


class _MemoryUnitOfWork(UnitOfWork):
    def __init__(self, shard: _Shard, user_id: int) -> None:
        self.user_id = user_id
        self._shard = shard
        self._undo: list[Callable[[], None]] = []

    def try_consume_one_time(self, action_type: str) -> bool:
        key = (self.user_id, action_type)
        if key in self._shard.one_time:
            return False
        self._shard.one_time.add(key)
        self._undo.append(partial(self._shard.one_time.discard, key))
        return True

    def try_consume_daily_slot(self, action_type: str, day_key: str, limit: int) -> bool:
        key = (self.user_id, action_type, day_key)
        count = self._shard.daily.get(key, 0)
        if count >= limit:
            return False
        self._shard.daily[key] = count + 1
        self._undo.append(partial(self._restore_daily, key, count))
        return True

    def _restore_daily(self, key: tuple[int, str, str], count: int) -> None:
        if count:
            self._shard.daily[key] = count
        else:
            self._shard.daily.pop(key, None)

    def _account(self) -> PointsAccount:
        return self._shard.accounts.get(self.user_id) or PointsAccount(self.user_id)

    def _restore_account(self, account: PointsAccount | None) -> None:
        if account is None:
            self._shard.accounts.pop(self.user_id, None)
        else:
            self._shard.accounts[self.user_id] = account

    def credit(self, record: AwardRecord) -> tuple[int, int]:
        before = self._shard.accounts.get(self.user_id)
        account = self._account()
        old_total = account.total_points
        new_total = old_total + record.points
        self._shard.accounts[self.user_id] = PointsAccount(
            self.user_id, new_total, account.current_level
        )
        self._undo.append(partial(self._restore_account, before))

        ledger = self._shard.records.setdefault(self.user_id, [])
        ledger.append(record)
        self._undo.append(ledger.pop)
        return old_total, new_total

    def set_level(self, level: int) -> None:
        before = self._shard.accounts.get(self.user_id)
        account = self._account()
        self._shard.accounts[self.user_id] = PointsAccount(
            self.user_id, account.total_points, level
        )
        self._undo.append(partial(self._restore_account, before))

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()


class MemoryCounterStore(CounterStore):
    """Single-process store with per-user sharded locks.

    Parameters
    ----------
    shards:
        Number of lock shards.  Users hashing to different shards never
        contend.
    lock_timeout:
        Seconds to wait for a shard lock before raising
        :class:`StoreUnavailableError`.  ``None`` waits forever.
    """

    def __init__(self, shards: int = 64, lock_timeout: float | None = 5.0) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]
        self._lock_timeout = lock_timeout

    def _shard_for(self, user_id: int) -> _Shard:
        return self._shards[hash(user_id) % len(self._shards)]

    def _acquire(self, shard: _Shard) -> None:
        timeout = -1 if self._lock_timeout is None else self._lock_timeout
        if not shard.lock.acquire(timeout=timeout):
            raise StoreUnavailableError(
                f"Timed out after {self._lock_timeout}s waiting for counter lock"
            )

    @contextmanager
    def unit_of_work(self, user_id: int) -> Iterator[UnitOfWork]:
        shard = self._shard_for(user_id)
        self._acquire(shard)
        uow = _MemoryUnitOfWork(shard, user_id)
        try:
            yield uow
        except BaseException:
            uow.rollback()
            raise
        finally:
            shard.lock.release()

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get_account(self, user_id: int) -> PointsAccount:
        shard = self._shard_for(user_id)
        with shard.lock:
            return shard.accounts.get(user_id) or PointsAccount(user_id)

    def list_records(
        self, user_id: int, *, limit: int = 15, offset: int = 0
    ) -> list[AwardRecord]:
        shard = self._shard_for(user_id)
        with shard.lock:
            ledger = list(shard.records.get(user_id, []))
        ledger.reverse()
        return ledger[offset:offset + limit]

    def count_records(
        self, user_id: int, action_type: str, *, day_key: str | None = None
    ) -> int:
        shard = self._shard_for(user_id)
        with shard.lock:
            ledger = list(shard.records.get(user_id, []))
        return sum(
            1 for r in ledger
            if r.action_type == action_type
            and (day_key is None or r.day_key == day_key)
        )

    def leaderboard(self, *, limit: int = 20, offset: int = 0) -> list[PointsAccount]:
        accounts: list[PointsAccount] = []
        for shard in self._shards:
            with shard.lock:
                accounts.extend(a for a in shard.accounts.values() if a.total_points > 0)
        accounts.sort(key=lambda a: (-a.total_points, a.user_id))
        return accounts[offset:offset + limit]

    def prune_daily_counters(self, before_day_key: str) -> int:
        cutoff = date.fromisoformat(before_day_key).isoformat()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = [k for k in shard.daily if k[2] < cutoff]
                for key in stale:
                    del shard.daily[key]
                removed += len(stale)
        if removed:
            logger.info("Pruned %d stale daily counters (before %s)", removed, cutoff)
        return removed
