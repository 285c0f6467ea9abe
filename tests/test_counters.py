"""
tests/test_counters.py — In-Memory CounterStore Tests
======================================================

Atomic one-time claims and daily slots, unit-of-work rollback, lock
timeouts, and counter pruning.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta, timezone

import pytest

from tally.engine.counters import AwardRecord, MemoryCounterStore, day_key_for
from tally.errors import StoreUnavailableError


def _record(user_id: int, action_type: str = "gift_point", points: int = 1,
            day_key: str = "2026-03-14") -> AwardRecord:
    return AwardRecord(
        user_id=user_id,
        action_type=action_type,
        points=points,
        awarded_at=datetime(2026, 3, 14, 12, tzinfo=UTC),
        day_key=day_key,
    )


class TestDayKey:
    def test_utc_day(self):
        assert day_key_for(datetime(2026, 3, 14, 23, 59, tzinfo=UTC)) == "2026-03-14"

    def test_naive_is_utc(self):
        assert day_key_for(datetime(2026, 3, 15, 0, 0)) == "2026-03-15"

    def test_converts_offset_to_utc(self):
        tz = timezone(timedelta(hours=-5))
        assert day_key_for(datetime(2026, 3, 14, 21, 0, tzinfo=tz)) == "2026-03-15"

    def test_named_timezone(self):
        moment = datetime(2026, 3, 15, 2, 0, tzinfo=UTC)
        assert day_key_for(moment, "America/New_York") == "2026-03-14"


class TestOneTime:
    def test_first_claim_wins(self, memory_store):
        assert memory_store.try_consume_one_time(1, "user_registered") is True
        assert memory_store.try_consume_one_time(1, "user_registered") is False

    def test_claims_are_per_user(self, memory_store):
        assert memory_store.try_consume_one_time(1, "user_registered")
        assert memory_store.try_consume_one_time(2, "user_registered")

    def test_concurrent_claims_exactly_one_winner(self, memory_store):
        barrier = threading.Barrier(16)

        def claim(_):
            barrier.wait()
            return memory_store.try_consume_one_time(7, "user_registered")

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(claim, range(16)))
        assert results.count(True) == 1


class TestDailySlots:
    def test_limit_enforced(self, memory_store):
        taken = [
            memory_store.try_consume_daily_slot(1, "create_post", "2026-03-14", 5)
            for _ in range(7)
        ]
        assert taken == [True] * 5 + [False] * 2

    def test_new_day_resets(self, memory_store):
        assert memory_store.try_consume_daily_slot(1, "daily_login", "2026-03-14", 1)
        assert not memory_store.try_consume_daily_slot(1, "daily_login", "2026-03-14", 1)
        assert memory_store.try_consume_daily_slot(1, "daily_login", "2026-03-15", 1)

    def test_concurrent_slots_never_overshoot(self, memory_store):
        """60 racing requests against a limit of 50 grant exactly 50."""
        barrier = threading.Barrier(12)

        def take(_):
            barrier.wait()
            return sum(
                memory_store.try_consume_daily_slot(3, "receive_like", "2026-03-14", 50)
                for _ in range(5)
            )

        with ThreadPoolExecutor(max_workers=12) as pool:
            granted = sum(pool.map(take, range(12)))
        assert granted == 50


class TestUnitOfWork:
    def test_commit_on_success(self, memory_store):
        with memory_store.unit_of_work(1) as uow:
            assert uow.try_consume_daily_slot("daily_login", "2026-03-14", 1)
            old, new = uow.credit(_record(1, "daily_login", 5))
            uow.set_level(1)
        assert (old, new) == (0, 5)
        assert memory_store.get_account(1).total_points == 5
        assert memory_store.count_records(1, "daily_login") == 1

    def test_exception_undoes_everything(self, memory_store):
        memory_store.try_consume_daily_slot(1, "receive_like", "2026-03-14", 50)

        with pytest.raises(RuntimeError):
            with memory_store.unit_of_work(1) as uow:
                uow.try_consume_one_time("user_registered")
                uow.try_consume_daily_slot("receive_like", "2026-03-14", 50)
                uow.credit(_record(1, "receive_like", 2))
                uow.set_level(2)
                raise RuntimeError("boom")

        account = memory_store.get_account(1)
        assert account.total_points == 0
        assert account.current_level == 1
        assert memory_store.list_records(1) == []
        # The one-time claim and the second daily slot were released
        assert memory_store.try_consume_one_time(1, "user_registered")
        granted = sum(
            memory_store.try_consume_daily_slot(1, "receive_like", "2026-03-14", 50)
            for _ in range(50)
        )
        assert granted == 49

    def test_lock_timeout_raises_store_unavailable(self):
        store = MemoryCounterStore(shards=1, lock_timeout=0.05)
        with store.unit_of_work(1):
            result: list[BaseException] = []

            def contend():
                try:
                    with store.unit_of_work(2):
                        pass
                except StoreUnavailableError as exc:
                    result.append(exc)

            worker = threading.Thread(target=contend)
            worker.start()
            worker.join()
        assert len(result) == 1

    def test_invalid_shard_count(self):
        with pytest.raises(ValueError):
            MemoryCounterStore(shards=0)


class TestReads:
    def test_unknown_user_has_zero_account(self, memory_store):
        account = memory_store.get_account(404)
        assert account.total_points == 0
        assert account.current_level == 1

    def test_records_newest_first_with_paging(self, memory_store):
        for points in (1, 2, 3):
            with memory_store.unit_of_work(1) as uow:
                uow.credit(_record(1, points=points))
        assert [r.points for r in memory_store.list_records(1)] == [3, 2, 1]
        assert [r.points for r in memory_store.list_records(1, limit=1, offset=1)] == [2]

    def test_count_records_by_day(self, memory_store):
        with memory_store.unit_of_work(1) as uow:
            uow.credit(_record(1, day_key="2026-03-14"))
            uow.credit(_record(1, day_key="2026-03-15"))
        assert memory_store.count_records(1, "gift_point") == 2
        assert memory_store.count_records(1, "gift_point", day_key="2026-03-15") == 1

    def test_leaderboard_order(self, memory_store):
        for user_id, points in ((1, 10), (2, 30), (3, 10), (4, 0)):
            with memory_store.unit_of_work(user_id) as uow:
                uow.credit(_record(user_id, points=points))
        board = memory_store.leaderboard()
        assert [a.user_id for a in board] == [2, 1, 3]
        assert [a.user_id for a in memory_store.leaderboard(limit=1, offset=1)] == [1]


class TestPrune:
    def test_prunes_only_older_days(self, memory_store):
        memory_store.try_consume_daily_slot(1, "daily_login", "2026-03-12", 1)
        memory_store.try_consume_daily_slot(1, "daily_login", "2026-03-13", 1)
        memory_store.try_consume_daily_slot(1, "daily_login", "2026-03-14", 1)

        assert memory_store.prune_daily_counters("2026-03-14") == 2
        # Today's counter survives
        assert not memory_store.try_consume_daily_slot(1, "daily_login", "2026-03-14", 1)

    def test_rejects_malformed_cutoff(self, memory_store):
        with pytest.raises(ValueError):
            memory_store.prune_daily_counters("yesterday")
