"""
tally.services.sql_store — SQL-backed CounterStore
===================================================

Each unit of work is one database transaction:

* one-time claims are ``INSERT … ON CONFLICT DO NOTHING`` on the
  ``(user_id, action_type)`` primary key; the first insert wins and every
  later or concurrent one affects zero rows;
* daily slots are a conditional ``UPDATE … SET count = count + 1
  WHERE count < :limit`` on the ``(user_id, action_type, day_key)`` row,
  which the database applies atomically per row;
* the total is bumped with ``UPDATE … SET total_points = total_points + :n``
  and the ledger row is inserted in the same transaction.

Any exception inside the block rolls the whole transaction back.
Connection / lock-timeout failures surface as
:class:`~tally.errors.StoreUnavailableError`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from tally.database.models import (
    DailyCounter,
    OneTimeClaim,
    PointsTransaction,
    UserPoints,
)
from tally.engine.counters import AwardRecord, CounterStore, PointsAccount, UnitOfWork
from tally.errors import StoreUnavailableError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def _insert_ignore(session: Session, model: type, values: dict[str, Any]) -> bool:
    """Insert *values* unless the primary key exists.  True if a row was written."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        # Generic path: SAVEPOINT + IntegrityError keeps the outer txn alive
        try:
            with session.begin_nested():
                session.add(model(**values))
                session.flush()
        except IntegrityError:
            return False
        return True

    stmt = insert(model.__table__).values(**values).on_conflict_do_nothing()
    return session.execute(stmt).rowcount == 1


def record_from_row(row: PointsTransaction) -> AwardRecord:
    return AwardRecord(
        user_id=row.user_id,
        action_type=row.action_type,
        points=row.points,
        awarded_at=_aware(row.created_at),
        day_key=row.day_key,
        reference_type=row.reference_type,
        reference_id=row.reference_id,
        description=row.description,
        metadata=dict(row.metadata_ or {}),
    )


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, session: Session, user_id: int) -> None:
        self.user_id = user_id
        self._session = session

    def ensure_account(self) -> None:
        """Create the account row if missing.  Opens the write transaction."""
        _insert_ignore(
            self._session,
            UserPoints,
            {"user_id": self.user_id, "total_points": 0, "current_level": 1},
        )

    def try_consume_one_time(self, action_type: str) -> bool:
        return _insert_ignore(
            self._session,
            OneTimeClaim,
            {"user_id": self.user_id, "action_type": action_type},
        )

    def try_consume_daily_slot(self, action_type: str, day_key: str, limit: int) -> bool:
        _insert_ignore(
            self._session,
            DailyCounter,
            {"user_id": self.user_id, "action_type": action_type,
             "day_key": day_key, "count": 0},
        )
        result = self._session.execute(
            update(DailyCounter)
            .where(
                DailyCounter.user_id == self.user_id,
                DailyCounter.action_type == action_type,
                DailyCounter.day_key == day_key,
                DailyCounter.count < limit,
            )
            .values(count=DailyCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def credit(self, record: AwardRecord) -> tuple[int, int]:
        self._session.execute(
            update(UserPoints)
            .where(UserPoints.user_id == self.user_id)
            .values(total_points=UserPoints.total_points + record.points)
            .execution_options(synchronize_session=False)
        )
        new_total = self._session.scalar(
            select(UserPoints.total_points).where(UserPoints.user_id == self.user_id)
        )
        self._session.add(PointsTransaction(
            user_id=self.user_id,
            action_type=record.action_type,
            points=record.points,
            day_key=record.day_key,
            reference_type=record.reference_type,
            reference_id=record.reference_id,
            description=record.description,
            metadata_=record.metadata or None,
            created_at=record.awarded_at,
        ))
        self._session.flush()
        return new_total - record.points, new_total

    def set_level(self, level: int) -> None:
        self._session.execute(
            update(UserPoints)
            .where(UserPoints.user_id == self.user_id)
            .values(current_level=level)
            .execution_options(synchronize_session=False)
        )


class SqlCounterStore(CounterStore):
    """CounterStore over the ``tally.database.models`` tables."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @contextmanager
    def unit_of_work(self, user_id: int) -> Iterator[UnitOfWork]:
        session = Session(self._engine)
        try:
            uow = SqlUnitOfWork(session, user_id)
            uow.ensure_account()
            yield uow
            session.commit()
        except OperationalError as exc:
            session.rollback()
            logger.warning("Points store unavailable for user %s: %s", user_id, exc)
            raise StoreUnavailableError(str(exc)) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get_account(self, user_id: int) -> PointsAccount:
        with Session(self._engine) as session:
            row = session.get(UserPoints, user_id)
            if row is None:
                return PointsAccount(user_id)
            return PointsAccount(user_id, row.total_points, row.current_level)

    def list_records(
        self, user_id: int, *, limit: int = 15, offset: int = 0
    ) -> list[AwardRecord]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(PointsTransaction)
                .where(PointsTransaction.user_id == user_id)
                .order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [record_from_row(r) for r in rows]

    def count_records(
        self, user_id: int, action_type: str, *, day_key: str | None = None
    ) -> int:
        stmt = select(func.count()).select_from(PointsTransaction).where(
            PointsTransaction.user_id == user_id,
            PointsTransaction.action_type == action_type,
        )
        if day_key is not None:
            stmt = stmt.where(PointsTransaction.day_key == day_key)
        with Session(self._engine) as session:
            return session.scalar(stmt) or 0

    def leaderboard(self, *, limit: int = 20, offset: int = 0) -> list[PointsAccount]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(UserPoints)
                .where(UserPoints.total_points > 0)
                .order_by(UserPoints.total_points.desc(), UserPoints.user_id)
                .limit(limit)
                .offset(offset)
            ).all()
            return [PointsAccount(r.user_id, r.total_points, r.current_level) for r in rows]

    def prune_daily_counters(self, before_day_key: str) -> int:
        with Session(self._engine) as session:
            result = session.execute(
                delete(DailyCounter).where(DailyCounter.day_key < before_day_key)
            )
            session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Pruned %d stale daily counters (before %s)", removed, before_day_key)
        return removed
