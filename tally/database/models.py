"""
tally.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- points_rules            — ActionRule definitions keyed by action_type
- points_levels           — Tier ladder keyed by level
- user_points             — Lifetime total + cached level per user
- points_transactions     — Append-only award ledger
- points_one_time_claims  — One row per (user, one-time action) ever credited
- points_daily_counters   — One row per (user, action, day) with a count
- points_notifications    — Persisted level-up notifications
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Tally ORM models."""


# ---------------------------------------------------------------------------
# Configuration tables
# ---------------------------------------------------------------------------
class PointsRule(Base):
    __tablename__ = "points_rules"

    action_type: Mapped[str] = mapped_column(String(100), primary_key=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_one_time: Mapped[bool] = mapped_column(Boolean, default=False)
    daily_limit: Mapped[int] = mapped_column(Integer, default=0)
    category: Mapped[str | None] = mapped_column(String(50), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("daily_limit >= 0", name="ck_points_rules_daily_limit"),
    )

    def __repr__(self) -> str:
        return f"<PointsRule {self.action_type!r} points={self.points}>"


class PointsLevel(Base):
    __tablename__ = "points_levels"

    level: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    points_required: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    rewards: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        CheckConstraint("points_required >= 0", name="ck_points_levels_required"),
    )

    def __repr__(self) -> str:
        return f"<PointsLevel {self.level} {self.name!r} @ {self.points_required}>"


# ---------------------------------------------------------------------------
# Accounts & ledger
# ---------------------------------------------------------------------------
class UserPoints(Base):
    __tablename__ = "user_points"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    total_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("total_points >= 0", name="ck_user_points_total"),
        Index("ix_user_points_total_desc", "total_points"),
    )

    def __repr__(self) -> str:
        return f"<UserPoints user={self.user_id} total={self.total_points}>"


class PointsTransaction(Base):
    __tablename__ = "points_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_points.user_id", ondelete="CASCADE"), nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    day_key: Mapped[str] = mapped_column(String(10), nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(100), default=None)
    reference_id: Mapped[str | None] = mapped_column(String(100), default=None)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_points_tx_user_action_day", "user_id", "action_type", "day_key"),
        Index("ix_points_tx_user_time", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PointsTransaction id={self.id} user={self.user_id} "
            f"{self.action_type} +{self.points}>"
        )


# ---------------------------------------------------------------------------
# Atomic counters — uniqueness is enforced by the primary keys
# ---------------------------------------------------------------------------
class OneTimeClaim(Base):
    __tablename__ = "points_one_time_claims"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    action_type: Mapped[str] = mapped_column(String(100), primary_key=True)
    claimed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class DailyCounter(Base):
    __tablename__ = "points_daily_counters"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    action_type: Mapped[str] = mapped_column(String(100), primary_key=True)
    day_key: Mapped[str] = mapped_column(String(10), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_points_daily_counters_day", "day_key"),
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
class PointsNotification(Base):
    __tablename__ = "points_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="level_up")
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<PointsNotification id={self.id} user={self.user_id} type={self.type}>"
