"""
tally.services.notification_service — Persisted Level-Up Notifications
=======================================================================

The in-app "database" channel for level transitions: each event becomes
one ``points_notifications`` row that the surrounding application can
list and mark read.  Push, mail and broadcast delivery are out of scope.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from tally.database.engine import get_session
from tally.database.models import PointsNotification
from tally.engine.events import LevelTransition

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class SqlNotifier:
    """TransitionNotifier that writes a notification row per level-up.

    Runs in its own transaction after the award has committed, so a
    failure here can never undo the points.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def notify(self, event: LevelTransition) -> None:
        with get_session(self._engine) as session:
            session.add(PointsNotification(
                user_id=event.user_id,
                type="level_up",
                payload=event.to_payload(),
            ))
        logger.debug("Stored level-up notification for user %s", event.user_id)


def list_notifications(
    engine: Engine, user_id: int, *, unread_only: bool = False, limit: int = 20
) -> list[dict]:
    """Newest-first notifications for *user_id*, as plain dicts."""
    stmt = select(PointsNotification).where(PointsNotification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(PointsNotification.read_at.is_(None))
    stmt = stmt.order_by(PointsNotification.id.desc()).limit(limit)

    with Session(engine) as session:
        return [
            {
                "id": n.id,
                "type": n.type,
                "payload": n.payload,
                "read": n.read_at is not None,
            }
            for n in session.scalars(stmt).all()
        ]


def mark_read(engine: Engine, user_id: int, notification_ids: list[int] | None = None) -> int:
    """Mark notifications read.  ``None`` marks all of the user's unread ones."""
    stmt = (
        update(PointsNotification)
        .where(
            PointsNotification.user_id == user_id,
            PointsNotification.read_at.is_(None),
        )
        .values(read_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    if notification_ids is not None:
        stmt = stmt.where(PointsNotification.id.in_(notification_ids))
    with Session(engine) as session:
        result = session.execute(stmt)
        session.commit()
    return result.rowcount or 0
