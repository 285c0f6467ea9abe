"""
tally.engine.events — LevelTransition & Notifiers
==================================================

The engine emits a :class:`LevelTransition` whenever an award moves a
user into a new tier.  Delivery is somebody else's job: anything with a
``notify(event)`` method can be plugged in as the
:class:`TransitionNotifier`.  The engine isolates notifier failures, so
a broken channel never rolls back the points that triggered it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

__all__ = [
    "CallbackNotifier",
    "FanoutNotifier",
    "LevelTransition",
    "LoggingNotifier",
    "NullNotifier",
    "TransitionNotifier",
]


@dataclass(frozen=True, slots=True)
class LevelTransition:
    """A user crossed into a new tier."""

    user_id: int
    old_level: int
    new_level: int
    tier_name: str
    description: str = ""
    rewards: Mapping[str, Any] = field(default_factory=dict)
    total_points: int = 0
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, Any]:
        """Flat dict for persistence or broadcast."""
        return {
            "type": "level_up",
            "user_id": self.user_id,
            "previous_level": self.old_level,
            "level": self.new_level,
            "level_name": self.tier_name,
            "description": self.description,
            "rewards": dict(self.rewards),
            "total_points": self.total_points,
            "occurred_at": self.occurred_at.isoformat(),
        }


@runtime_checkable
class TransitionNotifier(Protocol):
    def notify(self, event: LevelTransition) -> None: ...


class NullNotifier:
    """Drops every event."""

    def notify(self, event: LevelTransition) -> None:
        return None


class LoggingNotifier:
    """Writes each transition to the log.  Default when nothing else is wired."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def notify(self, event: LevelTransition) -> None:
        logger.log(
            self.level,
            "User %s reached level %d (%s) at %d points",
            event.user_id, event.new_level, event.tier_name, event.total_points,
        )


class CallbackNotifier:
    """Adapts a plain callable to the notifier protocol."""

    def __init__(self, callback: Callable[[LevelTransition], Any]) -> None:
        self._callback = callback

    def notify(self, event: LevelTransition) -> None:
        self._callback(event)


class FanoutNotifier:
    """Delivers to several notifiers; one failing channel does not stop the rest."""

    def __init__(self, notifiers: Iterable[TransitionNotifier]) -> None:
        self._notifiers = list(notifiers)

    def notify(self, event: LevelTransition) -> None:
        for notifier in self._notifiers:
            try:
                notifier.notify(event)
            except Exception:
                logger.exception(
                    "Notifier %s failed for user %s level %d",
                    type(notifier).__name__, event.user_id, event.new_level,
                )
