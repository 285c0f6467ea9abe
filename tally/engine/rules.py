"""
tally.engine.rules — ActionRule & RuleRegistry
===============================================

The rule table is a read-only snapshot.  :meth:`RuleRegistry.reload`
builds a complete new mapping and swaps the reference under a lock, so a
caller either sees the whole old table or the whole new one, never a mix.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from tally.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["ActionRule", "RuleRegistry"]


@dataclass(frozen=True, slots=True)
class ActionRule:
    """How many points an action is worth and how often it may be credited.

    ``daily_limit`` of 0 means unlimited per day; ``is_one_time`` takes
    precedence over ``daily_limit`` when both are set.
    """

    action_type: str
    points: int
    description: str = ""
    is_active: bool = True
    is_one_time: bool = False
    daily_limit: int = 0
    category: str | None = None

    @property
    def is_capped(self) -> bool:
        return not self.is_one_time and self.daily_limit > 0


class RuleRegistry:
    """Thread-safe, atomically reloadable table of :class:`ActionRule`.

    Usage::

        registry = RuleRegistry(rules)
        rule = registry.lookup("daily_login")   # None if unknown/inactive
        registry.reload(new_rules)              # whole-table swap
    """

    def __init__(self, rules: Iterable[ActionRule] = ()) -> None:
        self._lock = threading.Lock()
        self._rules: Mapping[str, ActionRule] = self._build(rules)

    @staticmethod
    def _build(rules: Iterable[ActionRule]) -> Mapping[str, ActionRule]:
        table: dict[str, ActionRule] = {}
        for rule in rules:
            if rule.action_type in table:
                raise ConfigurationError(
                    f"Duplicate action_type in rule set: {rule.action_type!r}"
                )
            if rule.daily_limit < 0:
                raise ConfigurationError(
                    f"daily_limit must be >= 0 for {rule.action_type!r}"
                )
            table[rule.action_type] = rule
        return MappingProxyType(table)

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def snapshot(self) -> Mapping[str, ActionRule]:
        """Return the current table.  It never changes after being returned."""
        with self._lock:
            return self._rules

    def lookup(self, action_type: str) -> ActionRule | None:
        """Return the active rule for *action_type*, or ``None``."""
        rule = self.snapshot().get(action_type)
        if rule is None or not rule.is_active:
            return None
        return rule

    def active_rules(self) -> list[ActionRule]:
        return [r for r in self.snapshot().values() if r.is_active]

    def __len__(self) -> int:
        return len(self.snapshot())

    def __contains__(self, action_type: object) -> bool:
        return action_type in self.snapshot()

    # -------------------------------------------------------------------
    # Reload
    # -------------------------------------------------------------------
    def reload(self, rules: Iterable[ActionRule]) -> None:
        """Replace the whole table.

        The new table is validated before the swap; on
        :class:`ConfigurationError` the old table stays in place.
        """
        table = self._build(rules)
        with self._lock:
            self._rules = table
        logger.info("Rule registry reloaded: %d rules", len(table))
