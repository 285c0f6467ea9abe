"""
tally.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for deployment settings (seed location, day
boundary, lock tuning).  Secrets such as ``DATABASE_URL`` stay in the
environment / ``.env``.  Rules and levels themselves live in the seed
files and the database, not here.

Usage::

    from tally.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.day_timezone)      # "UTC"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


@dataclass(frozen=True, slots=True)
class TallyConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Where rules.yaml / levels.yaml live (None → the bundled tally/seeds/)
    seeds_dir: str | None = None

    # Calendar day used for daily limits
    day_timezone: str = "UTC"

    # "sql" (DATABASE_URL) or "memory" (single process, non-durable)
    store: str = "sql"

    # In-memory store tuning
    lock_shards: int = 64
    lock_timeout_seconds: float = 5.0

    # Level-up delivery channels: any of "log", "database"
    notify_channels: tuple[str, ...] = ("log", "database")


_VALID_STORES = frozenset({"sql", "memory"})
_VALID_CHANNELS = frozenset({"log", "database"})


def load_config(path: str | Path = "config.yaml") -> TallyConfig:
    """Read *path* and return a :class:`TallyConfig` instance.

    Missing keys fall back to the dataclass defaults.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a value is out of range or names an unknown timezone/store.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = TallyConfig()
    cfg = TallyConfig(
        seeds_dir=raw.get("seeds_dir", defaults.seeds_dir),
        day_timezone=str(raw.get("day_timezone", defaults.day_timezone)),
        store=str(raw.get("store", defaults.store)).lower(),
        lock_shards=int(raw.get("lock_shards", defaults.lock_shards)),
        lock_timeout_seconds=float(
            raw.get("lock_timeout_seconds", defaults.lock_timeout_seconds)
        ),
        notify_channels=tuple(raw.get("notify_channels", defaults.notify_channels)),
    )
    _validate(cfg)
    return cfg


def _validate(cfg: TallyConfig) -> None:
    if cfg.store not in _VALID_STORES:
        raise ValueError(f"store must be one of {sorted(_VALID_STORES)}, got {cfg.store!r}")
    if cfg.lock_shards < 1:
        raise ValueError("lock_shards must be >= 1")
    if cfg.lock_timeout_seconds <= 0:
        raise ValueError("lock_timeout_seconds must be > 0")
    unknown = set(cfg.notify_channels) - _VALID_CHANNELS
    if unknown:
        raise ValueError(f"Unknown notify_channels: {sorted(unknown)}")
    if cfg.day_timezone.upper() != "UTC":
        try:
            ZoneInfo(cfg.day_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown day_timezone: {cfg.day_timezone!r}") from exc
