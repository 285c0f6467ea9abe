"""
Tally — A Points & Leveling Engine
===================================
Awards points for user actions under per-action daily caps and one-time
constraints, accumulates a lifetime total per user, maps that total onto
an ordered tier ladder, and raises a level-transition event whenever a
user crosses a tier boundary.

Package layout::

    tally/
    ├── __main__.py        # CLI: seed / award / summary
    ├── app.py             # Wiring: store + catalog + notifiers
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # TallyError hierarchy
    ├── seeds/             # Default rules.yaml + levels.yaml
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # Rules, levels, accounts, ledger, counters
    │   └── seed.py        # Idempotent rule/level upsert from YAML
    ├── engine/
    │   ├── rules.py       # ActionRule + RuleRegistry (atomic swap)
    │   ├── levels.py      # LevelTier, TierLadder, LevelResolver
    │   ├── counters.py    # CounterStore contract + in-memory store
    │   ├── events.py      # LevelTransition + notifiers
    │   └── award.py       # AwardEngine → AwardResult
    └── services/
        ├── catalog.py         # YAML/DB → registry + ladder, reload hooks
        ├── sql_store.py       # SQL-backed CounterStore
        ├── admin_service.py   # Rule/level upserts + catalog refresh
        ├── notification_service.py  # Persisted level-up notifications
        └── points_service.py  # Summary, history, leaderboard reads
"""

__version__ = "0.1.0"
