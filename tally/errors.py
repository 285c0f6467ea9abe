"""
tally.errors — Exception hierarchy
===================================

Denials (unknown rule, one-time already claimed, daily cap reached) are
*not* errors; they come back as :class:`~tally.engine.award.Denied`
values.  Only genuine infrastructure or configuration faults raise.
"""

from __future__ import annotations


class TallyError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(TallyError):
    """A rule or tier definition is malformed.

    Raised at load time, before any award is evaluated against the bad
    configuration.
    """


class StoreUnavailableError(TallyError):
    """The counter/account store could not complete a unit of work.

    Nothing was committed.  The whole ``award`` call is safe to retry.
    """
