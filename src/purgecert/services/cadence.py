"""Policy cadence expressions and due-time computation.

Supported expressions:
    @hourly, @daily, @weekly, @monthly (30 days)
    every <n><unit>  with unit m (minutes), h (hours), d (days), w (weeks)

Everything here is pure so scheduling decisions can be tested without a
clock or a database.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

_NAMED_CADENCES = {
    "@hourly": timedelta(hours=1),
    "@daily": timedelta(days=1),
    "@weekly": timedelta(weeks=1),
    "@monthly": timedelta(days=30),
}

_EVERY_PATTERN = re.compile(r"^every\s+(\d+)\s*([mhdw])$")

_UNIT_KWARG = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}

MINIMUM_INTERVAL = timedelta(minutes=1)


class InvalidCadenceError(ValueError):
    """Raised when a cadence expression cannot be parsed."""

    def __init__(self, expression: str, reason: str = "unrecognized cadence") -> None:
        super().__init__(f"Invalid cadence {expression!r}: {reason}")
        self.expression = expression


def parse_cadence(expression: str) -> timedelta:
    """Convert a cadence expression into its interval.

    Raises:
        InvalidCadenceError: If the expression is not supported.
    """
    normalized = expression.strip().lower()
    if normalized in _NAMED_CADENCES:
        return _NAMED_CADENCES[normalized]

    match = _EVERY_PATTERN.match(normalized)
    if match is None:
        raise InvalidCadenceError(expression)

    amount = int(match.group(1))
    if amount < 1:
        raise InvalidCadenceError(expression, "interval must be positive")

    interval = timedelta(**{_UNIT_KWARG[match.group(2)]: amount})
    if interval < MINIMUM_INTERVAL:
        raise InvalidCadenceError(expression, "interval below one minute")
    return interval


@dataclass(frozen=True, slots=True)
class DueDecision:
    """Whether a policy is due now, and when it is (or was) due."""

    is_due: bool
    next_due_at: datetime


def due_at(cadence: str, last_run_ended: datetime | None, now: datetime) -> DueDecision:
    """Decide whether a policy with this cadence is due at `now`.

    A policy that never ran is due immediately. Otherwise it is due once a
    full interval has elapsed since its last run ended, so a long run
    pushes the next one back instead of eating into the interval.
    """
    if last_run_ended is None:
        return DueDecision(is_due=True, next_due_at=now)

    next_due = last_run_ended + parse_cadence(cadence)
    return DueDecision(is_due=next_due <= now, next_due_at=next_due)
