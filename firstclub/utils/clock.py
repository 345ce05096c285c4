"""
Wall-clock source for expiry and scheduling computations.

All timestamps in the membership service are naive UTC, matching the
``datetime.utcnow`` defaults on the models. The active clock lives in
``app.extensions['membership_clock']`` so tests can swap it.
"""
from datetime import datetime, timezone

from flask import current_app


class SystemClock:
    """Real clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


def get_clock():
    """Return the clock installed on the current app."""
    return current_app.extensions['membership_clock']


def utcnow() -> datetime:
    """Current time according to the app clock."""
    return get_clock().now()
