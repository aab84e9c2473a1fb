"""
Shared fixtures for Authorization Service tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from service_authorization.app.rules.models import AuthorizationContext

# Monday, 10:00 UTC
MONDAY_MORNING = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock returning a settable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock():
    """Clock frozen on a Monday morning."""
    return FrozenClock(MONDAY_MORNING)


@pytest.fixture
def make_context():
    """Factory for authorization contexts with sensible defaults."""
    def _make(**overrides):
        values = {
            "actor_id": "user-1",
            "tenant_id": "tenant-1",
            "resource": "documents",
            "action": "read",
            "timestamp": MONDAY_MORNING,
        }
        values.update(overrides)
        return AuthorizationContext(**values)
    return _make
