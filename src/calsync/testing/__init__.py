"""Test support utilities for the calsync package.

Nothing here depends on pytest, so the helpers can be imported from any test
context.
"""

from calsync.testing.fake_provider import (
    FakeProviderClient,
    all_day_event,
    removed_event,
    timed_event,
)
from calsync.testing.memory_store import InMemoryCalendarStore

__all__ = [
    "FakeProviderClient",
    "InMemoryCalendarStore",
    "all_day_event",
    "removed_event",
    "timed_event",
]
