"""Test support utilities for the calsync package.

All public symbols are purely functional and have no hard dependency on
pytest itself so they can be imported safely in any test context.
"""

from __future__ import annotations

from calsync.testing.fakes import (
    FakeCalendarProvider,
    FakeTaskProvider,
    remote_all_day,
    remote_event,
)

__all__ = ["FakeCalendarProvider", "FakeTaskProvider", "remote_all_day", "remote_event"]
