"""Wall-clock helpers.

Timestamps are naive UTC throughout the service so they compare cleanly with
values read back from the database. Components that reason about time take a
``Clock`` so tests can pin "now".
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
