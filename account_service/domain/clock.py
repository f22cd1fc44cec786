from __future__ import annotations

import uuid
from datetime import datetime, timezone
from threading import Lock


class SystemClock:
    """UTC wall clock that never goes backwards within the process."""

    def __init__(self) -> None:
        self._last: datetime | None = None
        self._lock = Lock()

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        with self._lock:
            if self._last is not None and current < self._last:
                current = self._last
            self._last = current
        return current


def generate_id() -> str:
    """Return a random version-4 UUID string."""
    return str(uuid.uuid4())
