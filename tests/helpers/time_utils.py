from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone


@dataclass
class ManualClock:
    """Deterministic clock that only moves when told to."""

    _current: datetime = field(default_factory=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc))

    def __call__(self) -> datetime:
        return self._current

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        self._current += delta if delta is not None else timedelta(**kwargs)
        return self._current
