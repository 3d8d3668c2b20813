from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from random import Random

BASE_TIME = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@dataclass
class TimeGenerator:
    """Deterministic clock that moves forward by a random-ish gap on every call."""

    _current: datetime | None = None
    _rng: Random = field(default_factory=lambda: Random(0))
    _seed: int = 0

    def __call__(self) -> datetime:
        return self.next()

    def next(self) -> datetime:
        if self._current is None:
            self._current = BASE_TIME
        self._current += timedelta(seconds=self._rng.randint(5, 60))
        return self._current

    def reset(self) -> None:
        self._current = None
        self._rng = Random(self._seed)


class ManualClock:
    """Clock that stands still until the test moves it."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now += delta
        return self.now
