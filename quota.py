"""Daily call counters for costly external dependencies.

Each key (``market_data:<provider>``, ``inference``, ``email``) carries a
count and the next UTC midnight at which it resets.  Resets happen lazily on
the first touch past the boundary, so there is no background timer to manage.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Mapping, Optional

from errors import DailyLimitExceededError
from log_utils import setup_logger

logger = setup_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    """Return the first UTC midnight strictly after ``now``."""

    current = now.astimezone(timezone.utc)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


@dataclass
class _Counter:
    count: int
    reset_at: datetime


class QuotaCounters:
    """Process-wide daily counters, injected wherever a guarded call happens."""

    def __init__(self, caps: Mapping[str, int], *, clock: Optional[Clock] = None) -> None:
        self._caps: Dict[str, int] = {str(k): int(v) for k, v in caps.items()}
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._counters: Dict[str, _Counter] = {}

    def cap(self, key: str) -> int:
        return self._caps.get(key, 0)

    def _fresh(self, key: str, now: datetime) -> _Counter:
        counter = self._counters.get(key)
        if counter is None:
            counter = _Counter(count=0, reset_at=next_utc_midnight(now))
            self._counters[key] = counter
        elif now >= counter.reset_at:
            logger.info("Quota %s reset after %d calls", key, counter.count)
            counter.count = 0
            counter.reset_at = next_utc_midnight(now)
        return counter

    def touch(self, key: str, amount: int = 1) -> int:
        """Consume ``amount`` units of ``key`` or raise ``DailyLimitExceededError``.

        Returns the new count.  A cap of zero or less disables enforcement
        while still counting usage.
        """

        now = self._clock()
        with self._lock:
            counter = self._fresh(key, now)
            cap = self.cap(key)
            if cap > 0 and counter.count + amount > cap:
                raise DailyLimitExceededError(key, cap)
            counter.count += amount
            return counter.count

    def remaining(self, key: str) -> float:
        """Headroom left for ``key`` today (``inf`` when unenforced)."""

        now = self._clock()
        with self._lock:
            counter = self._fresh(key, now)
            cap = self.cap(key)
            if cap <= 0:
                return math.inf
            return max(0, cap - counter.count)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        now = self._clock()
        with self._lock:
            out: Dict[str, Dict[str, object]] = {}
            for key in sorted(set(self._caps) | set(self._counters)):
                counter = self._fresh(key, now)
                cap = self.cap(key)
                out[key] = {
                    "count": counter.count,
                    "cap": cap,
                    "remaining": None if cap <= 0 else max(0, cap - counter.count),
                    "reset_at": counter.reset_at.isoformat(),
                }
            return out


__all__ = ["QuotaCounters", "next_utc_midnight"]
