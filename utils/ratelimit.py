"""Per-provider request quotas over fixed minute and UTC-day windows.

``try_acquire`` never blocks and never retries: it either consumes one unit
from both windows or consumes nothing and returns False.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from schemas import RateLimitStatus

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    ceiling: int
    align: Callable[[float], float]
    next_start: Callable[[float], float]
    start: float = 0.0
    used: int = 0

    def roll(self, now: float) -> None:
        if now >= self.next_start(self.start):
            self.start = self.align(now)
            self.used = 0

    @property
    def resets_at(self) -> float:
        return self.next_start(self.start)

    @property
    def remaining(self) -> int:
        return max(0, self.ceiling - self.used)


def _minute_start(ts: float) -> float:
    return ts - (ts % 60)


def _day_start(ts: float) -> float:
    d = datetime.fromtimestamp(ts, tz=timezone.utc)
    return d.replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


def _minute_end(start: float) -> float:
    return start + 60


def _day_end(start: float) -> float:
    return (datetime.fromtimestamp(start, tz=timezone.utc) + timedelta(days=1)).timestamp()


class _ProviderQuota:
    def __init__(self, per_minute: int, per_day: int, now: float):
        self.minute = _Window(per_minute, _minute_start, _minute_end, _minute_start(now))
        self.day = _Window(per_day, _day_start, _day_end, _day_start(now))

    def roll(self, now: float) -> None:
        self.minute.roll(now)
        self.day.roll(now)


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._quotas: Dict[str, _ProviderQuota] = {}

    def configure(self, provider: str, requests_per_minute: int, requests_per_day: int) -> None:
        with self._lock:
            self._quotas[provider] = _ProviderQuota(
                requests_per_minute, requests_per_day, self._clock()
            )

    def try_acquire(self, provider: str) -> bool:
        with self._lock:
            quota = self._quotas.get(provider)
            if quota is None:
                return True
            quota.roll(self._clock())
            if quota.day.remaining <= 0:
                logger.debug(f"{provider}: daily quota spent ({quota.day.ceiling}/day)")
                return False
            if quota.minute.remaining <= 0:
                logger.debug(f"{provider}: minute quota spent ({quota.minute.ceiling}/min)")
                return False
            quota.minute.used += 1
            quota.day.used += 1
            return True

    def status(self, provider: str) -> RateLimitStatus:
        with self._lock:
            quota = self._quotas.get(provider)
            if quota is None:
                return RateLimitStatus(provider=provider)
            quota.roll(self._clock())
            return RateLimitStatus(
                provider=provider,
                requests_per_minute=quota.minute.ceiling,
                requests_per_day=quota.day.ceiling,
                remaining_per_minute=quota.minute.remaining,
                remaining_per_day=quota.day.remaining,
                minute_resets_at=_as_dt(quota.minute.resets_at),
                day_resets_at=_as_dt(quota.day.resets_at),
            )


def _as_dt(ts: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts is not None else None
