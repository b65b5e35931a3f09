"""
Shared pytest fixtures: a controllable clock, scriptable provider adapters
and ready-made fingerprints/configs.
"""

import asyncio
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

import pytest

from config import EngineConfig, ProviderConfig
from errors import ProviderUnavailable
from schemas import Fingerprint, ProviderVerdict, RiskLevel
from utils.fingerprint import fingerprint_bytes

# 2026-01-01 12:00:00 UTC, minute aligned
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Outcome = Union[ProviderVerdict, Exception]


class FakeAdapter:
    """Async adapter returning scripted outcomes; the last one repeats."""

    def __init__(self, name: str, *outcomes: Outcome, delay: float = 0.0):
        self.name = name
        self.outcomes: List[Outcome] = list(outcomes) or [verdict(name, False)]
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.cancelled = 0
        self.healthy = True

    async def query(self, fingerprint: Fingerprint, timeout: float) -> ProviderVerdict:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.in_flight -= 1

    def health_check(self) -> bool:
        return self.healthy


class SlowSyncAdapter:
    """Blocking adapter that records how many of its calls run at once."""

    def __init__(self, name: str, seconds: float):
        self.name = name
        self.seconds = seconds
        self.calls = 0
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def query(self, fingerprint: Fingerprint, timeout: float) -> ProviderVerdict:
        with self._lock:
            self.calls += 1
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            time.sleep(self.seconds)
            return verdict(self.name, False)
        finally:
            with self._lock:
                self.running -= 1

    def health_check(self) -> bool:
        return True


def verdict(source: str, threat: bool, risk: RiskLevel = RiskLevel.LOW, confidence: float = 0.5,
            name: Optional[str] = None) -> ProviderVerdict:
    return ProviderVerdict(
        source=source,
        is_known_threat=threat,
        threat_name=name,
        risk_level=risk,
        confidence=confidence,
        description=f"{source} says {'threat' if threat else 'clean'}",
    )


def failure(name: str) -> ProviderUnavailable:
    return ProviderUnavailable(name, "connection refused")


def make_config(priorities: Dict[str, Optional[int]], **sections) -> EngineConfig:
    providers = {
        name: ProviderConfig(priority=p, timeout_seconds=1.0, cache_ttl_hours=24)
        for name, p in priorities.items()
    }
    return EngineConfig.model_validate({"providers": providers, **sections})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fp() -> Fingerprint:
    return fingerprint_bytes(b"MZ\x90\x00 sample payload")


@pytest.fixture
def other_fp() -> Fingerprint:
    return fingerprint_bytes(b"a different sample")
