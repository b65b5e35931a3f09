import re
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

HEURISTIC_SOURCE = "LocalHeuristics"

_MD5 = re.compile(r"^[A-Fa-f0-9]{32}$")
_SHA256 = re.compile(r"^[A-Fa-f0-9]{64}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskLevel(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3


class Fingerprint(BaseModel):
    """Dual-digest identity of a scanned artifact; hashable, used as cache key."""

    model_config = ConfigDict(frozen=True)

    md5: str
    sha256: str

    @field_validator("md5")
    @classmethod
    def _check_md5(cls, v: str) -> str:
        v = v.strip()
        if not _MD5.match(v):
            raise ValueError(f"not an md5 digest: {v!r}")
        return v.lower()

    @field_validator("sha256")
    @classmethod
    def _check_sha256(cls, v: str) -> str:
        v = v.strip()
        if not _SHA256.match(v):
            raise ValueError(f"not a sha256 digest: {v!r}")
        return v.lower()

    @property
    def primary(self) -> str:
        return self.sha256

    def short(self) -> str:
        return self.sha256[:12]


class ProviderVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    is_known_threat: bool
    threat_name: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    description: str = ""
    query_time: datetime = Field(default_factory=utcnow)
    from_cache: bool = False

    def as_cached(self) -> "ProviderVerdict":
        return self.model_copy(update={"from_cache": True})


class SourceStatus(str, Enum):
    RESPONDED = "responded"
    CACHED = "cached"
    DISABLED = "disabled"
    MISCONFIGURED = "misconfigured"
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"

    @property
    def contributed(self) -> bool:
        return self in (SourceStatus.RESPONDED, SourceStatus.CACHED)


class SourceOutcome(BaseModel):
    provider: str
    status: SourceStatus
    detail: Optional[str] = None


class AggregatedVerdict(BaseModel):
    fingerprint: Fingerprint
    is_known_threat: bool
    risk_level: RiskLevel
    confidence: float = Field(ge=0.0, le=1.0)
    threat_name: Optional[str] = None
    description: str = ""
    source: str
    contributors: List[ProviderVerdict] = []
    outcomes: List[SourceOutcome] = []
    heuristic_only: bool = False
    live_consulted: bool = False
    assessed_at: datetime = Field(default_factory=utcnow)

    @property
    def sources(self) -> List[str]:
        return [v.source for v in self.contributors]

    @property
    def skipped(self) -> List[str]:
        return [o.provider for o in self.outcomes if not o.status.contributed]


class CacheEntry(BaseModel):
    verdict: ProviderVerdict
    expires_at: float  # epoch seconds


class CacheStatistics(BaseModel):
    total_entries: int = 0
    valid_entries: int = 0
    expired_entries: int = 0
    entries_by_source: Dict[str, int] = {}
    max_entries: int = 0
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        looked_up = self.hits + self.misses
        return self.hits / looked_up if looked_up else 0.0


class RateLimitStatus(BaseModel):
    provider: str
    requests_per_minute: Optional[int] = None  # None = unlimited
    requests_per_day: Optional[int] = None
    remaining_per_minute: Optional[int] = None
    remaining_per_day: Optional[int] = None
    minute_resets_at: Optional[datetime] = None
    day_resets_at: Optional[datetime] = None

    @property
    def is_limited(self) -> bool:
        return self.remaining_per_minute == 0 or self.remaining_per_day == 0


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitSnapshot(BaseModel):
    state: CircuitState
    consecutive_failures: int
    failure_threshold: int
    cooldown_seconds: float
    last_failure_at: Optional[datetime] = None
    cooldown_remaining: float = 0.0


class ProviderHealth(BaseModel):
    provider: str
    enabled: bool
    state: CircuitState
    circuit: CircuitSnapshot
    rate: RateLimitStatus
    last_error: Optional[str] = None
    healthy: Optional[bool] = None  # None until polled
    last_checked: Optional[datetime] = None


class EngineReport(BaseModel):
    generated_at: datetime
    total: int
    by_risk: Dict[str, int]
    assessments: List[AggregatedVerdict]
