"""Engine configuration: TOML file merged over defaults, validated with pydantic."""

import os
import tomllib
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from errors import EngineConfigurationError
from schemas import RiskLevel

SUPPORTED_PROVIDERS = ["virustotal", "malwarebazaar", "otx"]

API_KEY_ENV = {
    "virustotal": "VIRUSTOTAL_API_KEY",
    "malwarebazaar": "MALWAREBAZAAR_API_KEY",
    "otx": "OTX_API_KEY",
}


class RateLimitConfig(BaseModel):
    requests_per_minute: int = Field(default=10, ge=0)
    requests_per_day: int = Field(default=1000, ge=0)


class ProviderConfig(BaseModel):
    enabled: bool = True
    api_key: str = ""
    base_url: Optional[str] = None  # adapter default when unset
    priority: Optional[int] = None  # lower wins; unset ranks last
    timeout_seconds: float = Field(default=15.0, gt=0)
    retries: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=1.5, ge=0)
    cache_ttl_hours: float = Field(default=12.0, ge=0)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 3600.0


class CircuitBreakerConfig(BaseModel):
    enabled: bool = True
    failure_threshold: int = Field(default=5, ge=1)
    cooldown_seconds: float = Field(default=300.0, ge=0)


class CacheConfig(BaseModel):
    enabled: bool = True
    max_entries: int = Field(default=10000, ge=1)


class EngineSettings(BaseModel):
    max_concurrent_calls: int = Field(default=3, ge=1)
    call_timeout_seconds: Optional[float] = None  # falls back to provider timeout
    maintenance_interval_seconds: float = Field(default=900.0, gt=0)


class HeuristicsConfig(BaseModel):
    enabled: bool = True
    known_bad: Dict[str, str] = {}  # digest -> threat name
    known_bad_risk: RiskLevel = RiskLevel.HIGH

    @field_validator("known_bad_risk", mode="before")
    @classmethod
    def _risk_by_name(cls, v):
        if isinstance(v, str):
            try:
                return RiskLevel[v.strip().upper()]
            except KeyError:
                raise ValueError(f"unknown risk level: {v!r}") from None
        return v


class EngineConfig(BaseModel):
    providers: Dict[str, ProviderConfig] = {}
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    heuristics: HeuristicsConfig = Field(default_factory=HeuristicsConfig)

    def provider(self, name: str) -> ProviderConfig:
        # unconfigured providers run with defaults and rank last
        return self.providers.get(name) or ProviderConfig()


def default_config() -> Dict:
    """Defaults mirror the per-source settings the scanner shipped with."""
    return {
        "providers": {
            "virustotal": {
                "priority": 1,
                "timeout_seconds": 30,
                "cache_ttl_hours": 24,
                "rate_limit": {"requests_per_minute": 4, "requests_per_day": 500},
            },
            "malwarebazaar": {
                "priority": 2,
                "timeout_seconds": 15,
                "cache_ttl_hours": 12,
                "rate_limit": {"requests_per_minute": 10, "requests_per_day": 1000},
            },
            "otx": {
                "priority": 3,
                "timeout_seconds": 20,
                "cache_ttl_hours": 6,
                "rate_limit": {"requests_per_minute": 10, "requests_per_day": 1000},
            },
        },
        "circuit_breaker": {},
        "cache": {},
        "engine": {},
        "heuristics": {},
    }


def load_config(path: str = "config.toml") -> EngineConfig:
    """Load config.toml if present; otherwise return sane defaults."""
    cfg = default_config()
    if os.path.exists(path):
        try:
            with open(path, "rb") as f:
                user = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise EngineConfigurationError(f"cannot parse {path}: {e}") from e
        # shallow merge, one level deeper for per-provider tables
        for k, v in user.items():
            if k == "providers" and isinstance(v, dict):
                for name, pv in v.items():
                    cfg["providers"].setdefault(name, {}).update(pv)
            elif isinstance(v, dict) and k in cfg:
                cfg[k].update(v)
            else:
                cfg[k] = v

    for name, env in API_KEY_ENV.items():
        prov = cfg["providers"].get(name)
        if prov is not None and not prov.get("api_key") and os.environ.get(env):
            prov["api_key"] = os.environ[env]

    try:
        return EngineConfig.model_validate(cfg)
    except ValidationError as e:
        raise EngineConfigurationError(f"invalid configuration in {path}: {e}") from e
