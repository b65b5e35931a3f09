"""
Exception types for the threat intelligence engine.

Provider-level errors are raised by adapters and recovered by the dispatcher;
they never reach the caller of ``ThreatIntelEngine.assess``.
"""

from typing import Any, Dict, Optional


class ThreatIntelError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


class EngineConfigurationError(ThreatIntelError):
    """Raised when the engine cannot produce any verdict with its configuration."""


class ProviderError(ThreatIntelError):
    """Base class for failures scoped to a single provider."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class ProviderUnavailable(ProviderError):
    """Network, auth or response-format failure."""


class ProviderTimeout(ProviderError):
    """The provider did not answer within the per-call timeout."""

    def __init__(self, provider: str, timeout: float):
        super().__init__(provider, f"timed out after {timeout:.1f}s")
        self.timeout = timeout


class RateLimitExceeded(ProviderError):
    """The provider's minute or day quota is spent."""


class CircuitOpen(ProviderError):
    """The provider's circuit breaker refused the call."""

    def __init__(self, provider: str, cooldown_remaining: float):
        super().__init__(provider, f"circuit open, retry in {cooldown_remaining:.1f}s")
        self.cooldown_remaining = cooldown_remaining


class ConfigurationMissing(ProviderError):
    """An enabled provider lacks something it needs, e.g. credentials."""
