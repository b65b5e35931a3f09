"""
Per-query fan-out to threat intelligence providers.

For one fingerprint the coordinator serves cache hits, filters the remaining
providers through their circuit breaker and rate limiter, and calls the
survivors concurrently under a global concurrency cap and a per-call timeout.
Sync adapters run on the engine's own thread pool and hold their slot until
the thread returns, so abandoned calls still count against the cap.
The join waits for every call; one provider failing never cancels another.
Cancelling the task that awaits ``collect`` cancels every in-flight call.
"""

import asyncio
import inspect
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

from config import CircuitBreakerConfig, EngineConfig
from errors import (
    CircuitOpen,
    ConfigurationMissing,
    ProviderError,
    ProviderTimeout,
    RateLimitExceeded,
)
from providers import ProviderAdapter
from schemas import Fingerprint, ProviderVerdict, SourceOutcome, SourceStatus
from utils.breaker import CircuitBreaker
from utils.cache import VerdictCache
from utils.ratelimit import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """Shared mutable state for one engine instance.

    Lives exactly as long as the engine; nothing here is module-global.
    """

    cache: VerdictCache
    rate_limiter: RateLimiter
    breakers: Dict[str, CircuitBreaker]
    semaphore: asyncio.Semaphore
    executor: ThreadPoolExecutor
    last_errors: Dict[str, str] = field(default_factory=dict)
    breaker_settings: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    clock: Callable[[], float] = time.time

    @classmethod
    def from_config(cls, config: EngineConfig, clock: Callable[[], float] = time.time) -> "EngineContext":
        limiter = RateLimiter(clock=clock)
        for name, pcfg in config.providers.items():
            limiter.configure(
                name, pcfg.rate_limit.requests_per_minute, pcfg.rate_limit.requests_per_day
            )
        ctx = cls(
            cache=VerdictCache(
                max_entries=config.cache.max_entries, enabled=config.cache.enabled, clock=clock
            ),
            rate_limiter=limiter,
            breakers={},
            semaphore=asyncio.Semaphore(config.engine.max_concurrent_calls),
            executor=ThreadPoolExecutor(
                max_workers=config.engine.max_concurrent_calls, thread_name_prefix="intel-provider"
            ),
            breaker_settings=config.circuit_breaker,
            clock=clock,
        )
        for name in config.providers:
            ctx.breaker(name)
        return ctx

    def breaker(self, provider: str) -> CircuitBreaker:
        if provider not in self.breakers:
            cb = self.breaker_settings
            self.breakers[provider] = CircuitBreaker(
                provider,
                failure_threshold=cb.failure_threshold,
                cooldown_seconds=cb.cooldown_seconds,
                enabled=cb.enabled,
                clock=self.clock,
            )
        return self.breakers[provider]

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)


@dataclass
class DispatchResult:
    verdicts: Dict[str, ProviderVerdict] = field(default_factory=dict)
    outcomes: Dict[str, SourceOutcome] = field(default_factory=dict)

    def record(self, provider: str, status: SourceStatus, detail: Optional[str] = None,
               verdict: Optional[ProviderVerdict] = None) -> None:
        self.outcomes[provider] = SourceOutcome(provider=provider, status=status, detail=detail)
        if verdict is not None:
            self.verdicts[provider] = verdict


class DispatchCoordinator:
    def __init__(self, context: EngineContext, adapters: Mapping[str, ProviderAdapter],
                 config: EngineConfig):
        self.context = context
        self.adapters = dict(adapters)
        self.config = config

    @property
    def provider_names(self) -> List[str]:
        names = list(self.config.providers)
        names.extend(n for n in self.adapters if n not in self.config.providers)
        return names

    def call_timeout(self, provider: str) -> float:
        return self.config.engine.call_timeout_seconds or self.config.provider(provider).timeout_seconds

    async def collect(self, fingerprint: Fingerprint) -> DispatchResult:
        ctx = self.context
        result = DispatchResult()
        dispatch: List[str] = []

        for name in self.provider_names:
            pcfg = self.config.provider(name)
            adapter = self.adapters.get(name)
            if not pcfg.enabled or adapter is None:
                result.record(name, SourceStatus.DISABLED)
                continue

            cached = ctx.cache.get(fingerprint, name)
            if cached is not None:
                logger.debug(f"{name}: cache hit for {fingerprint.short()}")
                result.record(name, SourceStatus.CACHED, verdict=cached)
                continue

            if getattr(adapter, "requires_api_key", False) and not pcfg.api_key:
                err = ConfigurationMissing(name, "API key is not configured")
                result.record(name, SourceStatus.MISCONFIGURED, str(err))
                continue

            breaker = ctx.breaker(name)
            if not breaker.allow_request():
                err = CircuitOpen(name, breaker.cooldown_remaining())
                logger.debug(f"Skipping {err}")
                result.record(name, SourceStatus.CIRCUIT_OPEN, str(err))
                continue

            if not ctx.rate_limiter.try_acquire(name):
                breaker.release()
                err = RateLimitExceeded(name, "request quota exhausted")
                logger.debug(f"Skipping {err}")
                result.record(name, SourceStatus.RATE_LIMITED, str(err))
                continue

            dispatch.append(name)

        if dispatch:
            await asyncio.gather(*(self._call(name, fingerprint, result) for name in dispatch))
        return result

    async def _call(self, name: str, fingerprint: Fingerprint, result: DispatchResult) -> None:
        ctx = self.context
        adapter = self.adapters[name]
        breaker = ctx.breaker(name)
        timeout = self.call_timeout(name)
        try:
            verdict = await self._invoke(adapter, fingerprint, timeout)
        except asyncio.CancelledError:
            breaker.release()
            raise
        except asyncio.TimeoutError:
            self._failed(name, SourceStatus.TIMEOUT, ProviderTimeout(name, timeout), result)
        except ConfigurationMissing as e:
            breaker.release()
            result.record(name, SourceStatus.MISCONFIGURED, str(e))
        except ProviderTimeout as e:
            self._failed(name, SourceStatus.TIMEOUT, e, result)
        except ProviderError as e:
            self._failed(name, SourceStatus.UNAVAILABLE, e, result)
        except Exception as e:
            logger.exception(f"Adapter {name} raised unexpectedly")
            self._failed(name, SourceStatus.UNAVAILABLE, e, result)
        else:
            ctx.cache.put(fingerprint, name, verdict, self.config.provider(name).cache_ttl_seconds)
            breaker.record_success()
            ctx.last_errors.pop(name, None)
            result.record(name, SourceStatus.RESPONDED, verdict=verdict)

    def _failed(self, name: str, status: SourceStatus, error: Exception,
                result: DispatchResult) -> None:
        logger.warning(f"Provider {name} failed: {error}")
        self.context.breaker(name).record_failure()
        self.context.last_errors[name] = str(error)
        result.record(name, status, str(error))

    async def _invoke(self, adapter: ProviderAdapter, fingerprint: Fingerprint,
                      timeout: float) -> ProviderVerdict:
        """Run one query inside a concurrency slot, bounded by ``timeout``.

        Coroutine adapters are cancelled on timeout and give their slot back
        at once. A worker thread cannot be interrupted, so a sync query keeps
        its slot until the thread has returned, even after the caller stopped
        waiting for it.
        """
        ctx = self.context
        await ctx.semaphore.acquire()
        if inspect.iscoroutinefunction(adapter.query):
            try:
                return await asyncio.wait_for(adapter.query(fingerprint, timeout), timeout)
            finally:
                ctx.semaphore.release()
        try:
            work = asyncio.get_running_loop().run_in_executor(
                ctx.executor, adapter.query, fingerprint, timeout
            )
        except BaseException:
            ctx.semaphore.release()
            raise
        work.add_done_callback(self._work_done)
        return await asyncio.wait_for(asyncio.shield(work), timeout)

    def _work_done(self, work: asyncio.Future) -> None:
        self.context.semaphore.release()
        if not work.cancelled():
            # consumed here so an abandoned failure is not reported as unretrieved
            work.exception()
