import argparse
import asyncio
import csv
import inspect
import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from aggregator import Heuristic, ResultAggregator
from config import EngineConfig, load_config
from dispatcher import DispatchCoordinator, EngineContext
from errors import EngineConfigurationError
from providers import ProviderAdapter, get_provider
from providers.heuristics import LocalHeuristics
from schemas import AggregatedVerdict, EngineReport, Fingerprint, ProviderHealth
from utils.fingerprint import classify_digest, fingerprint_file, parse_fingerprint

logger = logging.getLogger(__name__)

FingerprintLike = Union[Fingerprint, str, Tuple[str, str]]


def build_adapters(config: EngineConfig) -> Dict[str, ProviderAdapter]:
    """Instantiate registered adapters for every enabled provider in config."""
    adapters: Dict[str, ProviderAdapter] = {}
    for name, pcfg in config.providers.items():
        if not pcfg.enabled:
            continue
        try:
            cls = get_provider(name)
        except KeyError:
            logger.warning(f"No adapter registered for provider {name!r}; ignoring it")
            continue
        adapters[name] = cls(pcfg)
    return adapters


def build_heuristic(config: EngineConfig) -> Optional[LocalHeuristics]:
    if not config.heuristics.enabled:
        return None
    return LocalHeuristics(config.heuristics.known_bad, config.heuristics.known_bad_risk)


class ThreatIntelEngine:
    """Aggregates verdicts from external providers for file fingerprints.

    Usage:
        async with ThreatIntelEngine(load_config()) as engine:
            verdict = await engine.assess(fingerprint)
    """

    def __init__(
        self,
        config: EngineConfig,
        adapters: Optional[Mapping[str, ProviderAdapter]] = None,
        heuristic: Optional[Heuristic] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.adapters = dict(adapters) if adapters is not None else build_adapters(config)
        self.heuristic = heuristic if heuristic is not None else build_heuristic(config)
        if not self.adapters and self.heuristic is None:
            raise EngineConfigurationError("no providers enabled and no local heuristic available")

        self.context = EngineContext.from_config(config, clock=clock)
        self.dispatcher = DispatchCoordinator(self.context, self.adapters, config)
        self.aggregator = ResultAggregator(
            {name: config.provider(name).priority for name in self.dispatcher.provider_names},
            self.heuristic,
        )
        self._health: Dict[str, Tuple[bool, datetime]] = {}
        self._maintenance: Optional[asyncio.Task] = None

    async def assess(self, fingerprint: FingerprintLike) -> AggregatedVerdict:
        """Return the merged verdict for one fingerprint.

        Cancelling the awaiting task cancels every in-flight provider call and
        re-raises CancelledError; no partial verdict is produced.
        """
        fp = parse_fingerprint(fingerprint)
        try:
            collected = await self.dispatcher.collect(fp)
        except asyncio.CancelledError:
            logger.info(f"Assessment of {fp.short()} cancelled")
            raise
        verdict = self.aggregator.aggregate(fp, collected.verdicts, collected.outcomes.values())
        logger.info(
            f"{fp.short()}: known_threat={verdict.is_known_threat} "
            f"risk={verdict.risk_level.name} confidence={verdict.confidence:.2f} "
            f"source={verdict.source}"
        )
        return verdict

    async def assess_many(self, fingerprints: Iterable[FingerprintLike]) -> List[AggregatedVerdict]:
        return list(await asyncio.gather(*(self.assess(fp) for fp in fingerprints)))

    def health_status(self) -> Dict[str, ProviderHealth]:
        status: Dict[str, ProviderHealth] = {}
        for name in self.dispatcher.provider_names:
            circuit = self.context.breaker(name).snapshot()
            healthy, checked = self._health.get(name, (None, None))
            status[name] = ProviderHealth(
                provider=name,
                enabled=self.config.provider(name).enabled and name in self.adapters,
                state=circuit.state,
                circuit=circuit,
                rate=self.context.rate_limiter.status(name),
                last_error=self.context.last_errors.get(name),
                healthy=healthy,
                last_checked=checked,
            )
        return status

    def invalidate_cache(self, fingerprint: Optional[FingerprintLike] = None) -> int:
        fp = parse_fingerprint(fingerprint) if fingerprint is not None else None
        return self.context.cache.invalidate(fp)

    async def check_health(self) -> Dict[str, bool]:
        """Poll every adapter's health check concurrently."""
        names = list(self.adapters)
        results = await asyncio.gather(
            *(self._probe(self.adapters[n]) for n in names)
        )
        now = datetime.now(timezone.utc)
        for name, ok in zip(names, results):
            self._health[name] = (ok, now)
        return dict(zip(names, results))

    async def _probe(self, adapter: ProviderAdapter) -> bool:
        try:
            if inspect.iscoroutinefunction(adapter.health_check):
                return bool(await adapter.health_check())
            return bool(await asyncio.to_thread(adapter.health_check))
        except Exception as e:
            logger.warning(f"Health check for {adapter.name} failed: {e}")
            return False

    async def run_maintenance(self) -> None:
        interval = self.config.engine.maintenance_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.context.cache.sweep()
            await self.check_health()

    def start(self) -> None:
        if self._maintenance is None:
            self._maintenance = asyncio.create_task(self.run_maintenance())

    async def aclose(self) -> None:
        if self._maintenance is not None:
            self._maintenance.cancel()
            try:
                await self._maintenance
            except asyncio.CancelledError:
                pass
            self._maintenance = None
        for adapter in self.adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                close()
        self.context.shutdown()

    async def __aenter__(self) -> "ThreatIntelEngine":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


def read_fingerprints(path: str) -> List[str]:
    """Read fingerprints from CSV (md5,sha256 per row) or JSON ([..] or {"fingerprints": [...]})"""
    if path.lower().endswith(".csv"):
        with open(path, newline="", encoding="utf-8") as f:
            rows = [row for row in csv.reader(f) if len(row) >= 2]
        # header rows and blank lines carry no digest
        return [":".join(c.strip() for c in row[:2]) for row in rows if classify_digest(row[0]) != "unknown"]
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("fingerprints", [])
    out = []
    for item in data:
        if isinstance(item, dict):
            out.append(f"{item.get('md5', '')}:{item.get('sha256', '')}")
        else:
            out.append(str(item).strip())
    return [x for x in out if x.strip(":")]


def build_report(verdicts: List[AggregatedVerdict]) -> EngineReport:
    by_risk: Dict[str, int] = {}
    for v in verdicts:
        key = v.risk_level.name if v.is_known_threat else "CLEAN"
        by_risk[key] = by_risk.get(key, 0) + 1
    return EngineReport(
        generated_at=datetime.now(timezone.utc),
        total=len(verdicts),
        by_risk=by_risk,
        assessments=verdicts,
    )


def to_markdown(report: EngineReport) -> str:
    lines: List[str] = []
    lines.append(f"# Threat Intelligence Report\n\nGenerated: {report.generated_at.isoformat()}\n")
    lines.append(f"Total: {report.total} | By Risk: {report.by_risk}\n")
    for a in report.assessments:
        label = a.threat_name or ("known threat" if a.is_known_threat else "not a known threat")
        lines.append(f"## {a.fingerprint.sha256}")
        lines.append(
            f"- **verdict** → {label}, risk: {a.risk_level.name}, "
            f"confidence: {a.confidence:.2f}, source: {a.source}"
        )
        if a.heuristic_only:
            lines.append("- heuristic only, no external confirmation")
        for o in a.outcomes:
            detail = f" ({o.detail})" if o.detail else ""
            lines.append(f"  - {o.provider}: {o.status.value}{detail}")
        lines.append("")
    return "\n".join(lines)


def health_to_markdown(health: Mapping[str, ProviderHealth]) -> str:
    lines = ["# Provider Health\n"]
    for name, h in health.items():
        rate = h.rate
        lines.append(
            f"- **{name}** → enabled: {h.enabled}, circuit: {h.state.value}, "
            f"healthy: {h.healthy}, remaining/min: {rate.remaining_per_minute}, "
            f"remaining/day: {rate.remaining_per_day}, last error: {h.last_error or 'none'}"
        )
    return "\n".join(lines)


def ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


async def _run(args: argparse.Namespace, cfg: EngineConfig) -> int:
    targets: List[FingerprintLike] = list(args.hash or [])
    targets.extend(fingerprint_file(p) for p in args.file or [])
    if args.input:
        targets.extend(read_fingerprints(args.input))

    async with ThreatIntelEngine(cfg) as engine:
        if args.health:
            await engine.check_health()
            print(health_to_markdown(engine.health_status()))
            if not targets:
                return 0
        if not targets:
            print("nothing to assess: pass --hash, --file or --input", file=sys.stderr)
            return 2
        verdicts = await engine.assess_many(targets)

    report = build_report(verdicts)
    ensure_parent(args.out_json)
    ensure_parent(args.out_md)
    with open(args.out_json, "w", encoding="utf-8") as f:
        f.write(report.model_dump_json(indent=2))
    with open(args.out_md, "w", encoding="utf-8") as f:
        f.write(to_markdown(report))

    print(f"Saved → {args.out_json}\nSaved → {args.out_md}")
    return 1 if any(v.is_known_threat for v in verdicts) else 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Threat Intelligence Aggregation Engine")
    ap.add_argument("--hash", action="append", help="md5:sha256 fingerprint (repeatable)")
    ap.add_argument("--file", action="append", help="File to fingerprint and assess (repeatable)")
    ap.add_argument("--input", help="CSV or JSON list of fingerprints")
    ap.add_argument("--config", default="config.toml")
    ap.add_argument("--out-json", default="out/verdicts.json")
    ap.add_argument("--out-md", default="out/summary.md")
    ap.add_argument("--health", action="store_true", help="Poll providers and print their health")
    ap.add_argument("--log-level", default="WARNING")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        cfg = load_config(args.config)
        return asyncio.run(_run(args, cfg))
    except (EngineConfigurationError, OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
