"""
Deterministic merge of provider verdicts into one AggregatedVerdict.

Verdicts are ranked by a total provider order: configured priorities first
(lower number wins), then unranked providers by name. Arrival order never
matters.

- any positive: the highest-ranked positive supplies threat name, risk level
  and source; confidence is the maximum among the positives that agree with
  it on risk level (agreement reinforces, it is never averaged)
- only negatives: not a known threat, confidence of the highest-ranked one
- nothing at all: the local heuristic decides, flagged heuristic_only
"""

from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from errors import EngineConfigurationError
from schemas import (
    HEURISTIC_SOURCE,
    AggregatedVerdict,
    Fingerprint,
    ProviderVerdict,
    RiskLevel,
    SourceOutcome,
    SourceStatus,
)


class Heuristic(Protocol):
    def evaluate(self, fingerprint: Fingerprint) -> ProviderVerdict: ...


class ResultAggregator:
    def __init__(self, priorities: Mapping[str, Optional[int]],
                 heuristic: Optional[Heuristic] = None):
        self.priorities = dict(priorities)
        self.heuristic = heuristic

    def rank(self, provider: str) -> Tuple[int, int, str]:
        p = self.priorities.get(provider)
        if p is None:
            return (1, 0, provider)
        return (0, p, provider)

    def ordered(self, verdicts: Mapping[str, ProviderVerdict]) -> List[ProviderVerdict]:
        return [verdicts[name] for name in sorted(verdicts, key=self.rank)]

    def aggregate(self, fingerprint: Fingerprint, verdicts: Mapping[str, ProviderVerdict],
                  outcomes: Iterable[SourceOutcome] = ()) -> AggregatedVerdict:
        outcome_list = sorted(outcomes, key=lambda o: self.rank(o.provider))
        live = any(o.status is SourceStatus.RESPONDED for o in outcome_list)
        ranked = self.ordered(verdicts)

        if not ranked:
            return self._heuristic_only(fingerprint, outcome_list)

        positives = [v for v in ranked if v.is_known_threat]
        if positives:
            top = positives[0]
            return AggregatedVerdict(
                fingerprint=fingerprint,
                is_known_threat=True,
                risk_level=top.risk_level,
                confidence=max(v.confidence for v in positives if v.risk_level == top.risk_level),
                threat_name=top.threat_name,
                description=top.description,
                source=top.source,
                contributors=ranked,
                outcomes=outcome_list,
                live_consulted=live,
            )

        top = ranked[0]
        return AggregatedVerdict(
            fingerprint=fingerprint,
            is_known_threat=False,
            risk_level=RiskLevel.LOW,
            confidence=top.confidence,
            description=_clean_summary(ranked),
            source=top.source,
            contributors=ranked,
            outcomes=outcome_list,
            live_consulted=live,
        )

    def _heuristic_only(self, fingerprint: Fingerprint,
                        outcomes: List[SourceOutcome]) -> AggregatedVerdict:
        if self.heuristic is None:
            raise EngineConfigurationError(
                "no provider produced a verdict and no local heuristic is configured",
                {"fingerprint": fingerprint.sha256, "outcomes": _status_map(outcomes)},
            )
        verdict = self.heuristic.evaluate(fingerprint)
        return AggregatedVerdict(
            fingerprint=fingerprint,
            is_known_threat=verdict.is_known_threat,
            risk_level=verdict.risk_level,
            confidence=verdict.confidence,
            threat_name=verdict.threat_name,
            description=verdict.description,
            source=HEURISTIC_SOURCE,
            contributors=[verdict],
            outcomes=outcomes,
            heuristic_only=True,
            live_consulted=False,
        )


def _clean_summary(ranked: List[ProviderVerdict]) -> str:
    return f"Not a known threat according to {len(ranked)} source(s): " + ", ".join(
        v.source for v in ranked
    )


def _status_map(outcomes: Iterable[SourceOutcome]) -> Dict[str, str]:
    return {o.provider: o.status.value for o in outcomes}
