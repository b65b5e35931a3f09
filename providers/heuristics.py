"""Local fallback used when no external provider produced a verdict.

Never rate-limited or circuit-broken, and not part of the provider registry.
"""

from typing import Dict, Optional

from schemas import HEURISTIC_SOURCE, Fingerprint, ProviderVerdict, RiskLevel

SIGNATURE_CONFIDENCE = 0.95
NO_MATCH_CONFIDENCE = 0.1


class LocalHeuristics:
    name = HEURISTIC_SOURCE

    def __init__(self, known_bad: Optional[Dict[str, str]] = None,
                 risk_level: RiskLevel = RiskLevel.HIGH):
        self.known_bad = {k.strip().lower(): v for k, v in (known_bad or {}).items()}
        self.risk_level = risk_level

    def evaluate(self, fingerprint: Fingerprint) -> ProviderVerdict:
        name = self.known_bad.get(fingerprint.sha256) or self.known_bad.get(fingerprint.md5)
        if name:
            return ProviderVerdict(
                source=HEURISTIC_SOURCE,
                is_known_threat=True,
                threat_name=name,
                risk_level=self.risk_level,
                confidence=SIGNATURE_CONFIDENCE,
                description=f"Known local signature: {name}",
            )
        return ProviderVerdict(
            source=HEURISTIC_SOURCE,
            is_known_threat=False,
            confidence=NO_MATCH_CONFIDENCE,
            description="No local signature match; no external confirmation",
        )
