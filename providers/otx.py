"""AlienVault OTX (community feed) adapter.

Normalization:
    pulses > 0 -> known threat
    risk:       malware families present -> Critical if pulses > 5 else High
                otherwise pulses > 10 High, > 3 Medium, else Low
    confidence: min(1, pulses / 10), +0.3 when malware families are present
    threat name: first two malware families, else first two tags
    no pulses  -> negative, Low, confidence 0.3
"""

from typing import Dict, List, Optional

from schemas import Fingerprint, ProviderVerdict, RiskLevel
from . import provider_name
from .base import HttpProvider

NO_PULSE_CONFIDENCE = 0.3


def risk_from_pulses(pulses: int, families: List[str]) -> RiskLevel:
    if families:
        return RiskLevel.CRITICAL if pulses > 5 else RiskLevel.HIGH
    if pulses > 10:
        return RiskLevel.HIGH
    if pulses > 3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def confidence_from_pulses(pulses: int, families: List[str]) -> float:
    score = min(1.0, pulses / 10.0)
    if families:
        score = min(1.0, score + 0.3)
    return score


@provider_name("otx")
class OtxProvider(HttpProvider):
    default_base_url = "https://otx.alienvault.com/api/v1"
    requires_api_key = True

    def query(self, fingerprint: Fingerprint, timeout: float) -> ProviderVerdict:
        self.ensure_configured()
        payload = self.fetch(
            self.http.get,
            f"{self.base_url}/indicators/file/{fingerprint.primary}/general",
            headers={"X-OTX-API-KEY": self.api_key},
            timeout=timeout,
        )
        return self.normalize(payload)

    def normalize(self, payload: Optional[Dict]) -> ProviderVerdict:
        info = (payload or {}).get("pulse_info") or {}
        pulses = info.get("pulses") or []
        count = info.get("count", len(pulses))
        if not count:
            return ProviderVerdict(
                source=self.name,
                is_known_threat=False,
                confidence=NO_PULSE_CONFIDENCE,
                description="OTX: no pulses reference this sample",
            )

        families: List[str] = []
        tags: List[str] = []
        for p in pulses:
            for fam in p.get("malware_families", []):
                # pulses report families either as strings or {"display_name": ...}
                fam = fam.get("display_name") if isinstance(fam, dict) else fam
                if fam and fam not in families:
                    families.append(fam)
            for t in p.get("tags", []):
                if t not in tags:
                    tags.append(t)

        name = ", ".join(families[:2]) or ", ".join(tags[:2]) or "Suspicious Indicator"
        return ProviderVerdict(
            source=self.name,
            is_known_threat=True,
            threat_name=name,
            risk_level=risk_from_pulses(count, families),
            confidence=confidence_from_pulses(count, families),
            description=f"OTX: {count} pulses, {len(families)} malware families",
        )

    def health_check(self) -> bool:
        if not self.api_key:
            return False
        self.http.get(
            f"{self.base_url}/pulses/subscribed",
            headers={"X-OTX-API-KEY": self.api_key},
            params={"limit": 1},
        )
        return True
