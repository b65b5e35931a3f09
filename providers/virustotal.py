"""VirusTotal (multi-engine) adapter.

Normalization:
    rate = malicious / total engines that produced a verdict
    risk:       rate >= 0.5 Critical, >= 0.3 High, >= 0.1 Medium, else Low
    confidence: positive -> rate * min(total / 70, 1)
                negative -> min(total / 70, 1)  (how much of the engine pool vouched)
    unknown sample (404) -> negative, Low, confidence 0.0
    threat name: suggested_threat_label, else the most common engine result
"""

from collections import Counter
from typing import Dict, Optional

from schemas import Fingerprint, ProviderVerdict, RiskLevel
from . import provider_name
from .base import HttpProvider

EMPTY_FILE_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
ENGINE_POOL = 70.0
_VERDICT_CATEGORIES = ("malicious", "suspicious", "undetected", "harmless")


def risk_from_rate(rate: float) -> RiskLevel:
    if rate >= 0.5:
        return RiskLevel.CRITICAL
    if rate >= 0.3:
        return RiskLevel.HIGH
    if rate >= 0.1:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _threat_name(attrs: Dict) -> Optional[str]:
    label = (attrs.get("popular_threat_classification") or {}).get("suggested_threat_label")
    if label:
        return label
    names = Counter(
        r.get("result")
        for r in (attrs.get("last_analysis_results") or {}).values()
        if r.get("category") == "malicious" and r.get("result")
    )
    if names:
        return names.most_common(1)[0][0]
    return "Malware"


@provider_name("virustotal")
class VirusTotalProvider(HttpProvider):
    default_base_url = "https://www.virustotal.com/api/v3"
    requires_api_key = True

    def query(self, fingerprint: Fingerprint, timeout: float) -> ProviderVerdict:
        self.ensure_configured()
        payload = self.fetch(
            self.http.get,
            f"{self.base_url}/files/{fingerprint.primary}",
            headers={"x-apikey": self.api_key},
            timeout=timeout,
        )
        return self.normalize(payload)

    def normalize(self, payload: Optional[Dict]) -> ProviderVerdict:
        if not payload:
            return ProviderVerdict(
                source=self.name,
                is_known_threat=False,
                description="Sample unknown to VirusTotal",
            )
        attrs = (payload.get("data") or {}).get("attributes", {})
        stats = attrs.get("last_analysis_stats", {})
        positives = int(stats.get("malicious", 0))
        total = sum(int(stats.get(c, 0)) for c in _VERDICT_CATEGORIES)
        coverage = min(total / ENGINE_POOL, 1.0)
        rate = positives / total if total else 0.0
        description = f"Detected by {positives}/{total} engines"
        if positives > 0:
            return ProviderVerdict(
                source=self.name,
                is_known_threat=True,
                threat_name=_threat_name(attrs),
                risk_level=risk_from_rate(rate),
                confidence=rate * coverage,
                description=description,
            )
        return ProviderVerdict(
            source=self.name,
            is_known_threat=False,
            risk_level=RiskLevel.LOW,
            confidence=coverage,
            description=description,
        )

    def health_check(self) -> bool:
        if not self.api_key:
            return False
        self.http.get(
            f"{self.base_url}/files/{EMPTY_FILE_SHA256}",
            headers={"x-apikey": self.api_key},
        )
        return True
