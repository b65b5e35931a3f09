"""MalwareBazaar (public sample database) adapter.

Normalization:
    query_status "ok"             -> known threat, confidence 0.9,
                                     Critical if vtpercent >= 50 else High,
                                     threat name = signature (or "Malware")
    query_status "hash_not_found" -> negative, Low, confidence 0.5
    anything else                 -> ProviderUnavailable
"""

from typing import Dict, Optional

from errors import ProviderUnavailable
from schemas import Fingerprint, ProviderVerdict, RiskLevel
from . import provider_name
from .base import HttpProvider

KNOWN_SAMPLE_CONFIDENCE = 0.9
NOT_FOUND_CONFIDENCE = 0.5


@provider_name("malwarebazaar")
class MalwareBazaarProvider(HttpProvider):
    default_base_url = "https://mb-api.abuse.ch/api/v1"

    def _headers(self) -> Dict:
        return {"Auth-Key": self.api_key} if self.api_key else {}

    def query(self, fingerprint: Fingerprint, timeout: float) -> ProviderVerdict:
        payload = self.fetch(
            self.http.post,
            f"{self.base_url}/",
            data={"query": "get_info", "hash": fingerprint.primary},
            headers=self._headers(),
            timeout=timeout,
        )
        return self.normalize(payload)

    def normalize(self, payload: Optional[Dict]) -> ProviderVerdict:
        status = (payload or {}).get("query_status")
        if status == "hash_not_found":
            return ProviderVerdict(
                source=self.name,
                is_known_threat=False,
                confidence=NOT_FOUND_CONFIDENCE,
                description="Sample not present in MalwareBazaar",
            )
        if status != "ok" or not payload.get("data"):
            raise ProviderUnavailable(self.name, f"unexpected query_status {status!r}")

        sample = payload["data"][0]
        vt_percent = sample.get("vtpercent") or 0
        signature = sample.get("signature") or "Malware"
        risk = RiskLevel.CRITICAL if vt_percent >= 50 else RiskLevel.HIGH
        seen = sample.get("first_seen") or "unknown date"
        return ProviderVerdict(
            source=self.name,
            is_known_threat=True,
            threat_name=signature,
            risk_level=risk,
            confidence=KNOWN_SAMPLE_CONFIDENCE,
            description=f"Known sample {signature}, first seen {seen}",
        )

    def health_check(self) -> bool:
        payload = self.http.post(
            f"{self.base_url}/",
            data={"query": "get_recent", "selector": "time"},
            headers=self._headers(),
        )
        return bool(payload) and payload.get("query_status") in ("ok", "no_results")
