"""Tests for fingerprinting helpers, input readers and the command line."""

import hashlib
import json

import pytest

from intel_engine import build_report, main, read_fingerprints
from schemas import Fingerprint, RiskLevel
from utils.fingerprint import classify_digest, fingerprint_bytes, fingerprint_file, parse_fingerprint

EICAR_MD5 = "44d88612fea8a8f36de82e1278abb02f"
EICAR_SHA256 = "275a021bbfb6489e54d471899f7db9d1663fc695ec2fe2a2c4538aabf651fd0f"


class TestFingerprint:
    def test_file_matches_hashlib(self, tmp_path):
        data = b"x" * (3 * 1024 * 1024 + 17)
        path = tmp_path / "sample.bin"
        path.write_bytes(data)

        fp = fingerprint_file(str(path))
        assert fp.md5 == hashlib.md5(data).hexdigest()
        assert fp.sha256 == hashlib.sha256(data).hexdigest()
        assert fp == fingerprint_bytes(data)

    def test_digests_are_normalized_to_lowercase(self):
        fp = Fingerprint(md5=EICAR_MD5.upper(), sha256=EICAR_SHA256.upper())
        assert fp.md5 == EICAR_MD5
        assert fp.primary == EICAR_SHA256

    def test_malformed_digest_rejected(self):
        with pytest.raises(ValueError):
            Fingerprint(md5="xyz", sha256=EICAR_SHA256)

    def test_classify_digest(self):
        assert classify_digest(EICAR_MD5) == "md5"
        assert classify_digest("a" * 40) == "sha1"
        assert classify_digest(EICAR_SHA256) == "sha256"
        assert classify_digest("md5") == "unknown"
        assert classify_digest("g" * 32) == "unknown"

    @pytest.mark.parametrize("value", [
        f"{EICAR_MD5}:{EICAR_SHA256}",
        f"{EICAR_SHA256}:{EICAR_MD5}",
        f"  {EICAR_MD5}, {EICAR_SHA256} ",
        (EICAR_MD5, EICAR_SHA256),
    ])
    def test_parse_forms(self, value):
        fp = parse_fingerprint(value)
        assert (fp.md5, fp.sha256) == (EICAR_MD5, EICAR_SHA256)

    def test_parse_needs_both_digests(self):
        with pytest.raises(ValueError):
            parse_fingerprint(EICAR_SHA256)


class TestInputFiles:
    def test_csv_skips_header(self, tmp_path):
        path = tmp_path / "hashes.csv"
        path.write_text(f"md5,sha256\n{EICAR_MD5},{EICAR_SHA256}\n\n", encoding="utf-8")
        assert read_fingerprints(str(path)) == [f"{EICAR_MD5}:{EICAR_SHA256}"]

    def test_json_object_form(self, tmp_path):
        path = tmp_path / "hashes.json"
        path.write_text(json.dumps({"fingerprints": [
            {"md5": EICAR_MD5, "sha256": EICAR_SHA256},
            f"{EICAR_MD5}:{EICAR_SHA256}",
        ]}), encoding="utf-8")
        assert read_fingerprints(str(path)) == [f"{EICAR_MD5}:{EICAR_SHA256}"] * 2


def _offline_config(tmp_path, extra=""):
    path = tmp_path / "config.toml"
    path.write_text(
        "[providers.virustotal]\nenabled = false\n"
        "[providers.malwarebazaar]\nenabled = false\n"
        "[providers.otx]\nenabled = false\n" + extra,
        encoding="utf-8",
    )
    return str(path)


class TestCli:
    def _args(self, tmp_path, *extra):
        return [
            "--config", _offline_config(tmp_path, *extra[:1]),
            "--out-json", str(tmp_path / "out" / "verdicts.json"),
            "--out-md", str(tmp_path / "out" / "summary.md"),
        ]

    def test_clean_hash_exits_zero(self, tmp_path):
        rc = main(self._args(tmp_path) + ["--hash", f"{EICAR_MD5}:{EICAR_SHA256}"])

        assert rc == 0
        report = json.loads((tmp_path / "out" / "verdicts.json").read_text(encoding="utf-8"))
        assert report["total"] == 1
        assert report["by_risk"] == {"CLEAN": 1}
        assert report["assessments"][0]["heuristic_only"] is True
        summary = (tmp_path / "out" / "summary.md").read_text(encoding="utf-8")
        assert EICAR_SHA256 in summary
        assert "virustotal: disabled" in summary

    def test_known_bad_hash_exits_one(self, tmp_path):
        extra = f'[heuristics.known_bad]\n"{EICAR_MD5}" = "EICAR-Test-File"\n'
        rc = main(self._args(tmp_path, extra) + ["--hash", f"{EICAR_MD5}:{EICAR_SHA256}"])

        assert rc == 1
        report = json.loads((tmp_path / "out" / "verdicts.json").read_text(encoding="utf-8"))
        assert report["by_risk"] == {"HIGH": 1}
        assert report["assessments"][0]["threat_name"] == "EICAR-Test-File"

    def test_nothing_to_assess(self, tmp_path):
        assert main(self._args(tmp_path)) == 2

    def test_bad_fingerprint(self, tmp_path):
        assert main(self._args(tmp_path) + ["--hash", "not-a-hash"]) == 2

    def test_bad_config(self, tmp_path):
        path = tmp_path / "broken.toml"
        path.write_text("[engine]\nmax_concurrent_calls = 0\n", encoding="utf-8")
        assert main(["--config", str(path), "--hash", f"{EICAR_MD5}:{EICAR_SHA256}"]) == 2


class TestReport:
    def test_counts_by_risk(self):
        from aggregator import ResultAggregator
        from providers.heuristics import LocalHeuristics

        bad = fingerprint_bytes(b"bad")
        agg = ResultAggregator({}, LocalHeuristics({bad.sha256: "Bad"}, RiskLevel.CRITICAL))
        verdicts = [agg.aggregate(bad, {}), agg.aggregate(fingerprint_bytes(b"good"), {})]

        report = build_report(verdicts)
        assert report.total == 2
        assert report.by_risk == {"CRITICAL": 1, "CLEAN": 1}
