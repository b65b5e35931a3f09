"""Tests for utils/cache.py: VerdictCache expiry, invalidation and sweeping."""

from datetime import timedelta

from schemas import RiskLevel
from tests.conftest import verdict
from utils.cache import VerdictCache
from utils.fingerprint import fingerprint_bytes

DAY = 24 * 3600


class TestGetPut:
    def test_miss_on_empty(self, clock, fp):
        cache = VerdictCache(clock=clock)
        assert cache.get(fp, "virustotal") is None

    def test_hit_is_flagged_from_cache(self, clock, fp):
        cache = VerdictCache(clock=clock)
        original = verdict("virustotal", True, RiskLevel.HIGH, 0.8, "Emotet")
        cache.put(fp, "virustotal", original, DAY)

        hit = cache.get(fp, "virustotal")
        assert hit is not None
        assert hit.from_cache is True
        assert hit.threat_name == "Emotet"
        assert original.from_cache is False

    def test_keys_are_per_provider(self, clock, fp):
        cache = VerdictCache(clock=clock)
        cache.put(fp, "virustotal", verdict("virustotal", False), DAY)
        assert cache.get(fp, "otx") is None

    def test_structurally_equal_fingerprints_share_entries(self, clock, fp):
        cache = VerdictCache(clock=clock)
        cache.put(fp, "otx", verdict("otx", False), DAY)
        twin = type(fp)(md5=fp.md5.upper(), sha256=fp.sha256.upper())
        assert cache.get(twin, "otx") is not None

    def test_hit_within_ttl(self, clock, fp):
        cache = VerdictCache(clock=clock)
        cache.put(fp, "virustotal", verdict("virustotal", False), DAY)
        clock.advance(3600)
        assert cache.get(fp, "virustotal") is not None

    def test_never_served_past_expiry(self, clock, fp):
        cache = VerdictCache(clock=clock)
        cache.put(fp, "otx", verdict("otx", False), 6 * 3600)
        clock.advance(6 * 3600)

        assert cache.get(fp, "otx") is None
        assert len(cache) == 0  # evicted lazily

    def test_zero_ttl_is_not_stored(self, clock, fp):
        cache = VerdictCache(clock=clock)
        cache.put(fp, "otx", verdict("otx", False), 0)
        assert len(cache) == 0

    def test_disabled_cache_is_a_no_op(self, clock, fp):
        cache = VerdictCache(enabled=False, clock=clock)
        cache.put(fp, "otx", verdict("otx", False), DAY)
        assert cache.get(fp, "otx") is None


class TestInvalidate:
    def test_single_entry(self, clock, fp):
        cache = VerdictCache(clock=clock)
        cache.put(fp, "otx", verdict("otx", False), DAY)
        cache.put(fp, "virustotal", verdict("virustotal", False), DAY)

        assert cache.invalidate(fp, "otx") == 1
        assert cache.get(fp, "otx") is None
        assert cache.get(fp, "virustotal") is not None

    def test_whole_fingerprint(self, clock, fp, other_fp):
        cache = VerdictCache(clock=clock)
        cache.put(fp, "otx", verdict("otx", False), DAY)
        cache.put(fp, "virustotal", verdict("virustotal", False), DAY)
        cache.put(other_fp, "otx", verdict("otx", False), DAY)

        assert cache.invalidate(fp) == 2
        assert cache.get(other_fp, "otx") is not None

    def test_everything(self, clock, fp, other_fp):
        cache = VerdictCache(clock=clock)
        cache.put(fp, "otx", verdict("otx", False), DAY)
        cache.put(other_fp, "otx", verdict("otx", False), DAY)

        assert cache.invalidate() == 2
        assert len(cache) == 0


class TestSweep:
    def test_reclaims_expired_without_reads(self, clock, fp, other_fp):
        cache = VerdictCache(clock=clock)
        cache.put(fp, "otx", verdict("otx", False), 60)
        cache.put(other_fp, "otx", verdict("otx", False), DAY)
        clock.advance(61)

        assert cache.sweep() == 1
        assert len(cache) == 1

    def test_put_evicts_oldest_over_capacity(self, clock, fp, other_fp):
        cache = VerdictCache(max_entries=1, clock=clock)
        old = verdict("otx", False)
        new = old.model_copy(update={"query_time": old.query_time + timedelta(minutes=5)})
        cache.put(fp, "otx", old, DAY)
        cache.put(other_fp, "otx", new, DAY)

        assert len(cache) == 1
        assert cache.sweep() == 0
        assert cache.get(other_fp, "otx") is not None
        assert cache.get(fp, "otx") is None

    def test_put_alone_respects_max_entries(self, clock):
        cache = VerdictCache(max_entries=2, clock=clock)
        fps = [fingerprint_bytes(str(i).encode()) for i in range(10)]
        for i, f in enumerate(fps):
            v = verdict("otx", False)
            cache.put(f, "otx", v.model_copy(update={"query_time": v.query_time + timedelta(seconds=i)}), DAY)

        assert len(cache) == 2
        assert cache.get(fps[-1], "otx") is not None
        assert cache.get(fps[-2], "otx") is not None

    def test_put_prefers_dropping_expired_entries(self, clock, fp, other_fp):
        cache = VerdictCache(max_entries=1, clock=clock)
        cache.put(fp, "otx", verdict("otx", False), 60)
        clock.advance(61)
        cache.put(other_fp, "otx", verdict("otx", False), DAY)

        assert len(cache) == 1
        assert cache.get(other_fp, "otx") is not None


class TestStatistics:
    def test_counts(self, clock, fp, other_fp):
        cache = VerdictCache(max_entries=50, clock=clock)
        cache.put(fp, "otx", verdict("otx", False), 60)
        cache.put(fp, "virustotal", verdict("virustotal", False), DAY)
        cache.put(other_fp, "virustotal", verdict("virustotal", False), DAY)
        cache.get(fp, "virustotal")
        cache.get(other_fp, "otx")
        clock.advance(120)

        stats = cache.statistics()
        assert stats.total_entries == 3
        assert stats.valid_entries == 2
        assert stats.expired_entries == 1
        assert stats.entries_by_source == {"virustotal": 2}
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.hit_rate == 0.5
        assert stats.max_entries == 50
