"""
Tests for the detection result cache
"""

from datetime import datetime

import pytest

from callguard.schemas.events import DetectionType
from callguard.schemas.results import IntegratedResult, SpamLevel
from callguard.scoring.result_cache import ResultCache

from conftest import FakeClock


def make_result(sender_id: str, score: float = 0.1) -> IntegratedResult:
    return IntegratedResult(
        sender_id=sender_id,
        kind=DetectionType.SMS,
        final_score=score,
        spam_level=SpamLevel.CLEAN,
        confidence=0.5,
        timestamp=datetime(2026, 1, 26, 12, 0),
    )


class TestResultCache:
    """Test suite for TTL expiry, capacity eviction and sender invalidation"""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return ResultCache(capacity=3, ttl_seconds=3600, clock=clock)

    def test_get_returns_stored_result(self, cache):
        result = make_result("+5511999990000")
        cache.put("sms:+5511999990000:abc", result)

        assert cache.get("sms:+5511999990000:abc") is result
        assert cache.get("sms:+5511999990000:other") is None

    def test_entries_expire_after_ttl(self, cache, clock):
        cache.put("k", make_result("a"))

        clock.advance(3599)
        assert cache.get("k") is not None

        clock.advance(1)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_overflow_evicts_exactly_the_oldest(self, cache, clock):
        for i in range(3):
            cache.put(f"k{i}", make_result(f"s{i}"))
            clock.advance(1)

        cache.put("k3", make_result("s3"))

        assert len(cache) == 3
        assert "k0" not in cache
        assert all(k in cache for k in ("k1", "k2", "k3"))

    def test_full_size_cache_evicts_one(self, clock):
        cache = ResultCache(capacity=1000, ttl_seconds=3600, clock=clock)
        for i in range(1001):
            cache.put(f"k{i}", make_result(f"s{i}"))
            clock.advance(0.001)

        assert len(cache) == 1000
        assert "k0" not in cache
        assert "k1" in cache

    def test_invalidate_sender(self, cache):
        cache.put("call:a:unknown", make_result("a"))
        cache.put("sms:a:123", make_result("a"))
        cache.put("sms:b:123", make_result("b"))

        assert cache.invalidate_sender("a") == 2
        assert cache.keys() == ["sms:b:123"]

    def test_last_for_sender(self, cache, clock):
        first = make_result("a", 0.1)
        second = make_result("a", 0.9)
        cache.put("k1", first)
        clock.advance(5)
        cache.put("k2", second)

        assert cache.last_for_sender("a") is second
        assert cache.last_for_sender("b") is None

    def test_put_after_invalidation_is_dropped(self, cache):
        taken = cache.generation("a")
        cache.invalidate_sender("a")

        assert not cache.put("k", make_result("a"), taken)
        assert "k" not in cache

        assert cache.put("k", make_result("a"), cache.generation("a"))
        assert "k" in cache

    def test_clear_invalidates_every_sender(self, cache):
        taken = cache.generation("b")
        cache.clear()

        assert not cache.put("k", make_result("b"), taken)
        assert cache.put("k", make_result("b"))
