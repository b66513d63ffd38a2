"""
Tests for the metrics collector
"""

import pytest

from callguard.utils.metrics import MetricsCollector


class TestMetricsCollector:

    @pytest.fixture
    def metrics(self):
        return MetricsCollector(max_recent_errors=3)

    def test_counters_with_tags(self, metrics):
        metrics.increment("rules.reload")
        metrics.increment("detections", tags={"kind": "sms"})
        metrics.increment("detections", 2, tags={"kind": "sms"})

        assert metrics.get_counter("rules.reload") == 1
        assert metrics.get_counter("detections", tags={"kind": "sms"}) == 3
        assert metrics.get_counter("detections", tags={"kind": "call"}) == 0

    def test_latency_stats(self, metrics):
        for ms in (10, 30, 20):
            metrics.record_latency("detection", ms)

        stats = metrics.get_latency_stats("detection")
        assert stats == {'count': 3, 'avg_ms': 20.0, 'min_ms': 10, 'max_ms': 30}
        assert metrics.get_latency_stats("unused")['min_ms'] == 0

    def test_detection_and_feedback_accuracy(self, metrics):
        metrics.record_detection("spam")
        metrics.record_detection("suspicious")
        metrics.record_detection("clean")
        metrics.record_feedback(predicted_spam=True, is_spam=True)
        metrics.record_feedback(predicted_spam=True, is_spam=False)
        metrics.record_feedback(predicted_spam=False, is_spam=False)
        metrics.record_feedback(predicted_spam=False, is_spam=True)

        stats = metrics.get_detection_stats()
        assert stats['total_detections'] == 3
        assert stats['spam_detected'] == 1
        assert stats['suspicious_detected'] == 1
        assert stats['false_positive'] == 1
        assert stats['false_negative'] == 1
        assert stats['accuracy'] == pytest.approx(0.5)

    def test_cache_hit_rate(self, metrics):
        assert metrics.cache_hit_rate() == 0.0
        for hit in (True, False, False, True):
            metrics.record_cache_lookup(hit)
        assert metrics.cache_hit_rate() == pytest.approx(0.5)

    def test_recent_errors_are_bounded(self, metrics):
        for i in range(5):
            metrics.record_error("component_failure", f"boom {i}")

        errors = metrics.get_error_stats()
        assert errors['counts'] == {'component_failure': 5}
        assert errors['total'] == 5
        assert [e['message'] for e in errors['recent']] == ["boom 2", "boom 3", "boom 4"]

    def test_summary(self, metrics):
        metrics.record_latency("detection", 5)
        summary = metrics.get_all_metrics()

        assert summary['latencies']['detection']['count'] == 1
        assert 'uptime_seconds' in summary
