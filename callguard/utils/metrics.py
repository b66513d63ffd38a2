"""
Observability - Detection metrics, cache efficiency and error tracking
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, Optional

import structlog

logger = structlog.get_logger()


@dataclass
class LatencyStats:
    """Latency statistics"""
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float('inf')
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0

    def record(self, latency_ms: float):
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)


class MetricsCollector:
    """
    Collects detection metrics for one engine instance

    Metrics tracked:
    - Detection latency (by kind)
    - Detections by spam level
    - Feedback agreement (true/false positives and negatives)
    - Result cache hits and misses
    - Component errors
    """

    def __init__(self, max_recent_errors: int = 100):
        self._lock = threading.Lock()

        self._counters: Dict[str, int] = defaultdict(int)
        self._latencies: Dict[str, LatencyStats] = defaultdict(LatencyStats)

        self._detection_stats = {
            'total_detections': 0,
            'spam_detected': 0,
            'suspicious_detected': 0,
            'true_positive': 0,
            'true_negative': 0,
            'false_positive': 0,
            'false_negative': 0,
        }

        self._cache_hits = 0
        self._cache_misses = 0

        self._errors: Dict[str, int] = defaultdict(int)
        self._recent_errors: Deque[Dict[str, Any]] = deque(maxlen=max_recent_errors)

        self._start_time = datetime.now()

    # ==================== Counters ====================

    def increment(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter"""
        key = self._make_key(name, tags)
        with self._lock:
            self._counters[key] += value

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> int:
        """Get counter value"""
        key = self._make_key(name, tags)
        with self._lock:
            return self._counters.get(key, 0)

    # ==================== Latency ====================

    def record_latency(self, name: str, latency_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record latency for an operation"""
        key = self._make_key(name, tags)
        with self._lock:
            self._latencies[key].record(latency_ms)

    def get_latency_stats(self, name: str, tags: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get latency statistics"""
        key = self._make_key(name, tags)
        with self._lock:
            stats = self._latencies.get(key, LatencyStats())
            return {
                'count': stats.count,
                'avg_ms': stats.avg_ms,
                'min_ms': stats.min_ms if stats.min_ms != float('inf') else 0,
                'max_ms': stats.max_ms
            }

    # ==================== Detection Stats ====================

    def record_detection(self, spam_level: str):
        """Record a completed detection by its spam level"""
        with self._lock:
            self._detection_stats['total_detections'] += 1
            if spam_level == 'spam':
                self._detection_stats['spam_detected'] += 1
            elif spam_level == 'suspicious':
                self._detection_stats['suspicious_detected'] += 1

    def record_feedback(self, predicted_spam: bool, is_spam: bool):
        """Record user feedback against the decision previously returned"""
        with self._lock:
            if predicted_spam and is_spam:
                self._detection_stats['true_positive'] += 1
            elif predicted_spam and not is_spam:
                self._detection_stats['false_positive'] += 1
            elif not predicted_spam and is_spam:
                self._detection_stats['false_negative'] += 1
            else:
                self._detection_stats['true_negative'] += 1

    def get_detection_stats(self) -> Dict[str, Any]:
        """Get detection statistics"""
        with self._lock:
            stats = dict(self._detection_stats)
        stats['accuracy'] = self._calculate_accuracy(stats)
        return stats

    @staticmethod
    def _calculate_accuracy(stats: Dict[str, int]) -> float:
        """Calculate accuracy from feedback"""
        correct = stats['true_positive'] + stats['true_negative']
        total = correct + stats['false_positive'] + stats['false_negative']
        return correct / total if total > 0 else 0.0

    # ==================== Cache ====================

    def record_cache_lookup(self, hit: bool):
        with self._lock:
            if hit:
                self._cache_hits += 1
            else:
                self._cache_misses += 1

    def cache_hit_rate(self) -> float:
        with self._lock:
            lookups = self._cache_hits + self._cache_misses
            return self._cache_hits / lookups if lookups > 0 else 0.0

    # ==================== Errors ====================

    def record_error(self, error_type: str, message: str, details: Optional[Dict] = None):
        """Record an error"""
        error_entry = {
            'type': error_type,
            'message': message,
            'details': details,
            'timestamp': datetime.now().isoformat()
        }
        with self._lock:
            self._errors[error_type] += 1
            self._recent_errors.append(error_entry)

        logger.error("Error recorded", error_type=error_type, message=message)

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics"""
        with self._lock:
            return {
                'counts': dict(self._errors),
                'total': sum(self._errors.values()),
                'recent': list(self._recent_errors)[-10:]
            }

    # ==================== Summary ====================

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all metrics as a summary"""
        uptime = datetime.now() - self._start_time
        with self._lock:
            counters = dict(self._counters)
            latency_names = list(self._latencies.keys())

        return {
            'uptime_seconds': uptime.total_seconds(),
            'counters': counters,
            'latencies': {name: self.get_latency_stats(name) for name in latency_names},
            'detection': self.get_detection_stats(),
            'cache_hit_rate': self.cache_hit_rate(),
            'errors': self.get_error_stats()
        }

    def _make_key(self, name: str, tags: Optional[Dict[str, str]] = None) -> str:
        """Create a unique key from name and tags"""
        if not tags:
            return name
        tag_str = ','.join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name}[{tag_str}]"
