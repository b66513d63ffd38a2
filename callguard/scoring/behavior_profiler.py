"""
Behavioral Profiling - Per-sender activity aggregates and suspicion analysis
"""

import re
import statistics
import threading
import unicodedata
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger()

URL_PATTERN = re.compile(r'https?://\S+|www\.\S+')
WORD_SPLIT = re.compile(r'\W+')

SUSPICIOUS_KEYWORDS = ('gratis', 'promocao', 'urgente', 'clique', 'ganhe')

BUSINESS_HOURS = (9, 18)


def normalize_text(text: str) -> str:
    """Lowercase and strip accents so 'Grátis' and 'gratis' count as one word"""
    decomposed = unicodedata.normalize('NFKD', text.lower())
    return ''.join(c for c in decomposed if not unicodedata.combining(c))


def is_all_caps(text: str) -> bool:
    if len(text) < 10:
        return False
    return text == text.upper() and text != text.lower()


def is_digit_heavy(text: str) -> bool:
    return sum(1 for c in text if c.isdigit()) > len(text) * 0.3


class ActivityType(str, Enum):
    CALL = "call"
    SMS = "sms"


class SuspicionLevel(str, Enum):
    """Discrete behavioral verdict"""
    CLEAN = "clean"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNKNOWN = "unknown"

    @classmethod
    def from_score(cls, score: float) -> "SuspicionLevel":
        if score >= 0.8:
            return cls.HIGH
        if score >= 0.6:
            return cls.MEDIUM
        if score >= 0.3:
            return cls.LOW
        return cls.CLEAN

    def to_score(self) -> float:
        return {
            SuspicionLevel.HIGH: 0.9,
            SuspicionLevel.MEDIUM: 0.6,
            SuspicionLevel.LOW: 0.3,
            SuspicionLevel.CLEAN: 0.1,
            SuspicionLevel.UNKNOWN: 0.0,
        }[self]


@dataclass(frozen=True)
class ActivityRecord:
    """One observed call or message, as fed to the profiler"""
    sender_id: str
    timestamp: datetime
    activity_type: ActivityType
    duration: Optional[int] = None
    content: Optional[str] = None
    direction: Optional[str] = None


@dataclass
class CallPattern:
    total_calls: int = 0
    timed_calls: int = 0
    total_duration: int = 0
    missed_calls: int = 0
    short_calls: int = 0
    long_calls: int = 0

    @property
    def average_duration(self) -> Optional[float]:
        if self.timed_calls == 0:
            return None
        return self.total_duration / self.timed_calls


@dataclass
class SmsPattern:
    total_sms: int = 0
    total_characters: int = 0
    messages_with_urls: int = 0
    messages_with_numbers: int = 0
    all_caps_messages: int = 0
    keywords: Counter = field(default_factory=Counter)

    @property
    def average_length(self) -> float:
        if self.total_sms == 0:
            return 0.0
        return self.total_characters / self.total_sms


@dataclass
class TimePattern:
    hour_distribution: Counter = field(default_factory=Counter)
    day_distribution: Counter = field(default_factory=Counter)
    business_hours_activity: int = 0
    off_hours_activity: int = 0
    intervals: Deque[int] = field(default_factory=lambda: deque(maxlen=100))
    last_activity: Optional[datetime] = None

    @property
    def off_hours_ratio(self) -> float:
        total = self.business_hours_activity + self.off_hours_activity
        if total == 0:
            return 0.0
        return self.off_hours_activity / total


@dataclass
class BehaviorProfile:
    """Evolving aggregates for one sender"""
    sender_id: str
    first_seen: datetime
    last_seen: datetime
    total_interactions: int = 0
    call_pattern: CallPattern = field(default_factory=CallPattern)
    sms_pattern: SmsPattern = field(default_factory=SmsPattern)
    time_pattern: TimePattern = field(default_factory=TimePattern)
    suspicion_score: float = 0.0

    @property
    def span_days(self) -> float:
        return (self.last_seen - self.first_seen).total_seconds() / 86400.0

    @property
    def calls_per_day(self) -> float:
        return self.call_pattern.total_calls / max(self.span_days, 1.0)

    @property
    def sms_per_day(self) -> float:
        return self.sms_pattern.total_sms / max(self.span_days, 1.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender_id": self.sender_id,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "total_interactions": self.total_interactions,
            "total_calls": self.call_pattern.total_calls,
            "total_sms": self.sms_pattern.total_sms,
            "calls_per_day": self.calls_per_day,
            "sms_per_day": self.sms_per_day,
            "off_hours_ratio": self.time_pattern.off_hours_ratio,
            "top_keywords": dict(self.sms_pattern.keywords.most_common(10)),
            "suspicion_score": self.suspicion_score,
        }


@dataclass
class BehaviorAnalysis:
    """Behavioral verdict for one sender"""
    sender_id: str
    suspicion_level: SuspicionLevel
    suspicion_score: float
    confidence: float
    reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def score(self) -> float:
        return self.suspicion_level.to_score()


class BehavioralProfiler:
    """
    Maintains one profile per sender and scores how automated or abusive
    its activity looks

    Mutations of one sender's profile are serialized by a per-sender lock;
    different senders never contend beyond the brief registry lookup.
    """

    def __init__(
        self,
        min_data_points: int = 10,
        analysis_window_days: int = 30,
        max_history_size: int = 10000,
        keyword_capacity: int = 50,
        interval_capacity: int = 100
    ):
        self.min_data_points = min_data_points
        self.analysis_window = timedelta(days=analysis_window_days)
        self.keyword_capacity = keyword_capacity
        self.interval_capacity = interval_capacity

        self._profiles: Dict[str, BehaviorProfile] = {}
        self._sender_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

        self._history: Deque[ActivityRecord] = deque(maxlen=max_history_size)
        self._history_lock = threading.Lock()

        logger.info(
            "Behavioral profiler initialized",
            min_data_points=min_data_points,
            analysis_window_days=analysis_window_days
        )

    def _lock_for(self, sender_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._sender_locks.get(sender_id)
            if lock is None:
                lock = self._sender_locks[sender_id] = threading.Lock()
            return lock

    def get_profile(self, sender_id: str) -> Optional[BehaviorProfile]:
        with self._registry_lock:
            return self._profiles.get(sender_id)

    # ==================== Recording ====================

    def record_activity(self, record: ActivityRecord) -> BehaviorProfile:
        """Fold one call or message into its sender's profile"""
        self._append_history(record)

        with self._lock_for(record.sender_id):
            with self._registry_lock:
                profile = self._profiles.get(record.sender_id)
                if profile is None:
                    profile = BehaviorProfile(
                        sender_id=record.sender_id,
                        first_seen=record.timestamp,
                        last_seen=record.timestamp,
                        time_pattern=TimePattern(intervals=deque(maxlen=self.interval_capacity)),
                    )
                    self._profiles[record.sender_id] = profile

            profile.total_interactions += 1
            profile.first_seen = min(profile.first_seen, record.timestamp)
            profile.last_seen = max(profile.last_seen, record.timestamp)

            if record.activity_type == ActivityType.CALL:
                self._update_call_pattern(profile.call_pattern, record)
            else:
                self._update_sms_pattern(profile.sms_pattern, record)
            self._update_time_pattern(profile.time_pattern, record)

            profile.suspicion_score = self._calculate_suspicion_score(profile)
            return profile

    def _append_history(self, record: ActivityRecord):
        with self._history_lock:
            self._history.append(record)
            cutoff = record.timestamp - self.analysis_window
            while self._history and self._history[0].timestamp < cutoff:
                self._history.popleft()

    def _update_call_pattern(self, pattern: CallPattern, record: ActivityRecord):
        pattern.total_calls += 1

        if record.direction == "missed":
            pattern.missed_calls += 1

        if record.duration is not None:
            pattern.timed_calls += 1
            pattern.total_duration += record.duration
            if record.duration == 0:
                if record.direction != "missed":
                    pattern.missed_calls += 1
            elif record.duration < 10:
                pattern.short_calls += 1
            elif record.duration > 300:
                pattern.long_calls += 1

    def _update_sms_pattern(self, pattern: SmsPattern, record: ActivityRecord):
        pattern.total_sms += 1

        content = record.content
        if not content:
            return

        pattern.total_characters += len(content)
        if URL_PATTERN.search(content):
            pattern.messages_with_urls += 1
        if is_digit_heavy(content):
            pattern.messages_with_numbers += 1
        if is_all_caps(content):
            pattern.all_caps_messages += 1

        words = [w for w in WORD_SPLIT.split(normalize_text(content)) if len(w) > 3]
        pattern.keywords.update(words)
        if len(pattern.keywords) > self.keyword_capacity:
            pattern.keywords = Counter(dict(pattern.keywords.most_common(self.keyword_capacity)))

    def _update_time_pattern(self, pattern: TimePattern, record: ActivityRecord):
        hour = record.timestamp.hour
        weekday = record.timestamp.isoweekday()

        pattern.hour_distribution[hour] += 1
        pattern.day_distribution[weekday] += 1

        start, end = BUSINESS_HOURS
        if start <= hour <= end and weekday <= 5:
            pattern.business_hours_activity += 1
        else:
            pattern.off_hours_activity += 1

        if pattern.last_activity is not None:
            minutes = int((record.timestamp - pattern.last_activity).total_seconds() // 60)
            pattern.intervals.append(abs(minutes))
        pattern.last_activity = record.timestamp

    # ==================== Scoring ====================

    def _calculate_suspicion_score(self, profile: BehaviorProfile) -> float:
        score = sum(weight for _, weight in self._anomalies(profile))
        return max(0.0, min(score, 1.0))

    def _anomalies(self, profile: BehaviorProfile) -> List[tuple]:
        """(reason, increment) for every anomaly the profile currently shows"""
        found = []

        # Frequency
        if profile.calls_per_day > 10:
            found.append(("behavior:high_call_frequency", 0.3))
        if profile.sms_per_day > 20:
            found.append(("behavior:high_sms_frequency", 0.3))
        if profile.span_days < 7 and profile.total_interactions > 50:
            found.append(("behavior:burst_activity", 0.4))

        # Timing
        time_pattern = profile.time_pattern
        if time_pattern.off_hours_ratio > 0.8:
            found.append(("behavior:off_hours_activity", 0.3))
        if len(time_pattern.intervals) > 10:
            intervals = list(time_pattern.intervals)
            mean = statistics.fmean(intervals)
            if statistics.pvariance(intervals, mean) < 10 and mean < 60:
                found.append(("behavior:automated_intervals", 0.4))

        # Content
        sms = profile.sms_pattern
        if sms.total_sms > 0:
            if sms.messages_with_urls / sms.total_sms > 0.5:
                found.append(("behavior:high_url_ratio", 0.4))
            if sms.all_caps_messages / sms.total_sms > 0.3:
                found.append(("behavior:all_caps_messages", 0.2))
            if sms.total_characters and (sms.average_length < 10 or sms.average_length > 200):
                found.append(("behavior:abnormal_message_length", 0.2))
            for keyword in SUSPICIOUS_KEYWORDS:
                if keyword in sms.keywords:
                    found.append((f"behavior:suspicious_keyword:{keyword}", 0.1))

        # Calls
        calls = profile.call_pattern
        if calls.total_calls > 0:
            if calls.missed_calls / calls.total_calls > 0.8:
                found.append(("behavior:high_missed_call_ratio", 0.3))
            if calls.short_calls / calls.total_calls > 0.7:
                found.append(("behavior:short_calls", 0.2))
            average = calls.average_duration
            if average is not None and average < 5:
                found.append(("behavior:low_call_duration", 0.2))

        return found

    def _calculate_confidence(self, profile: BehaviorProfile) -> float:
        """Confidence from volume of evidence only, independent of the score"""
        confidence = 0.0

        interactions = profile.total_interactions
        if interactions >= 100:
            confidence += 0.4
        elif interactions >= 50:
            confidence += 0.3
        elif interactions >= 20:
            confidence += 0.2

        span = profile.span_days
        if span >= 30:
            confidence += 0.3
        elif span >= 14:
            confidence += 0.2
        elif span >= 7:
            confidence += 0.1

        if profile.call_pattern.total_calls > 0 and profile.sms_pattern.total_sms > 0:
            confidence += 0.2

        if len(profile.time_pattern.intervals) > 10:
            confidence += 0.1

        return max(0.0, min(confidence, 1.0))

    @staticmethod
    def _recommendations(level: SuspicionLevel) -> List[str]:
        return {
            SuspicionLevel.HIGH: ["block_immediately", "report_spam"],
            SuspicionLevel.MEDIUM: ["monitor_activity", "consider_temporary_block"],
            SuspicionLevel.LOW: ["keep_observing"],
            SuspicionLevel.CLEAN: ["number_appears_legitimate"],
            SuspicionLevel.UNKNOWN: ["await_more_data"],
        }[level]

    def analyze_behavior(self, sender_id: str) -> Optional[BehaviorAnalysis]:
        """
        Analyse a sender's accumulated behavior

        Returns:
            None if the sender was never seen, an UNKNOWN analysis while it
            has fewer than min_data_points interactions, otherwise a
            concrete verdict
        """
        if self.get_profile(sender_id) is None:
            return None

        with self._lock_for(sender_id):
            profile = self._profiles[sender_id]

            if profile.total_interactions < self.min_data_points:
                return BehaviorAnalysis(
                    sender_id=sender_id,
                    suspicion_level=SuspicionLevel.UNKNOWN,
                    suspicion_score=profile.suspicion_score,
                    confidence=0.0,
                    reasons=["behavior:insufficient_data"],
                    recommendations=self._recommendations(SuspicionLevel.UNKNOWN),
                )

            level = SuspicionLevel.from_score(profile.suspicion_score)
            return BehaviorAnalysis(
                sender_id=sender_id,
                suspicion_level=level,
                suspicion_score=profile.suspicion_score,
                confidence=self._calculate_confidence(profile),
                reasons=[reason for reason, _ in self._anomalies(profile)],
                recommendations=self._recommendations(level),
            )

    # ==================== Stats ====================

    @property
    def profile_count(self) -> int:
        with self._registry_lock:
            return len(self._profiles)

    @property
    def activity_count(self) -> int:
        with self._history_lock:
            return len(self._history)

    def get_stats(self) -> Dict[str, int]:
        with self._registry_lock:
            scores = [p.suspicion_score for p in self._profiles.values()]
        return {
            "profile_count": len(scores),
            "activity_count": self.activity_count,
            "high_suspicion_profiles": sum(1 for s in scores if s >= 0.8),
            "medium_suspicion_profiles": sum(1 for s in scores if 0.6 <= s < 0.8),
            "clean_profiles": sum(1 for s in scores if s < 0.3),
        }
