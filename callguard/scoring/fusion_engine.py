"""
Fusion Engine - Combines rule, behavioral and learned signals
Produces the final spam verdict with reasons and recommendations
"""

import asyncio
import hashlib
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import structlog

from callguard.config import Settings, get_settings
from callguard.detectors.heuristics import HeuristicDetector, HeuristicResult
from callguard.detectors.rule_matcher import NO_MATCH, RuleMatch, RuleMatcher
from callguard.memory.history_sink import HistorySink, InMemoryHistorySink
from callguard.memory.rule_store import InMemoryRuleStore, RuleStore
from callguard.schemas.events import (
    CallDirection, CallEvent, DetectionType, MessageDirection, SmsEvent,
)
from callguard.schemas.results import DetectionStats, IntegratedResult, SpamLevel
from callguard.schemas.rules import Rule
from callguard.scoring.behavior_profiler import (
    SUSPICIOUS_KEYWORDS, URL_PATTERN, ActivityRecord, ActivityType,
    BehaviorAnalysis, BehavioralProfiler, normalize_text,
)
from callguard.scoring.features import FeatureExtractor
from callguard.scoring.online_scorer import OnlineLinearScorer
from callguard.scoring.result_cache import ResultCache
from callguard.utils.metrics import MetricsCollector

logger = structlog.get_logger()

CONTENT_KEYWORDS = SUSPICIOUS_KEYWORDS + ('oferta', 'premio', 'parabens', 'desconto')

LEVEL_RECOMMENDATIONS = {
    SpamLevel.SPAM: ["block_immediately", "report_spam", "add_to_blacklist"],
    SpamLevel.SUSPICIOUS: ["monitor_activity", "consider_temporary_block", "verify_manually"],
    SpamLevel.QUESTIONABLE: ["keep_observing", "await_more_evidence"],
    SpamLevel.CLEAN: ["number_appears_legitimate", "allow_communication"],
    SpamLevel.UNKNOWN: ["verify_manually"],
}

COMPONENTS = ("rules", "learned", "behavior")


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode('utf-8')).hexdigest()[:16]


def _dedupe(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


class FusionEngine:
    """
    Runs the three estimators for one event and fuses them

    Fusion weights:
    - Learned scorer: 40%
    - Behavioral profile: 35%, scaled by its confidence
    - Rule-derived heuristics: 25%

    When behavioral confidence is below 0.5 the weight it cannot use moves
    to the learned (60%) and rule (40%) components. A matching user rule
    overrides the fused score entirely.
    """

    def __init__(
        self,
        rule_matcher: RuleMatcher,
        heuristics: HeuristicDetector,
        extractor: FeatureExtractor,
        scorer: OnlineLinearScorer,
        profiler: BehavioralProfiler,
        cache: ResultCache,
        history_sink: Optional[HistorySink] = None,
        metrics: Optional[MetricsCollector] = None,
        learned_weight: float = 0.40,
        behavioral_weight: float = 0.35,
        rule_weight: float = 0.25,
        spam_threshold: float = 0.7,
        suspicious_threshold: float = 0.5,
        questionable_threshold: float = 0.3,
        model_path: Optional[str] = None,
        now: Callable[[], datetime] = datetime.now
    ):
        self.rule_matcher = rule_matcher
        self.heuristics = heuristics
        self.extractor = extractor
        self.scorer = scorer
        self.profiler = profiler
        self.cache = cache
        self.history_sink = history_sink
        self.metrics = metrics or MetricsCollector()

        self.learned_weight = learned_weight
        self.behavioral_weight = behavioral_weight
        self.rule_weight = rule_weight
        self.spam_threshold = spam_threshold
        self.suspicious_threshold = suspicious_threshold
        self.questionable_threshold = questionable_threshold

        self.model_path = model_path
        self._now = now

        self.rule_matcher.add_listener(self.cache.clear)

        logger.info(
            "Fusion engine initialized",
            learned_weight=learned_weight,
            behavioral_weight=behavioral_weight,
            rule_weight=rule_weight
        )

    # ==================== Public API ====================

    async def detect_call_spam(
        self,
        phone_number: str,
        contact_name: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        duration: Optional[int] = None,
        direction: Union[CallDirection, str] = CallDirection.INCOMING
    ) -> IntegratedResult:
        """
        Score one call

        Args:
            phone_number: Caller identifier
            contact_name: Address book name, if the caller is a contact
            timestamp: When the call happened (defaults to now)
            duration: Call duration in seconds
            direction: incoming, outgoing or missed

        Returns:
            IntegratedResult; never raises
        """
        cache_key = f"call:{phone_number}:{contact_name or 'unknown'}"
        return await self._detect(
            kind=DetectionType.CALL,
            sender_id=phone_number,
            cache_key=cache_key,
            timestamp=timestamp,
            duration=duration,
            contact_name=contact_name,
            direction=CallDirection(direction).value,
        )

    async def detect_sms_spam(
        self,
        phone_number: str,
        content: str,
        sender: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        direction: Union[MessageDirection, str] = MessageDirection.RECEIVED
    ) -> IntegratedResult:
        """
        Score one text message

        Args:
            phone_number: Sender identifier
            content: Message body
            sender: Display name of the sender, if any
            timestamp: When the message arrived (defaults to now)
            direction: received or sent

        Returns:
            IntegratedResult; never raises
        """
        cache_key = f"sms:{phone_number}:{content_hash(content)}"
        return await self._detect(
            kind=DetectionType.SMS,
            sender_id=phone_number,
            cache_key=cache_key,
            timestamp=timestamp,
            content=content,
            contact_name=sender,
            direction=MessageDirection(direction).value,
        )

    async def detect_event(self, event: Union[CallEvent, SmsEvent]) -> IntegratedResult:
        """Score an observed event handed over by the telephony/SMS observer"""
        if isinstance(event, SmsEvent):
            return await self.detect_sms_spam(
                event.phone_number, event.content, event.sender, event.timestamp, event.direction
            )
        return await self.detect_call_spam(
            event.phone_number, event.contact_name, event.timestamp, event.duration, event.direction
        )

    async def train_with_feedback(
        self,
        phone_number: str,
        is_spam: bool,
        content: Optional[str] = None,
        kind: Optional[DetectionType] = None,
        timestamp: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Teach the learned scorer the ground truth for a sender

        Every cached result for the sender is dropped so the next event is
        recomputed with the updated weights.
        """
        if kind is None:
            kind = DetectionType.SMS if content is not None else DetectionType.CALL

        if timestamp is None:
            # Train on the time features the last scored event had
            profile = self.profiler.get_profile(phone_number)
            timestamp = profile.last_seen if profile is not None else self._now()

        features = self.extractor.extract(
            phone_number,
            content if kind == DetectionType.SMS else None,
            timestamp
        )
        error = await asyncio.to_thread(self.scorer.update, features, is_spam)

        previous = self.cache.last_for_sender(phone_number)
        if previous is not None and previous.spam_level != SpamLevel.UNKNOWN:
            self.metrics.record_feedback(previous.is_suspicious, is_spam)

        invalidated = self.cache.invalidate_sender(phone_number)

        if self.model_path:
            try:
                await asyncio.to_thread(self.scorer.save, self.model_path)
            except OSError as e:
                logger.error("Failed to persist learned model", path=self.model_path, error=str(e))
                self.metrics.record_error("model_persistence", str(e))

        logger.info(
            "Feedback applied",
            phone_number=phone_number,
            is_spam=is_spam,
            kind=kind.value,
            error=round(error, 4),
            invalidated=invalidated
        )

        return {
            "phone_number": phone_number,
            "is_spam": is_spam,
            "kind": kind.value,
            "prediction_error": error,
            "invalidated_entries": invalidated,
            "training_examples": self.scorer.training_examples,
        }

    def get_detection_stats(self) -> DetectionStats:
        detection = self.metrics.get_detection_stats()
        profiler_stats = self.profiler.get_stats()
        return DetectionStats(
            total_detections=detection["total_detections"],
            spam_detected=detection["spam_detected"],
            suspicious_detected=detection["suspicious_detected"],
            false_positives=detection["false_positive"],
            false_negatives=detection["false_negative"],
            accuracy=detection["accuracy"],
            model_accuracy=self.scorer.accuracy(),
            profile_count=profiler_stats["profile_count"],
            activity_count=profiler_stats["activity_count"],
            cache_size=len(self.cache),
            cache_hit_rate=self.metrics.cache_hit_rate(),
        )

    # ==================== Rule management ====================

    # Matcher mutations clear the result cache through its listener

    def create_rule(self, rule: Rule) -> bool:
        return self.rule_matcher.create_rule(rule)

    def delete_rule(self, rule_id: str) -> bool:
        return self.rule_matcher.delete_rule(rule_id)

    def toggle_rule(self, rule_id: str, active: bool) -> bool:
        return self.rule_matcher.toggle_rule(rule_id, active)

    def add_to_whitelist(self, phone_number: str) -> Rule:
        return self.rule_matcher.add_to_whitelist(phone_number)

    def add_to_blacklist(self, phone_number: str) -> Rule:
        return self.rule_matcher.add_to_blacklist(phone_number)

    def add_custom_keyword(self, keyword: str) -> bool:
        added = self.heuristics.add_custom_keyword(keyword)
        if added:
            self.cache.clear()
        return added

    def remove_custom_keyword(self, keyword: str) -> bool:
        removed = self.heuristics.remove_custom_keyword(keyword)
        if removed:
            self.cache.clear()
        return removed

    # ==================== Pipeline ====================

    async def _detect(
        self,
        kind: DetectionType,
        sender_id: str,
        cache_key: str,
        timestamp: Optional[datetime] = None,
        content: Optional[str] = None,
        duration: Optional[int] = None,
        contact_name: Optional[str] = None,
        direction: Optional[str] = None
    ) -> IntegratedResult:
        start_time = time.perf_counter()
        timestamp = timestamp or self._now()

        try:
            cached = self.cache.get(cache_key)
            self.metrics.record_cache_lookup(cached is not None)

            self.profiler.record_activity(ActivityRecord(
                sender_id=sender_id,
                timestamp=timestamp,
                activity_type=ActivityType.SMS if kind == DetectionType.SMS else ActivityType.CALL,
                duration=duration,
                content=content,
                direction=direction,
            ))

            if cached is not None:
                logger.debug("Cache hit", cache_key=cache_key)
                return cached

            generation = self.cache.generation(sender_id)
            result = await self._evaluate(
                kind, sender_id, timestamp, content, contact_name, direction, start_time
            )

            self.cache.put(cache_key, result, generation)
            self._emit_history(result, kind)
            self.metrics.record_detection(result.spam_level.value)
            self.metrics.record_latency("detection", result.processing_time_ms, {"kind": kind.value})

            logger.info(
                "Detection complete",
                sender_id=sender_id,
                kind=kind.value,
                final_score=round(result.final_score, 4),
                spam_level=result.spam_level.value,
                confidence=round(result.confidence, 4),
                processing_time_ms=result.processing_time_ms
            )
            return result

        except Exception as e:
            logger.error("Detection failed", sender_id=sender_id, kind=kind.value, error=str(e))
            self.metrics.record_error("detection", str(e), {"sender_id": sender_id})
            return self._error_result(sender_id, kind, start_time)

    async def _evaluate(
        self,
        kind: DetectionType,
        sender_id: str,
        timestamp: datetime,
        content: Optional[str],
        contact_name: Optional[str],
        direction: Optional[str],
        start_time: float
    ) -> IntegratedResult:
        rules_outcome, learned_outcome, behavior_outcome = await asyncio.gather(
            asyncio.to_thread(
                self._run_rules, sender_id, content, kind, contact_name, direction, timestamp
            ),
            asyncio.to_thread(self._run_learned, sender_id, content, timestamp),
            asyncio.to_thread(self.profiler.analyze_behavior, sender_id),
            return_exceptions=True
        )

        failed: List[str] = []
        for name, outcome in zip(COMPONENTS, (rules_outcome, learned_outcome, behavior_outcome)):
            if isinstance(outcome, BaseException):
                failed.append(name)
                logger.error("Detection component failed", component=name, error=str(outcome))
                self.metrics.record_error("component_failure", str(outcome), {"component": name})

        heuristic_result: Optional[HeuristicResult] = None
        rule_match: RuleMatch = NO_MATCH
        if "rules" not in failed:
            heuristic_result, rule_match = rules_outcome
        learned_score = 0.0 if "learned" in failed else learned_outcome
        analysis: Optional[BehaviorAnalysis] = None if "behavior" in failed else behavior_outcome

        rule_score = heuristic_result.score if heuristic_result is not None else 0.0
        behavior_score = analysis.score if analysis is not None else 0.0
        behavior_confidence = analysis.confidence if analysis is not None else 0.0

        final_score = self.combine_scores(learned_score, behavior_score, rule_score, behavior_confidence)
        spam_level = self.classify(final_score)
        confidence = self.overall_confidence(learned_score, behavior_score, rule_score, behavior_confidence)
        confidence *= (len(COMPONENTS) - len(failed)) / len(COMPONENTS)

        reasons = self._reasons(learned_score, rule_score, heuristic_result, analysis, content)
        reasons.extend(f"component_failed:{name}" for name in failed)

        matched_rule_id = None
        if rule_match.blocks:
            rule = rule_match.rule
            final_score, spam_level, rule_score, confidence = 1.0, SpamLevel.SPAM, 1.0, 1.0
            matched_rule_id = rule.id
            reasons.insert(0, f"rule_match:{rule.rule_type}:{rule.name}")
        elif rule_match.allows:
            rule = rule_match.rule
            final_score, spam_level, rule_score, confidence = 0.0, SpamLevel.CLEAN, 0.0, 1.0
            matched_rule_id = rule.id
            reasons.insert(0, f"whitelisted:{rule.name}")

        recommendations = list(LEVEL_RECOMMENDATIONS[spam_level])
        if analysis is not None and matched_rule_id is None:
            recommendations.extend(analysis.recommendations)

        return IntegratedResult(
            sender_id=sender_id,
            kind=kind,
            final_score=final_score,
            spam_level=spam_level,
            confidence=max(0.0, min(confidence, 1.0)),
            rule_score=rule_score,
            behavior_score=behavior_score,
            learned_score=learned_score,
            behavior_level=analysis.suspicion_level.value if analysis is not None else None,
            behavior_confidence=behavior_confidence,
            matched_rule_id=matched_rule_id,
            reasons=_dedupe(reasons),
            recommendations=_dedupe(recommendations),
            timestamp=self._now(),
            processing_time_ms=int((time.perf_counter() - start_time) * 1000),
        )

    def _run_rules(
        self,
        sender_id: str,
        content: Optional[str],
        kind: DetectionType,
        contact_name: Optional[str],
        direction: Optional[str],
        at: datetime
    ) -> Tuple[HeuristicResult, RuleMatch]:
        heuristic_result = self.heuristics.detect(
            sender_id,
            content=content,
            kind=kind,
            contact_name=contact_name,
            direction=direction,
            at=at
        )
        rule_match = self.rule_matcher.evaluate(sender_id, content, kind=kind, at=at)
        return heuristic_result, rule_match

    def _run_learned(self, sender_id: str, content: Optional[str], at: datetime) -> float:
        features = self.extractor.extract(sender_id, content, at)
        return self.scorer.score(features)

    def _emit_history(self, result: IntegratedResult, kind: DetectionType):
        if self.history_sink is None or result.spam_level == SpamLevel.CLEAN:
            return
        try:
            self.history_sink.append(result, kind)
        except Exception as e:
            logger.warning("History sink append failed", sender_id=result.sender_id, error=str(e))
            self.metrics.record_error("history_sink", str(e))

    def _error_result(self, sender_id: str, kind: DetectionType, start_time: float) -> IntegratedResult:
        return IntegratedResult(
            sender_id=sender_id,
            kind=kind,
            final_score=0.0,
            spam_level=SpamLevel.UNKNOWN,
            confidence=0.0,
            reasons=["detection_error"],
            recommendations=["verify_manually"],
            timestamp=self._now(),
            processing_time_ms=int((time.perf_counter() - start_time) * 1000),
        )

    # ==================== Fusion ====================

    def combine_weights(self, behavior_confidence: float) -> Tuple[float, float, float]:
        """
        Fusion weights for (learned, behavioral, rule), summing to 1
        """
        behavior_confidence = max(0.0, min(behavior_confidence, 1.0))
        learned = self.learned_weight
        behavioral = self.behavioral_weight * behavior_confidence
        rule = self.rule_weight

        if behavior_confidence < 0.5:
            unused = self.behavioral_weight - behavioral
            learned += unused * 0.6
            rule += unused * 0.4

        total = learned + behavioral + rule
        if total <= 0:
            return 1.0 / 3, 1.0 / 3, 1.0 / 3
        return learned / total, behavioral / total, rule / total

    def combine_scores(
        self,
        learned_score: float,
        behavior_score: float,
        rule_score: float,
        behavior_confidence: float
    ) -> float:
        learned_w, behavior_w, rule_w = self.combine_weights(behavior_confidence)
        score = learned_score * learned_w + behavior_score * behavior_w + rule_score * rule_w
        return max(0.0, min(score, 1.0))

    def classify(self, score: float) -> SpamLevel:
        if score >= self.spam_threshold:
            return SpamLevel.SPAM
        if score >= self.suspicious_threshold:
            return SpamLevel.SUSPICIOUS
        if score >= self.questionable_threshold:
            return SpamLevel.QUESTIONABLE
        return SpamLevel.CLEAN

    @staticmethod
    def overall_confidence(
        learned_score: float,
        behavior_score: float,
        rule_score: float,
        behavior_confidence: float
    ) -> float:
        """
        Agreement between components, behavioral evidence, and how decisive
        the average score is
        """
        scores = [learned_score, behavior_score, rule_score]
        mean = sum(scores) / len(scores)
        variance = sum((s - mean) ** 2 for s in scores) / len(scores)

        confidence = max(0.0, min(1.0 - variance, 1.0)) * 0.4
        confidence += behavior_confidence * 0.3
        confidence += 0.3 if (mean > 0.8 or mean < 0.2) else 0.1
        return max(0.0, min(confidence, 1.0))

    def _reasons(
        self,
        learned_score: float,
        rule_score: float,
        heuristic_result: Optional[HeuristicResult],
        analysis: Optional[BehaviorAnalysis],
        content: Optional[str]
    ) -> List[str]:
        reasons = []

        if learned_score > 0.7:
            reasons.append("learned_model_high_score")
        if rule_score > 0.6:
            reasons.append("heuristic_rules_high_score")
        if heuristic_result is not None:
            reasons.extend(f"heuristic:{t}" for t in heuristic_result.signal_types)
        if analysis is not None:
            reasons.extend(analysis.reasons)

        if content:
            if URL_PATTERN.search(content):
                reasons.append("content:contains_link")
            normalized = normalize_text(content)
            if any(keyword in normalized for keyword in CONTENT_KEYWORDS):
                reasons.append("content:suspicious_keywords")

        return reasons


def build_engine(
    settings: Optional[Settings] = None,
    rule_store: Optional[RuleStore] = None,
    history_sink: Optional[HistorySink] = None,
    metrics: Optional[MetricsCollector] = None,
    clock: Callable[[], float] = time.monotonic,
    now: Callable[[], datetime] = datetime.now
) -> FusionEngine:
    """
    Wire one engine and the components it owns from settings
    """
    settings = settings or get_settings()

    rule_matcher = RuleMatcher(
        store=rule_store if rule_store is not None else InMemoryRuleStore(),
        scope=settings.rule_scope,
        refresh_seconds=settings.rule_refresh_seconds,
        home_country_code=settings.home_country_code,
        clock=clock
    )

    scorer = None
    if settings.model_path and Path(settings.model_path).exists():
        try:
            scorer = OnlineLinearScorer.load(settings.model_path)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Stored model unreadable, starting fresh", path=settings.model_path, error=str(e))
    if scorer is None:
        scorer = OnlineLinearScorer(
            learning_rate=settings.learning_rate,
            weight_limit=settings.weight_limit,
            init_scale=settings.init_weight_scale,
            seed=settings.model_seed,
            history_size=settings.feedback_history_size,
            maturity_examples=settings.model_maturity_examples
        )

    profiler = BehavioralProfiler(
        min_data_points=settings.min_data_points,
        analysis_window_days=settings.analysis_window_days,
        max_history_size=settings.max_history_size,
        keyword_capacity=settings.keyword_capacity,
        interval_capacity=settings.interval_capacity
    )

    return FusionEngine(
        rule_matcher=rule_matcher,
        heuristics=HeuristicDetector(home_country_code=settings.home_country_code),
        extractor=FeatureExtractor(),
        scorer=scorer,
        profiler=profiler,
        cache=ResultCache(
            capacity=settings.cache_capacity,
            ttl_seconds=settings.cache_ttl_seconds,
            clock=clock
        ),
        history_sink=history_sink if history_sink is not None else InMemoryHistorySink(),
        metrics=metrics,
        learned_weight=settings.learned_weight,
        behavioral_weight=settings.behavioral_weight,
        rule_weight=settings.rule_weight,
        spam_threshold=settings.spam_threshold,
        suspicious_threshold=settings.suspicious_threshold,
        questionable_threshold=settings.questionable_threshold,
        model_path=settings.model_path or None,
        now=now
    )
