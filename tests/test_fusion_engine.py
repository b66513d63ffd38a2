"""
Tests for the fusion engine
"""

import asyncio
import time
from datetime import timedelta

import pytest

from callguard.config import Settings
from callguard.schemas.events import CallEvent, DetectionType, SmsEvent
from callguard.schemas.results import SpamLevel
from callguard.schemas.rules import BlacklistRule, WhitelistRule
from callguard.scoring.fusion_engine import FusionEngine, build_engine

from conftest import BASE_TIME

SPAMMER = "+5511999990000"


class TestFusionMath:
    """Weights, thresholds and confidence"""

    @pytest.fixture
    def engine(self):
        return build_engine(Settings(model_seed=7))

    @pytest.mark.parametrize("confidence", [0.0, 0.2, 0.49, 0.5, 0.8, 1.0])
    def test_weights_sum_to_one(self, engine, confidence):
        assert sum(engine.combine_weights(confidence)) == pytest.approx(1.0)

    def test_low_confidence_redistributes_behavior_weight(self, engine):
        learned, behavioral, rule = engine.combine_weights(0.0)

        assert behavioral == 0.0
        assert learned == pytest.approx(0.40 + 0.35 * 0.6)
        assert rule == pytest.approx(0.25 + 0.35 * 0.4)

    def test_full_confidence_keeps_base_weights(self, engine):
        assert engine.combine_weights(1.0) == pytest.approx((0.40, 0.35, 0.25))

    @pytest.mark.parametrize("scores", [(0, 0, 0), (1, 1, 1), (1, 0, 1), (0.5, 0.9, 0.2)])
    def test_final_score_in_unit_interval(self, engine, scores):
        for confidence in (0.0, 0.3, 0.7, 1.0):
            assert 0.0 <= engine.combine_scores(*scores, confidence) <= 1.0

    @pytest.mark.parametrize("score,level", [
        (1.0, SpamLevel.SPAM),
        (0.7, SpamLevel.SPAM),
        (0.69, SpamLevel.SUSPICIOUS),
        (0.5, SpamLevel.SUSPICIOUS),
        (0.49, SpamLevel.QUESTIONABLE),
        (0.3, SpamLevel.QUESTIONABLE),
        (0.29, SpamLevel.CLEAN),
        (0.0, SpamLevel.CLEAN),
    ])
    def test_classification_thresholds(self, engine, score, level):
        assert engine.classify(score) == level

    def test_agreement_raises_confidence(self):
        agreeing = FusionEngine.overall_confidence(0.9, 0.9, 0.9, 0.5)
        disagreeing = FusionEngine.overall_confidence(0.9, 0.0, 0.5, 0.5)

        assert agreeing > disagreeing
        assert 0.0 <= disagreeing <= 1.0


class TestFusionEngine:
    """Test suite for end to end detection"""

    @pytest.mark.asyncio
    async def test_sms_burst_with_links_is_flagged(self, engine):
        result = None
        for i in range(25):
            result = await engine.detect_sms_spam(
                SPAMMER,
                f"Oferta grátis {i}! Acesse http://promo.example/{i}",
                timestamp=BASE_TIME + timedelta(minutes=2 * i)
            )

        assert result.spam_level in (SpamLevel.SUSPICIOUS, SpamLevel.SPAM)
        assert "content:contains_link" in result.reasons
        assert "content:suspicious_keywords" in result.reasons
        assert any("block" in r for r in result.recommendations)
        assert result.behavior_level == "high"

    @pytest.mark.asyncio
    async def test_repeat_detection_is_served_from_cache(self, engine):
        first = await engine.detect_sms_spam(SPAMMER, "Promoção imperdível", timestamp=BASE_TIME)
        second = await engine.detect_sms_spam(SPAMMER, "Promoção imperdível", timestamp=BASE_TIME)

        assert second == first
        assert second.timestamp == first.timestamp
        assert engine.metrics.cache_hit_rate() == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_cache_hit_still_feeds_profile(self, engine):
        await engine.detect_sms_spam(SPAMMER, "Oi", timestamp=BASE_TIME)
        await engine.detect_sms_spam(SPAMMER, "Oi", timestamp=BASE_TIME + timedelta(minutes=1))

        assert engine.profiler.get_profile(SPAMMER).total_interactions == 2

    @pytest.mark.asyncio
    async def test_feedback_invalidates_sender(self, engine):
        first = await engine.detect_call_spam(SPAMMER, timestamp=BASE_TIME)
        other = await engine.detect_call_spam("+5511777776666", timestamp=BASE_TIME)

        outcome = await engine.train_with_feedback(SPAMMER, is_spam=True)

        assert outcome["invalidated_entries"] == 1
        assert engine.scorer.training_examples == 1

        again = await engine.detect_call_spam(SPAMMER, timestamp=BASE_TIME)
        assert again.timestamp > first.timestamp
        assert await engine.detect_call_spam("+5511777776666", timestamp=BASE_TIME) is other

    @pytest.mark.asyncio
    async def test_blacklist_rule_overrides_everything(self, engine):
        engine.create_rule(BlacklistRule(id="bl1", name="known spammer", pattern="+5500000000", priority=1000))

        result = await engine.detect_call_spam("+5500000000", contact_name="Mãe", timestamp=BASE_TIME)

        assert result.spam_level == SpamLevel.SPAM
        assert result.final_score == 1.0
        assert result.confidence == 1.0
        assert result.matched_rule_id == "bl1"
        assert result.reasons[0] == "rule_match:blacklist:known spammer"
        assert result.should_block

    @pytest.mark.asyncio
    async def test_whitelist_wins_over_learned_score(self, engine, monkeypatch):
        engine.create_rule(WhitelistRule(id="wl1", name="family", pattern="+5511888888", priority=100))
        monkeypatch.setattr(engine.scorer, "score", lambda features: 0.99)

        assert engine.rule_matcher.evaluate("+5511888888").allows

        result = await engine.detect_sms_spam("+5511888888", "Oferta grátis http://x.example", timestamp=BASE_TIME)

        assert result.spam_level == SpamLevel.CLEAN
        assert result.final_score == 0.0
        assert result.learned_score == 0.99
        assert result.reasons[0] == "whitelisted:family"

    @pytest.mark.asyncio
    async def test_new_rule_drops_cached_verdicts(self, engine):
        before = await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)
        assert before.spam_level != SpamLevel.SPAM

        engine.create_rule(BlacklistRule(id="bl1", name="late block", pattern="+5500000000", priority=10))

        after = await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)
        assert after.spam_level == SpamLevel.SPAM

    @pytest.mark.asyncio
    async def test_failed_component_scores_zero(self, engine, monkeypatch):
        def broken(features):
            raise RuntimeError("model unavailable")

        monkeypatch.setattr(engine.scorer, "score", broken)

        result = await engine.detect_sms_spam(SPAMMER, "Oferta grátis http://x.example", timestamp=BASE_TIME)

        assert result.spam_level != SpamLevel.UNKNOWN
        assert result.learned_score == 0.0
        assert "component_failed:learned" in result.reasons
        assert result.confidence <= 2 / 3
        assert engine.metrics.get_error_stats()["counts"]["component_failure"] == 1

    @pytest.mark.asyncio
    async def test_pipeline_failure_returns_unknown(self, engine, monkeypatch):
        def broken(record):
            raise RuntimeError("profile store corrupted")

        monkeypatch.setattr(engine.profiler, "record_activity", broken)

        result = await engine.detect_call_spam(SPAMMER, timestamp=BASE_TIME)

        assert result.spam_level == SpamLevel.UNKNOWN
        assert result.confidence == 0.0
        assert result.reasons == ["detection_error"]
        assert result.recommendations == ["verify_manually"]

    @pytest.mark.asyncio
    async def test_non_clean_results_reach_history(self, engine, history_sink):
        engine.create_rule(BlacklistRule(id="bl1", name="x", pattern="+5500000000"))
        engine.create_rule(WhitelistRule(id="wl1", name="y", pattern="+5511888888"))

        await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)
        await engine.detect_call_spam("+5511888888", timestamp=BASE_TIME)

        entries = history_sink.entries()
        assert len(entries) == 1
        assert entries[0][0].sender_id == "+5500000000"
        assert entries[0][1] == DetectionType.CALL

    @pytest.mark.asyncio
    async def test_history_failure_does_not_break_detection(self, settings, clock, now):
        class BrokenSink:
            def append(self, result, kind):
                raise IOError("disk full")

        engine = build_engine(settings, history_sink=BrokenSink(), clock=clock, now=now)
        engine.create_rule(BlacklistRule(id="bl1", name="x", pattern="+5500000000"))

        result = await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)

        assert result.spam_level == SpamLevel.SPAM

    @pytest.mark.asyncio
    async def test_outgoing_call_carries_no_heuristic_score(self, engine):
        result = await engine.detect_call_spam("08001234567", timestamp=BASE_TIME, direction="outgoing")
        assert result.rule_score == 0.0

    @pytest.mark.asyncio
    async def test_stats_track_detections_and_feedback(self, engine):
        engine.create_rule(BlacklistRule(id="bl1", name="x", pattern="+5500000000"))
        await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)
        await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)

        await engine.train_with_feedback("+5500000000", is_spam=False)

        stats = engine.get_detection_stats()
        assert stats.total_detections == 1
        assert stats.spam_detected == 1
        assert stats.false_positives == 1
        assert stats.profile_count == 1
        assert stats.cache_size == 0
        assert stats.cache_hit_rate == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_feedback_persists_model(self, tmp_path, clock, now):
        model_path = tmp_path / "scorer.json"
        engine = build_engine(Settings(model_seed=7, model_path=str(model_path)), clock=clock, now=now)

        await engine.train_with_feedback(SPAMMER, is_spam=True, content="Oferta grátis")

        assert model_path.exists()
        reloaded = build_engine(Settings(model_path=str(model_path)), clock=clock, now=now)
        assert reloaded.scorer.update_count == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_recomputed(self, engine, clock):
        first = await engine.detect_call_spam(SPAMMER, timestamp=BASE_TIME)
        clock.advance(3601)
        second = await engine.detect_call_spam(SPAMMER, timestamp=BASE_TIME)

        assert second.timestamp > first.timestamp

    @pytest.mark.asyncio
    async def test_disabled_rule_stops_matching(self, engine):
        engine.create_rule(BlacklistRule(id="bl1", name="x", pattern="+5500000000"))
        assert (await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)).spam_level == SpamLevel.SPAM

        assert engine.toggle_rule("bl1", False)
        assert not engine.toggle_rule("missing", False)

        result = await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)
        assert result.matched_rule_id is None

    @pytest.mark.asyncio
    async def test_detect_event_dispatches_on_kind(self, engine):
        sms = await engine.detect_event(SmsEvent(phone_number=SPAMMER, content="Oi", timestamp=BASE_TIME))
        call = await engine.detect_event(CallEvent(phone_number=SPAMMER, timestamp=BASE_TIME, direction="missed"))

        assert sms.kind == DetectionType.SMS
        assert call.kind == DetectionType.CALL
        assert engine.profiler.get_profile(SPAMMER).call_pattern.missed_calls == 1

    @pytest.mark.asyncio
    async def test_feedback_during_detection_is_not_undone(self, engine, monkeypatch):
        analyze = engine.profiler.analyze_behavior

        def slow_analyze(sender_id):
            time.sleep(0.3)
            return analyze(sender_id)

        monkeypatch.setattr(engine.profiler, "analyze_behavior", slow_analyze)

        async def feedback_midway():
            await asyncio.sleep(0.1)
            return await engine.train_with_feedback(SPAMMER, is_spam=True)

        stale, outcome = await asyncio.gather(
            engine.detect_call_spam(SPAMMER, timestamp=BASE_TIME),
            feedback_midway()
        )

        assert outcome["invalidated_entries"] == 0
        assert engine.cache.last_for_sender(SPAMMER) is None

        fresh = await engine.detect_call_spam(SPAMMER, timestamp=BASE_TIME)
        assert fresh is not stale
        assert fresh.timestamp > stale.timestamp

    @pytest.mark.asyncio
    async def test_unreadable_stored_rule_keeps_other_rules(self, engine, rule_store):
        rule_store.create_rule("current_user", BlacklistRule(id="bl1", name="x", pattern="+5500000000", priority=1000).to_record())
        rule_store.create_rule("current_user", {"id": "k1", "name": "bad", "type": "keyword", "pattern": "x", "priority": "high"})

        result = await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)

        assert result.spam_level == SpamLevel.SPAM
        assert "component_failed:rules" not in result.reasons

    @pytest.mark.asyncio
    async def test_blacklist_helper_drops_cached_verdicts(self, engine):
        before = await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)
        assert before.spam_level != SpamLevel.SPAM

        engine.rule_matcher.add_to_blacklist("+5500000000")

        after = await engine.detect_call_spam("+5500000000", timestamp=BASE_TIME)
        assert after.spam_level == SpamLevel.SPAM

    @pytest.mark.asyncio
    async def test_custom_keyword_drops_cached_verdicts(self, engine):
        await engine.detect_sms_spam(SPAMMER, "Seu consórcio foi contemplado", timestamp=BASE_TIME)
        assert len(engine.cache) == 1

        assert engine.add_custom_keyword("consórcio")
        assert len(engine.cache) == 0

        result = await engine.detect_sms_spam(SPAMMER, "Seu consórcio foi contemplado", timestamp=BASE_TIME)
        assert "heuristic:custom_keyword" in result.reasons

    @pytest.mark.asyncio
    async def test_feedback_trains_on_last_event_time(self, engine, monkeypatch):
        seen = []
        extract = engine.extractor.extract

        def recording_extract(phone_number, content, timestamp):
            seen.append(timestamp)
            return extract(phone_number, content, timestamp)

        await engine.detect_call_spam(SPAMMER, timestamp=BASE_TIME - timedelta(hours=20))
        monkeypatch.setattr(engine.extractor, "extract", recording_extract)

        await engine.train_with_feedback(SPAMMER, is_spam=True)
        await engine.train_with_feedback("+5511777776666", is_spam=False, timestamp=BASE_TIME)

        assert seen == [BASE_TIME - timedelta(hours=20), BASE_TIME]
