"""Tests for feedback.py: threshold recalibration, difficulty and pattern detection."""

from __future__ import annotations

import asyncio

import pytest

from skill_mastery.bkt import BKTEngine
from skill_mastery.config import FeedbackConfig
from skill_mastery.feedback import IMPROVEMENTS_KEY, FeedbackLoop, InterventionStats
from skill_mastery.models import OutcomeEvent, StruggleThresholds


@pytest.fixture()
def bkt(store, clock) -> BKTEngine:
    engine = BKTEngine(store, clock=clock)
    asyncio.run(engine.init())
    return engine


@pytest.fixture()
def loop(store, bkt, clock) -> FeedbackLoop:
    feedback = FeedbackLoop(store, bkt, clock=clock)
    asyncio.run(feedback.init())
    return feedback


def _process(loop: FeedbackLoop, **kwargs):
    kwargs.setdefault("skill_id", "css-grid")
    kwargs.setdefault("outcome", "passed")
    return asyncio.run(loop.process_outcome(OutcomeEvent(**kwargs)))


class TestOutcomeEvent:
    def test_outcome_is_validated(self):
        with pytest.raises(ValueError, match="Unsupported outcome"):
            OutcomeEvent(skill_id="css-grid", outcome="skipped")

    def test_struggle_level_is_clamped(self):
        assert OutcomeEvent(skill_id="a", outcome="failed", struggle_level=7).struggle_level == 3
        assert OutcomeEvent(skill_id="a", outcome="failed", struggle_level=-2).struggle_level == 0


class TestProcessOutcome:
    def test_updates_mastery(self, loop):
        result = _process(loop)
        assert result.mastery is not None
        assert result.mastery.after > result.mastery.before
        assert len(loop.history) == 1

    def test_event_without_skill_only_records_history(self, loop, bkt):
        result = _process(loop, skill_id=None, outcome="abandoned")
        assert result.mastery is None
        assert result.difficulty is None
        assert result.thresholds is None
        assert bkt.components == {}
        assert len(loop.history) == 1

    def test_hint_id_is_echoed(self, loop):
        assert _process(loop, hint_id="hint-7").hint_id == "hint-7"


class TestStruggleThresholds:
    def test_defaults_until_enough_samples(self, loop):
        for _ in range(9):
            result = _process(loop, explain_clicks=3)
        assert result.thresholds == {"adjusted": False, "reason": "insufficient_data"}
        assert loop.get_struggle_thresholds("css-grid") == StruggleThresholds.default()

    def test_requires_enough_successes(self, loop):
        for _ in range(10):
            result = _process(loop, outcome="failed")
        assert result.thresholds == {"adjusted": False, "reason": "insufficient_successes"}

    def test_recalibrates_toward_successful_learners(self, loop):
        for index in range(11):
            passed = index % 2 == 0
            _process(
                loop,
                outcome="passed" if passed else "failed",
                explain_clicks=3 if passed else 0,
                test_attempts=1 if passed else 4,
                time_to_outcome=90 if passed else None,
            )
        before = loop.get_struggle_thresholds("css-grid")

        result = _process(loop, outcome="failed", test_attempts=4)
        after = loop.get_struggle_thresholds("css-grid")

        assert result.thresholds is not None and result.thresholds["adjusted"] is True
        assert result.thresholds["based_on"] == 6
        assert after.gentle.explain_clicks == pytest.approx(before.gentle.explain_clicks * 0.9 + 3 * 0.1)
        assert after.gentle.test_attempts == pytest.approx(before.gentle.test_attempts * 0.9 + 1 * 0.1)
        assert after.gentle.time_on_test == pytest.approx(before.gentle.time_on_test * 0.9 + 90 * 0.1)
        assert after.active.explain_clicks == pytest.approx(4.5)
        assert after.supportive.explain_clicks == pytest.approx(6.0)
        assert after.supportive.time_on_test == pytest.approx(180.0)

    def test_nudge_tiers_follow_nudge_clicks(self, loop):
        for _ in range(12):
            _process(loop, nudge_clicks=10, explain_clicks=0)
        thresholds = loop.get_struggle_thresholds("css-grid")

        # Recalibrated on the 10th, 11th and 12th outcome.
        assert thresholds.gentle.nudge_clicks == pytest.approx(((2 * 0.9 + 1) * 0.9 + 1) * 0.9 + 1)
        assert thresholds.gentle.explain_clicks == pytest.approx(2 * 0.9**3)
        assert thresholds.active.nudge_clicks == pytest.approx(15.0)
        assert thresholds.supportive.nudge_clicks == pytest.approx(20.0)
        assert thresholds.active.explain_clicks == 0.0

    def test_auto_adjustment_can_be_disabled(self, store, bkt, clock):
        loop = FeedbackLoop(store, bkt, FeedbackConfig(enable_auto_adjustment=False), clock=clock)
        asyncio.run(loop.init())
        for _ in range(12):
            result = _process(loop, explain_clicks=3)
        assert result.thresholds is None
        assert loop.thresholds == {}

    def test_returned_thresholds_are_copies(self, loop):
        thresholds = loop.get_struggle_thresholds("css-grid")
        thresholds.gentle.explain_clicks = 99
        assert loop.get_struggle_thresholds("css-grid").gentle.explain_clicks == 2


class TestConceptDifficulty:
    def test_unknown_skill_has_neutral_difficulty(self, loop):
        assert loop.get_concept_difficulty("css-grid") == 0.5

    def test_incremental_update(self, loop):
        first = _process(loop, time_to_outcome=60, attempts_count=2)
        assert first.difficulty["difficulty"] == pytest.approx(0.25 * 0.2 + 0.25 * 0.4)

        second = _process(loop, outcome="failed")
        assert second.difficulty["success_rate"] == pytest.approx(0.5)
        assert second.difficulty["avg_attempts"] == pytest.approx(2.0)
        assert loop.get_concept_difficulty("css-grid") == pytest.approx(0.5 * 0.5 + 0.25 * 0.2 + 0.25 * 0.4)

    def test_defaults_when_nothing_timed(self, loop):
        _process(loop, outcome="failed")
        assert loop.get_concept_difficulty("css-grid") == pytest.approx(0.5 + 0.25 * 0.2 + 0.25 * 0.2)

    def test_difficult_concepts_listing(self, loop):
        for _ in range(6):
            _process(loop, skill_id="css-grid", outcome="failed", attempts_count=5)
        _process(loop, skill_id="css-color", time_to_outcome=10, attempts_count=1)

        difficult = loop.get_difficult_concepts()
        assert [item["skill_id"] for item in difficult] == ["css-grid"]


class TestPatterns:
    def test_difficult_concept_is_queued_once(self, loop):
        for _ in range(12):
            _process(loop, outcome="failed", attempts_count=5)

        pending = loop.get_pending_improvements()
        assert [item.type for item in pending] == ["difficult_concept"]
        assert pending[0].skill_id == "css-grid"
        assert pending[0].sample_size == 12

    def test_misconception_patterns(self, loop):
        for _ in range(5):
            result = _process(
                loop,
                skill_id=None,
                outcome="failed",
                misconception="unclosed-tag",
                intervention_style="hint",
            )

        assert result.intervention == {"success_rate": 0.0, "total_samples": 5}
        types = {item.type for item in loop.get_pending_improvements()}
        assert types == {"repeated_misconception", "ineffective_intervention"}

    def test_unknown_misconception_is_not_repeated(self, loop):
        for _ in range(5):
            _process(loop, skill_id=None, outcome="failed", misconception="unknown")
        assert loop.get_pending_improvements() == []

    def test_clear_pending_improvements(self, loop, store):
        for _ in range(5):
            _process(loop, skill_id=None, outcome="failed", misconception="unclosed-tag")
        assert loop.get_pending_improvements()

        asyncio.run(loop.clear_pending_improvements())
        assert loop.get_pending_improvements() == []
        assert asyncio.run(store.get(IMPROVEMENTS_KEY)) == []


class TestInterventionStats:
    def test_best_style(self, store, clock):
        stats = InterventionStats(store, clock=clock)
        asyncio.run(stats.init())
        for _ in range(2):
            asyncio.run(stats.record_intervention_outcome("unclosed-tag", "hint", False))
        asyncio.run(stats.record_intervention_outcome("unclosed-tag", "example", True, 30))
        result = asyncio.run(stats.record_intervention_outcome("unclosed-tag", "example", True, 60))

        assert result == {"success_rate": 1.0, "total_samples": 2}
        assert stats.best_style("unclosed-tag") == "example"
        assert stats.records["unclosed-tag:example"].avg_resolution_time == pytest.approx(45)
        assert stats.best_style("missing-alt") is None

    def test_custom_recorder_is_used(self, store, bkt, clock):
        calls = []

        class Recorder:
            async def record_intervention_outcome(self, misconception, style, success, time_to_outcome=None, user_id="default"):
                calls.append((misconception, style, success))
                return {"success_rate": 1.0, "total_samples": 1}

        loop = FeedbackLoop(store, bkt, recorder=Recorder(), clock=clock)
        asyncio.run(loop.init())
        _process(loop, misconception="unclosed-tag", intervention_style="example")
        assert calls == [("unclosed-tag", "example", True)]


class TestHistory:
    def test_state_survives_reload(self, loop, store, bkt, clock):
        for _ in range(3):
            _process(loop, time_to_outcome=30)

        reloaded = FeedbackLoop(store, bkt, clock=clock)
        asyncio.run(reloaded.init())
        assert len(reloaded.history) == 3
        assert reloaded.get_concept_difficulty("css-grid") == pytest.approx(loop.get_concept_difficulty("css-grid"))

    def test_old_entries_are_dropped(self, loop, clock):
        _process(loop)
        clock.advance(days=31)
        _process(loop)
        assert len(loop.history) == 1

    def test_statistics(self, loop):
        _process(loop, time_to_outcome=40)
        _process(loop, outcome="failed")
        _process(loop, outcome="abandoned")
        stats = loop.get_statistics()
        assert stats["total_outcomes"] == 3
        assert stats["passed"] == 1
        assert stats["pass_rate"] == pytest.approx(1 / 3)
        assert stats["avg_time_to_pass"] == pytest.approx(40)

    def test_export_import(self, loop, bkt, clock):
        _process(loop, time_to_outcome=30)
        exported = loop.export()

        from skill_mastery.store import MemoryStore

        other = FeedbackLoop(MemoryStore(), bkt, clock=clock)
        asyncio.run(other.init())
        asyncio.run(other.import_data(exported))
        assert len(other.history) == 1
        assert other.get_concept_difficulty("css-grid") == pytest.approx(loop.get_concept_difficulty("css-grid"))
