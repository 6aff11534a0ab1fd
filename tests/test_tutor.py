from __future__ import annotations

import asyncio

import pytest

from skill_mastery.models import OutcomeEvent
from skill_mastery.tutor import Tutor


def test_graph_skills_are_registered_in_order(tutor, graph):
    assert set(tutor.bkt.components) == set(graph.ids())
    assert tutor.bkt.components["css-flexbox"].prerequisites == ["css-selectors"]
    assert tutor.bkt.components["css-flexbox"].category == "css_property"


def test_sync_graph_only_adds_new_skills(tutor, store, graph, clock):
    asyncio.run(tutor.bkt.update_mastery("html-basics", True))

    reopened = asyncio.run(Tutor.create(store, graph, clock=clock))

    assert asyncio.run(reopened.sync_graph()) == 0
    assert reopened.bkt.components["html-basics"].total_observations == 1


def test_process_outcome_feeds_every_component(tutor, clock):
    event = OutcomeEvent(skill_id="html-lists", outcome="passed", time_to_outcome=600, explain_clicks=1)
    result = asyncio.run(tutor.process_outcome(event))

    assert result.mastery is not None and result.mastery.after > result.mastery.before
    assert tutor.feedback.get_concept_difficulty("html-lists") < 0.5
    profile = tutor.velocity.get_profile()
    assert profile.learning_minutes == pytest.approx(10)
    assert tutor.memory.curves["html-lists"].last_review == clock.now


def test_untimed_outcomes_only_reschedule_review(tutor, clock):
    asyncio.run(tutor.process_outcome(OutcomeEvent(skill_id="html-basics", outcome="passed", time_to_outcome=900)))
    for _ in range(9):
        clock.advance(minutes=1)
        asyncio.run(tutor.process_outcome(OutcomeEvent(skill_id="html-lists", outcome="passed")))

    profile = tutor.velocity.get_profile()
    assert profile.concepts_learned == 1
    assert profile.overall_velocity == pytest.approx(4.0)
    assert "html-lists" not in profile.skills
    curve = tutor.memory.curves["html-lists"]
    assert curve.last_review == clock.now
    assert len(curve.review_history) == 9
    assert curve.review_history[-1].time_to_review is None


def test_outcome_without_skill_skips_velocity(tutor):
    asyncio.run(tutor.process_outcome(OutcomeEvent(skill_id=None, outcome="abandoned")))
    assert tutor.velocity.get_profile().skills == {}
    assert tutor.memory.curves == {}


def test_delegated_queries(tutor):
    summary = tutor.get_mastery_summary()
    assert summary.total == 4
    assert summary.mastered == 0

    estimate = asyncio.run(tutor.estimate_time_to_mastery("css-flexbox"))
    assert estimate.factors["prerequisite_mastery"].value == pytest.approx(0.12)

    blockers = asyncio.run(tutor.identify_velocity_blockers("css-flexbox"))
    assert [b.type for b in blockers] == ["prerequisite_gap"]


def test_tutor_without_graph(store, clock):
    tutor = asyncio.run(Tutor.create(store, clock=clock))
    assert tutor.bkt.components == {}
    assert asyncio.run(tutor.get_next_concepts()) == []
