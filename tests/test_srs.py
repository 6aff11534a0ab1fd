from __future__ import annotations

import asyncio
import logging

import pytest

from skill_mastery.clock import MS_PER_DAY
from skill_mastery.config import MemoryConfig
from skill_mastery.srs import CURVES_KEY, MemoryModel, next_interval, retrievability


@pytest.fixture()
def memory(store, clock) -> MemoryModel:
    model = MemoryModel(store, clock=clock)
    asyncio.run(model.init())
    return model


def test_retrievability_is_one_at_time_zero():
    assert retrievability(1.0, 0) == 1.0
    assert retrievability(0.1, 0) == 1.0


def test_retrievability_halves_after_nine_stabilities():
    assert retrievability(2.0, 18.0) == pytest.approx(0.5)


def test_retrievability_decreases_over_time():
    values = [retrievability(3.0, days) for days in (1, 5, 20, 100)]
    assert values == sorted(values, reverse=True)
    assert all(0.0 < value < 1.0 for value in values)


def test_interval_round_trips_to_target_retention():
    for stability in (0.1, 1.0, 7.5, 365.0):
        for target in (0.7, 0.9, 0.95):
            assert retrievability(stability, next_interval(stability, target)) == pytest.approx(target)


def test_successful_good_review_schedules_next_review(memory, clock):
    curve = asyncio.run(memory.update_stability("css-flexbox", True, 3))

    assert curve.stability == pytest.approx(1.5)
    assert curve.difficulty == pytest.approx(5.0)
    assert curve.last_review == clock.now
    expected_days = 1.5 * 9 * (1 / 0.9 - 1)
    assert curve.next_review == pytest.approx(clock.now + expected_days * MS_PER_DAY)


def test_easy_review_grows_stability_more_and_lowers_difficulty(memory):
    curve = asyncio.run(memory.update_stability("css-grid", True, 4))

    assert curve.stability == pytest.approx(1.0 * (1.3 + 1.1 * 0.2))
    assert curve.difficulty == pytest.approx(5.0 - 0.86)


def test_failed_review_halves_stability_and_raises_difficulty(memory):
    curve = asyncio.run(memory.update_stability("css-grid", False, 3))

    assert curve.stability == pytest.approx(0.5)
    assert curve.difficulty == pytest.approx(5.0 + 2 * 0.86)


def test_stability_and_difficulty_stay_within_bounds(store, clock):
    seeded = {
        "strong": {"stability": 300.0, "difficulty": 1.2},
        "weak": {"stability": 0.15, "difficulty": 9.5},
    }
    asyncio.run(store.set(CURVES_KEY, seeded))
    memory = MemoryModel(store, clock=clock)
    asyncio.run(memory.init())

    strong = asyncio.run(memory.update_stability("strong", True, 4))
    weak = asyncio.run(memory.update_stability("weak", False, 1))

    assert strong.stability == pytest.approx(365.0)
    assert strong.difficulty == pytest.approx(1.0)
    assert weak.stability == pytest.approx(0.1)
    assert weak.difficulty == pytest.approx(10.0)


@pytest.mark.parametrize(("rating", "clamped"), [(0, 1), (5, 4), (-1, 1)])
def test_rating_outside_range_is_clamped(memory, rating, clamped, caplog):
    with caplog.at_level(logging.WARNING, logger="skill_mastery.srs"):
        curve = asyncio.run(memory.update_stability("css-grid", True, rating))
    expected = asyncio.run(memory.update_stability("css-flexbox", True, clamped))

    assert curve.review_history[-1].rating == clamped
    assert curve.stability == pytest.approx(expected.stability)
    assert curve.difficulty == pytest.approx(expected.difficulty)
    assert curve.last_review is not None
    assert "outside 1-4" in caplog.text


def test_review_history_keeps_last_ten(memory, clock):
    for index in range(12):
        clock.advance(hours=1)
        asyncio.run(memory.update_stability("css-grid", index % 2 == 0))

    history = memory.curves["css-grid"].review_history
    assert len(history) == 10
    assert history[-1].timestamp == clock.now


def test_never_reviewed_skill_is_fully_retrievable(memory):
    assert memory.current_retrievability("unseen") == 1.0
    assert memory.get_concepts_due_for_review() == []


def test_due_reviews_are_ordered_by_retrievability(memory, clock):
    asyncio.run(memory.update_stability("stable", True, 3))  # due after 1.5 days
    asyncio.run(memory.update_stability("shaky", False, 3))  # due after 0.5 days

    clock.advance(days=1)
    assert [item.skill_id for item in memory.get_concepts_due_for_review()] == ["shaky"]

    clock.advance(days=1.25)
    due = memory.get_concepts_due_for_review()
    assert [item.skill_id for item in due] == ["shaky", "stable"]
    assert due[0].retrievability < due[1].retrievability
    assert due[0].days_overdue == 2
    assert due[1].days_overdue == 1


def test_custom_target_retention_shortens_interval(store, clock):
    memory = MemoryModel(store, MemoryConfig(target_retention=0.95), clock=clock)
    asyncio.run(memory.init())

    assert memory.get_next_interval("css-grid") < memory.get_next_interval("css-grid", 0.9)


def test_curves_persist_across_instances(memory, store, clock):
    curve = asyncio.run(memory.update_stability("css-grid", True, 3))

    reloaded = MemoryModel(store, clock=clock)
    asyncio.run(reloaded.init())

    assert reloaded.curves["css-grid"].stability == pytest.approx(curve.stability)
    assert reloaded.curves["css-grid"].next_review == pytest.approx(curve.next_review)
    assert reloaded.scheduled_count() == 1
