from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from skill_mastery.clock import MS_PER_DAY, MS_PER_HOUR, MS_PER_MINUTE
from skill_mastery.concepts import SkillGraph
from skill_mastery.models import Skill
from skill_mastery.store import MemoryStore
from skill_mastery.tutor import Tutor

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start.timestamp() * 1000

    def __call__(self) -> float:
        return self.now

    def advance(self, *, days: float = 0, hours: float = 0, minutes: float = 0) -> None:
        self.now += days * MS_PER_DAY + hours * MS_PER_HOUR + minutes * MS_PER_MINUTE


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def graph() -> SkillGraph:
    return SkillGraph(
        [
            Skill(id="html-basics", name="HTML basics", category="html_element"),
            Skill(id="html-lists", name="Lists", category="html_element", prerequisites=["html-basics"]),
            Skill(id="css-selectors", name="Selectors", category="css_property", prerequisites=["html-basics"]),
            Skill(id="css-flexbox", name="Flexbox", category="css_property", prerequisites=["css-selectors"]),
        ]
    )


@pytest.fixture()
def tutor(store, graph, clock) -> Tutor:
    return asyncio.run(Tutor.create(store, graph, clock=clock))
