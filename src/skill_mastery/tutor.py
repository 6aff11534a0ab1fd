"""Wires the four learner-model components against one store and skill graph."""

from __future__ import annotations

import logging
from typing import Iterable

from .bkt import BKTEngine
from .clock import Clock, now_ms
from .concepts import SkillGraph
from .config import CoreConfig
from .feedback import FeedbackLoop, InterventionRecorder
from .models import (
    LearningPath,
    MasterySummary,
    OutcomeEvent,
    OutcomeResult,
    Recommendation,
    TimeEstimate,
    VelocityBlocker,
)
from .recommend import RecommendationRanker
from .srs import MemoryModel
from .store import KeyValueStore
from .velocity import VelocityTracker

logger = logging.getLogger(__name__)


class Tutor:
    """Explicit container for one learner model; build it with :meth:`create`."""

    def __init__(
        self,
        store: KeyValueStore,
        graph: SkillGraph | None = None,
        config: CoreConfig | None = None,
        *,
        recorder: InterventionRecorder | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.graph = graph
        self.config = config or CoreConfig()
        self.bkt = BKTEngine(store, self.config.bkt, graph=graph, clock=clock)
        self.memory = MemoryModel(store, self.config.memory, clock=clock)
        self.feedback = FeedbackLoop(store, self.bkt, self.config.feedback, recorder=recorder, clock=clock)
        self.velocity = VelocityTracker(
            store, self.bkt, self.memory, self.feedback, self.config.velocity, clock=clock
        )
        self.ranker = RecommendationRanker(
            store, self.bkt, self.feedback, self.memory, self.config.ranker, graph=graph, clock=clock
        )

    @classmethod
    async def create(
        cls,
        store: KeyValueStore,
        graph: SkillGraph | None = None,
        config: CoreConfig | None = None,
        **kwargs,
    ) -> Tutor:
        tutor = cls(store, graph, config, **kwargs)
        await tutor.init()
        return tutor

    async def init(self) -> None:
        """Load every component, then register graph skills the store does not know yet."""
        await self.bkt.init()
        await self.memory.init()
        await self.feedback.init()
        await self.velocity.init()
        await self.ranker.init()
        added = await self.sync_graph()
        if added:
            logger.info("Registered %d new skills from the skill graph", added)

    async def sync_graph(self) -> int:
        if self.graph is None:
            return 0
        added = 0
        for skill_id in self.graph.topological_order():
            skill = self.graph.get(skill_id)
            if skill is None or skill_id in self.bkt.components:
                continue
            await self.bkt.register_kc(
                skill.id,
                skill.params,
                category=skill.category,
                prerequisites=skill.prerequisites,
                description=skill.description,
            )
            added += 1
        return added

    async def process_outcome(self, event: OutcomeEvent) -> OutcomeResult:
        """Feed one concluded attempt to the feedback loop and the velocity tracker.

        Every outcome that names a skill reschedules its review. Untimed
        outcomes skip the velocity profile, which only learns from durations.
        """
        result = await self.feedback.process_outcome(event)
        if not event.skill_id:
            return result
        if event.time_to_outcome is None:
            await self.memory.update_stability(event.skill_id, event.passed)
        else:
            minutes = event.time_to_outcome / 60
            await self.velocity.track_velocity_progress(event.skill_id, minutes, event.passed, event.user_id)
        return result

    async def get_next_concepts(self, user_id: str = "default", limit: int = 3) -> list[str]:
        return await self.ranker.get_next_concepts(user_id, limit)

    async def generate_learning_path(
        self, skill_ids: Iterable[str] | None = None, user_id: str = "default"
    ) -> LearningPath:
        return await self.ranker.generate_learning_path(skill_ids, user_id)

    async def get_adaptive_recommendations(self, skill_id: str, user_id: str = "default") -> Recommendation:
        return await self.ranker.get_adaptive_recommendations(skill_id, user_id)

    async def identify_velocity_blockers(self, skill_id: str, user_id: str = "default") -> list[VelocityBlocker]:
        return await self.velocity.identify_velocity_blockers(skill_id, user_id)

    async def estimate_time_to_mastery(self, skill_id: str, user_id: str = "default") -> TimeEstimate:
        return await self.velocity.estimate_time_to_mastery(skill_id, user_id)

    def get_mastery_summary(self, user_id: str = "default") -> MasterySummary:
        return self.bkt.get_mastery_summary(user_id)


__all__ = ["Tutor"]
