"""Forgetting-curve memory model and review scheduling per skill."""

from __future__ import annotations

import logging

from .clock import MS_PER_DAY, Clock, days_between, now_ms
from .config import MemoryConfig
from .models import DueReview, ForgettingCurve, ReviewRecord
from .store import KeyValueStore

logger = logging.getLogger(__name__)

CURVES_KEY = "forgetting_curves"

MIN_RATING = 1  # again
MAX_RATING = 4  # easy
DIFFICULTY_STEP = 0.86


def retrievability(stability: float, days_since_review: float) -> float:
    """R(t) = (1 + t/(9*S))^-1, exactly 1 at t = 0."""
    if days_since_review <= 0:
        return 1.0
    return 1.0 / (1.0 + days_since_review / (9.0 * stability))


def next_interval(stability: float, target_retention: float) -> float:
    """Days until retrievability falls to ``target_retention``."""
    return 9.0 * stability * (1.0 / target_retention - 1.0)


def _clamp_rating(rating: int) -> int:
    if not MIN_RATING <= rating <= MAX_RATING:
        clamped = max(MIN_RATING, min(MAX_RATING, rating))
        logger.warning("Review rating %s outside %d-%d, using %d", rating, MIN_RATING, MAX_RATING, clamped)
        return clamped
    return rating


def next_stability(stability: float, success: bool, rating: int, config: MemoryConfig) -> float:
    if success:
        factor = 1 + (rating - 3) * 0.1
        return min(config.max_stability, stability * (1.3 + factor * 0.2))
    return max(config.min_stability, stability * config.failure_penalty)


def next_difficulty(difficulty: float, rating: int, config: MemoryConfig) -> float:
    """Easy reviews lower difficulty, hard ones raise it; good (3) leaves it alone."""
    updated = difficulty - DIFFICULTY_STEP * (rating - 3)
    return min(config.max_difficulty, max(config.min_difficulty, updated))


class MemoryModel:
    """Stability/difficulty per skill with derived retrievability and next review."""

    def __init__(
        self,
        store: KeyValueStore,
        config: MemoryConfig | None = None,
        *,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.config = config or MemoryConfig()
        self._clock = clock
        self.curves: dict[str, ForgettingCurve] = {}

    async def init(self) -> None:
        self.curves = {}
        for skill_id, data in (await self.store.get(CURVES_KEY, {})).items():
            try:
                self.curves[skill_id] = ForgettingCurve.from_dict({**data, "skill_id": skill_id})
            except (TypeError, ValueError):
                logger.warning("Skipping unreadable forgetting curve %s", skill_id)
        logger.info("Memory model loaded %d forgetting curves", len(self.curves))

    def get_curve(self, skill_id: str) -> ForgettingCurve:
        curve = self.curves.get(skill_id)
        if curve is None:
            curve = ForgettingCurve(
                skill_id=skill_id,
                stability=self.config.initial_stability,
                difficulty=self.config.initial_difficulty,
            )
            self.curves[skill_id] = curve
        return curve

    def get_retrievability(self, skill_id: str, days_since_review: float) -> float:
        return retrievability(self.get_curve(skill_id).stability, days_since_review)

    def get_next_interval(self, skill_id: str, target_retention: float | None = None) -> float:
        target = self.config.target_retention if target_retention is None else target_retention
        return next_interval(self.get_curve(skill_id).stability, target)

    def current_retrievability(self, skill_id: str) -> float:
        """Recall probability now; 1 for skills that were never reviewed."""
        curve = self.curves.get(skill_id)
        if curve is None or curve.last_review is None:
            return 1.0
        return retrievability(curve.stability, days_between(curve.last_review, self._clock()))

    async def update_stability(
        self,
        skill_id: str,
        success: bool,
        rating: int = 3,
        *,
        time_to_review: float | None = None,
    ) -> ForgettingCurve:
        """Record a review and reschedule the skill.

        A failed review is treated as an "again" (1) rating for difficulty.
        """
        rating = _clamp_rating(rating)
        curve = self.get_curve(skill_id)
        now = self._clock()

        curve.stability = next_stability(curve.stability, success, rating, self.config)
        curve.difficulty = next_difficulty(curve.difficulty, rating if success else MIN_RATING, self.config)
        curve.last_review = now
        curve.next_review = now + self.get_next_interval(skill_id) * MS_PER_DAY
        curve.review_history.append(
            ReviewRecord(timestamp=now, success=success, rating=rating, time_to_review=time_to_review)
        )
        curve.review_history = curve.review_history[-self.config.review_history_limit :]

        await self._persist()
        logger.debug("Stability %s -> %.2f days (success=%s)", skill_id, curve.stability, success)
        return curve

    def get_concepts_due_for_review(self, user_id: str = "default") -> list[DueReview]:
        """Scheduled skills whose next review has passed, most at risk first.

        Curves are kept per skill, so ``user_id`` does not narrow the result.
        """
        now = self._clock()
        due: list[DueReview] = []
        for skill_id, curve in self.curves.items():
            if curve.next_review is None or curve.next_review > now:
                continue
            due.append(
                DueReview(
                    skill_id=skill_id,
                    retrievability=self.current_retrievability(skill_id),
                    days_overdue=round((now - curve.next_review) / MS_PER_DAY),
                )
            )
        due.sort(key=lambda item: (item.retrievability, item.skill_id))
        return due

    def scheduled_count(self) -> int:
        return sum(1 for curve in self.curves.values() if curve.next_review is not None)

    async def _persist(self) -> None:
        await self.store.set(CURVES_KEY, {sid: curve.to_dict() for sid, curve in self.curves.items()})


__all__ = [
    "CURVES_KEY",
    "MemoryModel",
    "next_difficulty",
    "next_interval",
    "next_stability",
    "retrievability",
]
