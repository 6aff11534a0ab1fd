"""Study-path ranking and next-step recommendations."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from .bkt import BKTEngine
from .clock import MS_PER_HOUR, Clock, now_ms
from .concepts import SkillGraph
from .config import RankerConfig
from .feedback import FeedbackLoop
from .models import (
    FocusArea,
    LearningPath,
    NextStep,
    Recommendation,
    SkillRef,
    SkillScore,
    StruggleSignal,
)
from .srs import MemoryModel
from .store import KeyValueStore

logger = logging.getLogger(__name__)

SIGNALS_KEY = "struggle_signals"
PATHS_KEY = "learning_paths"

PATH_DESCRIPTIONS = {
    (True, True): "Focus path targeting struggle areas and building missing foundations",
    (True, False): "Targeted path to overcome identified struggle areas",
    (False, True): "Foundation-building path to fill prerequisite gaps",
    (False, False): "Balanced progress path for steady advancement",
}


class RecommendationRanker:
    """Orders skills for study and picks a recommendation strategy per skill.

    Struggle levels come from the learner's feedback history; a level reported
    through ``record_struggle`` overrides it when it is the newer of the two.
    """

    def __init__(
        self,
        store: KeyValueStore,
        bkt: BKTEngine,
        feedback: FeedbackLoop,
        memory: MemoryModel,
        config: RankerConfig | None = None,
        *,
        graph: SkillGraph | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.bkt = bkt
        self.feedback = feedback
        self.memory = memory
        self.config = config or RankerConfig()
        self.graph = graph
        self._clock = clock
        self.signals: dict[str, StruggleSignal] = {}
        self.paths: dict[str, dict[str, Any]] = {}

    async def init(self) -> None:
        self.signals = {
            key: StruggleSignal.from_dict(data) for key, data in (await self.store.get(SIGNALS_KEY, {})).items()
        }
        self.paths = await self.store.get(PATHS_KEY, {})

    # ── Struggle snapshot ────────────────────────────────────────────────

    async def record_struggle(self, skill_id: str, level: int, user_id: str = "default") -> StruggleSignal:
        """Store a struggle level reported by an external detector."""
        now = self._clock()
        level = max(0, min(3, int(level)))
        key = f"{user_id}:{skill_id}"
        signal = self.signals.get(key) or StruggleSignal()
        signal.level = level
        signal.updated_at = now
        if level > 0:
            signal.last_detected = now
        self.signals[key] = signal
        await self.store.set(SIGNALS_KEY, {k: s.to_dict() for k, s in self.signals.items()})
        return signal

    def struggle_snapshot(self, user_id: str = "default") -> dict[str, StruggleSignal]:
        snapshot: dict[str, StruggleSignal] = {}
        for entry in sorted(self.feedback.history_for_user(user_id), key=lambda h: h.timestamp):
            if not entry.skill_id:
                continue
            signal = snapshot.setdefault(entry.skill_id, StruggleSignal())
            signal.level = entry.struggle_level
            signal.updated_at = entry.timestamp
            if entry.struggle_level > 0:
                signal.last_detected = entry.timestamp

        prefix = f"{user_id}:"
        for key, reported in self.signals.items():
            if not key.startswith(prefix):
                continue
            skill_id = key[len(prefix) :]
            derived = snapshot.get(skill_id)
            if derived is None or reported.updated_at >= derived.updated_at:
                last = [t for t in (reported.last_detected, derived.last_detected if derived else None) if t is not None]
                snapshot[skill_id] = StruggleSignal(
                    level=reported.level,
                    last_detected=max(last) if last else None,
                    updated_at=reported.updated_at,
                )
        return snapshot

    def _recently_struggled(self, signal: StruggleSignal | None) -> bool:
        if signal is None or signal.last_detected is None:
            return False
        window = self.config.recency_window_hours * MS_PER_HOUR
        return self._clock() - signal.last_detected < window

    # ── Helpers ──────────────────────────────────────────────────────────

    def _name(self, skill_id: str) -> str:
        return self.graph.name(skill_id) if self.graph is not None else skill_id

    async def _ref(self, skill_id: str, user_id: str) -> SkillRef:
        return SkillRef(id=skill_id, name=self._name(skill_id), mastery=await self.bkt.get_mastery(skill_id, user_id))

    async def _prerequisite_average(self, skill_id: str, user_id: str) -> float | None:
        prereqs = self.bkt.prerequisites(skill_id)
        if not prereqs:
            return None
        total = 0.0
        for prereq_id in prereqs:
            total += await self.bkt.get_mastery(prereq_id, user_id)
        return total / len(prereqs)

    async def _prerequisite_gaps(self, skill_id: str, user_id: str) -> list[SkillRef]:
        gaps = []
        for prereq_id in self.bkt.prerequisites(skill_id):
            ref = await self._ref(prereq_id, user_id)
            if ref.mastery is not None and ref.mastery < self.config.prerequisite_gap:
                gaps.append(ref)
        return gaps

    def _dependents(self, skill_id: str) -> list[str]:
        return sorted(sid for sid, c in self.bkt.components.items() if skill_id in c.prerequisites)

    def identify_focus_areas(self, skill_ids: Iterable[str], mastery: dict[str, float]) -> list[FocusArea]:
        """Categories with at least two skills, lowest average mastery first."""
        groups: dict[str, list[float]] = {}
        for skill_id in skill_ids:
            category = self.bkt.category(skill_id) or "default"
            groups.setdefault(category, []).append(mastery.get(skill_id, 0.0))

        areas = []
        for category, values in groups.items():
            if len(values) < 2:
                continue
            average = sum(values) / len(values)
            if average < 0.3:
                description = f"Build foundations in {category}"
            elif average < 0.6:
                description = f"Strengthen your {category} skills"
            else:
                description = f"Master advanced {category} skills"
            areas.append(FocusArea(category=category, avg_mastery=average, skill_count=len(values), description=description))
        areas.sort(key=lambda area: (area.avg_mastery, area.category))
        return areas

    # ── Learning path ────────────────────────────────────────────────────

    async def score_skill(
        self, skill_id: str, user_id: str, snapshot: dict[str, StruggleSignal]
    ) -> SkillScore:
        config = self.config
        mastery = await self.bkt.get_mastery(skill_id, user_id)
        prereq_avg = await self._prerequisite_average(skill_id, user_id)
        signal = snapshot.get(skill_id)
        level = signal.level if signal is not None else 0
        recent = self._recently_struggled(signal)

        score = 1 - mastery
        if prereq_avg is not None:
            score *= 1 + prereq_avg
        score *= 1 + min(1.0, level / config.struggle_scale)
        if recent:
            score *= config.recency_boost
        return SkillScore(
            skill_id=skill_id,
            score=score,
            mastery=mastery,
            prerequisite_mastery=prereq_avg,
            struggle_level=level,
            recently_struggled=recent,
        )

    async def _describe_path(self, scores: list[SkillScore], user_id: str) -> str:
        if not scores:
            return "Personalized learning path"
        top = scores[:3]
        struggling = sum(1 for item in top if item.struggle_level >= self.config.high_struggle_level) >= 2
        has_gap = False
        for item in top:
            if await self._prerequisite_gaps(item.skill_id, user_id):
                has_gap = True
                break
        return PATH_DESCRIPTIONS[(struggling, has_gap)]

    async def generate_learning_path(
        self, skill_ids: Iterable[str] | None = None, user_id: str = "default"
    ) -> LearningPath:
        targets = list(dict.fromkeys(skill_ids or ()))
        if not targets:
            targets = sorted(self.bkt.components)
        for skill_id in targets:
            await self.bkt.get_or_create_kc(skill_id)

        snapshot = self.struggle_snapshot(user_id)
        scores = [await self.score_skill(skill_id, user_id, snapshot) for skill_id in targets]
        scores.sort(key=lambda item: (-item.score, item.skill_id))

        now = self._clock()
        ordered = [item.skill_id for item in scores]
        path = LearningPath(
            id=f"path_{int(now)}",
            created=now,
            skills=ordered,
            scores=scores,
            focus_areas=self.identify_focus_areas(ordered, {s.skill_id: s.mastery for s in scores}),
            recommendation=await self._describe_path(scores, user_id),
            metadata={
                "base_path_type": "adaptive",
                "user_id": user_id,
                "mastery_data_points": len(scores),
                "struggle_data_points": len(snapshot),
            },
        )

        self.paths[path.id] = {"user_id": user_id, "created": now, "skills": ordered, "recommendation": path.recommendation}
        for stale in sorted(self.paths, key=lambda k: self.paths[k]["created"])[: -self.config.path_history_limit]:
            del self.paths[stale]
        await self.store.set(PATHS_KEY, self.paths)
        logger.debug("Generated %s with %d skills for %s", path.id, len(ordered), user_id)
        return path

    async def get_next_concepts(self, user_id: str = "default", limit: int = 3) -> list[str]:
        """Due reviews first, then the BKT pick, then the learning path order."""
        picks: list[str] = [item.skill_id for item in self.memory.get_concepts_due_for_review(user_id)]
        selected = await self.bkt.select_next_kc(user_id)
        if selected is not None:
            picks.append(selected.skill_id)
        if len(dict.fromkeys(picks)) < limit:
            path = await self.generate_learning_path(user_id=user_id)
            picks.extend(path.skills)
        return list(dict.fromkeys(picks))[:limit]

    # ── Adaptive recommendations ─────────────────────────────────────────

    async def get_adaptive_recommendations(self, skill_id: str, user_id: str = "default") -> Recommendation:
        if not skill_id:
            return Recommendation(strategy="unknown", message="Couldn't find skill data")
        await self.bkt.get_or_create_kc(skill_id)
        signal = self.struggle_snapshot(user_id).get(skill_id)
        mastery = await self.bkt.get_mastery(skill_id, user_id)

        if signal is not None and signal.level >= self.config.high_struggle_level:
            return await self._high_struggle(skill_id, user_id, signal.level)
        if mastery < self.config.low_mastery:
            return await self._low_mastery(skill_id, user_id)
        return await self._standard(skill_id, user_id, mastery)

    async def _high_struggle(self, skill_id: str, user_id: str, level: int) -> Recommendation:
        steps: list[NextStep] = []
        gaps = await self._prerequisite_gaps(skill_id, user_id)
        if gaps:
            steps.append(NextStep(type="prerequisite", message="Review these foundation skills first:", skills=gaps[:3]))
        steps.append(
            NextStep(
                type="breakdown",
                message="Break down this skill into smaller parts",
                details="Focus on one aspect at a time instead of the whole skill",
            )
        )

        category = self.bkt.category(skill_id)
        own_difficulty = self.feedback.get_concept_difficulty(skill_id)
        alternatives = [
            SkillRef(id=sid, name=self._name(sid))
            for sid in sorted(self.bkt.components)
            if sid != skill_id
            and self.bkt.category(sid) == category
            and self.feedback.get_concept_difficulty(sid) < own_difficulty
        ]
        if alternatives:
            steps.append(NextStep(type="alternative", message="Try these alternative approaches:", skills=alternatives[:2]))

        return Recommendation(
            strategy="high_struggle",
            message="We've noticed you're finding this challenging. Let's try a different approach.",
            next_steps=steps,
            struggle_level=level,
        )

    async def _low_mastery(self, skill_id: str, user_id: str) -> Recommendation:
        steps: list[NextStep] = []
        gaps = await self._prerequisite_gaps(skill_id, user_id)
        if gaps:
            steps.append(NextStep(type="prerequisite", message="Complete these prerequisites first:", skills=gaps[:3]))
        steps.append(
            NextStep(
                type="practice",
                message="Try some practical exercises",
                details="Apply this skill in small practice examples",
            )
        )

        category = self.bkt.category(skill_id)
        prereqs = set(self.bkt.prerequisites(skill_id))
        related: list[SkillRef] = []
        for sid in sorted(self.bkt.components):
            if sid == skill_id:
                continue
            shares_prereq = bool(prereqs.intersection(self.bkt.prerequisites(sid)))
            if self.bkt.category(sid) != category and not shares_prereq:
                continue
            ref = await self._ref(sid, user_id)
            if ref.mastery is not None and ref.mastery <= self.config.low_mastery:
                related.append(ref)
        if related:
            steps.append(NextStep(type="related", message="Explore these related skills:", skills=related[:2]))

        return Recommendation(
            strategy="low_mastery",
            message="Build your understanding step by step.",
            next_steps=steps,
            mastery_level="beginner",
        )

    async def _standard(self, skill_id: str, user_id: str, mastery: float) -> Recommendation:
        config = self.config
        steps: list[NextStep] = []
        if config.low_mastery <= mastery < config.mastered:
            steps.append(
                NextStep(
                    type="practice",
                    message="Continue practicing this skill",
                    details="Try more complex examples to deepen understanding",
                )
            )

        dependents = [await self._ref(sid, user_id) for sid in self._dependents(skill_id)]
        dependents.sort(key=lambda ref: (ref.mastery or 0.0, ref.id))
        if dependents:
            steps.append(NextStep(type="next", message="Ready to explore these next skills:", skills=dependents[:3]))

        if mastery >= config.advanced:
            steps.append(
                NextStep(
                    type="advanced",
                    message="Try advanced applications",
                    details="Combine this with other skills in larger projects",
                )
            )

        if mastery >= config.mastered:
            level, message = "master", "You've mastered this skill! Ready for advanced applications."
        elif mastery >= config.familiar:
            level, message = "familiar", "You're making good progress. Keep going!"
        else:
            level, message = "learning", "You're making good progress. Keep going!"
        return Recommendation(strategy="standard", message=message, next_steps=steps, mastery_level=level)

    # ── Journey analysis ─────────────────────────────────────────────────

    async def analyze_learning_journey(self, user_id: str = "default") -> dict[str, Any]:
        config = self.config
        counts = {"mastered": 0, "familiar": 0, "learning": 0, "not_started": 0}
        mastery = self.bkt.all_mastery(user_id)
        for skill_id, value in mastery.items():
            if value >= config.mastered:
                counts["mastered"] += 1
            elif value >= config.familiar:
                counts["familiar"] += 1
            elif self.bkt.observation_count(skill_id, user_id):
                counts["learning"] += 1
            else:
                counts["not_started"] += 1

        total = len(mastery)
        progress = (counts["mastered"] + 0.5 * counts["familiar"]) / total if total else 0.0
        if progress < 0.2:
            message = "Focus on building a strong foundation with basic skills."
        elif progress < 0.5:
            message = "Continue working on the core skills and start exploring related areas."
        elif progress < 0.8:
            message = "You have a good grasp of most skills. Focus on mastering the remaining challenging areas."
        else:
            message = "Excellent progress! Consider going deeper into advanced topics."

        struggle_areas = [
            {"id": sid, "name": self._name(sid), "level": signal.level}
            for sid, signal in sorted(self.struggle_snapshot(user_id).items())
            if signal.level >= config.high_struggle_level
        ]
        struggle_areas.sort(key=lambda item: -item["level"])

        return {
            "progress": {"overall": progress, "total": total, **counts},
            "struggle_areas": struggle_areas[:5],
            "recommendation": message,
            "focus_areas": self.identify_focus_areas(mastery, mastery)[:3],
        }


__all__ = [
    "PATHS_KEY",
    "PATH_DESCRIPTIONS",
    "RecommendationRanker",
    "SIGNALS_KEY",
]
