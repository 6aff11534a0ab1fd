"""Per-learner learning-speed profile: time-to-mastery estimates and blockers."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from .bkt import BKTEngine
from .clock import MS_PER_HOUR, MS_PER_MINUTE, Clock, hour_of_day, now_ms
from .config import VelocityConfig
from .models import (
    HourVelocity,
    SkillVelocity,
    TimeEstimate,
    VelocityBlocker,
    VelocityFactor,
    VelocityProfile,
    VelocityRecord,
)
from .srs import MemoryModel
from .store import KeyValueStore

logger = logging.getLogger(__name__)

PROFILES_KEY = "velocity_profiles"
HISTORY_KEY = "velocity_history"

DEFAULT_SESSION_MINUTES = 20.0
MAX_SUGGESTED_SESSION_MINUTES = 45.0


class DifficultySource(Protocol):
    def get_concept_difficulty(self, skill_id: str) -> float: ...


class VelocityTracker:
    """Learning-speed statistics per user, scaled into time-to-mastery estimates.

    Each of the six factors contributes its raw value times its weight. The
    weighted mean stretches the base estimate, and the result is divided by
    the learner's overall velocity.
    """

    def __init__(
        self,
        store: KeyValueStore,
        bkt: BKTEngine,
        memory: MemoryModel,
        difficulty: DifficultySource,
        config: VelocityConfig | None = None,
        *,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.bkt = bkt
        self.memory = memory
        self.difficulty = difficulty
        self.config = config or VelocityConfig()
        self._clock = clock
        self.profiles: dict[str, VelocityProfile] = {}
        self._history: list[VelocityRecord] = []

    async def init(self) -> None:
        self.profiles = {}
        for user_id, data in (await self.store.get(PROFILES_KEY, {})).items():
            try:
                self.profiles[user_id] = VelocityProfile.from_dict({**data, "user_id": user_id})
            except (TypeError, ValueError):
                logger.warning("Skipping unreadable velocity profile %s", user_id)
        self._history = [VelocityRecord.from_dict(entry) for entry in await self.store.get(HISTORY_KEY, [])]
        logger.info("Velocity tracker loaded %d profiles", len(self.profiles))

    def get_profile(self, user_id: str = "default") -> VelocityProfile:
        profile = self.profiles.get(user_id)
        if profile is None:
            profile = VelocityProfile(user_id=user_id)
            self.profiles[user_id] = profile
        return profile

    # ── Factors ──────────────────────────────────────────────────────────

    def _current_hour(self) -> str:
        return str(hour_of_day(self._clock(), self.config.utc_offset_hours))

    def _user_history(self, user_id: str) -> list[VelocityRecord]:
        return [record for record in self._history if record.user_id == user_id]

    def category_success_rate(self, skill_id: str, profile: VelocityProfile) -> float | None:
        """Mean success rate over same-category skills, else over every tracked skill."""
        category = self.bkt.category(skill_id)
        tracked = [(sid, stats) for sid, stats in profile.skills.items() if stats.attempts]
        same = [stats for sid, stats in tracked if self.bkt.category(sid) == category]
        pool = same or [stats for _, stats in tracked]
        if not pool:
            return None
        return sum(stats.success_rate for stats in pool) / len(pool)

    async def prerequisite_mastery(self, skill_id: str, user_id: str) -> float:
        """Average mastery of direct prerequisites; 1.0 when there are none."""
        await self.bkt.get_or_create_kc(skill_id)
        prereqs = self.bkt.prerequisites(skill_id)
        if not prereqs:
            return 1.0
        total = 0.0
        for prereq_id in prereqs:
            total += await self.bkt.get_mastery(prereq_id, user_id)
        return total / len(prereqs)

    def relative_time_velocity(self, profile: VelocityProfile) -> float:
        """This hour's EMA velocity relative to the learner's mean across hours."""
        current = profile.hours.get(self._current_hour())
        if current is None or not current.sessions:
            return 1.0
        sampled = [hour.avg_velocity for hour in profile.hours.values() if hour.sessions]
        mean = sum(sampled) / len(sampled)
        if mean <= 0:
            return 1.0
        return current.avg_velocity / mean

    def session_minutes(self, user_id: str) -> float:
        """Minutes since the first event inside the current session window."""
        now = self._clock()
        window = self.config.session_window_minutes * MS_PER_MINUTE
        recent = [r.timestamp for r in self._user_history(user_id) if now - r.timestamp < window]
        if not recent:
            return 0.0
        return (now - min(recent)) / MS_PER_MINUTE

    def recent_performance(self, user_id: str) -> float:
        now = self._clock()
        window = self.config.recent_window_hours * MS_PER_HOUR
        recent = [r for r in self._user_history(user_id) if now - r.timestamp < window]
        if not recent:
            return 1.0
        return sum(1 for r in recent if r.success) / len(recent)

    def fatigue_factor(self, session_minutes: float) -> float:
        return max(
            self.config.min_fatigue_factor,
            1 - session_minutes * self.config.fatigue_per_minute,
        )

    def _confidence(self, profile: VelocityProfile, skill_id: str) -> float:
        confidence = 0.5
        for milestone in (5, 10, 20):
            if profile.concepts_learned >= milestone:
                confidence += 0.1
        stats = profile.skills.get(skill_id)
        if stats is not None and stats.attempts >= 3:
            confidence += 0.1
        if sum(1 for hour in profile.hours.values() if hour.sessions) >= 3:
            confidence += 0.1
        return min(1.0, confidence)

    # ── Public operations ────────────────────────────────────────────────

    async def estimate_time_to_mastery(self, skill_id: str, user_id: str = "default") -> TimeEstimate:
        profile = self.get_profile(user_id)
        weights = self.config.weights

        difficulty = self.difficulty.get_concept_difficulty(skill_id)
        history_rate = self.category_success_rate(skill_id, profile)
        history_value = 0.5 if history_rate is None else history_rate
        prereq = await self.prerequisite_mastery(skill_id, user_id)
        time_velocity = self.relative_time_velocity(profile)
        fatigue = self.fatigue_factor(self.session_minutes(user_id))
        recent = self.recent_performance(user_id)

        factors = {
            "concept_intrinsic": VelocityFactor(difficulty, weights["concept_intrinsic"]),
            "user_history": VelocityFactor(history_value, weights["user_history"]),
            "prerequisite_mastery": VelocityFactor(prereq, weights["prerequisite_mastery"]),
            "time_of_day": VelocityFactor(time_velocity, weights["time_of_day"]),
            "session_length": VelocityFactor(fatigue, weights["session_length"]),
            "recent_performance": VelocityFactor(recent, weights["recent_performance"]),
        }

        total_weight = sum(factor.weight for factor in factors.values())
        blend = sum(factor.contribution for factor in factors.values()) / total_weight if total_weight else 0.0
        base = self.config.base_minutes
        adjusted = base * (1 + blend)
        velocity = profile.overall_velocity or 1.0
        final = adjusted / velocity

        return TimeEstimate(
            skill_id=skill_id,
            estimated_minutes=round(final),
            confidence=self._confidence(profile, skill_id),
            factors=factors,
            base_minutes=base,
            difficulty_adjustment=adjusted / base,
            velocity_adjustment=1 / velocity,
        )

    async def track_velocity_progress(
        self,
        skill_id: str,
        actual_minutes: float,
        success: bool,
        user_id: str = "default",
        *,
        rating: int = 3,
    ) -> dict[str, Any]:
        """Fold one timed attempt into the profile and reschedule the skill's review."""
        if actual_minutes < 0:
            logger.warning("Negative duration %s for %s, counting it as 0 minutes", actual_minutes, skill_id)
            actual_minutes = 0.0
        profile = self.get_profile(user_id)
        now = self._clock()

        stats = profile.skills.setdefault(skill_id, SkillVelocity())
        stats.attempts += 1
        stats.total_minutes += actual_minutes
        if success:
            stats.successes += 1

        hour = profile.hours.setdefault(self._current_hour(), HourVelocity())
        session_velocity = 60 / actual_minutes if success and actual_minutes > 0 else 0.0
        if hour.sessions == 0:
            hour.avg_velocity = session_velocity
        else:
            alpha = self.config.hour_ema_alpha
            hour.avg_velocity = (1 - alpha) * hour.avg_velocity + alpha * session_velocity
        hour.sessions += 1

        if success:
            profile.concepts_learned += 1
            profile.learning_minutes += actual_minutes
        profile.last_updated = now

        await self.memory.update_stability(skill_id, success, rating, time_to_review=actual_minutes)

        self._history.append(
            VelocityRecord(
                skill_id=skill_id,
                user_id=user_id,
                minutes=actual_minutes,
                success=success,
                timestamp=now,
            )
        )
        await self._persist_profiles()
        await self._persist_history()

        return {
            "skill_velocity": stats.success_rate,
            "time_of_day_velocity": hour.avg_velocity,
            "overall_velocity": profile.overall_velocity,
        }

    async def identify_velocity_blockers(self, skill_id: str, user_id: str = "default") -> list[VelocityBlocker]:
        config = self.config
        profile = self.get_profile(user_id)
        blockers: list[VelocityBlocker] = []

        prereq = await self.prerequisite_mastery(skill_id, user_id)
        if prereq < config.prerequisite_gap:
            blockers.append(
                VelocityBlocker(
                    type="prerequisite_gap",
                    severity=1 - prereq,
                    description="Missing prerequisite knowledge",
                    recommendation="Review prerequisite skills before continuing",
                )
            )

        difficulty = self.difficulty.get_concept_difficulty(skill_id)
        if difficulty > config.high_difficulty:
            blockers.append(
                VelocityBlocker(
                    type="high_difficulty",
                    severity=difficulty,
                    description="Skill is inherently difficult",
                    recommendation="Allow extra time and use a scaffolded approach",
                )
            )

        time_velocity = self.relative_time_velocity(profile)
        if time_velocity < config.suboptimal_time:
            blockers.append(
                VelocityBlocker(
                    type="suboptimal_time",
                    severity=min(1.0, 1 - time_velocity),
                    description="Learning at a less productive time",
                    recommendation="Schedule complex skills for peak hours",
                )
            )

        session = self.session_minutes(user_id)
        if session > config.fatigue_minutes:
            blockers.append(
                VelocityBlocker(
                    type="session_fatigue",
                    severity=min(1.0, session / 60),
                    description="Extended session may cause fatigue",
                    recommendation="Take a break",
                )
            )

        recent = self.recent_performance(user_id)
        if recent < config.recent_struggle:
            blockers.append(
                VelocityBlocker(
                    type="recent_struggles",
                    severity=1 - recent,
                    description="Recent performance below average",
                    recommendation="Review recent skills or try a different approach",
                )
            )

        blockers.sort(key=lambda blocker: blocker.severity, reverse=True)
        return blockers

    def _session_lengths(self, user_id: str) -> list[float]:
        """Split the learner's history into sessions separated by idle gaps."""
        gap = self.config.session_window_minutes * MS_PER_MINUTE
        lengths: list[float] = []
        start = last = None
        for record in sorted(self._user_history(user_id), key=lambda r: r.timestamp):
            if start is None or record.timestamp - last > gap:
                if start is not None:
                    lengths.append((last - start) / MS_PER_MINUTE)
                start = record.timestamp - record.minutes * MS_PER_MINUTE
            last = record.timestamp
        if start is not None:
            lengths.append((last - start) / MS_PER_MINUTE)
        return lengths

    def suggest_optimal_conditions(self, user_id: str = "default") -> list[dict[str, Any]]:
        profile = self.get_profile(user_id)
        suggestions: list[dict[str, Any]] = []

        sampled = {int(h): stats.avg_velocity for h, stats in profile.hours.items() if stats.sessions}
        if sampled:
            best_hour = max(sampled, key=lambda h: (sampled[h], -h))
            suggestions.append(
                {
                    "type": "optimal_time",
                    "value": best_hour,
                    "description": f"Best learning time: {best_hour}:00 - {best_hour + 1}:00",
                }
            )

        lengths = self._session_lengths(user_id)
        average = sum(lengths) / len(lengths) if lengths else DEFAULT_SESSION_MINUTES
        suggested = min(MAX_SUGGESTED_SESSION_MINUTES, average)
        suggestions.append(
            {
                "type": "session_length",
                "value": suggested,
                "description": f"Optimal session length: ~{round(suggested)} minutes",
            }
        )

        due = self.memory.get_concepts_due_for_review(user_id)
        if due:
            suggestions.append(
                {
                    "type": "review_due",
                    "value": [item.skill_id for item in due[:3]],
                    "description": f"{len(due)} skills due for review",
                }
            )
        return suggestions

    async def predict_success_probability(self, skill_id: str, user_id: str = "default") -> dict[str, Any]:
        mastery = await self.bkt.get_mastery(skill_id, user_id)
        recall = self.memory.current_retrievability(skill_id)
        probability = mastery * recall
        return {
            "probability": probability,
            "mastery": mastery,
            "retrievability": recall,
            "recommendation": "review" if probability < 0.5 else "proceed",
        }

    def get_statistics(self, user_id: str = "default") -> dict[str, Any]:
        profile = self.get_profile(user_id)
        return {
            "concepts_learned": profile.concepts_learned,
            "learning_minutes": profile.learning_minutes,
            "overall_velocity": profile.overall_velocity,
            "average_minutes_per_concept": (
                profile.learning_minutes / profile.concepts_learned if profile.concepts_learned else None
            ),
            "skills_tracked": len(profile.skills),
            "review_queue_size": self.memory.scheduled_count(),
            "due_for_review": len(self.memory.get_concepts_due_for_review(user_id)),
        }

    # ── Persistence ──────────────────────────────────────────────────────

    async def _persist_profiles(self) -> None:
        await self.store.set(PROFILES_KEY, {uid: p.to_dict() for uid, p in self.profiles.items()})

    async def _persist_history(self) -> None:
        self._history = self._history[-self.config.history_limit :]
        await self.store.set(HISTORY_KEY, [record.to_dict() for record in self._history])


__all__ = [
    "DifficultySource",
    "HISTORY_KEY",
    "PROFILES_KEY",
    "VelocityTracker",
]
