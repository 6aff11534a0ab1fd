"""Outcome feedback loop: recalibrates difficulty and struggle thresholds.

Every concluded attempt is appended to the feedback history, which is the sole
source the derived per-skill records are built from:

1. the learner's mastery estimate is updated,
2. the intervention recorder learns whether the style helped,
3. struggle thresholds move toward what successful learners needed,
4. the skill's difficulty rating is updated incrementally,
5. recurring problems are queued as pending improvements.

Nothing found in step 5 is ever applied automatically.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from .bkt import BKTEngine
from .clock import MS_PER_DAY, Clock, now_ms
from .config import FeedbackConfig
from .models import (
    DifficultyRating,
    FeedbackHistoryEntry,
    InterventionRecord,
    OutcomeEvent,
    OutcomeResult,
    PendingImprovement,
    StruggleThresholds,
    ThresholdTier,
)
from .store import KeyValueStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "feedback_history"
THRESHOLDS_KEY = "struggle_thresholds"
DIFFICULTY_KEY = "concept_difficulty"
IMPROVEMENTS_KEY = "system_improvements"
INTERVENTIONS_KEY = "intervention_effectiveness"

DEFAULT_DIFFICULTY = 0.5


class InterventionRecorder(Protocol):
    async def record_intervention_outcome(
        self,
        misconception: str,
        style: str,
        success: bool,
        time_to_outcome: float | None = None,
        user_id: str = "default",
    ) -> dict[str, Any]: ...


class InterventionStats:
    """Uses, successes and resolution time per (misconception, style) pair."""

    def __init__(self, store: KeyValueStore, *, clock: Clock = now_ms) -> None:
        self.store = store
        self._clock = clock
        self.records: dict[str, InterventionRecord] = {}

    async def init(self) -> None:
        self.records = {
            key: InterventionRecord.from_dict(data)
            for key, data in (await self.store.get(INTERVENTIONS_KEY, {})).items()
        }

    async def record_intervention_outcome(
        self,
        misconception: str,
        style: str,
        success: bool,
        time_to_outcome: float | None = None,
        user_id: str = "default",
    ) -> dict[str, Any]:
        key = f"{misconception}:{style}"
        record = self.records.setdefault(key, InterventionRecord(misconception=misconception, style=style))
        record.uses += 1
        if success:
            record.successes += 1
            if time_to_outcome is not None:
                previous = record.avg_resolution_time or 0.0
                record.avg_resolution_time = (
                    previous * (record.successes - 1) + time_to_outcome
                ) / record.successes
        await self.store.set(INTERVENTIONS_KEY, {k: r.to_dict() for k, r in self.records.items()})
        return {"success_rate": record.success_rate, "total_samples": record.uses}

    def best_style(self, misconception: str, min_uses: int = 1) -> str | None:
        """Style with the highest success rate for ``misconception``."""
        candidates = [
            record
            for record in self.records.values()
            if record.misconception == misconception and record.uses >= min_uses
        ]
        if not candidates:
            return None
        best = max(candidates, key=lambda record: (record.success_rate, record.uses))
        return best.style


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class FeedbackLoop:
    def __init__(
        self,
        store: KeyValueStore,
        bkt: BKTEngine,
        config: FeedbackConfig | None = None,
        *,
        recorder: InterventionRecorder | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.bkt = bkt
        self.config = config or FeedbackConfig()
        self._clock = clock
        self._owns_recorder = recorder is None
        self.recorder: InterventionRecorder = recorder or InterventionStats(store, clock=clock)
        self.thresholds: dict[str, StruggleThresholds] = {}
        self.difficulty: dict[str, DifficultyRating] = {}
        self.history: list[FeedbackHistoryEntry] = []
        self.pending: list[PendingImprovement] = []

    async def init(self) -> None:
        self.thresholds = {
            skill_id: StruggleThresholds.from_dict(data)
            for skill_id, data in (await self.store.get(THRESHOLDS_KEY, {})).items()
        }
        self.difficulty = {
            skill_id: DifficultyRating.from_dict(data)
            for skill_id, data in (await self.store.get(DIFFICULTY_KEY, {})).items()
        }
        self.history = []
        for data in await self.store.get(HISTORY_KEY, []):
            try:
                self.history.append(FeedbackHistoryEntry.from_dict(data))
            except (TypeError, ValueError):
                logger.warning("Skipping unreadable feedback entry %r", data)
        self.pending = [PendingImprovement.from_dict(data) for data in await self.store.get(IMPROVEMENTS_KEY, [])]
        if self._owns_recorder and isinstance(self.recorder, InterventionStats):
            await self.recorder.init()
        logger.info(
            "Feedback loop loaded %d custom thresholds, %d history entries",
            len(self.thresholds),
            len(self.history),
        )

    async def process_outcome(self, event: OutcomeEvent) -> OutcomeResult:
        """Run one outcome through every recalibration step and persist the results."""
        started = self._clock()
        entry = FeedbackHistoryEntry.from_event(event, timestamp=started)
        self.history.append(entry)
        result = OutcomeResult(skill_id=event.skill_id, outcome=event.outcome, hint_id=event.hint_id)

        if event.skill_id:
            result.mastery = await self.bkt.update_mastery(event.skill_id, event.passed, event.user_id)

        if event.misconception and event.intervention_style:
            result.intervention = await self.recorder.record_intervention_outcome(
                event.misconception,
                event.intervention_style,
                event.passed,
                event.time_to_outcome,
                event.user_id,
            )

        if self.config.enable_auto_adjustment and event.skill_id:
            result.thresholds = self._adjust_struggle_thresholds(event.skill_id)

        if event.skill_id:
            result.difficulty = self._update_concept_difficulty(event.skill_id, event)

        result.patterns = self._detect_patterns(event.skill_id, event.misconception)
        self._queue(result.patterns)

        await self._persist()
        result.processing_ms = self._clock() - started
        return result

    # ── Recalibration ────────────────────────────────────────────────────

    def _adjust_struggle_thresholds(self, skill_id: str) -> dict[str, Any]:
        config = self.config
        skill_history = [h for h in self.history if h.skill_id == skill_id]
        if len(skill_history) < config.min_samples_for_adjustment:
            return {"adjusted": False, "reason": "insufficient_data"}
        successes = [h for h in skill_history if h.passed]
        if len(successes) < config.min_successes_for_adjustment:
            return {"adjusted": False, "reason": "insufficient_successes"}

        explain = _mean([h.explain_clicks for h in successes])
        nudges = _mean([h.nudge_clicks for h in successes])
        tests = _mean([h.test_attempts for h in successes])
        seconds = _mean([h.time_to_outcome or 0.0 for h in successes])

        current = self.get_struggle_thresholds(skill_id)
        rate = config.adjustment_rate

        def blend(old: float, mean: float) -> float:
            return old * (1 - rate) + mean * rate

        def scaled(multiplier: float) -> ThresholdTier:
            return ThresholdTier(
                explain_clicks=explain * multiplier,
                nudge_clicks=nudges * multiplier,
                test_attempts=tests * multiplier,
                time_on_test=seconds * multiplier,
            )

        updated = StruggleThresholds(
            gentle=ThresholdTier(
                explain_clicks=blend(current.gentle.explain_clicks, explain),
                nudge_clicks=blend(current.gentle.nudge_clicks, nudges),
                test_attempts=blend(current.gentle.test_attempts, tests),
                time_on_test=blend(current.gentle.time_on_test, seconds),
            ),
            active=scaled(config.active_multiplier),
            supportive=scaled(config.supportive_multiplier),
        )
        self.thresholds[skill_id] = updated
        logger.debug("Struggle thresholds for %s recalibrated from %d successes", skill_id, len(successes))
        return {
            "adjusted": True,
            "previous": current.to_dict(),
            "thresholds": updated.to_dict(),
            "based_on": len(successes),
        }

    def _update_concept_difficulty(self, skill_id: str, event: OutcomeEvent) -> dict[str, Any]:
        config = self.config
        rating = self.difficulty.setdefault(skill_id, DifficultyRating())

        rating.total_attempts += 1
        if event.passed:
            rating.successful_attempts += 1
            if event.time_to_outcome is not None:
                if rating.avg_time_to_success is None:
                    rating.avg_time_to_success = event.time_to_outcome
                else:
                    rating.avg_time_to_success = (
                        rating.avg_time_to_success * (rating.successful_attempts - 1) + event.time_to_outcome
                    ) / rating.successful_attempts
        if event.attempts_count is not None:
            if rating.avg_attempts is None:
                rating.avg_attempts = float(event.attempts_count)
            else:
                rating.avg_attempts = (
                    rating.avg_attempts * (rating.total_attempts - 1) + event.attempts_count
                ) / rating.total_attempts

        avg_time = rating.avg_time_to_success
        if avg_time is None:
            avg_time = config.default_time_to_success
        avg_attempts = rating.avg_attempts
        if avg_attempts is None:
            avg_attempts = config.default_attempts
        time_factor = min(1.0, avg_time / config.time_normalizer_seconds)
        attempt_factor = min(1.0, avg_attempts / config.attempt_normalizer)
        rating.rating = 0.5 * (1 - rating.success_rate) + 0.25 * time_factor + 0.25 * attempt_factor
        rating.last_updated = self._clock()

        return {
            "skill_id": skill_id,
            "difficulty": rating.rating,
            "success_rate": rating.success_rate,
            "avg_time_to_success": rating.avg_time_to_success,
            "avg_attempts": rating.avg_attempts,
        }

    def _detect_patterns(self, skill_id: str | None, misconception: str | None) -> list[PendingImprovement]:
        config = self.config
        now = self._clock()
        patterns: list[PendingImprovement] = []

        if misconception and misconception != "unknown":
            occurrences = [h for h in self.history if h.misconception == misconception]
            if len(occurrences) >= config.min_pattern_samples:
                rate = sum(1 for h in occurrences if h.passed) / len(occurrences)
                if rate < config.misconception_success_floor:
                    patterns.append(
                        PendingImprovement(
                            type="repeated_misconception",
                            detected_at=now,
                            misconception=misconception,
                            sample_size=len(occurrences),
                            success_rate=rate,
                            recommendation="Add prerequisite content or an alternative intervention style",
                        )
                    )

        if skill_id:
            rating = self.difficulty.get(skill_id)
            if (
                rating is not None
                and rating.rating > config.difficult_rating
                and rating.total_attempts >= config.difficult_min_attempts
            ):
                patterns.append(
                    PendingImprovement(
                        type="difficult_concept",
                        detected_at=now,
                        skill_id=skill_id,
                        sample_size=rating.total_attempts,
                        success_rate=rating.success_rate,
                        difficulty=rating.rating,
                        recommendation="Break the skill into smaller parts or add scaffolding",
                    )
                )

        if misconception:
            by_style: dict[str, list[FeedbackHistoryEntry]] = {}
            for h in self.history:
                if h.misconception == misconception and h.intervention_style:
                    by_style.setdefault(h.intervention_style, []).append(h)
            for style, entries in by_style.items():
                if len(entries) < config.min_pattern_samples:
                    continue
                rate = sum(1 for h in entries if h.passed) / len(entries)
                if rate < config.ineffective_success_floor:
                    patterns.append(
                        PendingImprovement(
                            type="ineffective_intervention",
                            detected_at=now,
                            misconception=misconception,
                            intervention_style=style,
                            sample_size=len(entries),
                            success_rate=rate,
                            recommendation="Try an alternative intervention style",
                        )
                    )
        return patterns

    def _queue(self, patterns: list[PendingImprovement]) -> None:
        """Add patterns to the queue, refreshing an entry already queued for the same subject."""

        def subject(item: PendingImprovement) -> tuple[Any, ...]:
            return (item.type, item.skill_id, item.misconception, item.intervention_style)

        index = {subject(item): i for i, item in enumerate(self.pending)}
        for pattern in patterns:
            position = index.get(subject(pattern))
            if position is None:
                logger.info("Queued improvement %s for %s", pattern.type, pattern.skill_id or pattern.misconception)
                index[subject(pattern)] = len(self.pending)
                self.pending.append(pattern)
            else:
                self.pending[position] = pattern

    # ── Queries ──────────────────────────────────────────────────────────

    def get_struggle_thresholds(self, skill_id: str | None = None) -> StruggleThresholds:
        """Thresholds for ``skill_id``, or a fresh copy of the global defaults."""
        stored = self.thresholds.get(skill_id) if skill_id else None
        if stored is None:
            return StruggleThresholds.default()
        return StruggleThresholds.from_dict(stored.to_dict())

    def get_concept_difficulty(self, skill_id: str) -> float:
        rating = self.difficulty.get(skill_id)
        return rating.rating if rating is not None else DEFAULT_DIFFICULTY

    def get_difficult_concepts(self, threshold: float = 0.7, min_attempts: int = 5) -> list[dict[str, Any]]:
        difficult = [
            {
                "skill_id": skill_id,
                "difficulty": rating.rating,
                "success_rate": rating.success_rate,
                "avg_attempts": rating.avg_attempts,
            }
            for skill_id, rating in self.difficulty.items()
            if rating.rating >= threshold and rating.total_attempts >= min_attempts
        ]
        difficult.sort(key=lambda item: item["difficulty"], reverse=True)
        return difficult

    def get_pending_improvements(self) -> list[PendingImprovement]:
        return list(self.pending)

    async def clear_pending_improvements(self) -> None:
        self.pending = []
        await self.store.set(IMPROVEMENTS_KEY, [])

    def history_for_user(self, user_id: str) -> list[FeedbackHistoryEntry]:
        return [h for h in self.history if h.user_id == user_id]

    def get_statistics(self) -> dict[str, Any]:
        total = len(self.history)
        counts = {outcome: 0 for outcome in ("passed", "failed", "abandoned")}
        for h in self.history:
            counts[h.outcome] += 1
        timed = [h.time_to_outcome for h in self.history if h.passed and h.time_to_outcome is not None]
        return {
            "total_outcomes": total,
            **counts,
            "pass_rate": counts["passed"] / total if total else 0.0,
            "avg_time_to_pass": _mean(timed) if timed else None,
            "skills_with_custom_thresholds": len(self.thresholds),
            "skills_with_difficulty_data": len(self.difficulty),
            "pending_improvements": len(self.pending),
        }

    # ── Export / import ──────────────────────────────────────────────────

    def export(self) -> dict[str, Any]:
        return {
            "thresholds": {sid: t.to_dict() for sid, t in self.thresholds.items()},
            "difficulty": {sid: d.to_dict() for sid, d in self.difficulty.items()},
            "history": [h.to_dict() for h in self.history[-self.config.history_limit :]],
            "pending_improvements": [p.to_dict() for p in self.pending],
            "exported_at": self._clock(),
        }

    async def import_data(self, data: Mapping[str, Any]) -> None:
        for skill_id, entry in (data.get("thresholds") or {}).items():
            self.thresholds[skill_id] = StruggleThresholds.from_dict(entry)
        for skill_id, entry in (data.get("difficulty") or {}).items():
            self.difficulty[skill_id] = DifficultyRating.from_dict(entry)
        if data.get("history") is not None:
            self.history = [FeedbackHistoryEntry.from_dict(entry) for entry in data["history"]]
        if data.get("pending_improvements") is not None:
            self.pending = [PendingImprovement.from_dict(entry) for entry in data["pending_improvements"]]
        await self._persist()

    # ── Persistence ──────────────────────────────────────────────────────

    def _trim_history(self) -> None:
        cutoff = self._clock() - self.config.history_max_age_days * MS_PER_DAY
        recent = [h for h in self.history if h.timestamp >= cutoff]
        self.history = recent[-self.config.history_limit :]

    async def _persist(self) -> None:
        self._trim_history()
        await self.store.set(THRESHOLDS_KEY, {sid: t.to_dict() for sid, t in self.thresholds.items()})
        await self.store.set(DIFFICULTY_KEY, {sid: d.to_dict() for sid, d in self.difficulty.items()})
        await self.store.set(HISTORY_KEY, [h.to_dict() for h in self.history])
        await self.store.set(IMPROVEMENTS_KEY, [p.to_dict() for p in self.pending])


__all__ = [
    "DEFAULT_DIFFICULTY",
    "FeedbackLoop",
    "InterventionRecorder",
    "InterventionStats",
]
