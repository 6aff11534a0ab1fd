"""Bayesian Knowledge Tracing (BKT) engine for per-learner skill mastery."""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Mapping

from .clock import Clock, days_between, now_ms
from .concepts import PrerequisiteProvider
from .config import BKTConfig
from .models import (
    BKTParams,
    KnowledgeComponent,
    MasteryEstimate,
    MasterySummary,
    MasteryUpdate,
    NextSkill,
    Observation,
    ParameterEstimate,
    SkillMastery,
)
from .store import KeyValueStore

logger = logging.getLogger(__name__)

KC_KEY = "knowledge_components"
MASTERY_KEY = "bkt_mastery"
HISTORY_KEY = "bkt_history"

# Starting points per skill category, refined later by re-estimation.
CATEGORY_DEFAULTS: dict[str, BKTParams] = {
    "html_element": BKTParams(p_mastery0=0.15, p_transit=0.12, p_slip=0.08, p_guess=0.20),
    "css_property": BKTParams(p_mastery0=0.12, p_transit=0.10, p_slip=0.10, p_guess=0.25),
    # Structural skills: mistakes are easy to make
    "nesting": BKTParams(p_mastery0=0.10, p_transit=0.15, p_slip=0.15, p_guess=0.15),
    "semantics": BKTParams(p_mastery0=0.08, p_transit=0.12, p_slip=0.12, p_guess=0.18),
    # Attribute skills: multiple choice makes guessing easier
    "attributes": BKTParams(p_mastery0=0.18, p_transit=0.08, p_slip=0.06, p_guess=0.30),
    "default": BKTParams(p_mastery0=0.15, p_transit=0.10, p_slip=0.10, p_guess=0.20),
}


def default_params(category: str | None) -> BKTParams:
    """Fresh copy of the defaults for ``category``, falling back to ``default``."""
    base = CATEGORY_DEFAULTS.get(category or "default", CATEGORY_DEFAULTS["default"])
    return BKTParams(**base.to_dict())


def bkt_update(
    p_mastery: float,
    is_correct: bool,
    *,
    p_transit: float,
    p_guess: float,
    p_slip: float,
) -> float:
    """Standard BKT: posterior update then learning transition.

    Correct: P(L|obs) = P(L)*(1-P(S)) / [P(L)*(1-P(S)) + (1-P(L))*P(G)]
    Wrong:   P(L|obs) = P(L)*P(S) / [P(L)*P(S) + (1-P(L))*(1-P(G))]
    Then:    P(L_new) = P(L|obs) + (1 - P(L|obs)) * P(T)
    """
    if is_correct:
        numerator = p_mastery * (1 - p_slip)
        denominator = numerator + (1 - p_mastery) * p_guess
    else:
        numerator = p_mastery * p_slip
        denominator = numerator + (1 - p_mastery) * (1 - p_guess)

    p_posterior = numerator / denominator if denominator else 0.0
    return p_posterior + (1 - p_posterior) * p_transit


def predict_correct_probability(p_mastery: float, params: BKTParams) -> float:
    """P(correct) = P(L)*(1-P(S)) + (1-P(L))*P(G)."""
    return p_mastery * (1 - params.p_slip) + (1 - p_mastery) * params.p_guess


def _mastery_key(user_id: str, skill_id: str) -> str:
    return f"{user_id}:{skill_id}"


def _split_mastery_key(key: str) -> tuple[str, str]:
    user_id, _, skill_id = key.rpartition(":")
    return user_id, skill_id


class BKTEngine:
    """Mastery estimates per (user, skill), backed by a key-value store.

    Skills are created on first reference with the defaults of their category.
    The prerequisite-graph provider, when given, supplies category and
    prerequisites for skills that have not been registered explicitly.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: BKTConfig | None = None,
        *,
        graph: PrerequisiteProvider | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.config = config or BKTConfig()
        self.graph = graph
        self._clock = clock
        self.components: dict[str, KnowledgeComponent] = {}
        self._mastery: dict[str, MasteryEstimate] = {}
        self._history: list[Observation] = []

    async def init(self) -> None:
        """Load components, estimates and observation history from the store."""
        self.components = {}
        for skill_id, data in (await self.store.get(KC_KEY, {})).items():
            try:
                self.components[skill_id] = KnowledgeComponent.from_dict({**data, "id": skill_id})
            except (TypeError, ValueError):
                logger.warning("Skipping unreadable knowledge component %s", skill_id)

        self._mastery = {}
        for key, data in (await self.store.get(MASTERY_KEY, {})).items():
            try:
                self._mastery[key] = MasteryEstimate.from_dict(data)
            except (TypeError, ValueError):
                logger.warning("Skipping unreadable mastery estimate %s", key)

        self._history = [Observation.from_dict(entry) for entry in await self.store.get(HISTORY_KEY, [])]
        logger.info(
            "BKT engine loaded %d skills, %d mastery estimates",
            len(self.components),
            len(self._mastery),
        )

    # ── Registration ─────────────────────────────────────────────────────

    def _creates_cycle(self, skill_id: str, prerequisites: Iterable[str]) -> bool:
        stack = list(prerequisites)
        seen: set[str] = set()
        while stack:
            current = stack.pop()
            if current == skill_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            component = self.components.get(current)
            if component is not None:
                stack.extend(component.prerequisites)
        return False

    async def register_kc(
        self,
        skill_id: str,
        params: BKTParams | None = None,
        *,
        category: str = "default",
        prerequisites: Iterable[str] = (),
        description: str = "",
        related: Iterable[str] = (),
    ) -> KnowledgeComponent:
        """Create or redefine a skill; observation counters of an existing skill survive."""
        prereqs = list(dict.fromkeys(prerequisites))
        if skill_id in prereqs or self._creates_cycle(skill_id, prereqs):
            raise ValueError(f"Prerequisites of '{skill_id}' would create a cycle")

        chosen = params if params is not None else default_params(category)
        if not chosen.is_valid():
            logger.warning("Invalid BKT parameters for skill %s, using %s defaults", skill_id, category)
            chosen = default_params(category)

        existing = self.components.get(skill_id)
        component = KnowledgeComponent(
            id=skill_id,
            params=BKTParams(**chosen.to_dict()),
            category=category,
            description=description,
            prerequisites=prereqs,
            related=list(related),
            total_observations=existing.total_observations if existing else 0,
            correct_observations=existing.correct_observations if existing else 0,
            last_updated=self._clock(),
        )
        self.components[skill_id] = component
        await self._persist_components()
        return component

    async def get_or_create_kc(self, skill_id: str, category: str | None = None) -> KnowledgeComponent:
        """Return the skill, creating it from category defaults on first reference."""
        component = self.components.get(skill_id)
        if component is not None:
            return component

        prerequisites: list[str] = []
        if self.graph is not None:
            category = category or self.graph.category(skill_id)
            prerequisites = [p for p in self.graph.prerequisites(skill_id) if p != skill_id]
            if self._creates_cycle(skill_id, prerequisites):
                logger.warning("Dropping cyclic prerequisites of skill %s", skill_id)
                prerequisites = []
        category = category or "default"
        logger.debug("Creating skill %s with %s defaults", skill_id, category)
        return await self.register_kc(skill_id, category=category, prerequisites=prerequisites)

    def prerequisites(self, skill_id: str) -> list[str]:
        component = self.components.get(skill_id)
        return list(component.prerequisites) if component is not None else []

    def category(self, skill_id: str) -> str | None:
        component = self.components.get(skill_id)
        return component.category if component is not None else None

    # ── Mastery ──────────────────────────────────────────────────────────

    def _decayed(self, component: KnowledgeComponent, user_id: str) -> float:
        estimate = self._mastery.get(_mastery_key(user_id, component.id))
        if estimate is None:
            return component.params.p_mastery0
        days = days_between(estimate.last_updated, self._clock())
        decayed = estimate.probability * math.exp(-self.config.decay_rate * days)
        return max(self.config.decay_floor, decayed)

    async def get_mastery(self, skill_id: str, user_id: str = "default") -> float:
        """Current P(L) with time decay applied; a pure function of elapsed time."""
        component = await self.get_or_create_kc(skill_id)
        return self._decayed(component, user_id)

    async def update_mastery(self, skill_id: str, correct: bool, user_id: str = "default") -> MasteryUpdate:
        component = await self.get_or_create_kc(skill_id)
        params = component.params
        before = self._decayed(component, user_id)

        after = bkt_update(
            before,
            correct,
            p_transit=params.p_transit,
            p_guess=params.p_guess,
            p_slip=params.p_slip,
        )
        after = min(self.config.max_probability, max(self.config.min_probability, after))

        timestamp = self._clock()
        key = _mastery_key(user_id, skill_id)
        estimate = self._mastery.get(key) or MasteryEstimate(probability=params.p_mastery0)
        estimate.probability = after
        estimate.observations += 1
        estimate.last_updated = timestamp
        self._mastery[key] = estimate

        component.total_observations += 1
        if correct:
            component.correct_observations += 1
        component.last_updated = timestamp

        self._history.append(
            Observation(
                skill_id=skill_id,
                user_id=user_id,
                correct=correct,
                mastery_before=before,
                mastery_after=after,
                timestamp=timestamp,
            )
        )
        await self._persist_mastery()
        await self._persist_components()
        await self._persist_history()

        logger.debug("Mastery %s/%s: %.3f -> %.3f (correct=%s)", user_id, skill_id, before, after, correct)
        return MasteryUpdate(
            skill_id=skill_id,
            before=before,
            after=after,
            is_mastered=after >= self.config.mastery_threshold,
            observations=estimate.observations,
        )

    async def predict_correct(self, skill_id: str, user_id: str = "default") -> float:
        component = await self.get_or_create_kc(skill_id)
        return predict_correct_probability(self._decayed(component, user_id), component.params)

    def observation_count(self, skill_id: str, user_id: str = "default") -> int:
        estimate = self._mastery.get(_mastery_key(user_id, skill_id))
        return estimate.observations if estimate is not None else 0

    def is_mastered(self, p_mastery: float) -> bool:
        return p_mastery >= self.config.mastery_threshold

    def _snapshot(self, user_id: str) -> list[SkillMastery]:
        return [
            SkillMastery(
                skill_id=component.id,
                mastery=self._decayed(component, user_id),
                category=component.category,
                observations=component.total_observations,
            )
            for component in self.components.values()
        ]

    def get_weak_kcs(self, user_id: str = "default") -> list[SkillMastery]:
        """Skills below the mastery threshold, lowest mastery first."""
        weak = [entry for entry in self._snapshot(user_id) if not self.is_mastered(entry.mastery)]
        weak.sort(key=lambda entry: (entry.mastery, entry.skill_id))
        return weak

    def get_mastered_kcs(self, user_id: str = "default") -> list[SkillMastery]:
        """Skills at or above the mastery threshold, highest mastery first."""
        mastered = [entry for entry in self._snapshot(user_id) if self.is_mastered(entry.mastery)]
        mastered.sort(key=lambda entry: (-entry.mastery, entry.skill_id))
        return mastered

    def all_mastery(self, user_id: str = "default") -> dict[str, float]:
        return {entry.skill_id: entry.mastery for entry in self._snapshot(user_id)}

    async def select_next_kc(
        self, user_id: str = "default", available: Iterable[str] | None = None
    ) -> NextSkill | None:
        """Lowest-mastery unmastered skill, or its weakest unmastered prerequisite."""
        if available is None:
            candidates = [(entry.skill_id, entry.mastery) for entry in self.get_weak_kcs(user_id)]
        else:
            candidates = []
            for skill_id in dict.fromkeys(available):
                mastery = await self.get_mastery(skill_id, user_id)
                if not self.is_mastered(mastery):
                    candidates.append((skill_id, mastery))
            candidates.sort(key=lambda item: (item[1], item[0]))

        if not candidates:
            return None

        skill_id, mastery = candidates[0]
        unmet: list[tuple[str, float]] = []
        for prereq_id in self.prerequisites(skill_id):
            prereq_mastery = await self.get_mastery(prereq_id, user_id)
            if not self.is_mastered(prereq_mastery):
                unmet.append((prereq_id, prereq_mastery))
        if unmet:
            prereq_id, prereq_mastery = min(unmet, key=lambda item: (item[1], item[0]))
            return NextSkill(
                skill_id=prereq_id,
                mastery=prereq_mastery,
                reason="prerequisite",
                for_skill=skill_id,
            )
        return NextSkill(skill_id=skill_id, mastery=mastery, reason="lowest_mastery")

    def get_mastery_summary(self, user_id: str = "default") -> MasterySummary:
        weak = self.get_weak_kcs(user_id)
        mastered = self.get_mastered_kcs(user_id)
        total = len(self.components)
        average = sum(entry.mastery for entry in weak + mastered) / total if total else 0.0
        return MasterySummary(
            total=total,
            mastered=len(mastered),
            weak=len(weak),
            average_mastery=average,
            mastery_rate=len(mastered) / total if total else 0.0,
            weakest=weak[0] if weak else None,
            strongest=mastered[0] if mastered else None,
        )

    # ── Parameter re-estimation ──────────────────────────────────────────

    def estimate_parameters(self, skill_id: str | None = None) -> dict[str, ParameterEstimate]:
        """Heuristic slip/guess/transit estimates from the observation history.

        Skills with fewer than ``min_observations`` observations are left out,
        so an empty result means there was not enough data.
        """
        config = self.config
        by_skill: dict[str, list[Observation]] = {}
        for obs in self._history:
            if skill_id is None or obs.skill_id == skill_id:
                by_skill.setdefault(obs.skill_id, []).append(obs)

        estimates: dict[str, ParameterEstimate] = {}
        for sid, observations in by_skill.items():
            component = self.components.get(sid)
            if component is None or len(observations) < config.min_observations:
                continue
            params = component.params

            high = [o for o in observations if o.mastery_before > config.high_mastery_cutoff]
            slip = sum(1 for o in high if not o.correct) / len(high) if high else params.p_slip

            low = [o for o in observations if o.mastery_before < config.low_mastery_cutoff]
            guess = sum(1 for o in low if o.correct) / len(low) if low else params.p_guess

            gains = [o.mastery_after - o.mastery_before for o in observations if o.mastery_after > o.mastery_before]
            transit = sum(gains) / len(gains) if gains else params.p_transit

            estimates[sid] = ParameterEstimate(
                p_slip=min(config.max_slip_estimate, slip),
                p_guess=min(config.max_guess_estimate, guess),
                p_transit=min(config.max_transit_estimate, transit),
                confidence=min(1.0, len(observations) / 50),
                observations=len(observations),
            )
        return estimates

    async def apply_parameter_estimates(
        self, estimates: Mapping[str, ParameterEstimate], blend_factor: float | None = None
    ) -> list[str]:
        """Blend estimates into the current parameters; returns the skills changed."""
        blend = self.config.blend_factor if blend_factor is None else blend_factor
        changed: list[str] = []
        for skill_id, estimate in estimates.items():
            component = self.components.get(skill_id)
            if component is None:
                continue
            params = component.params
            params.p_slip = params.p_slip * (1 - blend) + estimate.p_slip * blend
            params.p_guess = params.p_guess * (1 - blend) + estimate.p_guess * blend
            params.p_transit = params.p_transit * (1 - blend) + estimate.p_transit * blend
            changed.append(skill_id)
        if changed:
            await self._persist_components()
        return changed

    async def reestimate_parameters(self, skill_id: str | None = None) -> dict[str, Any]:
        estimates = self.estimate_parameters(skill_id)
        if not estimates:
            return {"adjusted": False, "reason": "insufficient_data"}
        changed = await self.apply_parameter_estimates(estimates)
        logger.info("Re-estimated BKT parameters for %d skills", len(changed))
        return {
            "adjusted": True,
            "skills": {sid: estimates[sid].to_dict() for sid in changed},
        }

    # ── Export / import ──────────────────────────────────────────────────

    def export(self) -> dict[str, Any]:
        return {
            "components": {sid: c.to_dict() for sid, c in self.components.items()},
            "mastery": {key: estimate.to_dict() for key, estimate in self._mastery.items()},
            "history": [obs.to_dict() for obs in self._history[-self.config.history_limit :]],
            "exported_at": self._clock(),
        }

    async def import_data(self, data: Mapping[str, Any]) -> None:
        for skill_id, entry in (data.get("components") or {}).items():
            self.components[skill_id] = KnowledgeComponent.from_dict({**entry, "id": skill_id})
        for key, entry in (data.get("mastery") or {}).items():
            self._mastery[key] = MasteryEstimate.from_dict(entry)
        if data.get("history") is not None:
            self._history = [Observation.from_dict(entry) for entry in data["history"]]
        await self._persist_components()
        await self._persist_mastery()
        await self._persist_history()

    def users(self) -> list[str]:
        return sorted({_split_mastery_key(key)[0] for key in self._mastery})

    def history(self) -> list[Observation]:
        return list(self._history)

    # ── Persistence ──────────────────────────────────────────────────────

    async def _persist_components(self) -> None:
        await self.store.set(KC_KEY, {sid: c.to_dict() for sid, c in self.components.items()})

    async def _persist_mastery(self) -> None:
        await self.store.set(MASTERY_KEY, {key: e.to_dict() for key, e in self._mastery.items()})

    async def _persist_history(self) -> None:
        self._history = self._history[-self.config.history_limit :]
        await self.store.set(HISTORY_KEY, [obs.to_dict() for obs in self._history])


__all__ = [
    "BKTEngine",
    "CATEGORY_DEFAULTS",
    "HISTORY_KEY",
    "KC_KEY",
    "MASTERY_KEY",
    "bkt_update",
    "default_params",
    "predict_correct_probability",
]
