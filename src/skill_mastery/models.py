"""Records shared by the mastery, memory, velocity, feedback and ranking components."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Literal, Mapping, cast

Outcome = Literal["passed", "failed", "abandoned"]
SelectionReason = Literal["prerequisite", "lowest_mastery"]
ImprovementType = Literal["repeated_misconception", "difficult_concept", "ineffective_intervention"]

OUTCOMES: tuple[Outcome, ...] = ("passed", "failed", "abandoned")


def _known(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    """Keep only keys that are fields of ``cls`` so extra keys never break loading."""
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


def ensure_outcome(value: str) -> Outcome:
    """Normalise and validate an outcome label."""

    normalized = value.strip().lower()
    if normalized not in OUTCOMES:
        raise ValueError(f"Unsupported outcome: {value}")
    return cast(Outcome, normalized)


# ── Mastery estimator ────────────────────────────────────────────────────────


@dataclass(slots=True)
class BKTParams:
    p_mastery0: float = 0.15
    p_transit: float = 0.10
    p_slip: float = 0.10
    p_guess: float = 0.20

    def is_valid(self) -> bool:
        """Slip and guess must stay below 0.5; prior and transit are probabilities."""
        if not 0.0 <= self.p_mastery0 <= 1.0:
            return False
        if not 0.0 <= self.p_transit <= 1.0:
            return False
        if not 0.0 <= self.p_slip <= 0.5:
            return False
        if not 0.0 <= self.p_guess <= 0.5:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> BKTParams:
        return cls(**{k: float(v) for k, v in _known(cls, data or {}).items()})


@dataclass(slots=True)
class KnowledgeComponent:
    id: str
    params: BKTParams = field(default_factory=BKTParams)
    category: str = "default"
    description: str = ""
    prerequisites: list[str] = field(default_factory=list)
    related: list[str] = field(default_factory=list)
    total_observations: int = 0
    correct_observations: int = 0
    last_updated: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KnowledgeComponent:
        values = _known(cls, data)
        values["params"] = BKTParams.from_dict(data.get("params"))
        values["prerequisites"] = list(data.get("prerequisites") or [])
        values["related"] = list(data.get("related") or [])
        return cls(**values)


@dataclass(slots=True)
class MasteryEstimate:
    probability: float
    observations: int = 0
    last_updated: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MasteryEstimate:
        values = _known(cls, data)
        values.setdefault("probability", BKTParams().p_mastery0)
        return cls(**values)


@dataclass(slots=True)
class Observation:
    skill_id: str
    user_id: str
    correct: bool
    mastery_before: float
    mastery_after: float
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Observation:
        return cls(
            skill_id=str(data.get("skill_id", "")),
            user_id=str(data.get("user_id", "default")),
            correct=bool(data.get("correct", False)),
            mastery_before=float(data.get("mastery_before", 0.0)),
            mastery_after=float(data.get("mastery_after", 0.0)),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass(slots=True)
class MasteryUpdate:
    skill_id: str
    before: float
    after: float
    is_mastered: bool
    observations: int


@dataclass(slots=True)
class NextSkill:
    skill_id: str
    mastery: float
    reason: SelectionReason
    for_skill: str | None = None


@dataclass(slots=True)
class ParameterEstimate:
    p_slip: float
    p_guess: float
    p_transit: float
    confidence: float
    observations: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SkillMastery:
    skill_id: str
    mastery: float
    category: str
    observations: int


@dataclass(slots=True)
class MasterySummary:
    total: int
    mastered: int
    weak: int
    average_mastery: float
    mastery_rate: float
    weakest: SkillMastery | None = None
    strongest: SkillMastery | None = None


# ── Skill graph ──────────────────────────────────────────────────────────────


@dataclass(slots=True)
class Skill:
    id: str
    name: str
    category: str = "default"
    description: str = ""
    prerequisites: list[str] = field(default_factory=list)
    params: BKTParams | None = None


# ── Memory model ─────────────────────────────────────────────────────────────


@dataclass(slots=True)
class ReviewRecord:
    timestamp: float
    success: bool
    rating: int = 3
    time_to_review: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReviewRecord:
        values = _known(cls, data)
        values.setdefault("timestamp", 0.0)
        values.setdefault("success", False)
        return cls(**values)


@dataclass(slots=True)
class ForgettingCurve:
    skill_id: str
    stability: float = 1.0
    difficulty: float = 5.0
    last_review: float | None = None
    next_review: float | None = None
    review_history: list[ReviewRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ForgettingCurve:
        values = _known(cls, data)
        values["review_history"] = [
            ReviewRecord.from_dict(entry) for entry in data.get("review_history") or []
        ]
        return cls(**values)


@dataclass(slots=True)
class DueReview:
    skill_id: str
    retrievability: float
    days_overdue: int


# ── Velocity tracker ─────────────────────────────────────────────────────────


@dataclass(slots=True)
class SkillVelocity:
    attempts: int = 0
    successes: int = 0
    total_minutes: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts else 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SkillVelocity:
        return cls(**_known(cls, data))


@dataclass(slots=True)
class HourVelocity:
    sessions: int = 0
    avg_velocity: float = 1.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HourVelocity:
        return cls(**_known(cls, data))


@dataclass(slots=True)
class VelocityProfile:
    user_id: str
    concepts_learned: int = 0
    learning_minutes: float = 0.0
    skills: dict[str, SkillVelocity] = field(default_factory=dict)
    hours: dict[str, HourVelocity] = field(default_factory=dict)
    last_updated: float = 0.0

    @property
    def overall_velocity(self) -> float | None:
        """Concepts learned per hour; undefined until both totals are non-zero."""
        if self.concepts_learned == 0 or self.learning_minutes == 0:
            return None
        return self.concepts_learned / (self.learning_minutes / 60)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VelocityProfile:
        values = _known(cls, data)
        values.setdefault("user_id", "default")
        values["skills"] = {
            skill_id: SkillVelocity.from_dict(entry)
            for skill_id, entry in (data.get("skills") or {}).items()
        }
        values["hours"] = {
            str(hour): HourVelocity.from_dict(entry)
            for hour, entry in (data.get("hours") or {}).items()
        }
        return cls(**values)


@dataclass(slots=True)
class VelocityRecord:
    skill_id: str
    user_id: str
    minutes: float
    success: bool
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VelocityRecord:
        return cls(
            skill_id=str(data.get("skill_id", "")),
            user_id=str(data.get("user_id", "default")),
            minutes=float(data.get("minutes", 0.0)),
            success=bool(data.get("success", False)),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass(slots=True)
class VelocityFactor:
    value: float
    weight: float

    @property
    def contribution(self) -> float:
        return self.value * self.weight


@dataclass(slots=True)
class TimeEstimate:
    skill_id: str
    estimated_minutes: int
    confidence: float
    factors: dict[str, VelocityFactor]
    base_minutes: float
    difficulty_adjustment: float
    velocity_adjustment: float


@dataclass(slots=True)
class VelocityBlocker:
    type: str
    severity: float
    description: str
    recommendation: str


# ── Feedback loop ────────────────────────────────────────────────────────────


@dataclass(slots=True)
class OutcomeEvent:
    """One concluded learner attempt, as reported by the outcome reporter.

    Only ``skill_id`` and ``outcome`` are required. Struggle counters default to
    zero and timings to unknown, so a bare pass/fail report is a valid event.
    """

    skill_id: str | None
    outcome: Outcome
    user_id: str = "default"
    misconception: str | None = None
    intervention_style: str | None = None
    time_to_outcome: float | None = None  # seconds
    struggle_level: int = 0
    explain_clicks: int = 0
    nudge_clicks: int = 0
    test_attempts: int = 0
    attempts_count: int | None = None
    hint_id: str | None = None

    def __post_init__(self) -> None:
        self.outcome = ensure_outcome(self.outcome)
        self.struggle_level = max(0, min(3, int(self.struggle_level)))

    @property
    def passed(self) -> bool:
        return self.outcome == "passed"


@dataclass(frozen=True, slots=True)
class FeedbackHistoryEntry:
    skill_id: str | None
    outcome: Outcome
    user_id: str
    timestamp: float
    misconception: str | None = None
    intervention_style: str | None = None
    time_to_outcome: float | None = None
    struggle_level: int = 0
    explain_clicks: int = 0
    nudge_clicks: int = 0
    test_attempts: int = 0
    attempts_count: int | None = None
    hint_id: str | None = None

    @property
    def passed(self) -> bool:
        return self.outcome == "passed"

    @classmethod
    def from_event(cls, event: OutcomeEvent, timestamp: float) -> FeedbackHistoryEntry:
        return cls(
            skill_id=event.skill_id,
            outcome=event.outcome,
            user_id=event.user_id,
            timestamp=timestamp,
            misconception=event.misconception,
            intervention_style=event.intervention_style,
            time_to_outcome=event.time_to_outcome,
            struggle_level=event.struggle_level,
            explain_clicks=event.explain_clicks,
            nudge_clicks=event.nudge_clicks,
            test_attempts=event.test_attempts,
            attempts_count=event.attempts_count,
            hint_id=event.hint_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FeedbackHistoryEntry:
        values = _known(cls, data)
        values["outcome"] = ensure_outcome(str(values.get("outcome", "failed")))
        values.setdefault("skill_id", None)
        values.setdefault("user_id", "default")
        values.setdefault("timestamp", 0.0)
        return cls(**values)


@dataclass(slots=True)
class ThresholdTier:
    explain_clicks: float
    nudge_clicks: float
    test_attempts: float
    time_on_test: float  # seconds

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], fallback: ThresholdTier) -> ThresholdTier:
        merged = asdict(fallback)
        merged.update(_known(cls, data))
        return cls(**merged)


@dataclass(slots=True)
class StruggleThresholds:
    gentle: ThresholdTier
    active: ThresholdTier
    supportive: ThresholdTier

    @classmethod
    def default(cls) -> StruggleThresholds:
        return cls(
            gentle=ThresholdTier(explain_clicks=2, nudge_clicks=2, test_attempts=2, time_on_test=60),
            active=ThresholdTier(explain_clicks=4, nudge_clicks=4, test_attempts=4, time_on_test=120),
            supportive=ThresholdTier(explain_clicks=6, nudge_clicks=6, test_attempts=6, time_on_test=180),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StruggleThresholds:
        defaults = cls.default()
        return cls(
            gentle=ThresholdTier.from_dict(data.get("gentle") or {}, defaults.gentle),
            active=ThresholdTier.from_dict(data.get("active") or {}, defaults.active),
            supportive=ThresholdTier.from_dict(data.get("supportive") or {}, defaults.supportive),
        )


@dataclass(slots=True)
class DifficultyRating:
    rating: float = 0.5
    total_attempts: int = 0
    successful_attempts: int = 0
    avg_time_to_success: float | None = None
    avg_attempts: float | None = None
    last_updated: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successful_attempts / self.total_attempts if self.total_attempts else 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DifficultyRating:
        return cls(**_known(cls, data))


@dataclass(slots=True)
class InterventionRecord:
    misconception: str
    style: str
    uses: int = 0
    successes: int = 0
    avg_resolution_time: float | None = None

    @property
    def success_rate(self) -> float:
        return self.successes / self.uses if self.uses else 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InterventionRecord:
        values = _known(cls, data)
        values.setdefault("misconception", "unknown")
        values.setdefault("style", "unknown")
        return cls(**values)


@dataclass(slots=True)
class PendingImprovement:
    type: ImprovementType
    detected_at: float
    skill_id: str | None = None
    misconception: str | None = None
    intervention_style: str | None = None
    sample_size: int = 0
    success_rate: float = 0.0
    difficulty: float | None = None
    recommendation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PendingImprovement:
        values = _known(cls, data)
        values.setdefault("type", "difficult_concept")
        values.setdefault("detected_at", 0.0)
        return cls(**values)


@dataclass(slots=True)
class OutcomeResult:
    skill_id: str | None
    outcome: Outcome
    hint_id: str | None = None
    mastery: MasteryUpdate | None = None
    intervention: dict[str, Any] | None = None
    thresholds: dict[str, Any] | None = None
    difficulty: dict[str, Any] | None = None
    patterns: list[PendingImprovement] = field(default_factory=list)
    processing_ms: float = 0.0


# ── Recommendation ranker ────────────────────────────────────────────────────


@dataclass(slots=True)
class StruggleSignal:
    level: int = 0
    last_detected: float | None = None
    updated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StruggleSignal:
        return cls(**_known(cls, data))


@dataclass(slots=True)
class SkillScore:
    skill_id: str
    score: float
    mastery: float
    prerequisite_mastery: float | None
    struggle_level: int
    recently_struggled: bool


@dataclass(slots=True)
class FocusArea:
    category: str
    avg_mastery: float
    skill_count: int
    description: str


@dataclass(slots=True)
class LearningPath:
    id: str
    created: float
    skills: list[str]
    scores: list[SkillScore]
    focus_areas: list[FocusArea]
    recommendation: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SkillRef:
    id: str
    name: str
    mastery: float | None = None


@dataclass(slots=True)
class NextStep:
    type: str
    message: str
    details: str = ""
    skills: list[SkillRef] = field(default_factory=list)


@dataclass(slots=True)
class Recommendation:
    strategy: Literal["high_struggle", "low_mastery", "standard", "unknown"]
    message: str
    next_steps: list[NextStep] = field(default_factory=list)
    mastery_level: str | None = None
    struggle_level: int | None = None


__all__ = [
    "BKTParams",
    "DifficultyRating",
    "DueReview",
    "FeedbackHistoryEntry",
    "FocusArea",
    "ForgettingCurve",
    "HourVelocity",
    "ImprovementType",
    "InterventionRecord",
    "KnowledgeComponent",
    "MasterySummary",
    "LearningPath",
    "MasteryEstimate",
    "MasteryUpdate",
    "NextSkill",
    "NextStep",
    "Observation",
    "OUTCOMES",
    "Outcome",
    "OutcomeEvent",
    "OutcomeResult",
    "ParameterEstimate",
    "PendingImprovement",
    "Recommendation",
    "ReviewRecord",
    "SelectionReason",
    "Skill",
    "SkillMastery",
    "SkillRef",
    "SkillScore",
    "SkillVelocity",
    "StruggleSignal",
    "StruggleThresholds",
    "ThresholdTier",
    "TimeEstimate",
    "VelocityBlocker",
    "VelocityFactor",
    "VelocityProfile",
    "VelocityRecord",
    "ensure_outcome",
]
