"""Tunable constants for each component, optionally overridden from YAML."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SKILL_MASTERY_CONFIG"


@dataclass(frozen=True, slots=True)
class BKTConfig:
    mastery_threshold: float = 0.95
    min_observations: int = 3
    decay_rate: float = 0.001  # per day
    decay_floor: float = 0.05
    min_probability: float = 0.01
    max_probability: float = 0.99
    # Re-estimation constants; not derived from data, kept configurable.
    blend_factor: float = 0.3
    high_mastery_cutoff: float = 0.8
    low_mastery_cutoff: float = 0.3
    max_slip_estimate: float = 0.3
    max_guess_estimate: float = 0.4
    max_transit_estimate: float = 0.3
    history_limit: int = 1000


@dataclass(frozen=True, slots=True)
class MemoryConfig:
    target_retention: float = 0.9
    min_stability: float = 0.1  # days
    max_stability: float = 365.0
    initial_stability: float = 1.0
    initial_difficulty: float = 5.0
    min_difficulty: float = 1.0
    max_difficulty: float = 10.0
    failure_penalty: float = 0.5
    review_history_limit: int = 10


@dataclass(frozen=True, slots=True)
class VelocityConfig:
    base_minutes: float = 15.0
    weights: Mapping[str, float] = field(
        default_factory=lambda: {
            "concept_intrinsic": 0.30,
            "user_history": 0.25,
            "prerequisite_mastery": 0.25,
            "time_of_day": 0.10,
            "session_length": 0.05,
            "recent_performance": 0.05,
        }
    )
    hour_ema_alpha: float = 0.1
    session_window_minutes: float = 60.0
    recent_window_hours: float = 24.0
    fatigue_per_minute: float = 0.01
    min_fatigue_factor: float = 0.5
    prerequisite_gap: float = 0.7
    high_difficulty: float = 0.7
    suboptimal_time: float = 0.8
    fatigue_minutes: float = 30.0
    recent_struggle: float = 0.5
    utc_offset_hours: int = 0
    history_limit: int = 500


@dataclass(frozen=True, slots=True)
class FeedbackConfig:
    min_samples_for_adjustment: int = 10
    min_successes_for_adjustment: int = 5
    adjustment_rate: float = 0.1
    active_multiplier: float = 1.5
    supportive_multiplier: float = 2.0
    enable_auto_adjustment: bool = True
    time_normalizer_seconds: float = 300.0
    attempt_normalizer: float = 5.0
    default_time_to_success: float = 60.0
    default_attempts: float = 1.0
    min_pattern_samples: int = 5
    misconception_success_floor: float = 0.5
    difficult_rating: float = 0.7
    difficult_min_attempts: int = 10
    ineffective_success_floor: float = 0.3
    history_limit: int = 500
    history_max_age_days: float = 30.0


@dataclass(frozen=True, slots=True)
class RankerConfig:
    struggle_scale: float = 3.0
    recency_boost: float = 1.5
    recency_window_hours: float = 24.0
    high_struggle_level: int = 2
    low_mastery: float = 0.3
    prerequisite_gap: float = 0.5
    mastered: float = 0.8
    familiar: float = 0.5
    advanced: float = 0.7
    path_history_limit: int = 20


@dataclass(frozen=True, slots=True)
class CoreConfig:
    bkt: BKTConfig = field(default_factory=BKTConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    velocity: VelocityConfig = field(default_factory=VelocityConfig)
    feedback: FeedbackConfig = field(default_factory=FeedbackConfig)
    ranker: RankerConfig = field(default_factory=RankerConfig)


def _coerce(section: str, name: str, current: Any, value: Any) -> Any:
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{section}.{name} must be a boolean, got {value!r}")
        return value
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, Mapping):
        if not isinstance(value, Mapping):
            raise ValueError(f"{section}.{name} must be a mapping, got {value!r}")
        merged = dict(current)
        merged.update({str(k): float(v) for k, v in value.items()})
        return merged
    return value


def _apply_section(section: str, base: Any, overrides: Mapping[str, Any]) -> Any:
    names = {f.name for f in fields(base)}
    changes: dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in names:
            logger.warning("Ignoring unknown config key %s.%s", section, key)
            continue
        try:
            changes[key] = _coerce(section, key, getattr(base, key), value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid value for {section}.{key}: {value!r}") from exc
    return replace(base, **changes)


def config_from_mapping(raw: Mapping[str, Any] | None) -> CoreConfig:
    """Build a ``CoreConfig`` from a mapping of per-component overrides."""
    config = CoreConfig()
    if not raw:
        return config
    sections: dict[str, Any] = {}
    for section in ("bkt", "memory", "velocity", "feedback", "ranker"):
        overrides = raw.get(section) or {}
        if not isinstance(overrides, Mapping):
            raise ValueError(f"Config section '{section}' must be a mapping")
        sections[section] = _apply_section(section, getattr(config, section), overrides)
    for section in raw:
        if section not in sections:
            logger.warning("Ignoring unknown config section %s", section)
    return CoreConfig(**sections)


def load_config(path: Path | str | None = None) -> CoreConfig:
    """Read YAML overrides from ``path`` or ``$SKILL_MASTERY_CONFIG``; defaults otherwise."""
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if not env_path:
            return CoreConfig()
        path = env_path
    file_path = Path(path)
    with open(file_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, Mapping):
        raise ValueError(f"Config file {file_path} must contain a mapping")
    return config_from_mapping(raw)


__all__ = [
    "BKTConfig",
    "CONFIG_ENV_VAR",
    "CoreConfig",
    "FeedbackConfig",
    "MemoryConfig",
    "RankerConfig",
    "VelocityConfig",
    "config_from_mapping",
    "load_config",
]
