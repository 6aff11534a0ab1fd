"""Learner-model core: BKT mastery, forgetting curves, outcome feedback and study-path ranking."""

from .bkt import BKTEngine
from .concepts import SkillGraph, load_skill_graph
from .config import CoreConfig, load_config
from .feedback import FeedbackLoop, InterventionStats
from .models import OutcomeEvent
from .recommend import RecommendationRanker
from .srs import MemoryModel
from .store import MemoryStore, SQLiteStore
from .tutor import Tutor
from .velocity import VelocityTracker

__all__ = [
    "BKTEngine",
    "CoreConfig",
    "FeedbackLoop",
    "InterventionStats",
    "MemoryModel",
    "MemoryStore",
    "OutcomeEvent",
    "RecommendationRanker",
    "SQLiteStore",
    "SkillGraph",
    "Tutor",
    "VelocityTracker",
    "load_config",
    "load_skill_graph",
]
