"""Skill graph: YAML loader, DAG validation, prerequisite lookups."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Protocol

import yaml

from .models import BKTParams, Skill

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent.parent
DATA_DIR = PROJECT_ROOT / "data"
SKILLS_FILE = DATA_DIR / "skills.yaml"

_graph_cache: SkillGraph | None = None


class PrerequisiteProvider(Protocol):
    """Answers category and prerequisite questions for skills seen for the first time."""

    def category(self, skill_id: str) -> str | None: ...

    def prerequisites(self, skill_id: str) -> list[str]: ...


def validate_dag(skills: Mapping[str, Skill]) -> list[str]:
    """Topological sort of the skill DAG. Returns ordered list of skill IDs.
    Raises ValueError if there are cycles or missing prerequisites.
    """
    for skill in skills.values():
        for prereq in skill.prerequisites:
            if prereq not in skills:
                raise ValueError(f"Skill '{skill.id}' has unknown prerequisite '{prereq}'")

    # Kahn's algorithm
    in_degree: dict[str, int] = {sid: len(skill.prerequisites) for sid, skill in skills.items()}
    dependents: dict[str, list[str]] = {sid: [] for sid in skills}
    for skill in skills.values():
        for prereq in skill.prerequisites:
            dependents[prereq].append(skill.id)

    queue = sorted(sid for sid, degree in in_degree.items() if degree == 0)
    result: list[str] = []
    while queue:
        node = queue.pop(0)
        result.append(node)
        for neighbor in sorted(dependents[node]):
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)
        queue.sort()

    if len(result) != len(skills):
        raise ValueError("Cycle detected in skill prerequisite graph")
    return result


class SkillGraph:
    """Read-only prerequisite graph keyed by skill id."""

    def __init__(self, skills: Iterable[Skill] = ()) -> None:
        self._skills: dict[str, Skill] = {}
        for skill in skills:
            if skill.id in self._skills:
                raise ValueError(f"Duplicate skill id '{skill.id}'")
            self._skills[skill.id] = skill
        self._order = validate_dag(self._skills)

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._skills

    def __iter__(self) -> Iterator[Skill]:
        return iter(self._skills.values())

    def __len__(self) -> int:
        return len(self._skills)

    def get(self, skill_id: str) -> Skill | None:
        return self._skills.get(skill_id)

    def ids(self) -> list[str]:
        return list(self._skills)

    def name(self, skill_id: str) -> str:
        skill = self._skills.get(skill_id)
        return skill.name if skill is not None else skill_id

    def category(self, skill_id: str) -> str | None:
        skill = self._skills.get(skill_id)
        return skill.category if skill is not None else None

    def prerequisites(self, skill_id: str) -> list[str]:
        skill = self._skills.get(skill_id)
        return list(skill.prerequisites) if skill is not None else []

    def dependents(self, skill_id: str) -> list[str]:
        """Skills that list ``skill_id`` as a direct prerequisite."""
        return [skill.id for skill in self._skills.values() if skill_id in skill.prerequisites]

    def topological_order(self) -> list[str]:
        return list(self._order)


def _skill_from_entry(entry: Mapping[str, Any]) -> Skill:
    raw_params = entry.get("params")
    return Skill(
        id=str(entry["id"]),
        name=str(entry.get("name") or entry["id"]),
        category=str(entry.get("category") or "default"),
        description=entry.get("description", ""),
        prerequisites=[str(p) for p in entry.get("prerequisites") or []],
        params=BKTParams.from_dict(raw_params) if raw_params else None,
    )


def load_skill_graph(path: Path | str | None = None) -> SkillGraph:
    """Parse the YAML skill list and return a validated graph. Cached when no path is given."""
    global _graph_cache
    if _graph_cache is not None and path is None:
        return _graph_cache

    file_path = Path(path) if path is not None else SKILLS_FILE
    with open(file_path) as f:
        raw: list[dict[str, Any]] = yaml.safe_load(f) or []
    if not isinstance(raw, list):
        raise ValueError(f"Skill file {file_path} must contain a list of skills")

    graph = SkillGraph(_skill_from_entry(entry) for entry in raw)
    if path is None:
        _graph_cache = graph
    return graph


def clear_cache() -> None:
    """Clear the in-memory skill graph cache."""
    global _graph_cache
    _graph_cache = None


__all__ = [
    "PrerequisiteProvider",
    "SKILLS_FILE",
    "SkillGraph",
    "clear_cache",
    "load_skill_graph",
    "validate_dag",
]
