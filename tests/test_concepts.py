"""Tests for concepts.py: YAML loading, DAG validation, prerequisites."""

from __future__ import annotations

import pytest

from skill_mastery.models import Skill


@pytest.fixture(autouse=True)
def fresh_cache():
    from skill_mastery.concepts import clear_cache
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def sample_skills() -> dict[str, Skill]:
    return {
        "html-basics": Skill(id="html-basics", name="HTML basics", category="html_element"),
        "css-selectors": Skill(
            id="css-selectors", name="Selectors", category="css_property",
            prerequisites=["html-basics"],
        ),
        "css-flexbox": Skill(
            id="css-flexbox", name="Flexbox", category="css_property",
            prerequisites=["css-selectors"],
        ),
    }


class TestValidateDAG:
    def test_valid_dag(self, sample_skills):
        from skill_mastery.concepts import validate_dag
        order = validate_dag(sample_skills)
        assert order == ["html-basics", "css-selectors", "css-flexbox"]

    def test_cycle_detection(self):
        from skill_mastery.concepts import validate_dag
        skills = {
            "a": Skill(id="a", name="A", prerequisites=["b"]),
            "b": Skill(id="b", name="B", prerequisites=["a"]),
        }
        with pytest.raises(ValueError, match="Cycle"):
            validate_dag(skills)

    def test_missing_prerequisite(self):
        from skill_mastery.concepts import validate_dag
        skills = {"a": Skill(id="a", name="A", prerequisites=["nonexistent"])}
        with pytest.raises(ValueError, match="unknown prerequisite"):
            validate_dag(skills)


class TestSkillGraph:
    def test_lookups(self, sample_skills):
        from skill_mastery.concepts import SkillGraph
        graph = SkillGraph(sample_skills.values())
        assert len(graph) == 3
        assert "css-flexbox" in graph
        assert graph.name("css-flexbox") == "Flexbox"
        assert graph.name("unknown") == "unknown"
        assert graph.category("css-selectors") == "css_property"
        assert graph.category("unknown") is None
        assert graph.prerequisites("css-flexbox") == ["css-selectors"]
        assert graph.dependents("html-basics") == ["css-selectors"]

    def test_duplicate_ids_rejected(self):
        from skill_mastery.concepts import SkillGraph
        with pytest.raises(ValueError, match="Duplicate"):
            SkillGraph([Skill(id="a", name="A"), Skill(id="a", name="A again")])

    def test_returned_prerequisites_are_copies(self, sample_skills):
        from skill_mastery.concepts import SkillGraph
        graph = SkillGraph(sample_skills.values())
        graph.prerequisites("css-flexbox").append("html-basics")
        assert graph.prerequisites("css-flexbox") == ["css-selectors"]


class TestLoadSkillsYAML:
    def test_load_real_yaml(self):
        from skill_mastery.concepts import SKILLS_FILE, load_skill_graph
        if not SKILLS_FILE.exists():
            pytest.skip("skills.yaml not found")
        graph = load_skill_graph()
        assert len(graph) >= 10
        for skill in graph:
            assert skill.id
            assert skill.name
        assert len(graph.topological_order()) == len(graph)
        assert load_skill_graph() is graph

    def test_load_custom_file(self, tmp_path):
        from skill_mastery.concepts import load_skill_graph
        path = tmp_path / "skills.yaml"
        path.write_text(
            "- id: a\n"
            "  name: A\n"
            "  params:\n"
            "    p_mastery0: 0.3\n"
            "- id: b\n"
            "  prerequisites: [a]\n"
        )
        graph = load_skill_graph(path)
        assert graph.topological_order() == ["a", "b"]
        assert graph.get("a").params.p_mastery0 == pytest.approx(0.3)
        assert graph.get("b").name == "b"
        assert graph.get("b").category == "default"
        assert graph.get("b").params is None

    def test_non_list_file_rejected(self, tmp_path):
        from skill_mastery.concepts import load_skill_graph
        path = tmp_path / "skills.yaml"
        path.write_text("a: 1\n")
        with pytest.raises(ValueError, match="list"):
            load_skill_graph(path)
