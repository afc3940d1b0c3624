"""
Tests for the lesson stage: grouping, prompts, decoding, fallbacks.
"""

import json

import pytest

from lessonforge.checkpoint import GroupResult
from lessonforge.config import ConfigError, load_config
from lessonforge.outcome import FellBack, Succeeded
from lessonforge.schema import SchemaDecodeError
from lessonforge.stages.lessons import (
    LessonStage,
    StructureError,
    build_groups,
    fallback_lesson,
    group_sort_key,
    lesson_counts,
    load_course_structure,
)


@pytest.fixture
def stage(lessons_config_path, course_structure):
    return LessonStage(load_config(lessons_config_path), course_structure)


class TestBuildGroups:

    def test_chapters_and_subsections(self, course_structure):
        groups = build_groups(course_structure)
        assert [g.key for g in groups] == ["3", "1"]
        assert [u.key for u in groups[0].units] == ["3.1", "3.2"]
        assert groups[0].metadata == {
            "chapter_number": "3",
            "chapter_title": "Load and Stress Analysis",
            "summary": "Stress, strain and loading.",
        }
        assert groups[0].units[1].label == "Ch 3 §3.2: Normal Stress"

    def test_unnumbered_subsection_keyed_by_title(self, course_structure):
        unit = build_groups(course_structure)[1].units[0]
        assert unit.key == "The Design Process"
        assert unit.label == "Ch 1 #1: The Design Process"

    def test_duplicate_keys_disambiguated(self):
        structure = {"chapters": [{
            "chapterNumber": "2",
            "subsections": [{"number": "2.1", "title": "A"}, {"number": "2.1", "title": "B"}],
        }]}
        assert [u.key for u in build_groups(structure)[0].units] == ["2.1", "2.1#2"]

    def test_anonymous_subsection_rejected(self):
        structure = {"chapters": [{"chapterNumber": "2", "subsections": [{"keyConcepts": []}]}]}
        with pytest.raises(StructureError):
            build_groups(structure)


class TestLoadCourseStructure:

    def test_loads(self, structure_file):
        assert load_course_structure(structure_file)["bookTitle"] == "Mechanical Engineering Design"

    def test_missing(self, tmp_path):
        with pytest.raises(StructureError, match="not found"):
            load_course_structure(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{chapters", encoding="utf-8")
        with pytest.raises(StructureError):
            load_course_structure(path)

    def test_no_chapters(self, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text(json.dumps({"bookTitle": "X"}), encoding="utf-8")
        with pytest.raises(StructureError):
            load_course_structure(path)


class TestFallbackLesson:

    def test_fallback_content(self, course_structure):
        chapter = course_structure["chapters"][0]
        lesson = fallback_lesson(chapter, chapter["subsections"][1])

        assert lesson["overview"] == "Section on Normal Stress."
        assert lesson["instructional_text"] == (
            "This section covers: Normal stress; Axial loading; Units; Sign convention."
        )
        assert lesson["key_takeaways"] == ["Normal stress", "Axial loading", "Units"]
        assert lesson["worked_examples"] == []
        assert lesson["practice_questions"] == []
        assert lesson["section_number"] == "3.2"
        assert lesson["chapter_title"] == "Load and Stress Analysis"

    def test_fallback_drills(self):
        subsection = {
            "title": "Drills",
            "keyConcepts": [],
            "memorizeables": ["formula: sigma = F/A", "Definition: Stress: force per area",
                              "Theorem: Castigliano", "plain fact"],
        }
        drills = fallback_lesson({}, subsection)["memorizeable_drills"]
        assert [d["category"] for d in drills] == ["formula", "definition", "fact", "fact"]
        assert drills[0]["answer"] == "sigma = F/A"
        assert drills[0]["prompt"] == "What is the formula: sigma = F/A...?"
        assert drills[1]["answer"] == "Stress: force per area"
        assert drills[3]["answer"] == "plain fact"


class TestLessonStage:

    def test_render_prompt(self, stage, course_structure):
        chapter = course_structure["chapters"][0]
        prompt = stage.render_prompt(chapter, chapter["subsections"][1])

        assert "Book: Mechanical Engineering Design" in prompt
        assert "Chapter 3: Load and Stress Analysis" in prompt
        assert "Section: 3.2 - Normal Stress" in prompt
        assert "  1. Normal stress\n  2. Axial loading\n" in prompt
        assert "  - formula: sigma = F/A" in prompt

    def test_render_prompt_without_memorizeables(self, stage, course_structure):
        chapter = course_structure["chapters"][1]
        prompt = stage.render_prompt(chapter, chapter["subsections"][0])
        assert "Section: (unnumbered) - The Design Process" in prompt
        assert "Memorizeables" not in prompt

    def test_decode_adds_section_fields(self, stage, course_structure):
        chapter = course_structure["chapters"][0]
        lesson = stage.decode({"overview": "Hook", "key_takeaways": "One"}, chapter, chapter["subsections"][0])
        assert lesson["section_number"] == "3.1"
        assert lesson["chapter_number"] == "3"
        assert lesson["key_takeaways"] == ["One"]
        assert lesson["practice_questions"] == []

    def test_decode_rejects_empty_lesson(self, stage, course_structure):
        chapter = course_structure["chapters"][0]
        with pytest.raises(SchemaDecodeError):
            stage.decode({"key_takeaways": ["x"]}, chapter, chapter["subsections"][0])

    def test_request(self, stage, course_structure):
        group = build_groups(course_structure)[0]
        request = stage.request(group.units[0])
        assert request.stage == "lessons"
        assert request.unit_key == "3.1"
        assert request.system_prompt.startswith("You are an expert engineering educator")
        assert request.fallback()["overview"] == "Section on Equilibrium."

    def test_missing_prompt_config(self, course_structure):
        with pytest.raises(ConfigError):
            LessonStage({"prompts": {}, "schemas": {}}, course_structure)

    def test_header_totals(self, stage):
        result = GroupResult("3", [
            Succeeded("3.1", {"worked_examples": ["e"], "practice_questions": [{}, {}], "memorizeable_drills": [{}]}),
            FellBack("3.2", {"worked_examples": [], "practice_questions": [], "memorizeable_drills": [{}, {}]}, "429"),
        ])
        header = stage.header({"3": result}, "fake-model")
        assert header["book_title"] == "Mechanical Engineering Design"
        assert header["model"] == "fake-model"
        assert header["totals"] == {"lessons": 2, "examples": 1, "questions": 2, "drills": 3, "fallbacks": 1}
        assert lesson_counts(result)["fallbacks"] == 1


def test_group_sort_key_numeric():
    results = [
        GroupResult("10", [], {"chapter_number": "10"}),
        GroupResult("2", [], {"chapter_number": "2"}),
        GroupResult("Appendix", [], {"chapter_number": None}),
    ]
    assert [r.group_key for r in sorted(results, key=group_sort_key)] == ["Appendix", "2", "10"]
