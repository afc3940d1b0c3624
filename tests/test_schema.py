"""
Tests for schema-driven decoding with per-field defaults.
"""

from pathlib import Path

import pytest

from lessonforge.schema import SchemaDecodeError, decode_with_defaults, default_for, load_schema

LESSON_SCHEMA = Path(__file__).parent.parent / "pipelines" / "Lessons" / "schemas" / "lesson.json"


@pytest.fixture(scope="module")
def lesson_schema():
    return load_schema(LESSON_SCHEMA)


class TestLessonSchema:
    """Decoding lesson responses against pipelines/Lessons/schemas/lesson.json."""

    def test_complete_lesson_is_clean(self, lesson_schema):
        data = {
            "overview": "Why stress matters.",
            "instructional_text": "Stress is force per area.",
            "worked_examples": ["A 10 kN load on 100 mm^2 gives 100 MPa."],
            "key_takeaways": ["sigma = F/A"],
            "practice_questions": [{
                "type": "multiple_choice",
                "question": "Units of stress?",
                "choices": ["A) Pa", "B) N"],
                "answer": "A) Pa",
                "explanation": "Force per area.",
            }],
            "memorizeable_drills": [{"prompt": "Stress?", "answer": "F/A", "category": "formula"}],
        }
        decoded = decode_with_defaults(data, lesson_schema)
        assert decoded.clean
        assert decoded.value == data

    def test_missing_fields_get_defaults(self, lesson_schema):
        decoded = decode_with_defaults({"overview": "Hook"}, lesson_schema)
        assert decoded.value == {
            "overview": "Hook",
            "instructional_text": "",
            "worked_examples": [],
            "key_takeaways": [],
            "practice_questions": [],
            "memorizeable_drills": [],
        }
        assert not decoded.clean
        assert any("instructional_text" in e for e in decoded.errors)

    def test_string_becomes_list(self, lesson_schema):
        value = decode_with_defaults({"key_takeaways": "One idea"}, lesson_schema).value
        assert value["key_takeaways"] == ["One idea"]

    def test_json_encoded_list_string(self, lesson_schema):
        value = decode_with_defaults({"worked_examples": '["a", "b"]'}, lesson_schema).value
        assert value["worked_examples"] == ["a", "b"]

    def test_invalid_enum_uses_default(self, lesson_schema):
        data = {"memorizeable_drills": [{"prompt": "p", "answer": "a", "category": "theorem"}]}
        value = decode_with_defaults(data, lesson_schema).value
        assert value["memorizeable_drills"] == [{"prompt": "p", "answer": "a", "category": "fact"}]

    def test_non_object_items_dropped(self, lesson_schema):
        data = {"practice_questions": ["oops", {"question": "Why?", "answer": "Because"}]}
        decoded = decode_with_defaults(data, lesson_schema)
        questions = decoded.value["practice_questions"]
        assert len(questions) == 1
        assert questions[0]["type"] == "short_answer"
        assert questions[0]["explanation"] == ""
        assert "choices" not in questions[0]
        assert any("dropped" in e for e in decoded.errors)

    def test_blank_and_numeric_strings(self, lesson_schema):
        value = decode_with_defaults({"key_takeaways": ["  ", 42, " trimmed "]}, lesson_schema).value
        assert value["key_takeaways"] == ["42", "trimmed"]

    def test_wrong_top_level_type(self, lesson_schema):
        with pytest.raises(SchemaDecodeError):
            decode_with_defaults(["not", "a", "lesson"], lesson_schema)


class TestScalarCoercion:

    schema = {
        "type": "object",
        "properties": {
            "count": {"type": "integer", "default": 1},
            "ratio": {"type": "number", "default": 0.5},
            "flag": {"type": "boolean", "default": False},
            "note": {"type": "string"},
        },
    }

    def test_numeric_strings(self):
        value = decode_with_defaults({"count": "4", "ratio": "0.25", "flag": "true"}, self.schema).value
        assert value == {"count": 4, "ratio": 0.25, "flag": True}

    def test_unusable_values_default(self):
        decoded = decode_with_defaults({"count": "many", "ratio": [], "flag": "maybe"}, self.schema)
        assert decoded.value == {"count": 1, "ratio": 0.5, "flag": False}
        assert len(decoded.errors) == 3

    def test_optional_without_default_omitted(self):
        assert "note" not in decode_with_defaults({}, self.schema).value

    def test_default_for_object(self):
        assert default_for(self.schema) == {"count": 1, "ratio": 0.5, "flag": False}
