"""
lessons.py - Lesson generation stage.

Input is a course structure (course-structure.json):

    {
      "bookTitle": "...",
      "chapters": [
        {"chapterNumber": "3", "chapterTitle": "...", "summary": "...",
         "subsections": [
           {"number": "3.1", "title": "...", "keyConcepts": [...], "memorizeables": [...]}
         ]}
      ]
    }

Each chapter is a Group and each subsection a Unit. A unit's prompt is
rendered from the pipeline's Jinja2 template, its response is decoded
against schemas/lesson.json, and on failure it falls back to a skeleton
lesson built from the subsection's own key concepts and memorizeables.
"""

import json
from pathlib import Path
from typing import Any, Mapping

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError
from jsonschema.exceptions import SchemaError

from lessonforge.checkpoint import Group, GroupResult
from lessonforge.config import ConfigError
from lessonforge.outcome import Unit, unit_key
from lessonforge.recorder import JsonRequest
from lessonforge.schema import SchemaDecodeError, decode_with_defaults, load_schema
from lessonforge.utils import chapter_sort_key

STAGE = "lessons"
CHECKPOINT_FILE = "lessons.json"
DRILL_CATEGORIES = ("formula", "definition", "fact")


class StructureError(ValueError):
    """The course structure file cannot be used as input."""
    pass


def load_course_structure(path: Path) -> dict:
    """
    Load course-structure.json.

    Raises:
        StructureError: If the file is missing, not JSON, or has no chapters array
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            structure = json.load(f)
    except FileNotFoundError:
        raise StructureError(f"Course structure not found: {path}")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise StructureError(f"Course structure {path} is not valid JSON: {e}")

    if not isinstance(structure, dict) or not isinstance(structure.get("chapters"), list):
        raise StructureError(f"Course structure {path} must be an object with a 'chapters' array")
    return structure


def build_groups(structure: Mapping[str, Any]) -> list[Group]:
    """
    One Group per chapter, one Unit per subsection, in document order.

    Keys come from chapter/section numbers, else titles. Repeated keys get
    a '#n' suffix in order of appearance so every unit stays addressable.

    Raises:
        StructureError: If a chapter or subsection has neither number nor title
    """
    groups = []
    seen_groups: dict[str, int] = {}
    for c_index, chapter in enumerate(structure.get("chapters") or []):
        if not isinstance(chapter, dict):
            raise StructureError(f"Chapter #{c_index + 1} is not an object")
        try:
            key = unit_key(chapter.get("chapterNumber"), chapter.get("chapterTitle"))
        except ValueError:
            raise StructureError(f"Chapter #{c_index + 1} has neither chapterNumber nor chapterTitle")
        key = _disambiguate(key, seen_groups)

        units = []
        seen_units: dict[str, int] = {}
        for s_index, subsection in enumerate(chapter.get("subsections") or []):
            if not isinstance(subsection, dict):
                raise StructureError(f"Chapter {key} subsection #{s_index + 1} is not an object")
            try:
                section_key = unit_key(subsection.get("number"), subsection.get("title"))
            except ValueError:
                raise StructureError(f"Chapter {key} subsection #{s_index + 1} has neither number nor title")
            section_key = _disambiguate(section_key, seen_units)

            section_label = f"§{subsection['number']}" if subsection.get("number") else f"#{s_index + 1}"
            units.append(Unit(
                key=section_key,
                payload={"chapter": chapter, "subsection": subsection},
                label=f"Ch {chapter.get('chapterNumber') or key} {section_label}: {subsection.get('title', '')}",
            ))

        groups.append(Group(
            key=key,
            units=tuple(units),
            metadata={
                "chapter_number": chapter.get("chapterNumber"),
                "chapter_title": chapter.get("chapterTitle", ""),
                "summary": chapter.get("summary", ""),
            },
            label=f"Ch {chapter.get('chapterNumber') or key}",
        ))
    return groups


def _disambiguate(key: str, seen: dict[str, int]) -> str:
    count = seen.get(key, 0) + 1
    seen[key] = count
    return key if count == 1 else f"{key}#{count}"


def create_jinja_env(template_dir: Path) -> Environment:
    """Create a Jinja2 environment with the template directory."""
    return Environment(
        loader=FileSystemLoader(template_dir),
        # Prompts, not HTML
        autoescape=False,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
    )


def fallback_lesson(chapter: Mapping[str, Any], subsection: Mapping[str, Any]) -> dict:
    """Skeleton lesson assembled from the subsection itself, used when generation fails."""
    title = subsection.get("title", "")
    concepts = [str(c) for c in subsection.get("keyConcepts") or []]

    drills = []
    for item in subsection.get("memorizeables") or []:
        category_part, sep, text = str(item).partition(": ")
        category = category_part.strip().lower() if sep else "fact"
        if not sep:
            text = str(item)
        drills.append({
            "prompt": f"What is the {category}: {text[:50]}...?",
            "answer": text,
            "category": category if category in DRILL_CATEGORIES else "fact",
        })

    return {
        **_section_fields(chapter, subsection),
        "overview": f"Section on {title}.",
        "instructional_text": f"This section covers: {'; '.join(concepts)}.",
        "worked_examples": [],
        "key_takeaways": concepts[:3],
        "practice_questions": [],
        "memorizeable_drills": drills,
    }


def _section_fields(chapter: Mapping[str, Any], subsection: Mapping[str, Any]) -> dict:
    return {
        "section_number": subsection.get("number"),
        "section_title": subsection.get("title", ""),
        "chapter_number": chapter.get("chapterNumber"),
        "chapter_title": chapter.get("chapterTitle", ""),
    }


class LessonStage:
    """
    Prompt rendering, decoding and fallbacks for lesson generation.

    Usage:
        stage = LessonStage(pipeline_config, structure)
        unit_run = await runtime.run_json(stage.request(unit))
    """

    def __init__(self, pipeline_config: Mapping[str, Any], structure: Mapping[str, Any]):
        config_dir = Path(pipeline_config.get("_config_dir", "."))
        prompts = pipeline_config.get("prompts") or {}
        schemas = pipeline_config.get("schemas") or {}

        system_prompt = (prompts.get("system") or {}).get(STAGE)
        template_file = (prompts.get("templates") or {}).get(STAGE)
        schema_file = (schemas.get("files") or {}).get(STAGE)
        if not system_prompt or not template_file or not schema_file:
            raise ConfigError(
                f"Pipeline config must define prompts.system.{STAGE}, "
                f"prompts.templates.{STAGE} and schemas.files.{STAGE}"
            )

        self.system_prompt = system_prompt.strip()
        self.book_title = structure.get("bookTitle") or "Untitled"

        env = create_jinja_env(config_dir / prompts.get("template_dir", "templates"))
        try:
            self.template = env.get_template(template_file)
        except TemplateError as e:
            raise ConfigError(f"Cannot load lesson template {template_file}: {e}")

        schema_path = config_dir / schemas.get("schema_dir", "schemas") / schema_file
        try:
            self.schema = load_schema(schema_path)
        except (OSError, json.JSONDecodeError, SchemaError) as e:
            raise ConfigError(f"Cannot load lesson schema {schema_path}: {e}")

    def render_prompt(self, chapter: Mapping[str, Any], subsection: Mapping[str, Any]) -> str:
        subsection = {
            "keyConcepts": [],
            "memorizeables": [],
            "number": None,
            "title": "",
            **subsection,
        }
        chapter = {"chapterNumber": None, "chapterTitle": "", "summary": "", **chapter}
        return self.template.render(book_title=self.book_title, chapter=chapter, subsection=subsection)

    def decode(self, data: Any, chapter: Mapping[str, Any], subsection: Mapping[str, Any]) -> dict:
        """
        Decode a parsed response into a lesson.

        Raises:
            SchemaDecodeError: If the response is not an object or carries no lesson text
        """
        lesson = decode_with_defaults(data, self.schema).value
        if not lesson.get("overview") and not lesson.get("instructional_text"):
            raise SchemaDecodeError("Response has neither overview nor instructional_text")
        return {**_section_fields(chapter, subsection), **lesson}

    def request(self, unit: Unit) -> JsonRequest:
        chapter = unit.payload["chapter"]
        subsection = unit.payload["subsection"]
        return JsonRequest(
            stage=STAGE,
            unit_key=unit.key,
            system_prompt=self.system_prompt,
            user_prompt=self.render_prompt(chapter, subsection),
            decode=lambda data: self.decode(data, chapter, subsection),
            fallback=lambda: fallback_lesson(chapter, subsection),
            label=unit.display_label,
        )

    def header(self, groups: Mapping[str, GroupResult], model: str) -> dict:
        """Top-level checkpoint fields: book title, model, and totals."""
        return {
            "book_title": self.book_title,
            "model": model,
            "totals": lesson_totals(groups.values()),
        }


def lesson_counts(result: GroupResult) -> dict:
    """Lesson, example, question, drill and fallback counts for one chapter."""
    lessons = [o.value for o in result.outcomes if isinstance(o.value, dict)]
    return {
        "lessons": len(lessons),
        "examples": sum(len(l.get("worked_examples") or []) for l in lessons),
        "questions": sum(len(l.get("practice_questions") or []) for l in lessons),
        "drills": sum(len(l.get("memorizeable_drills") or []) for l in lessons),
        "fallbacks": result.fallback_count,
    }


def lesson_totals(results) -> dict:
    totals = {"lessons": 0, "examples": 0, "questions": 0, "drills": 0, "fallbacks": 0}
    for result in results:
        for name, count in lesson_counts(result).items():
            totals[name] += count
    return totals


def group_sort_key(result: GroupResult) -> tuple:
    return chapter_sort_key(result.metadata.get("chapter_number") or result.group_key)
