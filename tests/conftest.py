"""
Shared fixtures: a scripted completion provider, configs, and a recording sleep.
"""

import asyncio
import json
from pathlib import Path

import pytest

from lessonforge.config import RuntimeConfig
from lessonforge.providers.base import CompletionProvider, CompletionResult

REPO_ROOT = Path(__file__).parent.parent


class ScriptedProvider(CompletionProvider):
    """
    Completion provider that replays scripted behaviour instead of calling an API.

    `script` is either a list consumed one entry per call, or a callable
    script(prompt, call_number) where call_number counts calls for that
    prompt starting at 1. An entry that is an exception is raised; anything
    else is returned as the response text.
    """

    name = "fake"

    def __init__(self, config, script, delay: float = 0.0):
        super().__init__(config)
        self.script = script
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._per_prompt: dict[str, int] = {}

    async def complete(self, system, prompt, *, temperature, max_output_tokens) -> CompletionResult:
        self.calls.append(prompt)
        self._per_prompt[prompt] = self._per_prompt.get(prompt, 0) + 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            if callable(self.script):
                response = self.script(prompt, self._per_prompt[prompt])
            else:
                response = self.script.pop(0)
        finally:
            self.in_flight -= 1

        if isinstance(response, BaseException):
            raise response
        return CompletionResult(content=response, input_tokens=10, output_tokens=20, finish_reason="stop")


@pytest.fixture
def scripted_provider():
    """The ScriptedProvider class, for building providers inside tests."""
    return ScriptedProvider


@pytest.fixture
def live_config():
    """Live-mode config with no waiting between units or retries."""
    return RuntimeConfig(
        provider="fake",
        model="fake-model",
        api_key="test-key",
        mode="live",
        concurrency=1,
        pacing_delay_seconds=0.0,
        max_retries=6,
        initial_backoff_seconds=1.0,
        max_jitter_seconds=0.0,
        recovery_retries=1,
        verbose_unit_logs=False,
    )


@pytest.fixture
def mock_config():
    return RuntimeConfig(mode="mock", pacing_delay_seconds=0.0, verbose_unit_logs=False)


@pytest.fixture
def recorded_sleeps():
    """An injectable sleep that records delays and returns immediately."""
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    fake_sleep.delays = delays
    return fake_sleep


@pytest.fixture
def lessons_config_path():
    """The bundled lesson pipeline config."""
    return REPO_ROOT / "pipelines" / "Lessons" / "config.yaml"


@pytest.fixture
def course_structure():
    return {
        "bookTitle": "Mechanical Engineering Design",
        "chapters": [
            {
                "chapterNumber": "3",
                "chapterTitle": "Load and Stress Analysis",
                "summary": "Stress, strain and loading.",
                "subsections": [
                    {
                        "number": "3.1",
                        "title": "Equilibrium",
                        "keyConcepts": ["Free-body diagrams", "Force balance"],
                        "memorizeables": ["formula: sum F = 0"],
                    },
                    {
                        "number": "3.2",
                        "title": "Normal Stress",
                        "keyConcepts": ["Normal stress", "Axial loading", "Units", "Sign convention"],
                        "memorizeables": ["formula: sigma = F/A", "definition: Stress: force per area"],
                    },
                ],
            },
            {
                "chapterNumber": "1",
                "chapterTitle": "Introduction",
                "summary": "The design process.",
                "subsections": [
                    {
                        "number": None,
                        "title": "The Design Process",
                        "keyConcepts": ["Iteration"],
                        "memorizeables": [],
                    },
                ],
            },
        ],
    }


@pytest.fixture
def structure_file(tmp_path, course_structure):
    path = tmp_path / "course-structure.json"
    path.write_text(json.dumps(course_structure), encoding="utf-8")
    return path
