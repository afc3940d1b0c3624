"""
outcome.py - Units, their outcomes, and per-unit execution traces.

A Unit is addressed by a key derived from a human-meaningful label (a
section number, else a title) so re-runs address the same unit. Every unit
resolves to exactly one Outcome:

    Succeeded(unit_key, value)
    FellBack(unit_key, value, reason)

Whether an outcome used its fallback is recorded explicitly and persisted,
so resume logic never has to inspect generated content to find units that
need another try.
"""

import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Iterator, Union

from lessonforge.utils import write_json_atomic

STATUS_SUCCEEDED = "succeeded"
STATUS_FELL_BACK = "fell_back"


def unit_key(*labels: Any) -> str:
    """
    Derive a stable unit identity from the first non-empty label.

    Example:
        unit_key(subsection.get("number"), subsection.get("title"))

    Raises:
        ValueError: If every label is empty
    """
    for label in labels:
        if label is None:
            continue
        text = str(label).strip()
        if text:
            return text
    raise ValueError("Cannot derive a unit key: every label is empty")


@dataclass(frozen=True)
class Unit:
    """One item of work. Immutable for the duration of a run."""
    key: str
    payload: Any = None
    label: str = ""

    @property
    def display_label(self) -> str:
        return self.label or self.key


@dataclass(frozen=True)
class Succeeded:
    unit_key: str
    value: Any

    status: ClassVar[str] = STATUS_SUCCEEDED
    fallback_used: ClassVar[bool] = False
    reason: ClassVar[str | None] = None


@dataclass(frozen=True)
class FellBack:
    unit_key: str
    value: Any
    reason: str

    status: ClassVar[str] = STATUS_FELL_BACK
    fallback_used: ClassVar[bool] = True


Outcome = Union[Succeeded, FellBack]


def outcome_to_dict(outcome: Outcome) -> dict:
    """Serialize an outcome for the checkpoint file."""
    return {
        "unit_key": outcome.unit_key,
        "status": outcome.status,
        "fallback_used": outcome.fallback_used,
        "reason": outcome.reason,
        "value": outcome.value,
    }


def outcome_from_dict(data: dict) -> Outcome:
    """
    Rebuild an outcome from its checkpoint form.

    The fallback marker wins over the status string when both are present.

    Raises:
        ValueError: If the record has no usable unit_key
    """
    if not isinstance(data, dict):
        raise ValueError(f"Outcome record must be an object, got {type(data).__name__}")
    key = data.get("unit_key")
    if not isinstance(key, str) or not key.strip():
        raise ValueError("Outcome record is missing unit_key")

    fallback_used = data.get("fallback_used")
    if not isinstance(fallback_used, bool):
        fallback_used = data.get("status") == STATUS_FELL_BACK

    value = data.get("value")
    if fallback_used:
        return FellBack(unit_key=key, value=value, reason=str(data.get("reason") or "unknown"))
    return Succeeded(unit_key=key, value=value)


@dataclass(frozen=True)
class Trace:
    """Observability record summarizing every attempt made for one unit."""
    stage: str
    unit_key: str
    mode: str
    model: str
    started_at: str
    completed_at: str
    duration_ms: int
    attempt_count: int
    input_tokens: int
    output_tokens: int
    fallback_used: bool
    error_message: str | None = None
    trace_id: str = field(default_factory=lambda: f"trace-{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict:
        return asdict(self)


class TraceLog:
    """Append-only, run-scoped sequence of traces."""

    def __init__(self, traces: list[Trace] | None = None):
        self._traces: list[Trace] = list(traces or [])

    def append(self, trace: Trace) -> None:
        self._traces.append(trace)

    def extend(self, traces) -> None:
        for trace in traces:
            self.append(trace)

    def __iter__(self) -> Iterator[Trace]:
        return iter(tuple(self._traces))

    def __len__(self) -> int:
        return len(self._traces)

    @property
    def fallback_count(self) -> int:
        return sum(1 for t in self._traces if t.fallback_used)

    @property
    def input_tokens(self) -> int:
        return sum(t.input_tokens for t in self._traces)

    @property
    def output_tokens(self) -> int:
        return sum(t.output_tokens for t in self._traces)

    def persist(self, path: Path) -> Path:
        """Write all traces to path as a JSON array."""
        write_json_atomic(path, [t.to_dict() for t in self._traces])
        return path
