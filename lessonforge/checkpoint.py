"""
checkpoint.py - Durable per-group results and the resume protocol.

The checkpoint is one JSON document per dataset:

    {
      "updated": "2026-10-18T09:12:44Z",
      ...caller header fields...,
      "groups": [
        {
          "group_key": "3",
          "metadata": {...},
          "outcomes": [
            {"unit_key": "3.1", "status": "succeeded", "fallback_used": false,
             "reason": null, "value": {...}},
            ...
          ]
        }
      ]
    }

It is rewritten in full after every completed group (temp file + rename),
so a crash loses at most the group in flight. Consistency is "last full
rewrite wins", which is enough for a single-writer batch process.

On startup each group is classified:

    SKIP        prior result exists, no fallback outcomes, no missing units
    RETRY_ONLY  prior result exists; only fallback or missing units re-run
    RUN_ALL     no prior result for the group
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from lessonforge.outcome import Outcome, Unit, outcome_from_dict, outcome_to_dict
from lessonforge.utils import log_message, write_json_atomic


class CheckpointError(Exception):
    """The checkpoint location cannot be read or written at all."""
    pass


@dataclass(frozen=True)
class Group:
    """A batch of units whose combined result is persisted as one checkpoint update."""
    key: str
    units: tuple[Unit, ...]
    metadata: dict = field(default_factory=dict, compare=False)
    label: str = ""

    @property
    def display_label(self) -> str:
        return self.label or self.key


@dataclass
class GroupResult:
    """The recorded outcomes for one group."""
    group_key: str
    outcomes: list[Outcome]
    metadata: dict = field(default_factory=dict)

    @property
    def fallback_keys(self) -> list[str]:
        return [o.unit_key for o in self.outcomes if o.fallback_used]

    @property
    def fallback_count(self) -> int:
        return len(self.fallback_keys)

    def outcome_for(self, unit_key: str) -> Outcome | None:
        for outcome in self.outcomes:
            if outcome.unit_key == unit_key:
                return outcome
        return None

    def to_dict(self) -> dict:
        return {
            "group_key": self.group_key,
            "metadata": self.metadata,
            "outcomes": [outcome_to_dict(o) for o in self.outcomes],
        }


class ResumeAction(Enum):
    SKIP = "skip"
    RETRY_ONLY = "retry_only"
    RUN_ALL = "run_all"


@dataclass(frozen=True)
class ResumePlan:
    action: ResumeAction
    unit_keys: tuple[str, ...] = ()


class CheckpointStore:
    """
    Loads, classifies, merges and persists group results for one dataset.

    Usage:
        store = CheckpointStore(out_dir / "lessons.json", log_file=log_file)
        prior = store.load()
        plan = store.classify(group, prior.get(group.key))
    """

    def __init__(
        self,
        path: Path,
        *,
        log_file: Path | None = None,
        sort_key: Callable[[GroupResult], Any] | None = None,
    ):
        self.path = Path(path)
        self.log_file = log_file
        self.sort_key = sort_key

    def load(self) -> dict[str, GroupResult]:
        """
        Read prior results keyed by group.

        A missing file yields an empty map. A file that is not valid JSON or
        does not have the expected shape is logged and treated as empty.

        Raises:
            CheckpointError: If the path exists but cannot be read (directory, permissions)
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except UnicodeDecodeError as e:
            self._warn(f"not UTF-8 text ({e}); starting fresh")
            return {}
        except OSError as e:
            raise CheckpointError(f"Cannot read checkpoint {self.path}: {e}") from e

        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            self._warn(f"invalid JSON ({e}); starting fresh")
            return {}

        if not isinstance(document, dict) or not isinstance(document.get("groups"), list):
            self._warn("missing 'groups' array; starting fresh")
            return {}

        results: dict[str, GroupResult] = {}
        for index, entry in enumerate(document["groups"]):
            group = self._parse_group(entry, index)
            if group is not None and group.outcomes:
                results[group.group_key] = group
        return results

    def classify(self, group: Group, prior: GroupResult | None) -> ResumePlan:
        """Decide what to do for group given its prior result (None if never recorded)."""
        if prior is None:
            return ResumePlan(ResumeAction.RUN_ALL)

        recorded = {o.unit_key for o in prior.outcomes}
        fallback = set(prior.fallback_keys)
        pending = tuple(
            unit.key for unit in group.units
            if unit.key in fallback or unit.key not in recorded
        )
        if not pending:
            return ResumePlan(ResumeAction.SKIP)
        return ResumePlan(ResumeAction.RETRY_ONLY, pending)

    @staticmethod
    def merge(
        prior: GroupResult,
        retried: Iterable[Outcome],
        metadata: Mapping[str, Any] | None = None,
    ) -> GroupResult:
        """
        Replace prior outcomes whose unit key was retried; keep every other entry as is.

        Retried units with no prior entry are appended in the order given.
        The prior GroupResult is not modified.
        """
        replacements: dict[str, Outcome] = {}
        for outcome in retried:
            replacements[outcome.unit_key] = outcome

        merged = [replacements.pop(o.unit_key, o) for o in prior.outcomes]
        merged.extend(replacements.values())

        merged_metadata = dict(prior.metadata)
        if metadata:
            merged_metadata.update(metadata)
        return GroupResult(group_key=prior.group_key, outcomes=merged, metadata=merged_metadata)

    def persist(self, groups: Mapping[str, GroupResult], header: Mapping[str, Any] | None = None) -> Path:
        """
        Rewrite the whole checkpoint file with every group's current result.

        Raises:
            CheckpointError: If the file cannot be written
        """
        ordered = list(groups.values())
        if self.sort_key is not None:
            ordered.sort(key=self.sort_key)

        document: dict[str, Any] = {
            "updated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        if header:
            document.update(header)
        document["groups"] = [g.to_dict() for g in ordered]

        try:
            write_json_atomic(self.path, document)
        except OSError as e:
            raise CheckpointError(f"Cannot write checkpoint {self.path}: {e}") from e
        return self.path

    def _parse_group(self, entry: Any, index: int) -> GroupResult | None:
        if not isinstance(entry, dict):
            self._warn(f"group #{index} is not an object; ignored")
            return None
        key = entry.get("group_key")
        if not isinstance(key, str) or not key.strip():
            self._warn(f"group #{index} has no group_key; ignored")
            return None

        outcomes = []
        for record in entry.get("outcomes") or []:
            try:
                outcomes.append(outcome_from_dict(record))
            except ValueError as e:
                self._warn(f"group {key}: {e}; outcome will be regenerated")

        metadata = entry.get("metadata")
        return GroupResult(
            group_key=key,
            outcomes=outcomes,
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    def _warn(self, message: str) -> None:
        log_message(self.log_file, "WARN", f"Checkpoint {self.path.name}: {message}")
