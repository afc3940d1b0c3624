"""
pipeline.py - Group coordinator: resume, run, merge, persist.

For each group, in order:

    prior = store.load()[group.key]
    plan  = store.classify(group, prior)
      SKIP        -> log and move on
      RETRY_ONLY  -> run only the fallback / missing units, merge into prior
      RUN_ALL     -> run every unit, record a fresh result
    store.persist(all_groups)       # full rewrite after every group

Units inside a group run through map_with_concurrency; each unit's handler
resolves it to a UnitRun (outcome + trace) and never raises for unit-level
failures. A crash between groups loses nothing already persisted; a crash
inside a group loses only that group's in-flight work.
"""

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence

from lessonforge.checkpoint import CheckpointStore, Group, GroupResult, ResumeAction
from lessonforge.outcome import Trace, TraceLog, Unit
from lessonforge.recorder import UnitRun
from lessonforge.runner import map_with_concurrency
from lessonforge.utils import format_elapsed_time, log_message, utc_now_iso, write_json_atomic

TRACES_FILE = "agent-traces.json"
SUMMARY_FILE = "run-summary.json"

UnitHandler = Callable[[Unit, Group], Awaitable[UnitRun]]


@dataclass
class RunSummary:
    """Totals for one invocation of run_groups."""
    stage: str
    mode: str
    model: str
    started_at: str
    completed_at: str = ""
    groups_total: int = 0
    groups_processed: int = 0
    groups_skipped: int = 0
    units_run: int = 0
    units_succeeded: int = 0
    units_fell_back: int = 0
    fallbacks_remaining: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0
    duration_seconds: float = 0.0
    checkpoint_path: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PipelineRun:
    """Everything run_groups produced: final group results, traces and the summary."""
    groups: dict[str, GroupResult]
    traces: TraceLog
    summary: RunSummary
    raw_responses: dict[str, str] = field(default_factory=dict)


async def run_groups(
    groups: Sequence[Group],
    handler: UnitHandler,
    *,
    store: CheckpointStore,
    config,
    stage: str,
    model: str = "",
    log_file: Path | None = None,
    artifacts_dir: Path | None = None,
    header: Callable[[Mapping[str, GroupResult]], dict] | None = None,
    estimate_cost: Callable[[int, int], float] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PipelineRun:
    """
    Run every group with resume semantics and persist after each one.

    Args:
        groups: Groups in processing order
        handler: async handler(unit, group) -> UnitRun; must not raise for unit failures
        store: Checkpoint store for this dataset
        config: RuntimeConfig (concurrency, pacing_delay_seconds, mode)
        stage: Stage name used in logs and artifact names
        model: Model name recorded in the summary
        log_file: RUN_LOG.txt path, or None for stderr only
        artifacts_dir: Where <stage>.raw-responses.json is written; None disables
        header: Builds the checkpoint's top-level fields from all group results
        estimate_cost: Maps (input_tokens, output_tokens) to dollars

    Returns:
        PipelineRun with the final results of every group

    Raises:
        CheckpointError: If the checkpoint cannot be read or written
    """
    start = time.monotonic()
    summary = RunSummary(
        stage=stage,
        mode=config.mode,
        model=model,
        started_at=utc_now_iso(),
        groups_total=len(groups),
        checkpoint_path=str(store.path),
    )
    traces = TraceLog()
    raw_responses: dict[str, str] = {}

    all_groups = store.load()
    log_message(log_file, "START",
        f"{stage}: {len(groups)} groups, {sum(len(g.units) for g in groups)} units, "
        f"{len(all_groups)} already recorded (mode={config.mode}, concurrency={config.concurrency})")

    for group in groups:
        prior = all_groups.get(group.key)
        if not group.units:
            summary.groups_skipped += 1
            log_message(log_file, "SKIP", f"{stage} {group.display_label}: no units")
            continue

        plan = store.classify(group, prior)
        if plan.action is ResumeAction.SKIP:
            summary.groups_skipped += 1
            log_message(log_file, "SKIP",
                f"{stage} {group.display_label}: {len(prior.outcomes)} units already complete")
            continue

        if plan.action is ResumeAction.RETRY_ONLY:
            pending_keys = set(plan.unit_keys)
            units = [u for u in group.units if u.key in pending_keys]
            log_message(log_file, "RETRY",
                f"{stage} {group.display_label}: retrying {len(units)} of {len(group.units)} units "
                f"({', '.join(plan.unit_keys)})")
        else:
            units = list(group.units)
            log_message(log_file, "PROCESS",
                f"{stage} {group.display_label}: {len(units)} units")

        async def run_unit(unit: Unit, index: int, group: Group = group) -> UnitRun:
            return await handler(unit, group)

        runs = await map_with_concurrency(
            units,
            config.concurrency,
            run_unit,
            pacing_delay=config.pacing_delay_seconds,
            sleep=sleep,
        )

        for run in runs:
            traces.append(run.trace)
            if run.raw_text:
                raw_responses[raw_response_key(group.key, run.outcome.unit_key)] = run.raw_text
        _count_runs(summary, runs)

        metadata = dict(group.metadata)
        metadata["generated_at"] = utc_now_iso()
        outcomes = [run.outcome for run in runs]
        if plan.action is ResumeAction.RETRY_ONLY:
            result = store.merge(prior, outcomes, metadata)
        else:
            result = GroupResult(group_key=group.key, outcomes=outcomes, metadata=metadata)
        all_groups[group.key] = result

        store.persist(all_groups, header(all_groups) if header else None)
        summary.groups_processed += 1
        fell_back = sum(1 for run in runs if run.outcome.fallback_used)
        log_message(log_file, "SAVED",
            f"{stage} {group.display_label}: {len(runs) - fell_back} generated, {fell_back} fallback "
            f"-> {store.path.name}")

        if artifacts_dir is not None and raw_responses:
            write_raw_responses(artifacts_dir, stage, raw_responses)

    summary.fallbacks_remaining = sum(g.fallback_count for g in all_groups.values())
    summary.input_tokens = traces.input_tokens
    summary.output_tokens = traces.output_tokens
    if estimate_cost is not None:
        summary.estimated_cost = round(estimate_cost(summary.input_tokens, summary.output_tokens), 6)
    summary.duration_seconds = round(time.monotonic() - start, 3)
    summary.completed_at = utc_now_iso()

    log_message(log_file, "COMPLETE",
        f"{stage}: {summary.groups_processed} processed, {summary.groups_skipped} skipped, "
        f"{summary.units_run} units run ({summary.units_fell_back} fallback), "
        f"{summary.fallbacks_remaining} fallbacks remaining, "
        f"{format_elapsed_time(summary.duration_seconds)}")

    return PipelineRun(groups=all_groups, traces=traces, summary=summary, raw_responses=raw_responses)


def _count_runs(summary: RunSummary, runs: Sequence[UnitRun]) -> None:
    for run in runs:
        summary.units_run += 1
        if run.outcome.fallback_used:
            summary.units_fell_back += 1
        else:
            summary.units_succeeded += 1


def raw_response_key(group_key: str, unit_key: str) -> str:
    return f"{group_key}/{unit_key}"


def write_raw_responses(artifacts_dir: Path, stage: str, responses: Mapping[str, str]) -> Path:
    """
    Merge this run's raw responses into <stage>.raw-responses.json.

    Keys are "<group_key>/<unit_key>" since unit keys are only unique
    within a group. Entries from earlier runs are kept unless the same
    unit was re-run.
    """
    path = artifacts_dir / f"{stage}.raw-responses.json"
    existing: dict[str, Any] = {}
    if path.exists():
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(loaded, dict):
                existing = loaded
        except (json.JSONDecodeError, UnicodeDecodeError):
            existing = {}
    existing.update(responses)
    write_json_atomic(path, existing)
    return path


def write_run_artifacts(run_dir: Path, traces: TraceLog | Sequence[Trace], summary: RunSummary) -> tuple[Path, Path]:
    """Write agent-traces.json and run-summary.json into run_dir."""
    if not isinstance(traces, TraceLog):
        traces = TraceLog(list(traces))
    traces_path = traces.persist(run_dir / TRACES_FILE)
    summary_path = run_dir / SUMMARY_FILE
    write_json_atomic(summary_path, summary.to_dict())
    return traces_path, summary_path
