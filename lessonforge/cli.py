"""
cli.py - Command-line entry point for lessonforge.

Commands:
    lessonforge generate --structure course-structure.json --out-dir out/
        Generate lessons for every subsection, resuming from out/lessons.json.
        Chapters already complete are skipped; only lessons that fell back
        (or were never recorded) are retried.

    lessonforge status --out-dir out/
        Per-chapter lesson and fallback counts from the checkpoint. No API calls.

Exit codes: 0 on completion (fallbacks included), 1 on setup errors
(configuration, credentials, input, checkpoint access), 130 on Ctrl-C.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

from lessonforge import __version__
from lessonforge.checkpoint import CheckpointError, CheckpointStore, Group
from lessonforge.config import ConfigError, load_config, load_runtime_config
from lessonforge.outcome import Unit
from lessonforge.pipeline import PipelineRun, run_groups, write_run_artifacts
from lessonforge.providers import ProviderError, get_provider
from lessonforge.recorder import CompletionRuntime, UnitRun
from lessonforge.stages.lessons import (
    CHECKPOINT_FILE,
    STAGE,
    LessonStage,
    StructureError,
    build_groups,
    group_sort_key,
    lesson_counts,
    lesson_totals,
    load_course_structure,
)
from lessonforge.utils import format_elapsed_time, log_message

DEFAULT_CONFIG = Path("pipelines/Lessons/config.yaml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lessonforge",
        description="Resumable, rate-limit tolerant lesson generation",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"lessonforge {__version__}"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", help="Generate lessons (resumes from the checkpoint)")
    generate.add_argument(
        "--structure", "-s",
        type=Path,
        required=True,
        help="Path to course-structure.json"
    )
    generate.add_argument(
        "--out-dir", "-o",
        type=Path,
        required=True,
        help="Directory for lessons.json, logs and run artifacts"
    )
    generate.add_argument(
        "--config", "-c",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Pipeline config YAML (default: {DEFAULT_CONFIG})"
    )
    generate.add_argument(
        "--concurrency",
        type=int,
        help="Maximum lessons generated at once"
    )
    generate.add_argument(
        "--mode",
        choices=("live", "mock", "auto"),
        help="live calls the API, mock uses fallbacks only, auto picks live when a key is set"
    )
    generate.add_argument(
        "--provider",
        help="Override api.provider (gemini, openai, anthropic)"
    )
    generate.add_argument(
        "--model",
        help="Override api.model"
    )

    status = subparsers.add_parser("status", help="Show per-chapter progress from the checkpoint")
    status.add_argument(
        "--out-dir", "-o",
        type=Path,
        required=True,
        help="Directory containing lessons.json"
    )
    return parser


def cmd_generate(args) -> int:
    out_dir: Path = args.out_dir
    out_dir.mkdir(parents=True, exist_ok=True)
    log_file = out_dir / "RUN_LOG.txt"

    try:
        pipeline_config = load_config(args.config)
        config = load_runtime_config(pipeline_config, overrides={
            "concurrency": args.concurrency,
            "mode": args.mode,
            "provider": args.provider,
            "model": args.model,
        })
        structure = load_course_structure(args.structure)
        groups = build_groups(structure)
        stage = LessonStage(pipeline_config, structure)
        provider = None if config.is_mock else get_provider(config)
    except (ConfigError, StructureError, ProviderError, ImportError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    runtime = CompletionRuntime(config, provider, run_dir=out_dir, log_file=log_file)
    store = CheckpointStore(out_dir / CHECKPOINT_FILE, log_file=log_file, sort_key=group_sort_key)

    async def handle(unit: Unit, group: Group) -> UnitRun:
        return await runtime.run_json(stage.request(unit))

    try:
        result = asyncio.run(run_groups(
            groups,
            handle,
            store=store,
            config=config,
            stage=STAGE,
            model=runtime.model,
            log_file=log_file,
            artifacts_dir=out_dir,
            header=lambda all_groups: stage.header(all_groups, runtime.model),
            estimate_cost=runtime.estimate_cost,
        ))
    except CheckpointError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        log_message(log_file, "WARN", "Interrupted; chapters already saved are kept in the checkpoint")
        return 130

    write_run_artifacts(out_dir, result.traces, result.summary)
    print_summary(result)
    return 0


def print_summary(result: PipelineRun) -> None:
    summary = result.summary
    totals = lesson_totals(result.groups.values())

    print()
    print("=" * 60)
    print(f"  Lesson Generation Complete - {format_elapsed_time(summary.duration_seconds)}")
    print("=" * 60)
    print(f"  Mode / model:         {summary.mode} / {summary.model}")
    print(f"  Chapters processed:   {summary.groups_processed} ({summary.groups_skipped} skipped)")
    print(f"  Lessons this run:     {summary.units_run} ({summary.units_fell_back} fallback)")
    print(f"  Total lessons:        {totals['lessons']}")
    print(f"  Worked examples:      {totals['examples']}")
    print(f"  Practice questions:   {totals['questions']}")
    print(f"  Memorizable drills:   {totals['drills']}")
    if totals["fallbacks"]:
        print(f"  Fallback lessons:     {totals['fallbacks']} (re-run to retry)")
    print(f"  Tokens:               {summary.input_tokens:,} in + {summary.output_tokens:,} out"
          f" | ${summary.estimated_cost:.4f}")
    print(f"  Output:               {summary.checkpoint_path}")
    print("=" * 60)

    for result_group in sorted(result.groups.values(), key=group_sort_key):
        counts = lesson_counts(result_group)
        title = result_group.metadata.get("chapter_title", "")
        line = (f"  Ch {result_group.group_key}: {title} - {counts['lessons']} lessons, "
                f"{counts['examples']} examples, {counts['questions']} questions, {counts['drills']} drills")
        if counts["fallbacks"]:
            line += f", {counts['fallbacks']} FAILED"
        print(line)


def cmd_status(args) -> int:
    store = CheckpointStore(args.out_dir / CHECKPOINT_FILE, sort_key=group_sort_key)
    try:
        groups = store.load()
    except CheckpointError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not groups:
        print(f"No lessons recorded in {store.path}")
        return 0

    for result in sorted(groups.values(), key=group_sort_key):
        counts = lesson_counts(result)
        title = result.metadata.get("chapter_title", "")
        state = "complete" if not counts["fallbacks"] else f"{counts['fallbacks']} to retry"
        print(f"Ch {result.group_key}: {title} - {counts['lessons']} lessons ({state})")

    totals = lesson_totals(groups.values())
    print(f"Total: {totals['lessons']} lessons, {totals['fallbacks']} fallbacks")
    return 0


def main(argv=None) -> int:
    # Load .env file from current directory or parents
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "generate":
        return cmd_generate(args)
    if args.command == "status":
        return cmd_status(args)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
