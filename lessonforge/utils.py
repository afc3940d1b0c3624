"""
utils.py - Shared utilities for lessonforge.

Provides run logging (RUN_LOG.txt plus stderr), request-level trace
lines (TRACE_LOG.txt), atomic JSON writes, and small formatting helpers.
"""

import json
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def log_message(log_file: Path | None, level: str, message: str, echo_stderr: bool = True) -> None:
    """
    Append a timestamped log message to a log file and optionally echo to stderr.

    Args:
        log_file: Path to the log file, or None to log to stderr only
        level: Event type like START, SKIP, RETRY, PROCESS, SAVED, RATE_LIMIT, UNIT, WARN, ERROR
        message: Human-readable message
        echo_stderr: If True, also print to stderr for CLI visibility
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    time_short = datetime.now().strftime("%H:%M:%S")  # Local time for stderr

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(f"[{timestamp}] [{level}] {message}\n")
            f.flush()  # Ensure real-time visibility

    if echo_stderr or log_file is None:
        print(f"[{time_short}] [{level}] {message}", file=sys.stderr, flush=True)


def trace_log(run_dir: Path | None, message: str) -> None:
    """
    Append a timestamped trace line to TRACE_LOG.txt for request-level telemetry.

    Records every outgoing completion call. Separate from RUN_LOG.txt to
    keep operational logs readable while preserving per-request detail.

    Args:
        run_dir: Path to the run directory (TRACE_LOG.txt is created here); None disables
        message: Pre-formatted trace line (e.g., "[API] gemini lesson 2.3 | 1.33s | 200")
    """
    if run_dir is None:
        return
    now = datetime.now(timezone.utc)
    timestamp = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}"
    trace_file = run_dir / "TRACE_LOG.txt"
    try:
        with open(trace_file, "a", encoding="utf-8") as f:
            f.write(f"{timestamp} {message}\n")
            f.flush()
    except OSError:
        pass  # Best-effort - never fail the caller


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON to path atomically using temp file + rename.

    A crash mid-write leaves the previous file intact.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        dir=path.parent,
        suffix=".tmp",
        delete=False,
        encoding="utf-8",
    ) as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        temp_path = f.name

    os.replace(temp_path, path)


def format_elapsed_time(seconds: float) -> str:
    """Format seconds as human-readable duration (e.g., '2h 15m 30s')."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        minutes = seconds // 60
        secs = seconds % 60
        return f"{minutes}m {secs}s"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs}s"


def chapter_sort_key(number: str | int | None) -> tuple[int, str]:
    """Sort key for chapter numbers like '3', '12', or None (sorted first)."""
    text = str(number).strip() if number is not None else ""
    digits = ""
    for ch in text:
        if not ch.isdigit():
            break
        digits += ch
    return (int(digits) if digits else 0, text)
