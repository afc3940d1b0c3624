"""
recorder.py - Per-unit execution: attempts, retries, fallback, and trace.

UnitRecorder wraps one unit's work. It counts attempts, accumulates
token usage, measures wall-clock duration, and turns any final failure
into a FellBack outcome built by the caller's fallback generator. A unit
therefore always ends with a usable value and exactly one Trace.

CompletionRuntime joins the pieces for a JSON-producing stage:

    provider.complete()  - one Attempt, bounded by timeout_seconds
      -> parse_json_response() + request.decode()
         failures here are repeated up to recovery_retries times with no
         backoff and without spending transport retries
    RetryPolicy.call()   - transient provider failures, exponential backoff
    UnitRecorder.run()   - Succeeded / FellBack + Trace
"""

import asyncio
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, TypeVar

from lessonforge.json_recovery import JsonRecoveryError, parse_json_response
from lessonforge.outcome import FellBack, Outcome, Succeeded, Trace
from lessonforge.retry import RetryPolicy, is_transient_error
from lessonforge.schema import SchemaDecodeError
from lessonforge.utils import log_message, trace_log, utc_now_iso

T = TypeVar("T")

MOCK_MODEL = "mock-runtime"


@dataclass(frozen=True)
class UnitRun(Generic[T]):
    """What one unit produced: its outcome, its trace, and the last raw response."""
    outcome: Outcome
    trace: Trace
    raw_text: str = ""


@dataclass
class JsonRequest(Generic[T]):
    """A single JSON-producing completion for one unit."""
    stage: str
    unit_key: str
    system_prompt: str
    user_prompt: str
    decode: Callable[[Any], T]
    fallback: Callable[[], T]
    label: str = ""
    temperature: float | None = None
    max_output_tokens: int | None = None
    max_retries: int | None = None


class UnitRecorder:
    """Measures one unit's execution and guarantees a single Trace for it."""

    def __init__(
        self,
        stage: str,
        unit_key: str,
        *,
        mode: str,
        model: str,
        label: str = "",
        log_file: Path | None = None,
        verbose: bool = True,
        trace_sink: Callable[[Trace], None] | None = None,
    ):
        self.stage = stage
        self.unit_key = unit_key
        self.mode = mode
        self.model = model
        self.label = label or unit_key
        self.log_file = log_file
        self.verbose = verbose
        self.trace_sink = trace_sink

        self.attempt_count = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.raw_text = ""

    def count_attempt(self) -> int:
        self.attempt_count += 1
        return self.attempt_count

    def add_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens or 0
        self.output_tokens += output_tokens or 0

    async def run(
        self,
        operation: Callable[["UnitRecorder"], Awaitable[T]],
        fallback: Callable[[], T],
    ) -> UnitRun:
        """
        Execute operation(recorder) and resolve the unit.

        Never raises for unit-level failures. Cancellation and
        KeyboardInterrupt still propagate.
        """
        started_at = utc_now_iso()
        start = time.monotonic()
        error_message = None
        try:
            value = await operation(self)
            outcome: Outcome = Succeeded(unit_key=self.unit_key, value=value)
        except Exception as e:
            error_message = _format_error(e)
            outcome = self._fall_back(fallback, error_message)
        return self._finish(outcome, started_at, start, error_message)

    def resolve_with_fallback(self, fallback: Callable[[], T], reason: str) -> UnitRun:
        """Resolve the unit to its fallback without running anything (mock mode)."""
        started_at = utc_now_iso()
        start = time.monotonic()
        self.count_attempt()
        outcome = self._fall_back(fallback, reason)
        return self._finish(outcome, started_at, start, reason)

    def _fall_back(self, fallback: Callable[[], T], reason: str) -> FellBack:
        """Build the FellBack outcome; a failing fallback generator is recorded in the reason."""
        try:
            value = fallback()
        except Exception as e:
            failure = f"fallback generator failed: {_format_error(e)}"
            log_message(self.log_file, "ERROR", f"{self.stage} {self.label}: {failure}")
            return FellBack(unit_key=self.unit_key, value=None, reason=f"{reason}; {failure}")
        return FellBack(unit_key=self.unit_key, value=value, reason=reason)

    def _finish(self, outcome: Outcome, started_at: str, start: float, error_message: str | None) -> UnitRun:
        duration_ms = int((time.monotonic() - start) * 1000)
        trace = Trace(
            stage=self.stage,
            unit_key=self.unit_key,
            mode=self.mode,
            model=self.model,
            started_at=started_at,
            completed_at=utc_now_iso(),
            duration_ms=duration_ms,
            attempt_count=self.attempt_count,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            fallback_used=outcome.fallback_used,
            error_message=error_message if outcome.fallback_used else None,
        )
        if self.trace_sink is not None:
            self.trace_sink(trace)
        if self.verbose:
            marker = "fallback" if outcome.fallback_used else "primary"
            message = (
                f"[{self.stage}] {self.label} {self.mode}/{marker} in {duration_ms}ms "
                f"({self.input_tokens}/{self.output_tokens} tokens, {self.attempt_count} attempts)"
            )
            if error_message and outcome.fallback_used:
                message += f" - {error_message}"
            log_message(self.log_file, "UNIT", message)
        return UnitRun(outcome=outcome, trace=trace, raw_text=self.raw_text)


class CompletionRuntime:
    """
    Runs JSON-producing completions for units with retries and fallbacks.

    Usage:
        runtime = CompletionRuntime(config, provider, run_dir=run_dir)
        unit_run = await runtime.run_json(JsonRequest(...))
    """

    def __init__(
        self,
        config,
        provider=None,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        run_dir: Path | None = None,
        log_file: Path | None = None,
        trace_sink: Callable[[Trace], None] | None = None,
    ):
        if provider is None and not config.is_mock:
            raise ValueError("A provider is required outside mock mode")
        self.config = config
        self.provider = provider
        self.run_dir = run_dir
        self.log_file = log_file
        self.trace_sink = trace_sink
        self.retry_policy = retry_policy or config.retry_policy(sleep=sleep, log_file=log_file)

    @property
    def model(self) -> str:
        if self.config.is_mock or self.provider is None:
            return MOCK_MODEL
        return self.provider.model

    @property
    def provider_name(self) -> str:
        return getattr(self.provider, "name", "mock")

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        if self.provider is None:
            return 0.0
        return self.provider.estimate_cost(input_tokens, output_tokens)

    async def run_json(self, request: JsonRequest[T]) -> UnitRun:
        """Resolve one unit; never raises for unit-level failures."""
        recorder = UnitRecorder(
            request.stage,
            request.unit_key,
            mode=self.config.mode,
            model=self.model,
            label=request.label,
            log_file=self.log_file,
            verbose=self.config.verbose_unit_logs,
            trace_sink=self.trace_sink,
        )

        if self.config.is_mock:
            return recorder.resolve_with_fallback(request.fallback, "mock mode")

        policy = self.retry_policy
        if request.max_retries is not None:
            policy = replace(policy, max_retries=request.max_retries)
        label = f"{request.stage} {request.label or request.unit_key}"

        async def operation(rec: UnitRecorder):
            return await policy.call(label, lambda: self._call_and_decode(request, rec))

        return await recorder.run(operation, request.fallback)

    async def _call_and_decode(self, request: JsonRequest[T], rec: UnitRecorder) -> T:
        recovery_retries = self.config.recovery_retries
        last_error: Exception | None = None
        for recovery_attempt in range(recovery_retries + 1):
            result = await self._call(request, rec)
            rec.raw_text = result["content"]
            try:
                return request.decode(parse_json_response(result["content"]))
            except (JsonRecoveryError, SchemaDecodeError) as e:
                last_error = e
                if recovery_attempt < recovery_retries:
                    log_message(self.log_file, "RETRY",
                        f"{request.stage} {request.label or request.unit_key}: unusable response "
                        f"({e}); recovery retry {recovery_attempt + 1}/{recovery_retries}")
        raise last_error

    async def _call(self, request: JsonRequest[T], rec: UnitRecorder):
        rec.count_attempt()
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.provider.complete(
                    request.system_prompt,
                    request.user_prompt,
                    temperature=request.temperature if request.temperature is not None else self.config.temperature,
                    max_output_tokens=request.max_output_tokens or self.config.max_output_tokens,
                ),
                timeout=self.config.timeout_seconds,
            )
        except Exception as e:
            status = "RATE_LIMIT" if is_transient_error(e) else "ERROR"
            self._trace_call(request, time.monotonic() - start, status)
            raise
        rec.add_usage(result.get("input_tokens", 0), result.get("output_tokens", 0))
        self._trace_call(request, time.monotonic() - start, "200")
        return result

    def _trace_call(self, request: JsonRequest, duration_secs: float, status: str) -> None:
        trace_log(self.run_dir,
            f"[API] {self.provider_name} {request.stage} {request.unit_key} | {duration_secs:.2f}s | {status}")


def _format_error(error: BaseException) -> str:
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)) and not str(error):
        return "Request timed out"
    return str(error) or type(error).__name__
