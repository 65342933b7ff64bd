"""Manifest-driven step executor.

Phases run in manifest order.  A parallel phase launches every step at
once and waits for all of them to settle; a sequential phase runs steps
one at a time and stops at the first failed ``required`` step.  Once a
phase aborts, every later phase is recorded as skipped.

Step failures never raise past the step boundary: spawn errors, non-zero
exits and timeouts all come back as ``failed`` results with an
``errorCategory`` for the pattern analyzer.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import time
from collections.abc import Iterable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path

from feedloop.config import DEFAULT_GATE_STEP, DEFAULT_STEP_TIMEOUT_SECONDS
from feedloop.file_io import iso_utc, utc_now, write_json_atomic
from feedloop.pipeline.manifest import load_manifest
from feedloop.schemas import (
    ErrorCategory,
    ErrorPolicy,
    Gate,
    PhaseResult,
    PhaseSpec,
    PhaseStatus,
    PipelineResult,
    PipelineSummary,
    QuotaStatus,
    StepResult,
    StepSpec,
    StepStatus,
    TierEvaluation,
)

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

STEP_ERROR_MAX_CHARS = 200
_STDERR_TAIL_CHARS = 160
_KILL_WAIT_SECONDS = 5.0

# First matching category wins, so order matters.
_CATEGORY_KEYWORDS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.TIMEOUT, ("etimedout", "timedout", "timed out", "timeout")),
    (
        ErrorCategory.NETWORK,
        (
            "econnrefused",
            "econnreset",
            "enotfound",
            "fetch failed",
            "network",
            "connection refused",
            "connection reset",
            "could not resolve",
            "name resolution",
        ),
    ),
    (ErrorCategory.AUTH, ("401", "403", "unauthorized", "forbidden", "auth")),
    (ErrorCategory.VALIDATION, ("validation", "schema")),
    (ErrorCategory.PARSE, ("json", "parse", "unexpected token", "syntaxerror", "decode")),
    (
        ErrorCategory.COMMAND,
        ("command failed", "enoent", "not found", "exit code", "no such file", "signal"),
    ),
)


def categorize_error(message: str | None) -> ErrorCategory:
    """Bucket a failure message by keyword for diagnostics."""
    if not message:
        return ErrorCategory.UNKNOWN
    lowered = message.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ErrorCategory.UNKNOWN


@dataclass(frozen=True, slots=True)
class RequirementCheck:
    ok: bool
    missing: list[str] = field(default_factory=list)


def check_requirements(
    requires: Iterable[str] | None,
    env: Mapping[str, str] | None = None,
) -> RequirementCheck:
    """Report which of the required environment variables are unset or empty."""
    source = os.environ if env is None else env
    missing = [name for name in (requires or ()) if not str(source.get(name, "") or "")]
    return RequirementCheck(ok=not missing, missing=missing)


def quota_skip_reason(step: StepSpec, evaluation: TierEvaluation | None) -> str | None:
    """Return why *step* must not run under the current tier, or ``None``."""
    if evaluation is None or step.quota_priority is None:
        return None
    if step.quota_priority <= evaluation.max_priority:
        return None
    return (
        f"quota tier {evaluation.tier} ({evaluation.tier_name}): "
        f"priority {step.quota_priority} exceeds ceiling {evaluation.max_priority}"
    )


def _truncate(text: str, max_len: int = STEP_ERROR_MAX_CHARS) -> str:
    clean = (text or "").strip()
    if len(clean) <= max_len:
        return clean
    return clean[: max_len - 3] + "..."


def _elapsed(start: float) -> float:
    return round(time.monotonic() - start, 3)


def _skip_result(
    step: StepSpec,
    env: Mapping[str, str] | None,
    quota: TierEvaluation | None,
) -> StepResult | None:
    check = check_requirements(step.requires, env)
    if not check.ok:
        return StepResult(
            name=step.name,
            status=StepStatus.SKIPPED,
            reason=f"missing env: {', '.join(check.missing)}",
        )
    reason = quota_skip_reason(step, quota)
    if reason:
        return StepResult(name=step.name, status=StepStatus.SKIPPED, reason=reason)
    return None


def _failed_result(step_name: str, start: float, message: str) -> StepResult:
    return StepResult(
        name=step_name,
        status=StepStatus.FAILED,
        duration=_elapsed(start),
        error=_truncate(message) or "unknown error",
        error_category=categorize_error(message),
    )


def _exit_message(returncode: int, stderr: str) -> str:
    if returncode < 0:
        head = f"terminated by signal {-returncode}"
    else:
        head = f"exit code {returncode}"
    tail = (stderr or "").strip()[-_STDERR_TAIL_CHARS:].strip()
    return f"{head}: {tail}" if tail else head


def _process_isolation_kwargs() -> dict[str, object]:
    """Run each step in its own process group so a timeout can kill the whole tree."""
    if os.name == "nt":
        flags = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def _kill_process_tree(pid: int) -> None:
    if os.name != "nt":
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(os.getpgid(pid), signal.SIGKILL)
        return
    with suppress(OSError):  # pragma: no cover - Windows only
        subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(pid)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )


def execute_step(
    step: StepSpec,
    *,
    timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    quota: TierEvaluation | None = None,
) -> StepResult:
    """Run one step, blocking until it exits or its deadline passes."""
    start = time.monotonic()
    skipped = _skip_result(step, env, quota)
    if skipped is not None:
        return skipped

    deadline = step.timeout or timeout
    try:
        proc = subprocess.Popen(
            step.command,
            shell=True,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=dict(os.environ if env is None else env),
            **_process_isolation_kwargs(),
        )
    except OSError as exc:
        return _failed_result(step.name, start, f"command failed to start: {exc}")

    try:
        _stdout, stderr = proc.communicate(timeout=deadline)
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc.pid)
        with suppress(subprocess.TimeoutExpired):
            proc.communicate(timeout=_KILL_WAIT_SECONDS)
        return _failed_result(step.name, start, f"timed out after {deadline:g}s")

    if proc.returncode != 0:
        return _failed_result(step.name, start, _exit_message(proc.returncode, stderr))
    return StepResult(name=step.name, status=StepStatus.SUCCESS, duration=_elapsed(start))


async def execute_step_async(
    step: StepSpec,
    *,
    timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    quota: TierEvaluation | None = None,
) -> StepResult:
    """Async twin of :func:`execute_step` used for parallel phases."""
    start = time.monotonic()
    skipped = _skip_result(step, env, quota)
    if skipped is not None:
        return skipped

    deadline = step.timeout or timeout
    try:
        proc = await asyncio.create_subprocess_shell(
            step.command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(os.environ if env is None else env),
            **_process_isolation_kwargs(),
        )
    except OSError as exc:
        return _failed_result(step.name, start, f"command failed to start: {exc}")

    try:
        _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=deadline)
    except asyncio.TimeoutError:
        _kill_process_tree(proc.pid)
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_SECONDS)
        return _failed_result(step.name, start, f"timed out after {deadline:g}s")

    if proc.returncode != 0:
        stderr_text = (stderr or b"").decode("utf-8", errors="replace")
        return _failed_result(step.name, start, _exit_message(proc.returncode or 0, stderr_text))
    return StepResult(name=step.name, status=StepStatus.SUCCESS, duration=_elapsed(start))


def _settle_status(results: list[StepResult]) -> PhaseStatus:
    if any(result.status is StepStatus.FAILED for result in results):
        return PhaseStatus.PARTIAL
    return PhaseStatus.SUCCESS


async def _run_parallel(
    phase: PhaseSpec,
    *,
    timeout: float,
    cwd: Path | None,
    env: Mapping[str, str] | None,
    quota: TierEvaluation | None,
) -> PhaseResult:
    settled = await asyncio.gather(
        *(
            execute_step_async(step, timeout=timeout, cwd=cwd, env=env, quota=quota)
            for step in phase.steps
        ),
        return_exceptions=True,
    )
    results: list[StepResult] = []
    for step, outcome in zip(phase.steps, settled):
        if isinstance(outcome, BaseException):
            logger.error("Step %s raised unexpectedly: %r", step.name, outcome)
            message = str(outcome) or type(outcome).__name__
            results.append(_failed_result(step.name, time.monotonic(), message))
        else:
            results.append(outcome)

    for step, result in zip(phase.steps, results):
        if result.status is StepStatus.FAILED and step.error_policy is ErrorPolicy.REQUIRED:
            return PhaseResult(
                name=phase.name,
                status=PhaseStatus.FAILED,
                steps=results,
                aborted_by=step.name,
            )
    return PhaseResult(name=phase.name, status=_settle_status(results), steps=results)


async def run_phase(
    phase: PhaseSpec,
    *,
    timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    quota: TierEvaluation | None = None,
) -> PhaseResult:
    """Run one phase and return its result.

    Sequential phases abort at the first failed ``required`` step; the
    steps after it are listed in ``unattempted``.  Parallel phases always
    collect every step's result, and a failed ``required`` step marks the
    phase failed once all have settled.
    """
    if phase.parallel:
        return await _run_parallel(phase, timeout=timeout, cwd=cwd, env=env, quota=quota)

    results: list[StepResult] = []
    for index, step in enumerate(phase.steps):
        result = execute_step(step, timeout=timeout, cwd=cwd, env=env, quota=quota)
        results.append(result)
        if result.status is StepStatus.FAILED and step.error_policy is ErrorPolicy.REQUIRED:
            return PhaseResult(
                name=phase.name,
                status=PhaseStatus.FAILED,
                steps=results,
                aborted_by=step.name,
                unattempted=[later.name for later in phase.steps[index + 1 :]],
            )
        if result.status is StepStatus.FAILED:
            logger.warning("Step %s failed; continuing (errorPolicy=continue)", step.name)
    return PhaseResult(name=phase.name, status=_settle_status(results), steps=results)


def _log_phase(result: PhaseResult) -> None:
    for step in result.steps:
        icon = {"success": "+", "skipped": "~"}.get(step.status.value, "x")
        detail = ""
        if step.error:
            detail = f" - {step.error[:80]}"
        elif step.reason:
            detail = f" - {step.reason}"
        logger.info("  [%s] %s (%.2fs)%s", icon, step.name, step.duration, detail)
    if result.aborted_by:
        logger.warning(
            "  Phase %r aborted by required step %r", result.name, result.aborted_by
        )


def summarize(phases: Mapping[str, PhaseResult]) -> PipelineSummary:
    steps = [step for phase in phases.values() for step in phase.steps]
    return PipelineSummary(
        total=len(steps),
        success=sum(1 for step in steps if step.status is StepStatus.SUCCESS),
        failed=sum(1 for step in steps if step.status is StepStatus.FAILED),
        skipped=sum(1 for step in steps if step.status is StepStatus.SKIPPED),
    )


def gate_step_failed(phases: Mapping[str, PhaseResult], gate_step: str) -> bool:
    for phase in phases.values():
        for step in phase.steps:
            if step.name == gate_step and step.status is StepStatus.FAILED:
                return True
    return False


async def run_phases(
    phases: list[PhaseSpec],
    *,
    timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    quota: TierEvaluation | None = None,
) -> tuple[dict[str, PhaseResult], bool]:
    """Run phases in order; return their results and whether any aborted."""
    results: dict[str, PhaseResult] = {}
    aborted = False
    for phase in phases:
        if aborted:
            results[phase.name] = PhaseResult(name=phase.name, status=PhaseStatus.SKIPPED)
            logger.info("=== Phase: %s (skipped after abort) ===", phase.name)
            continue
        logger.info("=== Phase: %s - %s ===", phase.name, phase.description or "no description")
        result = await run_phase(phase, timeout=timeout, cwd=cwd, env=env, quota=quota)
        results[phase.name] = result
        _log_phase(result)
        if result.aborted_by:
            aborted = True
    return results, aborted


def run_pipeline(
    manifest_path: Path | str,
    *,
    result_path: Path | None = None,
    quota_status: QuotaStatus | None = None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    default_timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
    gate_step: str = DEFAULT_GATE_STEP,
) -> PipelineResult:
    """Load the manifest, run every phase, and persist the result.

    The manifest is validated before anything executes; a
    :class:`~feedloop.pipeline.manifest.ManifestError` propagates to the
    caller with nothing run and nothing written.
    """
    manifest = load_manifest(manifest_path)
    started = utc_now()
    start = time.monotonic()
    evaluation = quota_status.evaluation if quota_status is not None else None
    if evaluation is not None and evaluation.constrained:
        logger.info(
            "Quota tier %d (%s): steps above priority %d will be skipped",
            evaluation.tier,
            evaluation.tier_name,
            evaluation.max_priority,
        )

    phases, aborted = asyncio.run(
        run_phases(manifest.phases, timeout=default_timeout, cwd=cwd, env=env, quota=evaluation)
    )

    gate = Gate.FAIL if aborted or gate_step_failed(phases, gate_step) else Gate.PASS
    summary = summarize(phases)
    result = PipelineResult(
        started_at=iso_utc(started),
        completed_at=iso_utc(utc_now()),
        duration=_elapsed(start),
        gate=gate,
        phases=phases,
        summary=summary,
    )

    if result_path is not None:
        write_json_atomic(result_path, result.to_json_dict())
    logger.info(
        "Pipeline complete: %d/%d steps succeeded, gate=%s",
        summary.success,
        summary.total,
        gate.value,
    )
    return result
