"""Run every detector over the data directory and build the pattern report.

The previous report is both an input and an output: its issue-code
history and architecture baseline carry forward so that counts accumulate
and drift is measured across runs.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from feedloop.analysis.architecture import (
    baseline_delta,
    detect_architecture_drift,
    effective_thresholds,
    measure_architecture,
    scan_modules,
)
from feedloop.analysis.detectors import (
    HINT_METRIC_MAP,
    detect_autopilot_failures,
    detect_cross_loop_dependencies,
    detect_hint_fatigue,
    detect_quality_decline,
    detect_recurring_issues,
    detect_stagnant_loops,
    measure_intervention_effectiveness,
)
from feedloop.config import (
    AUTONOMY_TREND_FILE,
    AUTOPILOT_LOG_FILE,
    HEALTH_REPORT_FILE,
    PATTERN_REPORT_FILE,
    QUALITY_HISTORY_FILE,
)
from feedloop.file_io import iso_utc, read_json, utc_now, write_json_atomic
from feedloop.pipeline.manifest import ManifestError, load_manifest
from feedloop.schemas import (
    SEVERITY_ORDER,
    ArchitectureBaseline,
    AutopilotLog,
    HealthReport,
    IssueCodeEntry,
    PatternReport,
    Severity,
)

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def _read_model(path: Path, model: type[_ModelT]) -> _ModelT | None:
    payload = read_json(path)
    if payload is None:
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Ignoring malformed %s (%d errors)", path.name, exc.error_count())
        return None


def _read_series(path: Path) -> list[Any] | None:
    payload = read_json(path)
    if payload is None:
        return None
    if not isinstance(payload, list):
        logger.warning("Ignoring %s: expected a JSON list", path.name)
        return None
    return payload


def _previous_history(previous: Any) -> dict[str, IssueCodeEntry]:
    raw = previous.get("issueCodeHistory") if isinstance(previous, dict) else None
    if not isinstance(raw, dict):
        return {}
    history: dict[str, IssueCodeEntry] = {}
    for code, entry in raw.items():
        try:
            history[code] = IssueCodeEntry.model_validate(entry)
        except ValidationError:
            logger.warning("Dropping malformed issue history entry %r", code)
    return history


def _previous_baseline(previous: Any) -> ArchitectureBaseline | None:
    raw = previous.get("architectureBaseline") if isinstance(previous, dict) else None
    if not isinstance(raw, dict):
        return None
    try:
        return ArchitectureBaseline.model_validate(raw)
    except ValidationError:
        logger.warning("Ignoring malformed architecture baseline in previous report")
        return None


def _pipeline_step_count(manifest_path: Path | None) -> int | None:
    if manifest_path is None or not manifest_path.is_file():
        return None
    try:
        return load_manifest(manifest_path).step_count
    except ManifestError as exc:
        logger.warning("Pipeline step count unavailable: %s", exc)
        return None


def summarize_patterns(patterns: Sequence[Any]) -> str:
    summary = f"{len(patterns)} patterns detected"
    if not patterns:
        return summary
    counts = {severity: 0 for severity in Severity}
    for pattern in patterns:
        counts[pattern.severity] += 1
    summary += (
        f" ({counts[Severity.HIGH]} high, {counts[Severity.MEDIUM]} medium, "
        f"{counts[Severity.LOW]} low)"
    )
    top = patterns[0]
    return f"{summary}. Top priority: {top.type} - {top.suggestion.split('.')[0]}."


def analyze_patterns(
    data_dir: Path,
    *,
    source_root: Path | None = None,
    manifest_path: Path | None = None,
    now: datetime | None = None,
    hint_map: Sequence[tuple[str, str]] = HINT_METRIC_MAP,
) -> PatternReport:
    """Read the diagnostic files in *data_dir* and return the merged report.

    Every input is optional; a missing or malformed file simply yields no
    findings from the detectors that depend on it.  The architecture scan
    runs only when *source_root* is given.
    """
    current = now or utc_now()
    health_report = _read_model(data_dir / HEALTH_REPORT_FILE, HealthReport)
    quality_history = _read_series(data_dir / QUALITY_HISTORY_FILE)
    autonomy_trend = _read_series(data_dir / AUTONOMY_TREND_FILE)
    autopilot_log = _read_model(data_dir / AUTOPILOT_LOG_FILE, AutopilotLog)
    previous = read_json(data_dir / PATTERN_REPORT_FILE)

    health_patterns, issue_history = detect_recurring_issues(
        health_report, _previous_history(previous), now=current
    )
    patterns: list[Any] = [
        *health_patterns,
        *detect_quality_decline(quality_history),
        *detect_stagnant_loops(autonomy_trend),
        *detect_hint_fatigue(quality_history, hint_map),
        *detect_cross_loop_dependencies(quality_history),
        *detect_autopilot_failures(autopilot_log),
    ]

    baseline: ArchitectureBaseline | None = None
    delta: dict[str, float] = {}
    if source_root is not None and source_root.is_dir():
        prior = _previous_baseline(previous)
        modules = scan_modules(source_root)
        baseline = measure_architecture(
            modules,
            pipeline_step_count=_pipeline_step_count(manifest_path),
            thresholds=effective_thresholds(prior),
            now=current,
        )
        patterns.extend(detect_architecture_drift(baseline, modules, prior))
        delta = baseline_delta(baseline, prior)
    elif isinstance(previous, dict):
        # Keep the last known baseline when this run skips the scan.
        baseline = _previous_baseline(previous)

    patterns.sort(key=lambda pattern: SEVERITY_ORDER[pattern.severity])
    return PatternReport(
        generated_at=iso_utc(current),
        patterns_detected=len(patterns),
        patterns=patterns,
        issue_code_history=issue_history,
        intervention_effectiveness=measure_intervention_effectiveness(quality_history, hint_map),
        architecture_baseline=baseline,
        baseline_delta=delta,
        summary=summarize_patterns(patterns),
    )


def write_pattern_report(report: PatternReport, path: Path) -> None:
    write_json_atomic(path, report.to_json_dict())
    logger.info("Pattern analysis: %d patterns detected", report.patterns_detected)
    for pattern in report.patterns:
        label = {"high": "[HIGH]", "medium": "[MED] "}.get(pattern.severity.value, "[LOW] ")
        logger.info("  %s %s: %s.", label, pattern.type, pattern.suggestion.split(".")[0])
    if not report.patterns:
        logger.info("  No recurring patterns detected. System is healthy.")
