"""Static fitness metrics over the project's own source tree.

The scan produces an :class:`ArchitectureBaseline` that is persisted in the
pattern report; the next run compares against it to spot growth and drift.
"""

from __future__ import annotations

import logging
import os
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath

from feedloop.file_io import iso_utc, utc_now
from feedloop.schemas import ArchitectureBaseline, ArchitectureDrift, Severity

logger = logging.getLogger(__name__)

SOURCE_SUFFIXES = frozenset({".py", ".js", ".mjs", ".ts"})
SKIP_DIRS = frozenset(
    {"node_modules", "__pycache__", "venv", "env", "build", "dist", "site-packages"}
)
TEST_DIRS = frozenset({"tests", "test", "__tests__"})
SCRIPT_DIRS = frozenset({"scripts"})

ROLE_SOURCE = "source"
ROLE_SCRIPT = "script"
ROLE_TEST = "test"

DEFAULT_THRESHOLDS: dict[str, float] = {
    "maxModuleLines": 500,
    "maxAvgModuleLines": 250,
    "minTestRatio": 0.3,
    "maxPipelineSteps": 40,
    "maxModuleGrowthPct": 25,
}

_OVERSIZED_LISTED = 10


@dataclass(frozen=True, slots=True)
class ModuleInfo:
    path: str  # posix, relative to the scan root
    role: str
    lines: int


def classify_module(relative: PurePosixPath) -> str:
    name = relative.name
    stem = name.split(".", 1)[0]
    if (
        TEST_DIRS.intersection(relative.parts[:-1])
        or stem.startswith("test_")
        or stem.endswith("_test")
        or ".test." in name
        or ".spec." in name
    ):
        return ROLE_TEST
    if SCRIPT_DIRS.intersection(relative.parts[:-1]):
        return ROLE_SCRIPT
    return ROLE_SOURCE


def count_lines(path: Path) -> int:
    """Non-blank lines in *path*; unreadable files count as empty."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        logger.debug("Could not read %s", path, exc_info=True)
        return 0
    return sum(1 for line in text.splitlines() if line.strip())


def _skip_dir(name: str) -> bool:
    return name.startswith(".") or name in SKIP_DIRS or name.endswith(".egg-info")


def scan_modules(root: Path) -> list[ModuleInfo]:
    modules: list[ModuleInfo] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if not _skip_dir(name))
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if path.suffix not in SOURCE_SUFFIXES:
                continue
            relative = PurePosixPath(path.relative_to(root).as_posix())
            modules.append(
                ModuleInfo(path=str(relative), role=classify_module(relative), lines=count_lines(path))
            )
    return modules


def effective_thresholds(prior: ArchitectureBaseline | None) -> dict[str, float]:
    thresholds = dict(DEFAULT_THRESHOLDS)
    if prior is not None:
        thresholds.update({k: v for k, v in prior.thresholds.items() if k in DEFAULT_THRESHOLDS})
    return thresholds


def measure_architecture(
    modules: Sequence[ModuleInfo],
    *,
    pipeline_step_count: int | None = None,
    thresholds: Mapping[str, float] | None = None,
    now: datetime | None = None,
) -> ArchitectureBaseline:
    counts = Counter(module.role for module in modules)
    code = [module for module in modules if module.role != ROLE_TEST]
    code_lines = [module.lines for module in code]
    return ArchitectureBaseline(
        recorded_at=iso_utc(now or utc_now()),
        module_counts=dict(sorted(counts.items())),
        total_modules=len(modules),
        avg_module_lines=round(sum(code_lines) / len(code_lines), 2) if code_lines else 0.0,
        max_module_lines=max(code_lines, default=0),
        test_to_source_ratio=round(counts[ROLE_TEST] / len(code), 2) if code else 0.0,
        pipeline_step_count=pipeline_step_count,
        thresholds=dict(thresholds or DEFAULT_THRESHOLDS),
    )


def baseline_delta(
    current: ArchitectureBaseline,
    prior: ArchitectureBaseline | None,
) -> dict[str, float]:
    """Current minus prior for every numeric metric both baselines carry."""
    if prior is None:
        return {}
    delta: dict[str, float] = {
        "totalModules": current.total_modules - prior.total_modules,
        "avgModuleLines": round(current.avg_module_lines - prior.avg_module_lines, 2),
        "maxModuleLines": current.max_module_lines - prior.max_module_lines,
        "testToSourceRatio": round(current.test_to_source_ratio - prior.test_to_source_ratio, 2),
    }
    if current.pipeline_step_count is not None and prior.pipeline_step_count is not None:
        delta["pipelineStepCount"] = current.pipeline_step_count - prior.pipeline_step_count
    for role in sorted(set(current.module_counts) | set(prior.module_counts)):
        delta[f"{role}Modules"] = current.module_counts.get(role, 0) - prior.module_counts.get(role, 0)
    return delta


def detect_architecture_drift(
    current: ArchitectureBaseline,
    modules: Sequence[ModuleInfo],
    prior: ArchitectureBaseline | None = None,
) -> list[ArchitectureDrift]:
    limits = {**DEFAULT_THRESHOLDS, **current.thresholds}
    findings: list[ArchitectureDrift] = []

    max_lines = limits["maxModuleLines"]
    oversized = sorted(
        (m for m in modules if m.role != ROLE_TEST and m.lines > max_lines),
        key=lambda m: (-m.lines, m.path),
    )
    if oversized:
        worst = oversized[0]
        findings.append(
            ArchitectureDrift(
                severity=Severity.HIGH if worst.lines > 2 * max_lines else Severity.MEDIUM,
                metric="maxModuleLines",
                value=worst.lines,
                threshold=max_lines,
                modules=[m.path for m in oversized[:_OVERSIZED_LISTED]],
                suggestion=(
                    f"{len(oversized)} module(s) exceed {max_lines:g} lines; largest is "
                    f"{worst.path} at {worst.lines}. Split it along its responsibilities."
                ),
            )
        )

    avg_limit = limits["maxAvgModuleLines"]
    if current.avg_module_lines > avg_limit:
        findings.append(
            ArchitectureDrift(
                severity=Severity.LOW,
                metric="avgModuleLines",
                value=current.avg_module_lines,
                threshold=avg_limit,
                suggestion=(
                    f"Average module size is {current.avg_module_lines:g} lines "
                    f"(limit {avg_limit:g}). Modules are trending large overall."
                ),
            )
        )

    ratio_floor = limits["minTestRatio"]
    has_code = any(m.role != ROLE_TEST for m in modules)
    if has_code and current.test_to_source_ratio < ratio_floor:
        findings.append(
            ArchitectureDrift(
                severity=Severity.MEDIUM,
                metric="testToSourceRatio",
                value=current.test_to_source_ratio,
                threshold=ratio_floor,
                suggestion=(
                    f"Test-to-source ratio is {current.test_to_source_ratio:g} "
                    f"(minimum {ratio_floor:g}). Add tests for the least-covered modules."
                ),
            )
        )

    step_limit = limits["maxPipelineSteps"]
    if current.pipeline_step_count is not None and current.pipeline_step_count > step_limit:
        findings.append(
            ArchitectureDrift(
                severity=Severity.LOW,
                metric="pipelineStepCount",
                value=current.pipeline_step_count,
                threshold=step_limit,
                suggestion=(
                    f"The pipeline has {current.pipeline_step_count} steps (limit "
                    f"{step_limit:g}). Consolidate or retire steps that no longer earn their cost."
                ),
            )
        )

    growth_limit = limits["maxModuleGrowthPct"]
    if prior is not None and prior.total_modules > 0:
        growth = (current.total_modules - prior.total_modules) / prior.total_modules * 100
        if growth > growth_limit:
            findings.append(
                ArchitectureDrift(
                    severity=Severity.LOW,
                    metric="moduleGrowthPct",
                    value=round(growth, 2),
                    threshold=growth_limit,
                    suggestion=(
                        f"Module count grew {growth:.0f}% since {prior.recorded_at[:10]} "
                        f"({prior.total_modules} -> {current.total_modules}). "
                        "Check for duplicated or abandoned code."
                    ),
                )
            )
    return findings
