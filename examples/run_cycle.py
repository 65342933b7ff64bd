#!/usr/bin/env python3
"""Example: one full feedback cycle (quota probe, pipeline run, pattern analysis).

Usage:
    python examples/run_cycle.py examples/pipeline-manifest.json [data_dir]
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Allow running from the repo root without installing the package
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from feedloop.analysis import analyze_patterns, write_pattern_report
from feedloop.monitoring.quota_probe import check_quota
from feedloop.pipeline.runner import run_pipeline


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: run_cycle.py <manifest> [data_dir]")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(levelname)-8s  %(message)s")
    manifest = Path(sys.argv[1])
    data_dir = Path(sys.argv[2]) if len(sys.argv) > 2 else Path("docs/data")

    status = check_quota(data_dir / ".quota-status.json")
    result = run_pipeline(
        manifest,
        result_path=data_dir / "pipeline-result.json",
        quota_status=status,
    )
    report = analyze_patterns(data_dir, source_root=Path.cwd(), manifest_path=manifest)
    write_pattern_report(report, data_dir / "pattern-report.json")

    print(f"\nQuota tier:  {status.evaluation.tier} ({status.evaluation.reason})")
    print(f"Gate:        {result.gate.value}")
    print(f"Steps:       {result.summary.success}/{result.summary.total} succeeded")
    print(f"Duration:    {result.duration:.1f}s")
    print(f"Patterns:    {report.summary}")
    sys.exit(0 if result.gate.value == "pass" else 1)


if __name__ == "__main__":
    main()
