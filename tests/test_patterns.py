"""Tests for the pattern analysis orchestrator and report persistence."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from feedloop.analysis.patterns import analyze_patterns, summarize_patterns, write_pattern_report
from feedloop.file_io import iso_utc
from feedloop.schemas import ArchitectureDrift, PatternReport, Severity

pytestmark = pytest.mark.unit

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _dump(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


def _seed_recurring_and_decline(data_dir: Path) -> None:
    _dump(
        data_dir / "pattern-report.json",
        {
            "issueCodeHistory": {
                "stale_data": {
                    "count": 10,
                    "firstSeen": "2026-10-12T08:00:00Z",
                    "lastSeen": iso_utc(NOW - timedelta(hours=2)),
                }
            }
        },
    )
    _dump(data_dir / "health-report.json", {"issues": [{"code": "stale_data", "severity": "warning"}]})
    scores = [92] * 6 + [72] * 6
    _dump(data_dir / "quality-history.json", [{"editorial": {"score": s}} for s in scores])


def test_findings_are_ordered_by_severity(tmp_path: Path) -> None:
    _seed_recurring_and_decline(tmp_path)

    report = analyze_patterns(tmp_path, now=NOW)

    assert [p.type for p in report.patterns] == ["recurring_health_warning", "quality_decline"]
    assert report.patterns[0].severity is Severity.HIGH
    assert report.patterns[0].count == 11
    assert report.patterns[1].severity is Severity.MEDIUM
    assert report.patterns_detected == 2
    assert report.summary == (
        "2 patterns detected (1 high, 1 medium, 0 low). Top priority: "
        'recurring_health_warning - Health warning "stale_data" has fired 11 times since 2026-10-12.'
    )
    assert report.issue_code_history["stale_data"].count == 11


def test_empty_data_dir_yields_empty_report(tmp_path: Path) -> None:
    report = analyze_patterns(tmp_path / "nothing-here", now=NOW)

    assert report.patterns == []
    assert report.summary == "0 patterns detected"
    assert report.issue_code_history == {}
    assert report.architecture_baseline is None


def test_malformed_inputs_are_treated_as_absent(tmp_path: Path, caplog) -> None:
    _dump(tmp_path / "health-report.json", ["not", "an", "object"])
    _dump(tmp_path / "quality-history.json", {"oops": True})
    (tmp_path / "autonomy-trend.json").write_text("{broken", encoding="utf-8")
    _dump(
        tmp_path / "pattern-report.json",
        {"issueCodeHistory": {"bad": {"count": "many"}, "good": {"count": 3, "firstSeen": "x", "lastSeen": iso_utc(NOW)}}},
    )

    report = analyze_patterns(tmp_path, now=NOW)

    assert report.patterns == []
    assert set(report.issue_code_history) == {"good"}
    assert "health-report.json" in caplog.text


def test_report_round_trips_through_disk_and_carries_history(tmp_path: Path) -> None:
    _seed_recurring_and_decline(tmp_path)
    out = tmp_path / "pattern-report.json"

    write_pattern_report(analyze_patterns(tmp_path, now=NOW), out)
    payload = json.loads(out.read_text(encoding="utf-8"))
    assert payload["patternsDetected"] == 2
    assert payload["patterns"][0]["issueCode"] == "stale_data"
    assert payload["patterns"][1]["earlyAvg"] == 92

    restored = PatternReport.model_validate(payload)
    assert restored.patterns[1].type == "quality_decline"

    second = analyze_patterns(tmp_path, now=NOW + timedelta(hours=2))
    assert second.issue_code_history["stale_data"].count == 12


def test_architecture_scan_and_baseline_carry_forward(tmp_path: Path) -> None:
    data_dir = tmp_path / "docs" / "data"
    data_dir.mkdir(parents=True)
    source = tmp_path / "repo"
    (source / "src").mkdir(parents=True)
    (source / "src" / "app.py").write_text("a = 1\n", encoding="utf-8")
    (source / "tests").mkdir()
    (source / "tests" / "test_app.py").write_text("def test_a():\n    pass\n", encoding="utf-8")
    manifest = tmp_path / "pipeline-manifest.json"
    manifest.write_text(
        json.dumps({"phases": [{"name": "p", "steps": [{"name": "s", "command": "c", "errorPolicy": "continue"}]}]}),
        encoding="utf-8",
    )

    first = analyze_patterns(data_dir, source_root=source, manifest_path=manifest, now=NOW)
    write_pattern_report(first, data_dir / "pattern-report.json")

    assert first.architecture_baseline.total_modules == 2
    assert first.architecture_baseline.pipeline_step_count == 1
    assert first.baseline_delta == {}

    (source / "src" / "extra.py").write_text("b = 2\n", encoding="utf-8")
    second = analyze_patterns(data_dir, source_root=source, manifest_path=manifest, now=NOW)
    assert second.baseline_delta["totalModules"] == 1
    assert second.baseline_delta["sourceModules"] == 1

    skipped = analyze_patterns(data_dir, now=NOW)
    assert skipped.architecture_baseline == first.architecture_baseline


def test_intervention_effectiveness_is_reported(tmp_path: Path) -> None:
    _dump(
        tmp_path / "quality-history.json",
        [
            {"editorial": {"score": 70}, "hintsApplied": ["Sharpen editorial picks"]},
            {"editorial": {"score": 78}},
        ],
    )

    report = analyze_patterns(tmp_path, now=NOW)

    stats = report.intervention_effectiveness["editorialScore"]
    assert stats.fires == 1
    assert stats.effectiveness_rate == 1.0


def test_summarize_patterns_counts_low_findings() -> None:
    drift = ArchitectureDrift(
        severity=Severity.LOW,
        metric="avgModuleLines",
        value=300,
        threshold=250,
        suggestion="Average module size is 300 lines (limit 250). Modules are trending large overall.",
    )

    assert summarize_patterns([drift]) == (
        "1 patterns detected (0 high, 0 medium, 1 low). Top priority: "
        "architecture_drift - Average module size is 300 lines (limit 250)."
    )
    assert summarize_patterns([]) == "0 patterns detected"
