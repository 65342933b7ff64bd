"""Tests for step execution, phase semantics, and the pipeline gate."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

import feedloop.pipeline.runner as runner
from feedloop.pipeline.manifest import ManifestError
from feedloop.schemas import (
    ErrorCategory,
    Gate,
    PhaseSpec,
    PhaseStatus,
    QuotaStatus,
    StepResult,
    StepSpec,
    StepStatus,
    TierEvaluation,
)

pytestmark = pytest.mark.unit


def _step(name: str, policy: str = "continue", **extra) -> StepSpec:
    return StepSpec.model_validate(
        {"name": name, "command": f"echo {name}", "errorPolicy": policy, **extra}
    )


def _fake_execute(failing: set[str], calls: list[str], error: str = "exit code 1: boom"):
    def fake(step, **_kwargs):
        calls.append(step.name)
        if step.name in failing:
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                duration=0.01,
                error=error,
                error_category=runner.categorize_error(error),
            )
        return StepResult(name=step.name, status=StepStatus.SUCCESS, duration=0.01)

    return fake


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("timed out after 5s", ErrorCategory.TIMEOUT),
        ("exit code 1: connect ECONNREFUSED 127.0.0.1:443", ErrorCategory.NETWORK),
        ("exit code 1: TypeError: fetch failed", ErrorCategory.NETWORK),
        ("exit code 1: HTTP 401 Unauthorized", ErrorCategory.AUTH),
        ("exit code 1: schema mismatch in events", ErrorCategory.VALIDATION),
        ("exit code 1: Unexpected token < in JSON", ErrorCategory.PARSE),
        ("exit code 127: sh: foo: not found", ErrorCategory.COMMAND),
        ("something odd happened", ErrorCategory.UNKNOWN),
        ("", ErrorCategory.UNKNOWN),
        (None, ErrorCategory.UNKNOWN),
    ],
)
def test_categorize_error_buckets_by_keyword(message, expected) -> None:
    assert runner.categorize_error(message) is expected


def test_categorize_error_prefers_earlier_categories() -> None:
    # "timeout" and "network" both match; timeout is checked first.
    assert runner.categorize_error("network timeout") is ErrorCategory.TIMEOUT


def test_check_requirements_reports_missing_and_empty_vars() -> None:
    check = runner.check_requirements(["A", "B", "C"], {"A": "set", "B": ""})
    assert check.ok is False
    assert check.missing == ["B", "C"]

    assert runner.check_requirements([], {}).ok is True
    assert runner.check_requirements(None, {}).missing == []


def test_step_with_missing_requirements_is_skipped_without_running(tmp_path: Path) -> None:
    marker = tmp_path / "ran"
    step = StepSpec(
        name="fetch",
        command=f"touch {marker}",
        requires=["API_KEY", "OTHER_KEY"],
        error_policy="required",
    )

    result = runner.execute_step(step, env={"OTHER_KEY": "x"})

    assert result.status is StepStatus.SKIPPED
    assert result.reason == "missing env: API_KEY"
    assert not marker.exists()


def test_quota_gating_skips_steps_above_the_tier_ceiling() -> None:
    evaluation = TierEvaluation(tier=2, tier_name="high", max_priority=1, constrained=True)

    skipped = runner.execute_step(_step("discover", quotaPriority=3), env={}, quota=evaluation)
    assert skipped.status is StepStatus.SKIPPED
    assert skipped.reason == "quota tier 2 (high): priority 3 exceeds ceiling 1"

    assert runner.quota_skip_reason(_step("enrich", quotaPriority=1), evaluation) is None
    assert runner.quota_skip_reason(_step("build"), evaluation) is None
    assert runner.quota_skip_reason(_step("discover", quotaPriority=3), None) is None


def test_sequential_phase_aborts_on_required_failure(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(runner, "execute_step", _fake_execute({"B"}, calls))
    phase = PhaseSpec(
        name="build",
        steps=[_step("A"), _step("B", "required"), _step("C")],
    )

    result = asyncio.run(runner.run_phase(phase))

    assert result.status is PhaseStatus.FAILED
    assert result.aborted_by == "B"
    assert [step.name for step in result.steps] == ["A", "B"]
    assert result.unattempted == ["C"]
    assert calls == ["A", "B"]


def test_sequential_phase_continues_past_continue_failures(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(runner, "execute_step", _fake_execute({"A"}, calls))
    phase = PhaseSpec(name="build", steps=[_step("A"), _step("B")])

    result = asyncio.run(runner.run_phase(phase))

    assert result.status is PhaseStatus.PARTIAL
    assert result.aborted_by is None
    assert calls == ["A", "B"]


def test_parallel_phase_collects_results_when_a_step_raises(monkeypatch) -> None:
    async def fake_async(step, **_kwargs):
        if step.name == "bad":
            raise RuntimeError("connection reset by peer")
        await asyncio.sleep(0)
        return StepResult(name=step.name, status=StepStatus.SUCCESS, duration=0.0)

    monkeypatch.setattr(runner, "execute_step_async", fake_async)
    phase = PhaseSpec(name="fetch", parallel=True, steps=[_step("bad"), _step("good")])

    result = asyncio.run(runner.run_phase(phase))

    by_name = {step.name: step for step in result.steps}
    assert set(by_name) == {"bad", "good"}
    assert by_name["good"].status is StepStatus.SUCCESS
    assert by_name["bad"].status is StepStatus.FAILED
    assert by_name["bad"].error_category is ErrorCategory.NETWORK
    assert result.status is PhaseStatus.PARTIAL


def test_parallel_phase_required_failure_fails_phase_after_all_settle(monkeypatch) -> None:
    async def fake_async(step, **_kwargs):
        status = StepStatus.FAILED if step.name == "core" else StepStatus.SUCCESS
        return StepResult(name=step.name, status=status, error="exit code 2" if status is StepStatus.FAILED else None)

    monkeypatch.setattr(runner, "execute_step_async", fake_async)
    phase = PhaseSpec(
        name="fetch",
        parallel=True,
        steps=[_step("core", "required"), _step("extra")],
    )

    result = asyncio.run(runner.run_phase(phase))

    assert result.status is PhaseStatus.FAILED
    assert result.aborted_by == "core"
    assert len(result.steps) == 2
    assert result.unattempted == []


def test_run_pipeline_skips_phases_after_abort_and_fails_gate(
    monkeypatch, write_manifest, tmp_path: Path
) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        runner,
        "execute_step",
        _fake_execute({"fetch"}, calls, error="exit code 1: getaddrinfo ENOTFOUND api.example"),
    )
    manifest = write_manifest(
        [
            {"name": "first", "steps": [{"name": "fetch", "command": "x", "errorPolicy": "required"}]},
            {"name": "second", "steps": [{"name": "build", "command": "y", "errorPolicy": "continue"}]},
        ]
    )
    result_path = tmp_path / "out" / "pipeline-result.json"

    result = runner.run_pipeline(manifest, result_path=result_path)

    assert result.gate is Gate.FAIL
    assert result.phases["first"].aborted_by == "fetch"
    assert result.phases["first"].steps[0].error_category is ErrorCategory.NETWORK
    assert result.phases["second"].status is PhaseStatus.SKIPPED
    assert result.summary.failed == 1
    assert result.summary.total == 1
    assert calls == ["fetch"]

    written = json.loads(result_path.read_text(encoding="utf-8"))
    assert written["gate"] == "fail"
    assert written["phases"]["first"]["abortedBy"] == "fetch"
    assert written["phases"]["second"]["status"] == "skipped"
    assert written["summary"] == {"total": 1, "success": 0, "failed": 1, "skipped": 0}


def test_gate_step_failure_fails_gate_without_abort(monkeypatch, write_manifest) -> None:
    calls: list[str] = []
    monkeypatch.setattr(runner, "execute_step", _fake_execute({"pre-commit-gate"}, calls))
    manifest = write_manifest(
        [
            {"name": "build", "steps": [{"name": "build", "command": "x", "errorPolicy": "continue"}]},
            {
                "name": "finalize",
                "steps": [{"name": "pre-commit-gate", "command": "y", "errorPolicy": "continue"}],
            },
        ]
    )

    result = runner.run_pipeline(manifest)

    assert result.gate is Gate.FAIL
    assert all(phase.aborted_by is None for phase in result.phases.values())
    assert result.summary.success == 1


def test_run_pipeline_passes_with_continue_failures(monkeypatch, write_manifest) -> None:
    monkeypatch.setattr(runner, "execute_step", _fake_execute({"optional"}, []))
    manifest = write_manifest(
        [
            {
                "name": "build",
                "steps": [
                    {"name": "optional", "command": "x", "errorPolicy": "continue"},
                    {"name": "core", "command": "y", "errorPolicy": "required"},
                ],
            }
        ]
    )

    result = runner.run_pipeline(manifest)

    assert result.gate is Gate.PASS
    assert result.phases["build"].status is PhaseStatus.PARTIAL


def test_run_pipeline_applies_quota_status(write_manifest) -> None:
    manifest = write_manifest(
        [
            {
                "name": "ai",
                "steps": [
                    {"name": "discover", "command": "x", "quotaPriority": 3, "errorPolicy": "continue"},
                ],
            }
        ]
    )
    status = QuotaStatus(
        probed_at="2026-10-19T10:00:00Z",
        evaluation=TierEvaluation(tier=3, tier_name="critical", max_priority=0, constrained=True),
    )

    result = runner.run_pipeline(manifest, quota_status=status)

    step = result.phases["ai"].steps[0]
    assert step.status is StepStatus.SKIPPED
    assert step.reason == "quota tier 3 (critical): priority 3 exceeds ceiling 0"
    assert result.gate is Gate.PASS


def test_invalid_manifest_runs_nothing(monkeypatch, write_manifest, tmp_path: Path) -> None:
    calls: list[str] = []
    monkeypatch.setattr(runner, "execute_step", _fake_execute(set(), calls))
    manifest = write_manifest(
        [
            {
                "name": "build",
                "steps": [
                    {"name": "ok", "command": "x", "errorPolicy": "continue"},
                    {"name": "bad", "command": "y", "errorPolicy": "maybe"},
                ],
            }
        ]
    )
    result_path = tmp_path / "pipeline-result.json"

    with pytest.raises(ManifestError):
        runner.run_pipeline(manifest, result_path=result_path)

    assert calls == []
    assert not result_path.exists()
