"""Pydantic models for every artifact the control loop reads or writes.

JSON documents on disk use camelCase keys; Python code uses snake_case
attributes.  Models accept either spelling on input and always serialize
by alias, so a document written here is readable by the out-of-process
steps that consume it.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class _Document(BaseModel):
    """Base for all persisted models (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Return a JSON-ready dict using the on-disk key spelling."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class ErrorPolicy(str, Enum):
    """How a step failure affects the rest of its phase."""

    CONTINUE = "continue"
    REQUIRED = "required"


class StepSpec(_Document):
    """A single shell command declared in the manifest."""

    name: str = Field(min_length=1)
    command: str = Field(min_length=1)
    timeout: float | None = Field(default=None, gt=0)
    requires: list[str] = Field(default_factory=list)
    quota_priority: int | None = Field(default=None, ge=1, le=3)
    error_policy: ErrorPolicy


class PhaseSpec(_Document):
    """An ordered group of steps, run sequentially or in parallel."""

    name: str = Field(min_length=1)
    description: str = ""
    parallel: bool = False
    steps: list[StepSpec]


class Manifest(_Document):
    """Declarative description of every phase the runner executes."""

    version: int | None = None
    phases: list[PhaseSpec]

    @model_validator(mode="after")
    def _unique_phase_names(self) -> Manifest:
        seen: set[str] = set()
        for phase in self.phases:
            if phase.name in seen:
                raise ValueError(f"duplicate phase name {phase.name!r}")
            seen.add(phase.name)
        return self

    @property
    def step_count(self) -> int:
        return sum(len(phase.steps) for phase in self.phases)


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class PhaseStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class Gate(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class ErrorCategory(str, Enum):
    """Diagnostic bucket for a failed step, derived from its error text."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    AUTH = "auth"
    VALIDATION = "validation"
    PARSE = "parse"
    COMMAND = "command"
    UNKNOWN = "unknown"


class StepResult(_Document):
    """Outcome of one step.  Failures are data, never exceptions."""

    name: str
    status: StepStatus
    duration: float = 0.0
    error: str | None = None
    error_category: ErrorCategory | None = None
    reason: str | None = None


class PhaseResult(_Document):
    name: str
    status: PhaseStatus
    steps: list[StepResult] = Field(default_factory=list)
    aborted_by: str | None = None
    unattempted: list[str] = Field(default_factory=list)


class PipelineSummary(_Document):
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0


class PipelineResult(_Document):
    """Structured result of a full run, overwritten on every invocation."""

    started_at: str
    completed_at: str
    duration: float
    gate: Gate
    phases: dict[str, PhaseResult] = Field(default_factory=dict)
    summary: PipelineSummary = Field(default_factory=PipelineSummary)


# ---------------------------------------------------------------------------
# Quota governor
# ---------------------------------------------------------------------------


class QuotaSnapshot(_Document):
    """Point-in-time utilization of the shared AI quota (percentages 0-100)."""

    five_hour: float | None = None
    seven_day: float | None = None
    five_hour_reset: str | None = None
    seven_day_reset: str | None = None
    raw: dict[str, str] = Field(default_factory=dict)


class TierEvaluation(_Document):
    """Tier decision derived from a snapshot."""

    tier: int = 0
    tier_name: str = "green"
    max_priority: int = 3
    model: str | None = None
    constrained: bool = False
    reason: str = ""
    reset_note: str | None = None


class TierInfo(_Document):
    tier: int
    name: str
    ceiling: float | None = None
    max_priority: int
    model: str | None = None


class QuotaStatus(_Document):
    """Persisted governor decision, read back by child-process steps."""

    probed_at: str
    quota: QuotaSnapshot | None = None
    evaluation: TierEvaluation = Field(default_factory=TierEvaluation)
    tiers: list[TierInfo] = Field(default_factory=list)


class AutopilotRuntime(_Document):
    """Effective runtime parameters for the AI-driven autopilot step."""

    model: str
    max_turns: int
    allowed_tools: str


# ---------------------------------------------------------------------------
# Pattern analyzer inputs
# ---------------------------------------------------------------------------


class HealthIssue(_Document):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    code: str | None = None
    severity: str | None = "warning"
    message: str = ""


class HealthReport(_Document):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    issues: list[HealthIssue] = Field(default_factory=list)


class AutopilotRun(_Document):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    task: str | None = None
    outcome: str | None = None


class AutopilotLog(_Document):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    runs: list[AutopilotRun] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pattern findings
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_ORDER: dict[Severity, int] = {
    Severity.HIGH: 0,
    Severity.MEDIUM: 1,
    Severity.LOW: 2,
}


class _PatternBase(_Document):
    severity: Severity
    suggestion: str


class RecurringHealthWarning(_PatternBase):
    type: Literal["recurring_health_warning"] = "recurring_health_warning"
    issue_code: str
    count: int
    first_seen: str
    last_seen: str


class QualityDecline(_PatternBase):
    type: Literal["quality_decline"] = "quality_decline"
    metric: str
    early_avg: float
    late_avg: float
    drop: float


class StagnantLoop(_PatternBase):
    type: Literal["stagnant_loop"] = "stagnant_loop"
    loop_name: str
    score: float
    stagnant_runs: int


class HintFatigue(_PatternBase):
    type: Literal["hint_fatigue"] = "hint_fatigue"
    hint_key: str
    fire_count: int
    hint_text: str


class CrossLoopDependency(_PatternBase):
    type: Literal["cross_loop_dependency"] = "cross_loop_dependency"
    upstream: str
    downstream: str
    correlated_drops: int
    window: int


class AutopilotFailurePattern(_PatternBase):
    type: Literal["autopilot_failure_pattern"] = "autopilot_failure_pattern"
    failure_count: int
    total_runs: int
    failure_rate: float
    repeated_tasks: list[str] = Field(default_factory=list)


class ArchitectureDrift(_PatternBase):
    type: Literal["architecture_drift"] = "architecture_drift"
    metric: str
    value: float
    threshold: float
    modules: list[str] = Field(default_factory=list)


Pattern = Annotated[
    Union[
        RecurringHealthWarning,
        QualityDecline,
        StagnantLoop,
        HintFatigue,
        CrossLoopDependency,
        AutopilotFailurePattern,
        ArchitectureDrift,
    ],
    Field(discriminator="type"),
]


class IssueCodeEntry(_Document):
    count: int
    first_seen: str
    last_seen: str


class EffectivenessStats(_Document):
    fires: int = 0
    improved: int = 0
    unchanged: int = 0
    worsened: int = 0
    effectiveness_rate: float = 0.0


class ArchitectureBaseline(_Document):
    """Static metrics of the source tree, persisted for drift comparison."""

    recorded_at: str
    module_counts: dict[str, int] = Field(default_factory=dict)
    total_modules: int = 0
    avg_module_lines: float = 0.0
    max_module_lines: int = 0
    test_to_source_ratio: float = 0.0
    pipeline_step_count: int | None = None
    thresholds: dict[str, float] = Field(default_factory=dict)


class PatternReport(_Document):
    generated_at: str
    patterns_detected: int = 0
    patterns: list[Pattern] = Field(default_factory=list)
    issue_code_history: dict[str, IssueCodeEntry] = Field(default_factory=dict)
    intervention_effectiveness: dict[str, EffectivenessStats] = Field(default_factory=dict)
    architecture_baseline: ArchitectureBaseline | None = None
    baseline_delta: dict[str, float] = Field(default_factory=dict)
    summary: str = ""
