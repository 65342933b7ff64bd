"""Pattern detectors over the loop's diagnostic history.

Each detector is a pure function: it receives the parsed input documents
(and, for the recurring-issue detector, the prior history plus ``now``)
and returns findings.  Nothing here reads or writes files.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from feedloop.file_io import iso_utc, parse_utc_iso, utc_now
from feedloop.schemas import (
    AutopilotFailurePattern,
    AutopilotLog,
    CrossLoopDependency,
    EffectivenessStats,
    HealthReport,
    HintFatigue,
    IssueCodeEntry,
    QualityDecline,
    RecurringHealthWarning,
    Severity,
    StagnantLoop,
)

HISTORY_PRUNE_DAYS = 7
HISTORY_DECAY_DAYS = 3
HISTORY_FLOOR = 5
RECURRING_MEDIUM = 5
RECURRING_HIGH = 10

QUALITY_WINDOW = 12
QUALITY_MIN_ENTRIES = 6

STAGNANT_WINDOW = 20
STAGNANT_MEDIUM = 6
STAGNANT_HIGH = 10
CLOSED_LOOP_SCORE = 1.0

HINT_WINDOW = 20
HINT_MIN_ENTRIES = 5
HINT_FATIGUE_MEDIUM = 5
HINT_FATIGUE_HIGH = 10

CROSS_LOOP_WINDOW = 12
CROSS_LOOP_MIN_ENTRIES = 4
CROSS_LOOP_MEDIUM = 2
CROSS_LOOP_HIGH = 3

AUTOPILOT_WINDOW = 10
AUTOPILOT_MIN_FAILURES = 3
AUTOPILOT_HIGH_FAILURES = 5
AUTOPILOT_MIN_RATE = 0.3

ACCUMULATING_SEVERITIES = frozenset({"warning", "error", "critical"})
FAILED_OUTCOMES = frozenset({"failed", "error"})

# (substring, metric); first match wins.
HINT_METRIC_MAP: tuple[tuple[str, str], ...] = (
    ("results note", "resultsScore"),
    ("sanity", "sanityScore"),
    ("must-watch", "mustWatchCoverage"),
    ("must watch", "mustWatchCoverage"),
    ("importance", "mustWatchCoverage"),
    ("editorial", "editorialScore"),
    ("sport diversity", "sportDiversity"),
    ("summary", "summaryCoverage"),
    ("enrichment", "enrichmentScore"),
)

# Findings name loops; their scores are read through these metrics.
LOOP_SCORE_METRICS: dict[str, str] = {
    "enrichment": "enrichmentScore",
    "results": "resultsScore",
    "editorial": "editorialScore",
}

CROSS_LOOP_PAIRS: tuple[tuple[str, str], ...] = (
    ("enrichment", "editorial"),
    ("results", "editorial"),
)

UNKNOWN_METRIC = "unknown"


# ---------------------------------------------------------------------------
# Metric extraction
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _nested(section: str, key: str) -> Callable[[Any], float | None]:
    def getter(entry: Any) -> float | None:
        block = entry.get(section) if isinstance(entry, dict) else None
        value = block.get(key) if isinstance(block, dict) else None
        return float(value) if _is_number(value) else None

    return getter


def _sanity_score(entry: Any) -> float | None:
    block = entry.get("sanity") if isinstance(entry, dict) else None
    findings = block.get("findingCount") if isinstance(block, dict) else None
    if not _is_number(findings) or findings < 0:
        return None
    return round(100 / (1 + findings), 2)


METRIC_GETTERS: dict[str, Callable[[Any], float | None]] = {
    "editorialScore": _nested("editorial", "score"),
    "mustWatchCoverage": _nested("editorial", "mustWatchCoverage"),
    "sportDiversity": _nested("editorial", "sportDiversity"),
    "enrichmentScore": _nested("enrichment", "score"),
    "summaryCoverage": _nested("enrichment", "summaryCoverage"),
    "resultsScore": _nested("results", "score"),
    "sanityScore": _sanity_score,
}


def metric_value(entry: Any, metric: str) -> float | None:
    getter = METRIC_GETTERS.get(metric)
    return getter(entry) if getter is not None else None


def hint_metric(hint: str, hint_map: Sequence[tuple[str, str]] = HINT_METRIC_MAP) -> str:
    """Return the metric a free-text hint targets, or ``"unknown"``."""
    lowered = hint.lower()
    for pattern, metric in hint_map:
        if pattern in lowered:
            return metric
    return UNKNOWN_METRIC


def _hints(entry: Any) -> list[str]:
    hints = entry.get("hintsApplied") if isinstance(entry, dict) else None
    if not isinstance(hints, list):
        return []
    return [hint for hint in hints if isinstance(hint, str) and hint]


# ---------------------------------------------------------------------------
# Recurring health warnings
# ---------------------------------------------------------------------------


def decay_issue_history(
    history: Mapping[str, IssueCodeEntry],
    now: datetime,
) -> dict[str, IssueCodeEntry]:
    """Prune long-stale entries and halve moderately stale ones.

    Applied once per analyzer run; an entry halved below the floor is
    dropped.
    """
    prune_cutoff = now - timedelta(days=HISTORY_PRUNE_DAYS)
    decay_cutoff = now - timedelta(days=HISTORY_DECAY_DAYS)
    kept: dict[str, IssueCodeEntry] = {}
    for code, entry in history.items():
        last_seen = parse_utc_iso(entry.last_seen)
        if last_seen is None or last_seen <= prune_cutoff:
            continue
        if last_seen <= decay_cutoff:
            halved = entry.count // 2
            if halved < HISTORY_FLOOR:
                continue
            entry = entry.model_copy(update={"count": halved})
        kept[code] = entry
    return kept


def detect_recurring_issues(
    health_report: HealthReport | None,
    previous_history: Mapping[str, IssueCodeEntry] | None = None,
    *,
    now: datetime | None = None,
) -> tuple[list[RecurringHealthWarning], dict[str, IssueCodeEntry]]:
    """Count warning-or-worse issue codes across runs.

    Returns the findings and the updated history to persist.
    """
    current = now or utc_now()
    stamp = iso_utc(current)
    history = decay_issue_history(previous_history or {}, current)

    for issue in health_report.issues if health_report is not None else ():
        if not issue.code:
            continue
        severity = (issue.severity or "warning").lower()
        if severity not in ACCUMULATING_SEVERITIES:
            continue
        entry = history.get(issue.code)
        if entry is None:
            entry = IssueCodeEntry(count=0, first_seen=stamp, last_seen=stamp)
        history[issue.code] = entry.model_copy(
            update={"count": entry.count + 1, "last_seen": stamp}
        )

    patterns: list[RecurringHealthWarning] = []
    for code, entry in history.items():
        if entry.count < RECURRING_MEDIUM:
            continue
        patterns.append(
            RecurringHealthWarning(
                severity=Severity.HIGH if entry.count >= RECURRING_HIGH else Severity.MEDIUM,
                issue_code=code,
                count=entry.count,
                first_seen=entry.first_seen,
                last_seen=entry.last_seen,
                suggestion=(
                    f'Health warning "{code}" has fired {entry.count} times since '
                    f"{entry.first_seen[:10]}. Investigate and fix the root cause "
                    "rather than letting it keep firing."
                ),
            )
        )
    return patterns, history


# ---------------------------------------------------------------------------
# Quality decline
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class QualityMetric:
    name: str
    label: str
    min_drop: float
    floor: float
    ratio: bool = False  # 0-1 coverage rather than a 0-100 score


QUALITY_METRICS: tuple[QualityMetric, ...] = (
    QualityMetric("editorialScore", "Editorial quality score", 15, 70),
    QualityMetric("mustWatchCoverage", "Must-watch coverage", 0.3, 0.3, ratio=True),
    QualityMetric("enrichmentScore", "Enrichment quality score", 15, 70),
    QualityMetric("resultsScore", "Results quality score", 15, 70),
)


def _average(entries: Sequence[Any], metric: str) -> float | None:
    values = [value for value in (metric_value(e, metric) for e in entries) if value is not None]
    if not values:
        return None
    return sum(values) / len(values)


def _decline_suggestion(metric: QualityMetric, early: float, late: float, drop: float) -> str:
    if metric.ratio:
        return (
            f"{metric.label} dropped from {early * 100:.0f}% to {late * 100:.0f}%. "
            "Featured content is missing high-importance events."
        )
    return (
        f"{metric.label} dropped from {round(early)} to {round(late)} "
        f"({round(drop)} point decline). Investigate recent prompt or data changes."
    )


def detect_quality_decline(
    quality_history: Sequence[Any] | None,
    metrics: Sequence[QualityMetric] = QUALITY_METRICS,
) -> list[QualityDecline]:
    """Compare early-half and late-half averages over the recent window."""
    if not quality_history or len(quality_history) < QUALITY_MIN_ENTRIES:
        return []
    recent = list(quality_history)[-QUALITY_WINDOW:]
    mid = len(recent) // 2
    first_half, second_half = recent[:mid], recent[mid:]

    patterns: list[QualityDecline] = []
    for metric in metrics:
        early = _average(first_half, metric.name)
        late = _average(second_half, metric.name)
        if early is None or late is None:
            continue
        drop = early - late
        if drop <= metric.min_drop:
            continue
        digits = 2 if metric.ratio else 0
        patterns.append(
            QualityDecline(
                severity=Severity.HIGH if late < metric.floor else Severity.MEDIUM,
                metric=metric.name,
                early_avg=round(early, digits),
                late_avg=round(late, digits),
                drop=round(drop, digits),
                suggestion=_decline_suggestion(metric, early, late, drop),
            )
        )
    return patterns


# ---------------------------------------------------------------------------
# Stagnant loops
# ---------------------------------------------------------------------------


def _loop_scores(entry: Any) -> dict[str, Any]:
    scores = entry.get("loopScores") if isinstance(entry, dict) else None
    return scores if isinstance(scores, dict) else {}


def detect_stagnant_loops(autonomy_trend: Sequence[Any] | None) -> list[StagnantLoop]:
    """Flag open loops whose score has not moved for several runs."""
    if not autonomy_trend or len(autonomy_trend) < STAGNANT_MEDIUM:
        return []
    recent = list(autonomy_trend)[-STAGNANT_WINDOW:]

    patterns: list[StagnantLoop] = []
    for loop_name, score in _loop_scores(recent[-1]).items():
        if not _is_number(score) or score >= CLOSED_LOOP_SCORE:
            continue
        streak = 0
        for entry in reversed(recent):
            if _loop_scores(entry).get(loop_name) != score:
                break
            streak += 1
        if streak < STAGNANT_MEDIUM:
            continue
        patterns.append(
            StagnantLoop(
                severity=Severity.HIGH if streak >= STAGNANT_HIGH else Severity.MEDIUM,
                loop_name=loop_name,
                score=float(score),
                stagnant_runs=streak,
                suggestion=(
                    f'Feedback loop "{loop_name}" has been stuck at {score} for {streak} '
                    "consecutive runs. It needs intervention to progress toward 1.0."
                ),
            )
        )
    return patterns


# ---------------------------------------------------------------------------
# Hints
# ---------------------------------------------------------------------------


def detect_hint_fatigue(
    quality_history: Sequence[Any] | None,
    hint_map: Sequence[tuple[str, str]] = HINT_METRIC_MAP,
) -> list[HintFatigue]:
    """Flag hints that keep firing while their target metric stays flat."""
    if not quality_history or len(quality_history) < HINT_MIN_ENTRIES:
        return []
    recent = list(quality_history)[-HINT_WINDOW:]
    fire_counts = Counter(hint for entry in recent for hint in _hints(entry))

    patterns: list[HintFatigue] = []
    for hint, fires in fire_counts.items():
        if fires < HINT_FATIGUE_MEDIUM:
            continue
        metric = hint_metric(hint, hint_map)
        first = metric_value(recent[0], metric)
        last = metric_value(recent[-1], metric)
        if first is not None and last is not None and last > first:
            continue
        patterns.append(
            HintFatigue(
                severity=Severity.HIGH if fires >= HINT_FATIGUE_HIGH else Severity.MEDIUM,
                hint_key=metric,
                fire_count=fires,
                hint_text=hint[:120],
                suggestion=(
                    f'Hint "{hint[:80]}..." has fired {fires} times without improving '
                    f"{metric}. The hint-based approach isn't working - investigate the "
                    "underlying code or data issue."
                ),
            )
        )
    return patterns


def measure_intervention_effectiveness(
    quality_history: Sequence[Any] | None,
    hint_map: Sequence[tuple[str, str]] = HINT_METRIC_MAP,
) -> dict[str, EffectivenessStats]:
    """Tally what happened to each hinted metric on the following run."""
    if not quality_history or len(quality_history) < 2:
        return {}
    recent = list(quality_history)[-HINT_WINDOW:]

    tallies: dict[str, Counter[str]] = {}
    for before, after in zip(recent, recent[1:]):
        targeted = {hint_metric(hint, hint_map) for hint in _hints(before)}
        for metric in targeted:
            old = metric_value(before, metric)
            new = metric_value(after, metric)
            if old is None or new is None or new == old:
                outcome = "unchanged"
            elif new > old:
                outcome = "improved"
            else:
                outcome = "worsened"
            tallies.setdefault(metric, Counter())[outcome] += 1

    stats: dict[str, EffectivenessStats] = {}
    for metric in sorted(tallies):
        counts = tallies[metric]
        fires = sum(counts.values())
        stats[metric] = EffectivenessStats(
            fires=fires,
            improved=counts["improved"],
            unchanged=counts["unchanged"],
            worsened=counts["worsened"],
            effectiveness_rate=round(counts["improved"] / fires, 2) if fires else 0.0,
        )
    return stats


# ---------------------------------------------------------------------------
# Cross-loop dependencies
# ---------------------------------------------------------------------------


def detect_cross_loop_dependencies(
    quality_history: Sequence[Any] | None,
    pairs: Sequence[tuple[str, str]] = CROSS_LOOP_PAIRS,
) -> list[CrossLoopDependency]:
    """Flag upstream/downstream loop pairs whose scores drop on the same run."""
    if not quality_history or len(quality_history) < CROSS_LOOP_MIN_ENTRIES:
        return []
    recent = list(quality_history)[-CROSS_LOOP_WINDOW:]

    patterns: list[CrossLoopDependency] = []
    for upstream, downstream in pairs:
        up_metric = LOOP_SCORE_METRICS.get(upstream, upstream)
        down_metric = LOOP_SCORE_METRICS.get(downstream, downstream)
        drops = 0
        for before, after in zip(recent, recent[1:]):
            values = (
                metric_value(before, up_metric),
                metric_value(after, up_metric),
                metric_value(before, down_metric),
                metric_value(after, down_metric),
            )
            if any(value is None for value in values):
                continue
            up_before, up_after, down_before, down_after = values
            if up_after < up_before and down_after < down_before:
                drops += 1
        if drops < CROSS_LOOP_MEDIUM:
            continue
        patterns.append(
            CrossLoopDependency(
                severity=Severity.HIGH if drops >= CROSS_LOOP_HIGH else Severity.MEDIUM,
                upstream=upstream,
                downstream=downstream,
                correlated_drops=drops,
                window=len(recent),
                suggestion=(
                    f"{downstream} dropped together with {upstream} {drops} times in the "
                    f"last {len(recent)} runs. Fix {upstream} first; {downstream} likely "
                    "depends on it."
                ),
            )
        )
    return patterns


# ---------------------------------------------------------------------------
# Autopilot failures
# ---------------------------------------------------------------------------


def detect_autopilot_failures(autopilot_log: AutopilotLog | None) -> list[AutopilotFailurePattern]:
    if autopilot_log is None or not autopilot_log.runs:
        return []
    recent = autopilot_log.runs[-AUTOPILOT_WINDOW:]
    failures = [run for run in recent if (run.outcome or "").lower() in FAILED_OUTCOMES]
    rate = len(failures) / len(recent)
    if len(failures) < AUTOPILOT_MIN_FAILURES or rate < AUTOPILOT_MIN_RATE:
        return []

    task_counts = Counter(run.task or "unknown" for run in failures)
    repeated = [task for task, count in task_counts.items() if count >= 2]
    if repeated:
        follow_up = f"Repeatedly failing: {', '.join(repeated)}. Mark these [BLOCKED] or investigate."
    else:
        follow_up = "Review failure logs for common causes."
    return [
        AutopilotFailurePattern(
            severity=(
                Severity.HIGH if len(failures) >= AUTOPILOT_HIGH_FAILURES else Severity.MEDIUM
            ),
            failure_count=len(failures),
            total_runs=len(recent),
            failure_rate=round(rate, 2),
            repeated_tasks=repeated,
            suggestion=(
                f"{len(failures)} of last {len(recent)} autopilot runs failed "
                f"({round(rate * 100)}%). {follow_up}"
            ),
        )
    ]
