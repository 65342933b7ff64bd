"""Tests for the pure quota tier logic."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from feedloop.file_io import iso_utc
from feedloop.monitoring.quota_tiers import (
    TIERS,
    evaluate_tier,
    minutes_until_reset,
    parse_utilization,
    tiers_info,
)
from feedloop.schemas import QuotaSnapshot

pytestmark = pytest.mark.unit

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _in(minutes: float) -> str:
    return iso_utc(NOW + timedelta(minutes=minutes))


def test_tier_table_is_strictly_monotonic() -> None:
    ceilings = [tier.ceiling for tier in TIERS[:-1]]
    assert ceilings == sorted(ceilings)
    assert len(set(ceilings)) == len(ceilings)
    assert TIERS[-1].ceiling is None
    priorities = [tier.max_priority for tier in TIERS]
    assert priorities == sorted(priorities, reverse=True)
    assert len(set(priorities)) == len(priorities)


def test_tier_is_non_decreasing_in_peak_utilization() -> None:
    previous = 0
    for step in range(0, 201):
        value = step / 2
        evaluation = evaluate_tier(QuotaSnapshot(five_hour=value, seven_day=value / 3), NOW)
        assert evaluation.tier >= previous
        previous = evaluation.tier
    assert previous == 3


@pytest.mark.parametrize(
    ("five_hour", "seven_day", "tier", "name"),
    [
        (50, 10, 0, "green"),
        (50.01, 10, 1, "moderate"),
        (10, 70, 1, "moderate"),
        (70.5, 0, 2, "high"),
        (85, 85, 2, "high"),
        (85.1, 0, 3, "critical"),
        (None, 99, 3, "critical"),
    ],
)
def test_tier_boundaries_use_the_higher_window(five_hour, seven_day, tier, name) -> None:
    evaluation = evaluate_tier(QuotaSnapshot(five_hour=five_hour, seven_day=seven_day), NOW)
    assert evaluation.tier == tier
    assert evaluation.tier_name == name
    assert evaluation.constrained is (tier > 0)
    assert evaluation.max_priority == TIERS[tier].max_priority
    assert evaluation.model == TIERS[tier].model
    assert evaluation.reset_note is None


def test_no_snapshot_is_permissive() -> None:
    evaluation = evaluate_tier(None, NOW)
    assert evaluation.tier == 0
    assert evaluation.max_priority == 3
    assert evaluation.constrained is False
    assert evaluation.reason == "no quota data (permissive)"


def test_reason_reports_both_windows() -> None:
    evaluation = evaluate_tier(QuotaSnapshot(five_hour=65, seven_day=10), NOW)
    assert evaluation.reason == "moderate: 5h 65%, 7d 10%"

    evaluation = evaluate_tier(QuotaSnapshot(five_hour=75, seven_day=10), NOW)
    assert evaluation.tier == 2
    assert evaluation.reason == "high: 5h 75%, 7d 10%"

    assert evaluate_tier(QuotaSnapshot(five_hour=10, seven_day=10), NOW).reason == "ok"


def test_five_hour_reset_relaxes_one_tier() -> None:
    snapshot = QuotaSnapshot(five_hour=90, seven_day=20, five_hour_reset=_in(10))

    evaluation = evaluate_tier(snapshot, NOW)

    assert evaluation.tier == 2
    assert evaluation.tier_name == "high"
    assert evaluation.reset_note == "5h resets in 10min - tier relaxed from 3 to 2"
    assert evaluation.reason == "high: 5h 90%, 7d 20% (5h resets in 10min - tier relaxed from 3 to 2)"


def test_relaxation_to_green_uses_note_as_reason() -> None:
    snapshot = QuotaSnapshot(five_hour=60, seven_day=5, five_hour_reset=_in(60))

    evaluation = evaluate_tier(snapshot, NOW)

    assert evaluation.tier == 0
    assert evaluation.constrained is False
    assert evaluation.reason == evaluation.reset_note
    assert evaluation.reset_note.startswith("5h resets in 60min")


def test_relaxation_only_follows_the_binding_window() -> None:
    # 7d is binding; a near 5h reset must not relax.
    snapshot = QuotaSnapshot(
        five_hour=40, seven_day=65, five_hour_reset=_in(5), seven_day_reset=_in(3000)
    )
    evaluation = evaluate_tier(snapshot, NOW)
    assert evaluation.tier == 1
    assert evaluation.reset_note is None

    snapshot = QuotaSnapshot(five_hour=40, seven_day=65, seven_day_reset=_in(30))
    evaluation = evaluate_tier(snapshot, NOW)
    assert evaluation.tier == 0
    assert evaluation.reset_note.startswith("7d resets in 30min")


def test_equal_windows_treat_seven_day_as_binding() -> None:
    snapshot = QuotaSnapshot(
        five_hour=72, seven_day=72, five_hour_reset=_in(5), seven_day_reset=_in(600)
    )
    assert evaluate_tier(snapshot, NOW).tier == 2


def test_distant_reset_does_not_relax() -> None:
    snapshot = QuotaSnapshot(five_hour=95, seven_day=0, five_hour_reset=_in(61))
    evaluation = evaluate_tier(snapshot, NOW)
    assert evaluation.tier == 3
    assert evaluation.reset_note is None


def test_relaxation_is_recomputed_per_call() -> None:
    snapshot = QuotaSnapshot(five_hour=80, seven_day=0, five_hour_reset=_in(20))
    first = evaluate_tier(snapshot, NOW)
    second = evaluate_tier(snapshot, NOW)
    assert first == second
    assert first.tier == 1


def test_minutes_until_reset() -> None:
    assert minutes_until_reset(_in(30), NOW) == 30
    assert minutes_until_reset(_in(-30), NOW) == 0
    assert minutes_until_reset(None, NOW) is None
    assert minutes_until_reset("not a timestamp", NOW) is None


def test_parse_utilization_converts_ratios_and_resets() -> None:
    snapshot = parse_utilization(
        {
            "Anthropic-Ratelimit-Unified-5h-Utilization": "0.123456",
            "anthropic-ratelimit-unified-7d-utilization": "0.42",
            "anthropic-ratelimit-unified-5h-reset": "1767225600",
            "anthropic-ratelimit-unified-7d-reset": "2026-01-02T00:00:00+00:00",
        }
    )

    assert snapshot is not None
    assert snapshot.five_hour == 12.35
    assert snapshot.seven_day == 42.0
    assert snapshot.five_hour_reset == "2026-01-01T00:00:00Z"
    assert snapshot.seven_day_reset == "2026-01-02T00:00:00Z"
    assert snapshot.raw == {"5h-utilization": "0.123456", "7d-utilization": "0.42"}


def test_parse_utilization_without_headers_is_no_data() -> None:
    assert parse_utilization({}) is None
    assert parse_utilization(None) is None
    assert parse_utilization({"content-type": "application/json"}) is None

    partial = parse_utilization({"anthropic-ratelimit-unified-7d-utilization": "0.5"})
    assert partial.five_hour is None
    assert partial.seven_day == 50.0


def test_tiers_info_lists_every_tier() -> None:
    info = tiers_info()
    assert [row.name for row in info] == ["green", "moderate", "high", "critical"]
    assert info[-1].ceiling is None
