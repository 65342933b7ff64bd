"""Quota governor - probe the shared AI budget and derive an operating tier."""

from feedloop.monitoring.autopilot import load_autopilot_runtime, resolve_autopilot_config
from feedloop.monitoring.quota_probe import check_quota, probe_quota, read_quota_status
from feedloop.monitoring.quota_tiers import (
    TIERS,
    QuotaTier,
    evaluate_tier,
    minutes_until_reset,
    parse_utilization,
)

__all__ = [
    "TIERS",
    "QuotaTier",
    "check_quota",
    "evaluate_tier",
    "load_autopilot_runtime",
    "minutes_until_reset",
    "parse_utilization",
    "probe_quota",
    "read_quota_status",
    "resolve_autopilot_config",
]
