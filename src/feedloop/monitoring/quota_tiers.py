"""Quota tier table and the pure tier decision.

Nothing here touches the network or the clock implicitly: every function
takes the inputs it needs (including ``now``) so it can be tested offline.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

from feedloop.file_io import iso_utc, parse_utc_iso, utc_now
from feedloop.schemas import QuotaSnapshot, TierEvaluation, TierInfo

FIVE_HOUR_UTILIZATION_HEADER = "anthropic-ratelimit-unified-5h-utilization"
SEVEN_DAY_UTILIZATION_HEADER = "anthropic-ratelimit-unified-7d-utilization"
FIVE_HOUR_RESET_HEADER = "anthropic-ratelimit-unified-5h-reset"
SEVEN_DAY_RESET_HEADER = "anthropic-ratelimit-unified-7d-reset"

RESET_RELAXATION_MINUTES = 60


@dataclass(frozen=True, slots=True)
class QuotaTier:
    name: str
    ceiling: float | None  # None = unbounded
    max_priority: int
    model: str | None = None

    def admits(self, utilization: float) -> bool:
        return self.ceiling is None or utilization <= self.ceiling


# Ordered most to least permissive; ceilings strictly increase.
TIERS: tuple[QuotaTier, ...] = (
    QuotaTier("green", 50.0, 3, None),
    QuotaTier("moderate", 70.0, 2, "claude-sonnet-4-6"),
    QuotaTier("high", 85.0, 1, "claude-sonnet-4-6"),
    QuotaTier("critical", None, 0, None),
)


def tiers_info() -> list[TierInfo]:
    return [
        TierInfo(
            tier=index,
            name=tier.name,
            ceiling=tier.ceiling,
            max_priority=tier.max_priority,
            model=tier.model,
        )
        for index, tier in enumerate(TIERS)
    ]


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if str(key).lower() == name:
            text = str(value or "").strip()
            return text or None
    return None


def _ratio_to_percent(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        ratio = float(value)
    except ValueError:
        return None
    if not math.isfinite(ratio):
        return None
    return round(ratio * 100, 2)


def _normalize_reset(value: str | None) -> str | None:
    """Reset headers arrive as epoch seconds or ISO text; store ISO UTC."""
    if value is None:
        return None
    try:
        epoch = float(value)
    except ValueError:
        parsed = parse_utc_iso(value)
        return iso_utc(parsed) if parsed else None
    if not math.isfinite(epoch):
        return None
    return iso_utc(datetime.fromtimestamp(epoch, tz=timezone.utc))


def parse_utilization(headers: Mapping[str, str] | None) -> QuotaSnapshot | None:
    """Extract a snapshot from provider rate-limit headers.

    Returns ``None`` when neither utilization header is present.
    """
    if not headers:
        return None
    raw_5h = _header(headers, FIVE_HOUR_UTILIZATION_HEADER)
    raw_7d = _header(headers, SEVEN_DAY_UTILIZATION_HEADER)
    if raw_5h is None and raw_7d is None:
        return None

    raw: dict[str, str] = {}
    if raw_5h is not None:
        raw["5h-utilization"] = raw_5h
    if raw_7d is not None:
        raw["7d-utilization"] = raw_7d
    return QuotaSnapshot(
        five_hour=_ratio_to_percent(raw_5h),
        seven_day=_ratio_to_percent(raw_7d),
        five_hour_reset=_normalize_reset(_header(headers, FIVE_HOUR_RESET_HEADER)),
        seven_day_reset=_normalize_reset(_header(headers, SEVEN_DAY_RESET_HEADER)),
        raw=raw,
    )


def minutes_until_reset(reset: str | None, now: datetime | None = None) -> int | None:
    """Whole minutes until *reset* (never negative), or ``None`` if unknown."""
    reset_at = parse_utc_iso(reset)
    if reset_at is None:
        return None
    current = now or utc_now()
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return max(0, round((reset_at - current).total_seconds() / 60))


def _format_percent(value: float) -> str:
    return f"{value:g}"


def evaluate_tier(snapshot: QuotaSnapshot | None, now: datetime | None = None) -> TierEvaluation:
    """Map a snapshot to a tier, relaxing one level when the binding window resets soon."""
    if snapshot is None:
        first = TIERS[0]
        return TierEvaluation(
            tier=0,
            tier_name=first.name,
            max_priority=first.max_priority,
            model=first.model,
            constrained=False,
            reason="no quota data (permissive)",
        )

    h5 = snapshot.five_hour if snapshot.five_hour is not None else 0.0
    h7d = snapshot.seven_day if snapshot.seven_day is not None else 0.0
    peak = max(h5, h7d)
    raw_tier = next(index for index, tier in enumerate(TIERS) if tier.admits(peak))

    effective = raw_tier
    reset_note: str | None = None
    if raw_tier > 0:
        if h5 > h7d:
            label, minutes = "5h", minutes_until_reset(snapshot.five_hour_reset, now)
        else:
            label, minutes = "7d", minutes_until_reset(snapshot.seven_day_reset, now)
        if minutes is not None and minutes <= RESET_RELAXATION_MINUTES:
            effective = max(0, raw_tier - 1)
            reset_note = (
                f"{label} resets in {minutes}min - tier relaxed from {raw_tier} to {effective}"
            )

    tier = TIERS[effective]
    if effective == 0:
        reason = reset_note or "ok"
    else:
        reason = f"{tier.name}: 5h {_format_percent(h5)}%, 7d {_format_percent(h7d)}%"
        if reset_note:
            reason += f" ({reset_note})"
    return TierEvaluation(
        tier=effective,
        tier_name=tier.name,
        max_priority=tier.max_priority,
        model=tier.model,
        constrained=effective > 0,
        reason=reason,
        reset_note=reset_note,
    )
