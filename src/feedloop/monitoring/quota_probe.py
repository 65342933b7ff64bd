"""Probe the shared AI quota and persist the tier decision.

The probe is a one-token Haiku request whose only purpose is the
``anthropic-ratelimit-unified-*`` response headers.  Any failure (missing
credentials, network error, non-2xx status) degrades to "no data", which
:func:`~feedloop.monitoring.quota_tiers.evaluate_tier` maps to tier 0.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

import anthropic
from pydantic import ValidationError

from feedloop.config import DEFAULT_PROBE_TIMEOUT_SECONDS
from feedloop.file_io import iso_utc, read_json, utc_now, write_json_atomic
from feedloop.monitoring.quota_tiers import evaluate_tier, parse_utilization, tiers_info
from feedloop.schemas import QuotaSnapshot, QuotaStatus

logger = logging.getLogger(__name__)

PROBE_MODEL = "claude-haiku-4-5-20251001"
OAUTH_BETA_HEADER = "oauth-2025-04-20"

QuotaProbe = Callable[[], "QuotaSnapshot | None"]


def _build_client(env: Mapping[str, str], timeout: float) -> Any | None:
    token = str(env.get("CLAUDE_CODE_OAUTH_TOKEN", "") or "").strip()
    api_key = str(env.get("ANTHROPIC_API_KEY", "") or "").strip()
    if token:
        return anthropic.Anthropic(auth_token=token, timeout=timeout, max_retries=0)
    if api_key:
        return anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=0)
    return None


def probe_quota(
    *,
    client: Any | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> QuotaSnapshot | None:
    """Make the minimal paid call and parse utilization from its headers."""
    if client is None:
        client = _build_client(os.environ if env is None else env, timeout)
    if client is None:
        logger.info("Quota probe: no credentials available")
        return None

    try:
        response = client.messages.with_raw_response.create(
            model=PROBE_MODEL,
            max_tokens=1,
            messages=[{"role": "user", "content": "."}],
            extra_headers={"anthropic-beta": OAUTH_BETA_HEADER},
        )
    except anthropic.APIStatusError as exc:
        logger.warning("Quota probe: API returned %s: %s", exc.status_code, str(exc)[:200])
        return None
    except anthropic.APITimeoutError:
        logger.warning("Quota probe: request timed out after %ss", timeout)
        return None
    except anthropic.APIError as exc:
        logger.warning("Quota probe: %s", exc)
        return None

    status_code = int(getattr(response, "status_code", 200) or 200)
    if not 200 <= status_code < 300:
        logger.warning("Quota probe: API returned %s", status_code)
        return None
    return parse_utilization(dict(response.headers))


def _describe(status: QuotaStatus) -> str:
    evaluation = status.evaluation
    if status.quota is None:
        return f"Quota probe: {evaluation.reason}"
    h5 = status.quota.five_hour
    h7d = status.quota.seven_day
    parts = [
        f"5h: {h5:g}%" if h5 is not None else "5h: n/a",
        f"7d: {h7d:g}%" if h7d is not None else "7d: n/a",
    ]
    label = f"tier {evaluation.tier} ({evaluation.tier_name})"
    model_note = f", model -> {evaluation.model}" if evaluation.model else ""
    return f"Quota probe: {', '.join(parts)} -> {label}{model_note}"


def check_quota(
    status_path: Path | None,
    *,
    probe: QuotaProbe | None = None,
    now: datetime | None = None,
    timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> QuotaStatus:
    """Probe, evaluate, and persist the decision for child-process steps.

    A failed write is logged and otherwise ignored; the returned status is
    still valid for the current process.
    """
    current = now or utc_now()
    snapshot = probe() if probe is not None else probe_quota(timeout=timeout)
    status = QuotaStatus(
        probed_at=iso_utc(current),
        quota=snapshot,
        evaluation=evaluate_tier(snapshot, current),
        tiers=tiers_info(),
    )
    if status_path is not None:
        try:
            write_json_atomic(status_path, status.to_json_dict())
        except OSError:
            logger.warning("Could not write quota status to %s", status_path, exc_info=True)
    logger.info(_describe(status))
    return status


def read_quota_status(path: Path) -> QuotaStatus | None:
    """Load the last persisted decision, or ``None`` if absent or malformed."""
    payload = read_json(path)
    if not isinstance(payload, dict):
        return None
    try:
        return QuotaStatus.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Ignoring malformed quota status %s: %s", path, exc.error_count())
        return None
