"""Resolve the autopilot's runtime parameters from its config and the quota tier.

The config file holds the autopilot's own preferences (it may edit them);
the quota status holds the governor's constraints.  Constraints win.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from feedloop.file_io import read_json
from feedloop.schemas import AutopilotRuntime

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-opus-4-6"
DEFAULT_MAX_TURNS = 300
DEFAULT_ALLOWED_TOOLS = (
    "Read,Write,Edit,Glob,Grep,"
    "Bash(npm:*),Bash(node:*),Bash(git:*),Bash(gh:*),Bash(date:*),Bash(jq:*)"
)
VALID_MODELS: tuple[str, ...] = (
    "claude-opus-4-6",
    "claude-sonnet-4-6",
    "claude-haiku-4-5-20251001",
)
MAX_TURNS_CAP = 1000


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def resolve_autopilot_config(config: Any, quota_status: Any) -> AutopilotRuntime:
    """Merge preferences with the current tier.

    Both arguments are raw JSON payloads and may be ``None`` or malformed;
    anything unusable falls back to the defaults.
    """
    cfg = config if isinstance(config, dict) else {}
    quota = quota_status if isinstance(quota_status, dict) else {}
    evaluation = quota.get("evaluation") if isinstance(quota.get("evaluation"), dict) else {}

    tier_model = evaluation.get("model")
    config_model = cfg.get("model")
    if isinstance(tier_model, str) and tier_model in VALID_MODELS:
        model = tier_model
    elif isinstance(config_model, str) and config_model in VALID_MODELS:
        model = config_model
    else:
        if isinstance(config_model, str) and config_model:
            logger.debug("Ignoring unknown autopilot model %r", config_model)
        model = DEFAULT_MODEL

    tier = evaluation.get("tier")
    tier = int(tier) if _is_number(tier) else 0
    per_tier = cfg.get("maxTurnsPerTier")
    configured = cfg.get("maxTurns")
    if isinstance(per_tier, list) and 0 <= tier < len(per_tier) and _is_number(per_tier[tier]):
        max_turns = int(per_tier[tier])
    elif _is_number(configured) and configured > 0:
        max_turns = int(configured)
    else:
        max_turns = DEFAULT_MAX_TURNS
    max_turns = max(0, min(max_turns, MAX_TURNS_CAP))

    tools = cfg.get("allowedTools")
    allowed_tools = tools if isinstance(tools, str) and tools else DEFAULT_ALLOWED_TOOLS

    return AutopilotRuntime(model=model, max_turns=max_turns, allowed_tools=allowed_tools)


def load_autopilot_runtime(config_path: Path, quota_status_path: Path) -> AutopilotRuntime:
    """Read both files (tolerating absence) and resolve."""
    config = read_json(config_path)
    quota_status = read_json(quota_status_path)
    if config is None:
        logger.warning("Could not read %s, using defaults", config_path.name)
    if quota_status is None:
        logger.warning("Could not read %s, assuming tier 0", quota_status_path.name)
    runtime = resolve_autopilot_config(config, quota_status)
    logger.info("Autopilot runtime: model=%s max_turns=%d", runtime.model, runtime.max_turns)
    return runtime


def format_runtime_lines(runtime: AutopilotRuntime) -> list[str]:
    """Render ``key=value`` lines for a CI step-output file."""
    return [
        f"model={runtime.model}",
        f"max_turns={runtime.max_turns}",
        f"allowed_tools={runtime.allowed_tools}",
    ]
