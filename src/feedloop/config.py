"""Project paths and runtime settings.

Paths are resolved relative to a project root (``FEEDLOOP_ROOT`` or the
current directory).  Numeric settings come from the environment and fall
back to defaults when unset or malformed.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Well-known file names
# ---------------------------------------------------------------------------

MANIFEST_FILE = "pipeline-manifest.json"
AUTOPILOT_CONFIG_FILE = "autopilot-config.json"
PIPELINE_RESULT_FILE = "pipeline-result.json"
QUOTA_STATUS_FILE = ".quota-status.json"
PATTERN_REPORT_FILE = "pattern-report.json"
HEALTH_REPORT_FILE = "health-report.json"
QUALITY_HISTORY_FILE = "quality-history.json"
AUTONOMY_TREND_FILE = "autonomy-trend.json"
AUTOPILOT_LOG_FILE = "autopilot-log.json"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_STEP_TIMEOUT_SECONDS = 300.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 10.0
DEFAULT_GATE_STEP = "pre-commit-gate"

_STEP_TIMEOUT_BOUNDS = (1.0, 6 * 3600.0)
_PROBE_TIMEOUT_BOUNDS = (1.0, 60.0)


def load_dotenv_files() -> None:
    """Load .env from cwd, its parent, or the package checkout root."""
    # src/feedloop/config.py -> checkout root
    package_root = Path(__file__).resolve().parent.parent.parent
    for dir_ in (Path.cwd(), Path.cwd().parent, package_root):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _float_env(
    env: Mapping[str, str],
    name: str,
    default: float,
    bounds: tuple[float, float],
) -> float:
    raw = str(env.get(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, raw, default)
        return default
    low, high = bounds
    return max(low, min(high, value))


class Settings(BaseModel):
    """Resolved locations and limits for one invocation."""

    root: Path
    data_dir: Path
    manifest_path: Path
    autopilot_config_path: Path
    step_timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    gate_step: str = DEFAULT_GATE_STEP
    source_root: Path | None = Field(default=None)

    @property
    def result_path(self) -> Path:
        return self.data_dir / PIPELINE_RESULT_FILE

    @property
    def quota_status_path(self) -> Path:
        return self.data_dir / QUOTA_STATUS_FILE

    @property
    def pattern_report_path(self) -> Path:
        return self.data_dir / PATTERN_REPORT_FILE

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        *,
        root: Path | str | None = None,
    ) -> Settings:
        """Build settings from environment variables (``os.environ`` by default)."""
        env = os.environ if env is None else env
        root_path = Path(root or env.get("FEEDLOOP_ROOT") or Path.cwd()).expanduser().resolve()

        data_dir_raw = str(env.get("FEEDLOOP_DATA_DIR", "") or "").strip()
        data_dir = Path(data_dir_raw).expanduser() if data_dir_raw else root_path / "docs" / "data"
        if not data_dir.is_absolute():
            data_dir = root_path / data_dir

        manifest_raw = str(env.get("FEEDLOOP_MANIFEST", "") or "").strip()
        manifest_path = (
            Path(manifest_raw).expanduser() if manifest_raw else root_path / "scripts" / MANIFEST_FILE
        )
        if not manifest_path.is_absolute():
            manifest_path = root_path / manifest_path

        gate_step = str(env.get("FEEDLOOP_GATE_STEP", "") or "").strip() or DEFAULT_GATE_STEP

        return cls(
            root=root_path,
            data_dir=data_dir,
            manifest_path=manifest_path,
            autopilot_config_path=root_path / "scripts" / AUTOPILOT_CONFIG_FILE,
            step_timeout=_float_env(
                env, "FEEDLOOP_STEP_TIMEOUT", DEFAULT_STEP_TIMEOUT_SECONDS, _STEP_TIMEOUT_BOUNDS
            ),
            probe_timeout=_float_env(
                env, "FEEDLOOP_PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT_SECONDS, _PROBE_TIMEOUT_BOUNDS
            ),
            gate_step=gate_step,
            source_root=root_path,
        )
