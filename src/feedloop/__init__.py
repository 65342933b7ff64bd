"""feedloop - quota-aware pipeline runner with a self-analysis feedback loop."""

from importlib.metadata import PackageNotFoundError, version

from feedloop.schemas import PatternReport, PipelineResult, QuotaStatus

__all__ = ["PatternReport", "PipelineResult", "QuotaStatus"]

try:
    __version__ = version("feedloop")
except PackageNotFoundError:
    __version__ = "0.0.0"
