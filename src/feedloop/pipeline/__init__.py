"""Pipeline runner - executes the phases declared in the pipeline manifest.

Modules:
    manifest  - load and validate the manifest (JSON or YAML)
    runner    - run phases and steps, compute the gate, write the result
"""

from feedloop.pipeline.manifest import ManifestError, load_manifest, parse_manifest
from feedloop.pipeline.runner import (
    RequirementCheck,
    categorize_error,
    check_requirements,
    execute_step,
    execute_step_async,
    run_phase,
    run_pipeline,
)

__all__ = [
    "ManifestError",
    "RequirementCheck",
    "categorize_error",
    "check_requirements",
    "execute_step",
    "execute_step_async",
    "load_manifest",
    "parse_manifest",
    "run_phase",
    "run_pipeline",
]
