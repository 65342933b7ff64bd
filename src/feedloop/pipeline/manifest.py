"""Manifest loading and structural validation.

A manifest that fails validation is rejected as a whole: the error lists
every defect found so one edit can fix them all, and nothing runs.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from feedloop.schemas import Manifest

logger = logging.getLogger(__name__)

_YAML_SUFFIXES = {".yaml", ".yml"}


class ManifestError(ValueError):
    """Raised when a manifest cannot be read or is structurally invalid."""

    def __init__(self, path: Path | str, errors: list[str]) -> None:
        self.path = Path(path)
        self.errors = list(errors)
        detail = "; ".join(self.errors) if self.errors else "unknown error"
        super().__init__(f"Invalid manifest {self.path}: {detail}")


def _describe_location(raw: Any, loc: tuple[Any, ...]) -> str:
    """Render a pydantic error location using phase/step names where known."""
    parts: list[str] = []
    node = raw
    idx = 0
    while idx < len(loc):
        key = loc[idx]
        if key in ("phases", "steps") and idx + 1 < len(loc) and isinstance(loc[idx + 1], int):
            position = loc[idx + 1]
            child = None
            if isinstance(node, dict) and isinstance(node.get(key), list):
                items = node[key]
                child = items[position] if position < len(items) else None
            label = "phase" if key == "phases" else "step"
            name = child.get("name") if isinstance(child, dict) else None
            parts.append(f"{label} {name!r}" if name else f"{label} #{position + 1}")
            node = child
            idx += 2
            continue
        parts.append(str(key))
        node = node.get(key) if isinstance(node, dict) else None
        idx += 1
    return " ".join(parts) if parts else "manifest"


def _format_validation_errors(raw: Any, exc: ValidationError) -> list[str]:
    messages: list[str] = []
    for err in exc.errors():
        where = _describe_location(raw, tuple(err.get("loc", ())))
        message = f"{where}: {err.get('msg', 'invalid value')}"
        if err.get("type") != "missing" and "input" in err and not isinstance(
            err["input"], (dict, list)
        ):
            message += f" (got {err['input']!r})"
        messages.append(message)
    return messages


def _parse_document(path: Path, text: str) -> Any:
    if path.suffix.lower() in _YAML_SUFFIXES:
        return yaml.safe_load(text)
    return json.loads(text)


def parse_manifest(raw: Any, *, source: Path | str = "<memory>") -> Manifest:
    """Validate an already-parsed manifest document."""
    try:
        return Manifest.model_validate(raw)
    except ValidationError as exc:
        raise ManifestError(source, _format_validation_errors(raw, exc)) from exc


def load_manifest(path: Path | str) -> Manifest:
    """Read, parse and validate the manifest at *path*.

    Raises:
        ManifestError: the file is missing, unparsable, or structurally invalid.
    """
    manifest_path = Path(path)
    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(manifest_path, [f"cannot read file: {exc}"]) from exc
    try:
        raw = _parse_document(manifest_path, text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ManifestError(manifest_path, [f"cannot parse file: {exc}"]) from exc

    manifest = parse_manifest(raw, source=manifest_path)
    logger.debug(
        "Loaded manifest %s: %d phases, %d steps",
        manifest_path,
        len(manifest.phases),
        manifest.step_count,
    )
    return manifest
