"""JSON document I/O with atomic writes and tolerant reads.

Every piece of cross-run state is a flat JSON file that other processes
may read at any moment, so writes always go through a temp file and an
atomic replace.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import tempfile
import time
from collections.abc import Mapping
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_REPLACE_ATTEMPTS = 8
_REPLACE_BACKOFF_SECONDS = 0.01


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(value: datetime) -> str:
    """Format an aware datetime as ISO-8601 UTC with a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_utc_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or ``None``."""
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _swap_into_place(staged: Path, target: Path) -> None:
    """Move *staged* over *target*, waiting out readers that briefly hold it.

    Only "access denied" is retried; Windows reports it while another
    process has the target open.  Any other error propagates at once.
    """
    delays = [_REPLACE_BACKOFF_SECONDS * step for step in range(1, _REPLACE_ATTEMPTS)]
    while True:
        try:
            os.replace(staged, target)
            return
        except OSError as exc:
            if exc.errno != errno.EACCES and not isinstance(exc, PermissionError):
                raise
            if not delays:
                raise
            logger.debug("Target %s busy, retrying replace", target)
            time.sleep(delays.pop(0))


def write_json_atomic(path: Path, payload: Mapping[str, Any] | list[Any]) -> None:
    """Serialize *payload* next to *path*, then swap it in with one replace."""
    text = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        handle.write(text)
        staged = Path(handle.name)
    try:
        _swap_into_place(staged, path)
    except OSError:
        with suppress(OSError):
            staged.unlink()
        raise


def read_json(path: Path) -> Any | None:
    """Return the parsed JSON document at *path*, or ``None``.

    Missing files are silent; unreadable or malformed files are logged
    and treated as absent.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError:
        logger.warning("Could not read %s", path, exc_info=True)
        return None
    if not raw.strip():
        logger.warning("Ignoring empty JSON file: %s", path)
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Could not parse JSON file %s: %s", path, exc)
        return None
