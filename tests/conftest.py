"""Shared pytest configuration: markers, ordering, and manifest helpers."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: tests that spawn real shell subprocesses")
    config.addinivalue_line("markers", "slow: tests that wait on step deadlines")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Unit tests first, subprocess-backed integration tests next, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture
def write_manifest(tmp_path: Path) -> Callable[..., Path]:
    """Write a manifest document to tmp_path and return its path."""

    def _write(phases: list[dict[str, Any]], name: str = "pipeline-manifest.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps({"version": 1, "phases": phases}), encoding="utf-8")
        return path

    return _write
