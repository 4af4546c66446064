"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import os
from collections.abc import Iterator

import pytest
from rich.console import Console

from stackbackup.logging import StructuredLogger


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip slow subprocess tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _quiet_console() -> Console:
    """Return a console that renders into memory."""
    return Console(file=io.StringIO(), width=120, color_system=None)


@pytest.fixture
def logger(tmp_path_factory: pytest.TempPathFactory) -> Iterator[StructuredLogger]:
    """Structured logger writing to its own temp directory with a silent console."""
    instance = StructuredLogger(
        tmp_path_factory.mktemp("logs"),
        console=_quiet_console(),
        err_console=_quiet_console(),
    )
    yield instance
    instance.close()
