"""Shared test configuration."""

from __future__ import annotations

import pytest

from src.workspace import WorkingContext


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow", action="store_true", default=False,
        help="Run tests that call the real Claude model",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-slow"):
        return
    skip_slow = pytest.mark.skip(reason="Calls the real model; pass --run-slow")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture
def local_context(tmp_path):
    """A working context rooted at a fresh temporary directory."""
    return WorkingContext(id="local", root=tmp_path)
