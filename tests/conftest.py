"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from unicloud.config import ENV_PREFIX


@pytest.fixture(autouse=True)
def _isolate_unicloud_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep the caller's ``UNICLOUD_*`` variables out of config resolution."""
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)
    yield


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip timing-sensitive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)
