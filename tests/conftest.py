"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from drone_stack.config import ENV_BINDINGS, PluginConfig, load_config


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def _clean_plugin_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep settings from the runner's own environment out of the tests."""
    for _, names in ENV_BINDINGS:
        for name in names:
            monkeypatch.delenv(name, raising=False)
    for name in (
        "PLUGIN_CONFIG_FILE",
        "PLUGIN_ENV_FILE",
        "DRONE_STACK_COMMIT",
        "DRONE_STACK_BUILD_TIME",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_config(tmp_path: Path):  # type: ignore[no-untyped-def]
    """Return a factory building a :class:`PluginConfig` rooted in *tmp_path*."""

    def factory(env: dict[str, str] | None = None, **overrides: object) -> PluginConfig:
        merged: dict[str, object] = {
            "cert_dir": str(tmp_path / "certs"),
            "ssh_dir": str(tmp_path / "ssh"),
        }
        merged.update(overrides)
        return load_config(env=env or {}, overrides=merged)

    return factory
