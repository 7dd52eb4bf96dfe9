"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from fakes import FakeRunner, Host, build_bundle, build_host

from storectl.crypto import FernetSecretCodec
from storectl.state import InstanceStore, open_views
from storectl.templates import TemplateEngine


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return an empty fake command runner."""
    return FakeRunner()


@pytest.fixture
def templates() -> TemplateEngine:
    """Return an engine over the built-in templates only."""
    return TemplateEngine.with_overrides(None)


@pytest.fixture
def instances(tmp_path: Path) -> InstanceStore:
    """Return an instance store with both views under ``tmp_path``."""
    return InstanceStore(
        stores=open_views(tmp_path / "store"),
        codec=FernetSecretCodec(tmp_path / "secret.key"),
    )


@pytest.fixture
def host(tmp_path: Path) -> Host:
    """Return a wired stack with the deployment bundle in place."""
    stack = build_host(tmp_path)
    build_bundle(stack.config)
    return stack
