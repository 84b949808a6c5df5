"""Global pytest configuration for hermetic test runs."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable

import pytest
import yaml


def pytest_sessionstart(session):  # noqa: ARG001
    # Prevent accidental outbound network during tests (integration/unit).
    os.environ.setdefault("GOVERNOR_DISABLE_NETWORK", "1")


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project root with one existing doc."""
    root = tmp_path / "project"
    (root / "docs").mkdir(parents=True)
    (root / "docs" / "guide.md").write_text("# Guide\nOld advice.\nEnd.\n", encoding="utf-8")
    return root


@pytest.fixture
def write_policy(project: Path) -> Callable[..., Path]:
    """Write .governor/config.yaml with the given fields."""

    def _write(**fields: object) -> Path:
        path = project / ".governor" / "config.yaml"
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {"version": 1, **fields}
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def write_proposal(project: Path) -> Callable[..., Path]:
    """Write a proposal directory holding the given patch files and manifest."""

    def _write(name: str, patches: dict[str, str], manifest: str | None = None) -> Path:
        proposal_dir = project / "proposals" / name
        proposal_dir.mkdir(parents=True, exist_ok=True)
        for filename, text in patches.items():
            (proposal_dir / filename).write_text(text, encoding="utf-8")
        if manifest is not None:
            (proposal_dir / "proposal.v1.json").write_text(manifest, encoding="utf-8")
        return proposal_dir

    return _write
