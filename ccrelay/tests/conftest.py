"""Test fixtures shared by unit/integration tests."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def policy_file(tmp_path: Path) -> Path:
    path = tmp_path / "permission_policy.yaml"
    path.write_text(
        "permission_timeouts:\n"
        "  default_seconds: 120\n"
        "  tools:\n"
        "    Bash: 600\n"
        "    Write: 0.05\n",
        encoding="utf-8",
    )
    return path
