"""Unit tests for the YAML permission lifetime policy."""

from __future__ import annotations

from pathlib import Path

from ccrelay.relay.permissions.policy import PermissionTimeoutPolicy


def test_policy_file_overrides_default_and_tools(policy_file: Path) -> None:
    policy = PermissionTimeoutPolicy(default_timeout_seconds=300, policy_file=policy_file)

    assert policy.default_timeout_seconds == 120
    assert policy.timeout_for("Bash") == 600
    assert policy.timeout_for("Write") == 0.05
    assert policy.timeout_for("Read") == 120


def test_missing_file_keeps_default(tmp_path: Path) -> None:
    policy = PermissionTimeoutPolicy(default_timeout_seconds=90, policy_file=tmp_path / "absent.yaml")

    assert policy.timeout_for("Bash") == 90


def test_invalid_yaml_and_bad_values_are_ignored(tmp_path: Path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("permission_timeouts: [unclosed\n", encoding="utf-8")
    assert PermissionTimeoutPolicy(default_timeout_seconds=30, policy_file=broken).timeout_for("Bash") == 30

    odd = tmp_path / "odd.yaml"
    odd.write_text(
        "permission_timeouts:\n  default_seconds: -5\n  tools:\n    Bash: nope\n    Edit: 45\n",
        encoding="utf-8",
    )
    policy = PermissionTimeoutPolicy(default_timeout_seconds=30, policy_file=odd)
    assert policy.default_timeout_seconds == 30
    assert policy.timeout_for("Bash") == 30
    assert policy.timeout_for("Edit") == 45
