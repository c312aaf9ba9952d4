"""Permission request lifetime policy loaded from an optional YAML file."""

from __future__ import annotations

from pathlib import Path

import yaml

from ccrelay.infra.observability.logger import get_logger

logger = get_logger(__name__)


class PermissionTimeoutPolicy:
    """Resolve how long a permission prompt may stay open before it is cancelled.

    File shape::

        permission_timeouts:
          default_seconds: 300
          tools:
            Bash: 600
            Write: 120
    """

    def __init__(self, *, default_timeout_seconds: float, policy_file: Path | None = None) -> None:
        self._default = max(0.01, float(default_timeout_seconds))
        self._overrides: dict[str, float] = {}
        if policy_file is not None:
            self._default, self._overrides = self._load(policy_file, self._default)

    @property
    def default_timeout_seconds(self) -> float:
        return self._default

    def timeout_for(self, tool_name: str) -> float:
        return self._overrides.get(tool_name, self._default)

    def _load(self, policy_file: Path, default: float) -> tuple[float, dict[str, float]]:
        if not policy_file.exists():
            return default, {}
        try:
            raw = yaml.safe_load(policy_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            logger.warning("relay.permissions.policy_invalid path=%s error=%s", policy_file, exc)
            return default, {}
        section = raw.get("permission_timeouts") if isinstance(raw, dict) else None
        if not isinstance(section, dict):
            return default, {}
        resolved_default = default
        if isinstance(section.get("default_seconds"), (int, float)) and section["default_seconds"] > 0:
            resolved_default = float(section["default_seconds"])
        tools = section.get("tools")
        overrides: dict[str, float] = {}
        if isinstance(tools, dict):
            for name, seconds in tools.items():
                if not isinstance(name, str) or not isinstance(seconds, (int, float)) or seconds <= 0:
                    continue
                overrides[name] = float(seconds)
        logger.info(
            "relay.permissions.policy_loaded path=%s default=%s overrides=%s",
            policy_file,
            resolved_default,
            len(overrides),
        )
        return resolved_default, overrides
