"""Protocol layer: NDJSON frames exchanged with the single upstream agent process."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class _Frame(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class McpServerFrame(_Frame):
    name: str
    status: str = "unknown"


class SystemFrame(_Frame):
    type: Literal["system"]
    subtype: str
    session_id: str = ""
    model: str = ""
    cwd: str = ""
    tools: list[str] = Field(default_factory=list)
    permission_mode: str = Field(default="default", alias="permissionMode")
    claude_code_version: str = ""
    mcp_servers: list[McpServerFrame] = Field(default_factory=list)
    status: Literal["compacting", "running", "idle"] | None = None


class AssistantBody(_Frame):
    id: str = ""
    role: Literal["assistant"] = "assistant"
    model: str = ""
    content: list[dict[str, Any]] = Field(default_factory=list)
    stop_reason: str | None = None
    usage: dict[str, Any] = Field(default_factory=dict)


class AssistantFrame(_Frame):
    type: Literal["assistant"]
    message: AssistantBody
    parent_tool_use_id: str | None = None


class UserBody(_Frame):
    role: Literal["user"] = "user"
    content: str | list[dict[str, Any]] = ""


class UserFrame(_Frame):
    type: Literal["user"]
    message: UserBody
    parent_tool_use_id: str | None = None


class ResultFrame(_Frame):
    type: Literal["result"]
    subtype: str = "success"
    is_error: bool = False
    result: str | None = None
    errors: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0
    duration_api_ms: float = 0.0
    num_turns: int = 0
    total_cost_usd: float = 0.0
    session_id: str = ""


class StreamEventBody(_Frame):
    type: str
    index: int | None = None
    content_block: dict[str, Any] | None = None
    delta: dict[str, Any] | None = None
    message: dict[str, Any] | None = None
    usage: dict[str, Any] | None = None


class StreamEventFrame(_Frame):
    """Incremental streaming fragment; folded by the reassembler, never sequenced directly."""

    type: Literal["stream_event"]
    event: StreamEventBody
    parent_tool_use_id: str | None = None


class CanUseToolBody(_Frame):
    subtype: str
    tool_name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    description: str | None = None
    tool_use_id: str = ""
    agent_id: str | None = None


class ControlRequestFrame(_Frame):
    type: Literal["control_request"]
    request_id: str
    request: CanUseToolBody


class ControlCancelRequestFrame(_Frame):
    type: Literal["control_cancel_request"]
    request_id: str


class ToolProgressFrame(_Frame):
    type: Literal["tool_progress"]
    tool_use_id: str
    tool_name: str
    elapsed_time_seconds: float = 0.0


class ToolUseSummaryFrame(_Frame):
    type: Literal["tool_use_summary"]
    summary: str
    tool_use_ids: list[str] = Field(default_factory=list)


class KeepAliveFrame(_Frame):
    type: Literal["keep_alive"]
