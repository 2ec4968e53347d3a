from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def normalize_args(args: Any) -> list[Any]:
    """Coerce whatever the agent sent as ``args`` into a list.

    ``None`` becomes ``[]``, a scalar becomes a one-element list and a
    mapping is JSON-encoded into a single argument.
    """
    if args is None:
        return []
    if isinstance(args, (list, tuple)):
        return list(args)
    if isinstance(args, dict):
        return [json.dumps(args)]
    return [args]


class CommandCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: str = ""
    args: list[Any] = Field(default_factory=list)
    opts: dict[str, Any] | None = None
    id: str | None = None

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, value: Any) -> list[Any]:
        return normalize_args(value)

    @field_validator("command", mode="before")
    @classmethod
    def _coerce_command(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value)

    @classmethod
    def from_raw(cls, raw: Any) -> CommandCall:
        """Build a call from an untrusted payload entry."""
        if isinstance(raw, CommandCall):
            return raw
        if not isinstance(raw, dict):
            return cls(command="", args=[raw])
        opts = raw.get("opts")
        return cls(
            command=raw.get("command"),
            args=raw.get("args"),
            opts=opts if isinstance(opts, dict) else None,
            id=raw.get("id"),
        )


class CommandOutcome(BaseModel):
    ok: bool
    output: str | None = None
    error: str | None = None
    elapsed_ms: int = Field(default=0, validation_alias=AliasChoices("elapsed_ms", "elapsedMs"))


class ToolResult(BaseModel):
    command: str
    ok: bool
    output: str | None = None
    error: str | None = None
    args: list[Any] = Field(default_factory=list)
    elapsed_ms: int = 0
    id: str | None = None
    cancelled: bool = False

    @classmethod
    def cancelled_for(cls, call: CommandCall) -> ToolResult:
        return cls(
            command=call.command,
            ok=False,
            error="cancelled",
            args=list(call.args),
            id=call.id,
            cancelled=True,
        )


class ExecutionBatch(BaseModel):
    batch_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    content: str = ""
    calls: list[CommandCall] = Field(default_factory=list)
    results: list[ToolResult] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed_count(self) -> int:
        return len(self.results) - self.success_count

    @property
    def interrupted(self) -> bool:
        """True when at least one call was skipped by a cancel."""
        return any(r.cancelled for r in self.results)


class FileBackupEntry(BaseModel):
    resolved_path: str
    original_content: str
    captured_at: datetime


class WireCommandResult(BaseModel):
    command: str
    status: str
    output: str | None = None
    args: list[Any] = Field(default_factory=list)
    elapsed_ms: int = 0
    id: str | None = None

    @classmethod
    def from_result(cls, result: ToolResult) -> WireCommandResult:
        return cls(
            command=result.command,
            status="success" if result.ok else "error",
            output=result.output if result.ok else result.error,
            args=result.args,
            elapsed_ms=result.elapsed_ms,
            id=result.id,
        )


class UserMessage(BaseModel):
    message: str
    model: str | None = None
    project_id: str = ""
    chat_id: str = ""
    user_id: str = ""


class ResultReport(UserMessage):
    command_results: list[WireCommandResult]


class CancelRequest(BaseModel):
    task_id: str | None = None
    chat_id: str | None = None


class CancelResponse(BaseModel):
    status: str
    cancelled: bool = False
    task_id: str | None = None
    chat_id: str | None = None


class HealthResponse(BaseModel):
    status: str
    timestamp: str
