"""Outbound notifications for whatever renders the conversation.

The engine never talks to a UI directly. It posts events to a
:class:`PresentationSink`; delivery is fire-and-forget, so a sink that
raises is logged and otherwise ignored.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AgentMessage(BaseModel):
    type: Literal["agent_message"] = "agent_message"
    content: str
    is_final: bool = False
    is_working: bool = False


class ToolStatus(BaseModel):
    type: Literal["tool_status"] = "tool_status"
    status: Literal["starting", "working", "completed", "cancelled"]
    tools: list[str] = Field(default_factory=list)
    current_index: int | None = None
    total_count: int = 0
    success_count: int | None = None
    failed_count: int | None = None
    results: list[dict[str, Any]] | None = None


class FilesModified(BaseModel):
    type: Literal["files_modified"] = "files_modified"
    paths: list[str]


class WaitingStopped(BaseModel):
    type: Literal["waiting_stopped"] = "waiting_stopped"
    reason: str = ""


PresentationEvent = Union[AgentMessage, ToolStatus, FilesModified, WaitingStopped]

WORKING_MESSAGE = (
    "**The agent is working on your request...**\n\n"
    "Please wait while it processes your message."
)


class PresentationSink(ABC):
    @abstractmethod
    def post(self, event: PresentationEvent) -> None:
        ...

    def emit(self, event: PresentationEvent) -> None:
        """Post ``event`` without letting a sink failure reach the caller."""
        try:
            self.post(event)
        except Exception:
            logger.exception("Presentation sink failed on %s event", event.type)


class LoggingSink(PresentationSink):
    """Default sink for headless runs: every event becomes a log line."""

    def post(self, event: PresentationEvent) -> None:
        if isinstance(event, AgentMessage):
            logger.info("[agent%s] %s", " final" if event.is_final else "", event.content)
        elif isinstance(event, ToolStatus):
            if event.status == "working":
                logger.info("[tools] %d/%d %s", event.current_index or 0, event.total_count, ", ".join(event.tools))
            else:
                logger.info("[tools] %s (%d tools)", event.status, event.total_count)
        elif isinstance(event, FilesModified):
            logger.info("[files] modified: %s", ", ".join(event.paths))
        elif isinstance(event, WaitingStopped):
            logger.info("[wait] stopped waiting for agent: %s", event.reason)


class QueueSink(PresentationSink):
    """Sink backed by an :class:`asyncio.Queue` for a streaming consumer."""

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue[PresentationEvent] = asyncio.Queue(maxsize=maxsize)

    def post(self, event: PresentationEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Presentation queue full, dropping %s event", event.type)
