"""Routing of agent callbacks.

Each callback is one of three things: a working-status ping, a batch of
command calls to execute, or a message for the user (final or not). The
payload is untrusted: every field is type-checked before use.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from relay.events import WORKING_MESSAGE, AgentMessage, PresentationSink, ToolStatus
from relay.executor import BatchExecutor
from relay.guard import ExecutionGuard
from relay.models import CommandCall
from relay.session import SessionState

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_CAPACITY = 100
WORKING_STATUSES = ("working", "start working")


def _field(name: str) -> Callable[[dict], str]:
    def extract(payload: dict) -> str:
        value = payload.get(name)
        return value if isinstance(value, str) else ""
    extract.__name__ = f"extract_{name}"
    return extract


# Tried in order; the first non-empty string wins.
CONTENT_EXTRACTORS: list[Callable[[dict], str]] = [
    _field("message"),
    _field("content"),
    _field("response"),
    _field("text"),
]


def extract_content(payload: dict) -> str:
    for extractor in CONTENT_EXTRACTORS:
        value = extractor(payload)
        if value:
            return value
    return ""


def extract_command_calls(payload: dict) -> list[CommandCall]:
    raw = payload.get("command_calls")
    if raw is None:
        raw = payload.get("commandCalls")
    if not isinstance(raw, list):
        return []
    return [CommandCall.from_raw(item) for item in raw]


def is_final_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value == "true"
    return bool(value)


def looks_like_completion(has_command_calls: bool, content: str) -> bool:
    """Treat a turn with text and no command calls as the final answer.

    The agent does not always set ``is_final`` on its last turn. This can
    misread a narration-only intermediate turn as final.
    """
    return not has_command_calls and bool(content)


def dedup_key(payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class DedupCache:
    """Bounded FIFO set of payload keys."""

    def __init__(self, capacity: int = DEFAULT_DEDUP_CAPACITY):
        self.capacity = capacity
        self._keys: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def add(self, key: str) -> bool:
        """Record ``key``; False if it was already present."""
        if key in self._keys:
            return False
        self._keys[key] = None
        while len(self._keys) > self.capacity:
            self._keys.popitem(last=False)
        return True


class AgentResponseRouter:
    def __init__(
        self,
        executor: BatchExecutor,
        guard: ExecutionGuard,
        session: SessionState,
        sink: PresentationSink,
        dedup_capacity: int = DEFAULT_DEDUP_CAPACITY,
        on_new_session: Callable[[str, str], None] | None = None,
    ):
        self.executor = executor
        self.guard = guard
        self.session = session
        self.sink = sink
        self.dedup = DedupCache(dedup_capacity)
        self.on_new_session = on_new_session
        self._tasks: set[asyncio.Task] = set()

    def handle(self, payload: Any) -> asyncio.Task | None:
        """Accept a callback and schedule its processing.

        Returns the processing task, or None for a duplicate or unusable
        payload. Must be called from within the running event loop.
        """
        if not isinstance(payload, dict):
            logger.error("Ignoring callback that is not a JSON object: %r", type(payload).__name__)
            return None
        if not self.dedup.add(dedup_key(payload)):
            logger.info("Skipping duplicate callback")
            return None
        task = asyncio.get_running_loop().create_task(self.process(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for all scheduled processing, including follow-ups it spawns."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def process(self, payload: dict) -> None:
        try:
            await self._process(payload)
        except Exception as e:
            logger.exception("Error processing agent response")
            self.sink.emit(AgentMessage(content=f"**Error processing response:** {e}", is_final=True))

    async def _process(self, payload: dict) -> None:
        content = extract_content(payload)
        calls = extract_command_calls(payload)
        logger.info(
            "Agent response: content_length=%d, command_calls=%d, is_final=%s",
            len(content), len(calls), payload.get("is_final"),
        )

        self._sync_session(payload, content)

        if payload.get("status") in WORKING_STATUSES:
            self.sink.emit(AgentMessage(content=WORKING_MESSAGE, is_working=True))
            return

        self.guard.clear_awaiting()

        if not content and not calls:
            logger.error("No message, content, response or text in payload (keys: %s)", sorted(payload))

        final = is_final_flag(payload.get("is_final")) or looks_like_completion(bool(calls), content)

        if calls:
            if content:
                self.sink.emit(AgentMessage(content=content, is_final=False))
            try:
                await self.executor.run_and_report(content, calls)
            except Exception as e:
                logger.exception("Error executing command calls")
                self.sink.emit(AgentMessage(content=f"**Error executing tools:** {e}", is_final=True))
            return

        command_results = payload.get("command_results")
        if not content and isinstance(command_results, list) and command_results:
            self._emit_results_summary(command_results, final)
            return

        self.sink.emit(AgentMessage(content=content, is_final=final))

    def _sync_session(self, payload: dict, content: str) -> None:
        try:
            self.session.set_last_task_id(payload.get("task_id"))
            info = payload.get("session_info")
            if not isinstance(info, dict):
                info = {
                    "chat_id": payload.get("chat_id"),
                    "project_id": payload.get("project_id"),
                    "user_id": payload.get("user_id"),
                }
            chat_id, project_id = info.get("chat_id"), info.get("project_id")
            if isinstance(chat_id, str) and chat_id and isinstance(project_id, str) and project_id:
                if chat_id != self.session.chat_id:
                    logger.info("Agent switched to chat %s (project %s)", chat_id, project_id)
                    if self.on_new_session is not None:
                        self.on_new_session(chat_id, project_id)
                    else:
                        self.session.reset(chat_id, project_id)
                user_id = info.get("user_id")
                if isinstance(user_id, str) and user_id:
                    self.session.user_id = user_id
            if content.strip():
                self.session.add_message("assistant", content)
        except Exception:
            logger.exception("Error syncing session state")

    def _emit_results_summary(self, command_results: list, final: bool) -> None:
        entries = [r for r in command_results if isinstance(r, dict)]
        ok = [bool(r.get("ok")) or r.get("status") == "success" for r in entries]
        success, total = sum(ok), len(entries)
        failed = total - success
        self.sink.emit(ToolStatus(
            status="completed",
            tools=[str(r.get("command", "")) for r in entries],
            total_count=total,
            success_count=success,
            failed_count=failed,
        ))
        summary = f"**Command results received: {success}/{total} successful**"
        if failed:
            summary += f" (failed: {failed})"
        self.sink.emit(AgentMessage(content=summary, is_final=final))
