"""Sequential execution of one agent-issued command batch.

Calls run strictly in issue order: the agent reasons over results in
that order and file commands may depend on each other. A failing
command becomes a failed result and never stops its siblings.
"""
from __future__ import annotations

import logging
import time

from relay.connectors.base import CommandCatalog
from relay.events import FilesModified, PresentationSink, ToolStatus
from relay.guard import ExecutionGuard
from relay.logging_config import batch_context
from relay.models import CommandCall, CommandOutcome, ExecutionBatch, ToolResult
from relay.reporter import ResultReporter
from relay.snapshots import FileSnapshotStore

logger = logging.getLogger(__name__)

MAX_AUTO_OPEN = 5
SEARCH_LABEL_LEN = 15


def tool_label(call: CommandCall) -> str:
    """Short human-readable label for progress display."""
    first = call.args[0] if call.args else None
    if call.command == "read":
        name = str(first).replace("\\", "/").rsplit("/", 1)[-1] if first else "file"
        return f"Reading {name}"
    if call.command in ("searchText", "searchRegex"):
        term = str(first) if first else "text"
        if len(term) > SEARCH_LABEL_LEN:
            term = term[:SEARCH_LABEL_LEN] + "..."
        return f'Searching "{term}"'
    return call.command or "unknown"


class BatchExecutor:
    def __init__(
        self,
        catalog: CommandCatalog,
        snapshots: FileSnapshotStore,
        guard: ExecutionGuard,
        reporter: ResultReporter,
        sink: PresentationSink,
        auto_open_modified_files: bool = True,
    ):
        self.catalog = catalog
        self.snapshots = snapshots
        self.guard = guard
        self.reporter = reporter
        self.sink = sink
        self.auto_open_modified_files = auto_open_modified_files
        self._current: ExecutionBatch | None = None

    @property
    def current_batch(self) -> ExecutionBatch | None:
        return self._current

    def cancel(self) -> bool:
        """Ask the running batch to stop at the next call boundary."""
        if self._current is None:
            return False
        logger.info("Cancelling batch %s", self._current.batch_id)
        self._current.cancelled = True
        return True

    async def run_and_report(self, content: str, calls: list[CommandCall]) -> ExecutionBatch | None:
        """Execute ``calls`` and send the results back to the agent.

        Returns None when the batch was dropped because another one is
        still executing.
        """
        batch = ExecutionBatch(content=content, calls=list(calls))
        if not batch.calls:
            return None
        if not self.guard.try_acquire(batch.batch_id):
            return None

        with batch_context(batch.batch_id):
            failure: Exception | None = None
            try:
                await self.run(batch)
            except Exception as e:
                logger.exception("Batch %s failed outside command execution", batch.batch_id)
                failure = e
            finally:
                self.guard.release()

            if failure is not None:
                await self.reporter.report_failure(content, failure)
            else:
                await self.reporter.report(content, batch)
        return batch

    async def run(self, batch: ExecutionBatch) -> ExecutionBatch:
        self._current = batch
        try:
            with batch_context(batch.batch_id):
                await self._run(batch)
        finally:
            self._current = None
            self.snapshots.evict_oldest()
        return batch

    async def _run(self, batch: ExecutionBatch) -> None:
        labels = [tool_label(c) for c in batch.calls]
        total = len(batch.calls)
        logger.info("Executing batch %s: %d command(s)", batch.batch_id, total)
        self.sink.emit(ToolStatus(status="starting", tools=labels, total_count=total))

        for i, call in enumerate(batch.calls):
            if batch.cancelled:
                logger.info("Batch %s cancelled at step %d/%d", batch.batch_id, i + 1, total)
                batch.results.extend(ToolResult.cancelled_for(c) for c in batch.calls[i:])
                break
            self.sink.emit(ToolStatus(
                status="working", tools=[labels[i]], current_index=i + 1, total_count=total,
            ))
            batch.results.append(await self._execute_one(call))

        self.sink.emit(ToolStatus(
            status="cancelled" if batch.interrupted else "completed",
            tools=labels,
            total_count=total,
            success_count=batch.success_count,
            failed_count=batch.failed_count,
            results=[
                {
                    "command": r.command,
                    "args": r.args,
                    "ok": r.ok,
                    "output_length": len(r.output or ""),
                    "error": r.error,
                }
                for r in batch.results
            ],
        ))
        if not batch.interrupted:
            self._announce_modified_files(batch)

    def _target(self, call: CommandCall) -> str | None:
        try:
            return self.catalog.target_path(call)
        except Exception as e:
            logger.warning("Could not determine target of %s: %s", call.command, e)
            return None

    async def _execute_one(self, call: CommandCall) -> ToolResult:
        started = time.monotonic()
        try:
            target = self._target(call)
            if target:
                try:
                    await self.snapshots.capture(target)
                except Exception as e:
                    logger.warning("Backup of %s failed, continuing: %s", target, e)
            outcome = CommandOutcome.model_validate(await self.catalog.execute(call))
        except Exception as e:
            logger.warning("Command %s failed: %s", call.command, e)
            return ToolResult(
                command=call.command,
                ok=False,
                error=str(e) or type(e).__name__,
                args=list(call.args),
                elapsed_ms=int((time.monotonic() - started) * 1000),
                id=call.id,
            )
        elapsed = outcome.elapsed_ms or int((time.monotonic() - started) * 1000)
        return ToolResult(
            command=call.command,
            ok=outcome.ok,
            output=(outcome.output or "") if outcome.ok else None,
            error=None if outcome.ok else (outcome.error or "unknown error"),
            args=list(call.args),
            elapsed_ms=elapsed,
            id=call.id,
        )

    def _announce_modified_files(self, batch: ExecutionBatch) -> None:
        if not self.auto_open_modified_files:
            return
        paths: list[str] = []
        for call, result in zip(batch.calls, batch.results):
            target = self._target(call)
            if not result.ok or not target:
                continue
            resolved = str(self.snapshots.resolve(target))
            if resolved not in paths:
                paths.append(resolved)
        if paths:
            self.sink.emit(FilesModified(paths=paths[:MAX_AUTO_OPEN]))
