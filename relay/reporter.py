from __future__ import annotations

import logging

from relay.connectors.http import AgentClient
from relay.events import PresentationSink, WaitingStopped
from relay.guard import ExecutionGuard
from relay.models import ExecutionBatch, ResultReport, WireCommandResult
from relay.session import SessionState

logger = logging.getLogger(__name__)


class ResultReporter:
    """Sends a finished batch back to the agent, which implicitly asks it
    for the next round."""

    def __init__(
        self,
        client: AgentClient,
        guard: ExecutionGuard,
        session: SessionState,
        sink: PresentationSink,
    ):
        self.client = client
        self.guard = guard
        self.session = session
        self.sink = sink

    def build_report(self, content: str, results: list[WireCommandResult]) -> ResultReport:
        return ResultReport(
            message=content,
            command_results=results,
            project_id=self.session.project_id,
            chat_id=self.session.chat_id,
            user_id=self.session.user_id,
        )

    async def report(self, content: str, batch: ExecutionBatch) -> bool:
        if batch.interrupted:
            # RelayEngine.cancel emits the WaitingStopped event
            logger.info("Batch %s was cancelled; not reporting partial results", batch.batch_id)
            self.guard.clear_awaiting()
            return False
        results = [WireCommandResult.from_result(r) for r in batch.results]
        return await self._send(self.build_report(content, results))

    async def report_failure(self, content: str, error: Exception) -> bool:
        results = [WireCommandResult(command="batch_execution", status="error", output=str(error))]
        return await self._send(self.build_report(content, results))

    async def _send(self, report: ResultReport) -> bool:
        # the guard's busy flag is already clear here, so a follow-up
        # arriving before send_results returns can start its batch
        self.guard.mark_awaiting()
        try:
            await self.client.send_results(report)
        except ConnectionError as e:
            logger.error("Failed to send results back to agent: %s", e)
            self.guard.clear_awaiting()
            self.sink.emit(WaitingStopped(reason=str(e)))
            return False
        return True
