from __future__ import annotations

import logging

import httpx

from relay.config import RelayConfig
from relay.connectors.base import CommandCatalog
from relay.connectors.http import AgentClient
from relay.connectors.local import LocalCatalog
from relay.events import WORKING_MESSAGE, AgentMessage, LoggingSink, PresentationSink, WaitingStopped
from relay.executor import BatchExecutor
from relay.guard import ExecutionGuard
from relay.models import CancelRequest, CancelResponse, UserMessage
from relay.reporter import ResultReporter
from relay.router import WORKING_STATUSES, AgentResponseRouter
from relay.session import SessionState
from relay.snapshots import FileSnapshotStore

logger = logging.getLogger(__name__)


class RelayEngine:
    """Every stateful piece of one conversation, wired together.

    Nothing here is a module global: two engines never share a busy flag,
    a dedup set or a snapshot store.
    """

    def __init__(
        self,
        config: RelayConfig,
        catalog: CommandCatalog | None = None,
        sink: PresentationSink | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        workspace = config.workspace_path
        self.sink = sink or LoggingSink()
        self.catalog = catalog or LocalCatalog(workspace)
        self.guard = ExecutionGuard()
        self.session = SessionState(
            project_id=config.project_id or workspace.name,
            chat_id=config.chat_id,
            user_id=config.user_id,
        )
        self.snapshots = FileSnapshotStore(workspace, capacity=config.backup_capacity)
        self.client = AgentClient(
            config.api_endpoint,
            config.resolved_cancel_endpoint,
            headers=config.api_headers,
            timeout=config.request_timeout,
            transport=transport,
        )
        self.reporter = ResultReporter(self.client, self.guard, self.session, self.sink)
        self.executor = BatchExecutor(
            self.catalog,
            self.snapshots,
            self.guard,
            self.reporter,
            self.sink,
            auto_open_modified_files=config.auto_open_modified_files,
        )
        self.router = AgentResponseRouter(
            self.executor,
            self.guard,
            self.session,
            self.sink,
            dedup_capacity=config.dedup_capacity,
            on_new_session=self.new_session,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def new_session(self, chat_id: str = "", project_id: str | None = None) -> None:
        """Start a fresh conversation; backups of the old one are dropped."""
        self.session.reset(chat_id, project_id)
        self.snapshots.clear_all()
        self.guard.clear_awaiting()
        logger.info("New session %s", self.session.chat_id)

    async def send_user_message(self, text: str) -> None:
        self.session.add_message("user", text)
        message = UserMessage(
            message=text,
            project_id=self.session.project_id,
            chat_id=self.session.chat_id,
            user_id=self.session.user_id,
        )
        try:
            answer = await self.client.send_message(message)
        except ConnectionError as e:
            logger.error("Failed to send message to agent: %s", e)
            self.sink.emit(AgentMessage(content=f"**Connection error:** {e}", is_final=True))
            return

        if isinstance(answer, str):
            if answer.strip():
                self.sink.emit(AgentMessage(content=answer, is_final=True))
            return
        if not isinstance(answer, dict) or not answer:
            return
        if answer.get("status") in WORKING_STATUSES or answer.get("message") == "start working":
            self.sink.emit(AgentMessage(content=WORKING_MESSAGE, is_working=True))
            return
        # a synchronous answer is handled exactly like a callback
        task = self.router.handle(answer)
        if task is not None:
            await task

    async def cancel(self) -> CancelResponse:
        """Stop the running batch and ask the agent to stop its task."""
        self.executor.cancel()
        self.guard.clear_awaiting()
        self.sink.emit(WaitingStopped(reason="cancelled"))
        request = CancelRequest(task_id=self.session.last_task_id)
        if request.task_id is None:
            request.chat_id = self.session.chat_id
        try:
            return await self.client.cancel(request)
        except ConnectionError as e:
            logger.error("Cancel request failed: %s", e)
            return CancelResponse(status="error", cancelled=False, task_id=request.task_id, chat_id=request.chat_id)
