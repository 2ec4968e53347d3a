from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest
import pytest_asyncio

from relay.config import RelayConfig
from relay.connectors.base import CommandCatalog
from relay.engine import RelayEngine
from relay.events import PresentationSink
from relay.models import CommandCall, CommandOutcome


class RecordingSink(PresentationSink):
    def __init__(self):
        self.events = []

    def post(self, event):
        self.events.append(event)

    def of_type(self, type_name: str) -> list:
        return [e for e in self.events if e.type == type_name]


class ScriptedCatalog(CommandCatalog):
    """Records calls; ``hooks`` maps a command name to a side effect."""

    def __init__(self, hooks: dict[str, Callable] | None = None):
        self.calls: list[CommandCall] = []
        self.hooks = hooks or {}

    async def execute(self, call: CommandCall) -> CommandOutcome:
        self.calls.append(call)
        hook = self.hooks.get(call.command)
        if hook is not None:
            result = hook(call)
            if hasattr(result, "__await__"):
                result = await result
            if isinstance(result, CommandOutcome):
                return result
        return CommandOutcome(ok=True, output=f"{call.command} ok", elapsed_ms=1)


class FakeAgent:
    """Plays the agent service behind an ``httpx.MockTransport``."""

    def __init__(self):
        self.requests: list[dict] = []
        self.on_request: Callable | None = None
        self.status_code = 200
        self.reply: dict = {"status": "ok"}

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append({"url": str(request.url), "body": body})
        if self.on_request is not None:
            result = self.on_request(body)
            if hasattr(result, "__await__"):
                await result
        return httpx.Response(self.status_code, json=self.reply)

    @property
    def result_reports(self) -> list[dict]:
        return [r["body"] for r in self.requests if "command_results" in r["body"]]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def catalog():
    return ScriptedCatalog()


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def relay_config(tmp_path):
    return RelayConfig(
        api_endpoint="http://agent.test/api/vscode_user_message",
        workspace_root=str(tmp_path),
        chat_id="chat-1",
        project_id="proj-1",
        user_id="user-1",
    )


@pytest_asyncio.fixture
async def engine(relay_config, catalog, sink, fake_agent):
    eng = RelayEngine(relay_config, catalog=catalog, sink=sink, transport=httpx.MockTransport(fake_agent))
    yield eng
    await eng.aclose()
