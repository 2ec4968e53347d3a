"""End-to-end round trips through the engine with a fake agent service."""
from __future__ import annotations

import asyncio

import pytest

from relay.models import CommandOutcome


@pytest.mark.asyncio
async def test_single_read_round_trip(engine, catalog, fake_agent, sink):
    await engine.router.handle({"content": "ok", "command_calls": [{"command": "read", "args": ["a.txt"]}]})

    assert [c.command for c in catalog.calls] == ["read"]
    reports = fake_agent.result_reports
    assert len(reports) == 1
    assert reports[0]["message"] == "ok"
    assert [r["command"] for r in reports[0]["command_results"]] == ["read"]
    assert reports[0]["command_results"][0]["status"] == "success"
    # results are out; the next callback is awaited
    assert engine.guard.awaiting_followup
    assert not engine.guard.busy


@pytest.mark.asyncio
async def test_final_answer_creates_no_batch(engine, catalog, fake_agent, sink):
    await engine.router.handle({"content": "done", "is_final": True})

    assert catalog.calls == []
    assert fake_agent.requests == []
    message = sink.of_type("agent_message")[-1]
    assert message.content == "done"
    assert message.is_final


@pytest.mark.asyncio
async def test_identical_payloads_back_to_back(engine, catalog, fake_agent):
    payload = {"content": "ok", "command_calls": [{"command": "read", "args": ["a.txt"]}]}

    first = engine.router.handle(payload)
    second = engine.router.handle(payload)
    await engine.router.drain()

    assert first is not None
    assert second is None
    assert len(catalog.calls) == 1
    assert len(fake_agent.result_reports) == 1


@pytest.mark.asyncio
async def test_followup_during_post_is_not_dropped(engine, catalog, fake_agent):
    busy_at_post = []
    followup = {"content": "next", "command_calls": [{"command": "stat", "args": ["b.txt"]}]}

    async def agent_answers_immediately(body):
        busy_at_post.append(engine.guard.busy)
        if len(busy_at_post) == 1:
            # the agent's next callback lands before the POST returns
            task = engine.router.handle(followup)
            await task

    fake_agent.on_request = agent_answers_immediately
    busy_before_post = []
    catalog.hooks["read"] = lambda call: busy_before_post.append(engine.guard.busy)

    await engine.router.handle({"content": "first", "command_calls": [{"command": "read", "args": ["a.txt"]}]})

    assert busy_before_post == [True]
    assert busy_at_post == [False, False]
    assert [c.command for c in catalog.calls] == ["read", "stat"]
    assert [r["message"] for r in fake_agent.result_reports] == ["first", "next"]


@pytest.mark.asyncio
async def test_overlapping_batch_dropped_without_interleaving(engine, catalog, fake_agent, tmp_path):
    (tmp_path / "one.txt").write_text("1")
    (tmp_path / "two.txt").write_text("2")
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_write(call):
        started.set()
        await release.wait()

    catalog.hooks["write"] = slow_write

    first = engine.router.handle({"command_calls": [{"command": "write", "args": ["one.txt", "x"]}]})
    await started.wait()
    second = engine.router.handle({"command_calls": [{"command": "write", "args": ["two.txt", "y"]}]})
    await second
    release.set()
    await first

    assert [c.args[0] for c in catalog.calls] == ["one.txt"]
    assert engine.snapshots.paths() == [str((tmp_path / "one.txt").resolve())]
    assert len(fake_agent.result_reports) == 1


@pytest.mark.asyncio
async def test_cancel_mid_batch_skips_report(engine, catalog, fake_agent, sink):
    engine.session.set_last_task_id("task-1")

    async def cancel_after_read(call):
        await engine.cancel()

    catalog.hooks["read"] = cancel_after_read

    await engine.router.handle({"command_calls": [
        {"command": "read", "args": ["a.txt"]},
        {"command": "write", "args": ["b.txt", "x"]},
        {"command": "stat", "args": ["c.txt"]},
    ]})

    assert [c.command for c in catalog.calls] == ["read"]
    assert fake_agent.result_reports == []
    # the only request made is the cancel call itself
    assert len(fake_agent.requests) == 1
    assert fake_agent.requests[0]["url"].endswith("/api/agent/stop")
    assert fake_agent.requests[0]["body"] == {"task_id": "task-1"}
    assert [e.reason for e in sink.of_type("waiting_stopped")] == ["cancelled"]
    assert not engine.guard.busy
    assert not engine.guard.awaiting_followup


@pytest.mark.asyncio
async def test_failed_command_still_reported(engine, catalog, fake_agent):
    catalog.hooks["read"] = lambda call: CommandOutcome(ok=False, error="File not found [ENOENT]")

    await engine.router.handle({"command_calls": [
        {"command": "read", "args": ["missing.txt"]},
        {"command": "list", "args": []},
    ]})

    results = fake_agent.result_reports[0]["command_results"]
    assert [r["status"] for r in results] == ["error", "success"]
    assert results[0]["output"] == "File not found [ENOENT]"


@pytest.mark.asyncio
async def test_post_failure_leaves_engine_usable(engine, catalog, fake_agent, sink):
    fake_agent.status_code = 500
    await engine.router.handle({"command_calls": [{"command": "read", "args": ["a.txt"]}]})

    assert sink.of_type("waiting_stopped")
    assert not engine.guard.busy
    assert not engine.guard.awaiting_followup

    fake_agent.status_code = 200
    await engine.router.handle({"command_calls": [{"command": "list", "args": []}]})
    assert [c.command for c in catalog.calls] == ["read", "list"]


class TestUserMessages:
    @pytest.mark.asyncio
    async def test_working_reply(self, engine, fake_agent, sink):
        fake_agent.reply = {"status": "start working"}

        await engine.send_user_message("refactor the parser")

        body = fake_agent.requests[0]["body"]
        assert body["message"] == "refactor the parser"
        assert body["chat_id"] == "chat-1"
        assert "command_results" not in body
        assert sink.of_type("agent_message")[0].is_working

    @pytest.mark.asyncio
    async def test_synchronous_reply_routed(self, engine, fake_agent, catalog):
        fake_agent.reply = {"content": "looking", "command_calls": [{"command": "list"}]}

        await engine.send_user_message("what is here?")

        assert [c.command for c in catalog.calls] == ["list"]

    @pytest.mark.asyncio
    async def test_connection_error_reported(self, engine, fake_agent, sink):
        fake_agent.status_code = 503

        await engine.send_user_message("hi")

        message = sink.of_type("agent_message")[0]
        assert "Connection error" in message.content
        assert message.is_final


@pytest.mark.asyncio
async def test_new_session_clears_snapshots(engine, tmp_path):
    (tmp_path / "a.txt").write_text("x")
    await engine.snapshots.capture("a.txt")
    engine.session.set_last_task_id("task-1")

    engine.new_session("chat-9", "proj-1")

    assert len(engine.snapshots) == 0
    assert engine.session.chat_id == "chat-9"
    assert engine.session.last_task_id is None


@pytest.mark.asyncio
async def test_cancel_without_task_uses_chat_id(engine, fake_agent):
    fake_agent.reply = {"status": "ok", "cancelled": True}

    response = await engine.cancel()

    assert fake_agent.requests[0]["body"] == {"chat_id": "chat-1"}
    assert response.cancelled
    assert response.chat_id == "chat-1"
