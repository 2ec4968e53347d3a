from __future__ import annotations

from relay.guard import ExecutionGuard


def test_second_acquire_refused_until_release():
    guard = ExecutionGuard()
    assert guard.try_acquire("b1")
    assert guard.busy
    assert not guard.try_acquire("b2")

    guard.release()
    assert not guard.busy
    assert guard.try_acquire("b3")


def test_awaiting_does_not_block_acquire():
    guard = ExecutionGuard()
    guard.mark_awaiting()
    assert guard.try_acquire()
    assert guard.awaiting_followup


def test_clear_awaiting():
    guard = ExecutionGuard()
    guard.mark_awaiting()
    guard.clear_awaiting()
    assert not guard.awaiting_followup
