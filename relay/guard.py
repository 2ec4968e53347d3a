from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class ExecutionGuard:
    """Keeps at most one batch executing per conversation.

    ``busy`` covers execution only. It must drop back to False before
    results are sent, because the agent may answer the POST with its next
    batch before the POST itself returns.

    ``awaiting_followup`` tracks that results are in flight and the agent's
    next callback is expected. It never blocks a batch.
    """

    def __init__(self):
        self._busy = False
        self.awaiting_followup = False

    @property
    def busy(self) -> bool:
        return self._busy

    def try_acquire(self, batch_id: str = "") -> bool:
        # no await between check and set: atomic on the event loop
        if self._busy:
            logger.warning("Batch %s dropped: another batch is still executing", batch_id or "?")
            return False
        self._busy = True
        return True

    def release(self) -> None:
        self._busy = False

    def mark_awaiting(self) -> None:
        self.awaiting_followup = True

    def clear_awaiting(self) -> None:
        self.awaiting_followup = False
