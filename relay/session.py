from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "00000000-0000-4000-8000-000000000000"
MAX_HISTORY = 200


@dataclass
class HistoryMessage:
    role: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SessionState:
    """Identity and in-memory transcript of the current conversation."""

    project_id: str = ""
    chat_id: str = ""
    user_id: str = ""
    last_task_id: str | None = None
    history: list[HistoryMessage] = field(default_factory=list)

    def __post_init__(self):
        if not self.chat_id:
            self.chat_id = uuid.uuid4().hex
        if not self.user_id:
            self.user_id = DEFAULT_USER_ID

    def set_last_task_id(self, task_id: object) -> None:
        if isinstance(task_id, str) and task_id:
            self.last_task_id = task_id
            logger.debug("Updated last task_id: %s", task_id)

    def add_message(self, role: str, content: str) -> None:
        self.history.append(HistoryMessage(role=role, content=content))
        if len(self.history) > MAX_HISTORY:
            del self.history[: len(self.history) - MAX_HISTORY]

    def reset(self, chat_id: str = "", project_id: str | None = None) -> None:
        self.chat_id = chat_id or uuid.uuid4().hex
        if project_id is not None:
            self.project_id = project_id
        self.last_task_id = None
        self.history.clear()
