from __future__ import annotations

from abc import ABC, abstractmethod

from relay.models import CommandCall, CommandOutcome

MUTATING_COMMANDS = frozenset({"write", "append", "replace"})


class CommandCatalog(ABC):
    """Executes one named command against the workspace.

    Implementations report failures through ``CommandOutcome.ok``; the
    batch executor still treats a raised exception as a failed outcome.
    """

    @abstractmethod
    async def execute(self, call: CommandCall) -> CommandOutcome:
        ...

    def commands(self) -> list[str]:
        return []

    @staticmethod
    def target_path(call: CommandCall) -> str | None:
        """Path a mutating call will modify, if any."""
        if call.command not in MUTATING_COMMANDS or not call.args:
            return None
        first = call.args[0]
        return first if isinstance(first, str) and first else None
