"""Pre-modification file snapshots used to show what a batch changed.

The first capture of a path wins: later mutations in the same session
never overwrite the stored "before" content. Entries are evicted in
insertion order once the store grows past its capacity.
"""
from __future__ import annotations

import asyncio
import difflib
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path

from relay.models import FileBackupEntry

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50


class FileSystemAccessor:
    """Blocking UTF-8 file access; calls run in a worker thread."""

    def read_all(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")

    def exists(self, path: Path) -> bool:
        return path.exists()


class FileSnapshotStore:
    def __init__(
        self,
        workspace_root: str | Path,
        capacity: int = DEFAULT_CAPACITY,
        fs: FileSystemAccessor | None = None,
    ):
        self.workspace_root = Path(workspace_root)
        self.capacity = capacity
        self.fs = fs or FileSystemAccessor()
        self._entries: OrderedDict[str, FileBackupEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        return str(self.resolve(path)) in self._entries

    def resolve(self, path: str | Path) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = self.workspace_root / p
        return p.resolve()

    def paths(self) -> list[str]:
        return list(self._entries)

    def get(self, path: str | Path) -> FileBackupEntry | None:
        return self._entries.get(str(self.resolve(path)))

    async def capture(self, path: str | Path) -> FileBackupEntry | None:
        """Store the current content of ``path`` unless already captured.

        Returns the entry held for the path, or None when the file could not
        be read (usually because the command is about to create it).
        """
        resolved = self.resolve(path)
        key = str(resolved)
        existing = self._entries.get(key)
        if existing is not None:
            logger.debug("File already backed up: %s", key)
            return existing
        try:
            content = await asyncio.to_thread(self.fs.read_all, resolved)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Could not back up %s (might be new): %s", key, e)
            return None
        # another capture of the same path may have finished while we read
        if key in self._entries:
            return self._entries[key]
        entry = FileBackupEntry(
            resolved_path=key,
            original_content=content,
            captured_at=datetime.now(timezone.utc),
        )
        self._entries[key] = entry
        logger.info("Backed up file before modification: %s (%d chars)", key, len(content))
        return entry

    def evict_oldest(self, max_entries: int | None = None) -> int:
        limit = self.capacity if max_entries is None else max_entries
        removed = 0
        while len(self._entries) > limit:
            self._entries.popitem(last=False)
            removed += 1
        if removed:
            logger.info("Cleared %d old file backups", removed)
        return removed

    def diff(self, path: str | Path) -> tuple[str | None, str]:
        """Return ``(original, current)``; current is "" if the file is gone."""
        resolved = self.resolve(path)
        entry = self._entries.get(str(resolved))
        original = entry.original_content if entry else None
        try:
            current = self.fs.read_all(resolved) if self.fs.exists(resolved) else ""
        except (OSError, UnicodeDecodeError):
            current = ""
        return original, current

    def unified_diff(self, path: str | Path, context: int = 3) -> str:
        original, current = self.diff(path)
        name = str(self.resolve(path))
        return "".join(difflib.unified_diff(
            (original or "").splitlines(keepends=True),
            current.splitlines(keepends=True),
            fromfile=f"a/{name}" if original is not None else "/dev/null",
            tofile=f"b/{name}",
            n=context,
        ))

    def clear_all(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        logger.info("Cleared all %d file backups", count)
