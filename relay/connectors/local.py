from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from relay.connectors.base import CommandCatalog
from relay.models import CommandCall, CommandOutcome

logger = logging.getLogger(__name__)

Handler = Callable[[list[str], dict[str, Any]], Awaitable[str]]

MAX_LIST_ENTRIES = 500
MAX_SEARCH_FILES = 100
MAX_MATCHES_PER_FILE = 100
MAX_SEARCH_FILE_BYTES = 1024 * 1024
SEARCH_EXCLUDED_DIRS = frozenset({"node_modules", ".git", "dist", "build", ".next", ".nuxt", "__pycache__", ".venv"})


class CommandError(Exception):
    def __init__(self, message: str, code: str = "EINVAL"):
        super().__init__(message)
        self.code = code


@dataclass
class CommandEntry:
    handler: Handler
    description: str
    usage: str


def _stringify(arg: Any) -> str:
    if isinstance(arg, str):
        return arg
    if isinstance(arg, (dict, list)):
        return json.dumps(arg)
    return str(arg)


class RegistryCatalog(CommandCatalog):
    """Catalog backed by a name -> handler registry."""

    def __init__(self, registry: dict[str, CommandEntry] | None = None):
        self.registry: dict[str, CommandEntry] = dict(registry or {})
        self.registry.setdefault("help", CommandEntry(self._help, "Show available commands", "help"))

    def register(self, name: str, handler: Handler, description: str = "", usage: str = "") -> None:
        self.registry[name] = CommandEntry(handler, description, usage or name)

    def commands(self) -> list[str]:
        return sorted(self.registry)

    async def execute(self, call: CommandCall) -> CommandOutcome:
        started = time.monotonic()
        args = [_stringify(a) for a in call.args]
        if not call.command:
            return CommandOutcome(ok=False, error="Missing or invalid 'command' name")
        entry = self.registry.get(call.command)
        if entry is None:
            return CommandOutcome(ok=False, error=f"Unknown command '{call.command}'")
        try:
            output = await entry.handler(args, call.opts or {})
        except CommandError as e:
            return CommandOutcome(ok=False, error=f"{e} [{e.code}]", elapsed_ms=_elapsed(started))
        except OSError as e:
            code = f" [{e.errno}]" if e.errno else ""
            return CommandOutcome(ok=False, error=f"{e.strerror or e}{code}", elapsed_ms=_elapsed(started))
        except Exception as e:
            logger.warning("Command %s failed: %s", call.command, e)
            return CommandOutcome(ok=False, error=str(e), elapsed_ms=_elapsed(started))
        return CommandOutcome(ok=True, output=output, elapsed_ms=_elapsed(started))

    async def _help(self, args: list[str], opts: dict[str, Any]) -> str:
        lines = [
            f"**{name}** - {entry.description}\n     Usage: `{entry.usage}`"
            for name, entry in sorted(self.registry.items())
        ]
        return "## Available Commands\n\n" + "\n\n".join(lines)


def _elapsed(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class LocalCatalog(RegistryCatalog):
    """File commands confined to one workspace directory."""

    def __init__(self, workspace_root: str | Path):
        super().__init__()
        self.root = Path(workspace_root).resolve()
        self.register("read", self.read, "Read a file, optionally a line range", "read <path> [startLine] [endLine]")
        self.register("write", self.write, "Create or overwrite a file", "write <path> <content>")
        self.register("append", self.append, "Append text to a file", "append <path> <content>")
        self.register("replace", self.replace, "Replace text in a file", "replace <path> <search> <replacement>")
        self.register("list", self.list_dir, "List a directory", "list [path]")
        self.register("stat", self.stat, "Show file metadata", "stat <path>")
        self.register("mkdir", self.mkdir, "Create a directory", "mkdir <path>")
        self.register("searchText", self.search_text, "Search files for literal text", "searchText <query> [path]")
        self.register("searchRegex", self.search_regex, "Search files with a regular expression", "searchRegex <pattern> [path]")
        self.register("glob", self.glob, "Find files matching glob patterns", "glob <pattern> [pattern...]")

    def resolve(self, raw: str) -> Path:
        if not raw:
            raise CommandError("Invalid file path provided")
        p = Path(raw).expanduser()
        if not p.is_absolute():
            p = self.root / p
        p = p.resolve()
        try:
            p.relative_to(self.root)
        except ValueError:
            raise CommandError(f"Path is outside the workspace: {raw}", "EACCES")
        return p

    @staticmethod
    def _require(args: list[str], count: int, usage: str) -> None:
        if len(args) < count:
            raise CommandError(f"Usage: {usage}")

    async def read(self, args: list[str], opts: dict[str, Any]) -> str:
        self._require(args, 1, "read <path> [startLine] [endLine]")
        path = self.resolve(args[0])
        start = int(args[1]) if len(args) > 1 and args[1] else None
        end = int(args[2]) if len(args) > 2 and args[2] else None
        if (start is not None and start < 1) or (end is not None and end < 1):
            raise CommandError("startLine and endLine must be >= 1")
        if start is not None and end is not None and start > end:
            raise CommandError("startLine cannot be greater than endLine")
        if not path.is_file():
            raise CommandError(f"File not found: {path}", "ENOENT")
        content = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        if start is None and end is None:
            return content
        lines = content.split("\n")
        first = (start or 1) - 1
        if first >= len(lines):
            raise CommandError(f"startLine {start} exceeds file length ({len(lines)} lines)", "ERANGE")
        return "\n".join(lines[first:end or len(lines)])

    async def write(self, args: list[str], opts: dict[str, Any]) -> str:
        self._require(args, 2, "write <path> <content>")
        path = self.resolve(args[0])
        content = args[1]
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_text, content, encoding="utf-8")
        return f"Wrote {len(content)} chars to {path}"

    async def append(self, args: list[str], opts: dict[str, Any]) -> str:
        self._require(args, 2, "append <path> <content>")
        path = self.resolve(args[0])
        path.parent.mkdir(parents=True, exist_ok=True)

        def _append() -> None:
            with open(path, "a", encoding="utf-8") as f:
                f.write(args[1])

        await asyncio.to_thread(_append)
        return f"Appended {len(args[1])} chars to {path}"

    async def replace(self, args: list[str], opts: dict[str, Any]) -> str:
        self._require(args, 3, "replace <path> <search> <replacement>")
        path = self.resolve(args[0])
        if not path.is_file():
            raise CommandError(f"File not found: {path}", "ENOENT")
        flags = re.IGNORECASE if opts.get("ignoreCase") else 0
        pattern = args[1] if opts.get("regex") else re.escape(args[1])
        original = await asyncio.to_thread(path.read_text, encoding="utf-8")
        try:
            updated, count = re.subn(pattern, lambda _m: args[2], original, flags=flags)
        except re.error as e:
            raise CommandError(f"Invalid pattern: {e}")
        if count:
            await asyncio.to_thread(path.write_text, updated, encoding="utf-8")
        return f"Replaced {count} occurrence(s) in {path}"

    async def list_dir(self, args: list[str], opts: dict[str, Any]) -> str:
        path = self.resolve(args[0]) if args and args[0] else self.root
        if not path.is_dir():
            raise CommandError(f"Not a directory: {path}", "ENOTDIR")
        entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        lines = [f"{e.name}/" if e.is_dir() else e.name for e in entries[:MAX_LIST_ENTRIES]]
        if len(entries) > MAX_LIST_ENTRIES:
            lines.append(f"... {len(entries) - MAX_LIST_ENTRIES} more")
        return "\n".join(lines)

    async def stat(self, args: list[str], opts: dict[str, Any]) -> str:
        self._require(args, 1, "stat <path>")
        path = self.resolve(args[0])
        if not path.exists():
            raise CommandError(f"File not found: {path}", "ENOENT")
        st = path.stat()
        return json.dumps({
            "path": str(path),
            "type": "directory" if path.is_dir() else "file",
            "size": st.st_size,
            "modified": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
        })

    async def mkdir(self, args: list[str], opts: dict[str, Any]) -> str:
        self._require(args, 1, "mkdir <path>")
        path = self.resolve(args[0])
        path.mkdir(parents=True, exist_ok=True)
        return f"Created directory {path}"

    def _walk(self, base: Path, include_hidden: bool = False):
        """Yield ``(path, is_dir)`` under ``base``, skipping vendored dirs."""
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(
                d for d in dirnames
                if d not in SEARCH_EXCLUDED_DIRS and (include_hidden or not d.startswith("."))
            )
            current = Path(dirpath)
            for d in dirnames:
                yield current / d, True
            for name in sorted(filenames):
                if include_hidden or not name.startswith("."):
                    yield current / name, False

    def _rel(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def _search(self, regex: re.Pattern, base: Path, opts: dict[str, Any]) -> list[dict[str, Any]]:
        max_files = int(opts.get("maxResults") or MAX_SEARCH_FILES)
        max_matches = int(opts.get("maxMatches") or MAX_MATCHES_PER_FILE)
        found = []
        for path, is_dir in self._walk(base, bool(opts.get("includeHidden"))):
            if is_dir:
                continue
            try:
                if path.stat().st_size > MAX_SEARCH_FILE_BYTES:
                    continue
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            matches = []
            for lineno, line in enumerate(text.split("\n"), start=1):
                for m in regex.finditer(line):
                    matches.append({"line": lineno, "column": m.start() + 1, "text": m.group(0), "lineText": line.strip()})
                    if len(matches) >= max_matches:
                        break
                if len(matches) >= max_matches:
                    break
            if matches:
                found.append({"relativePath": self._rel(path), "matchCount": len(matches), "matches": matches})
        found.sort(key=lambda f: (-f["matchCount"], f["relativePath"]))
        return found[:max_files]

    async def _run_search(self, query: str, regex: re.Pattern, args: list[str], opts: dict[str, Any]) -> str:
        base = self.resolve(args[1]) if len(args) > 1 and args[1] else self.root
        if not base.is_dir():
            raise CommandError(f"Not a directory: {base}", "ENOTDIR")
        files = await asyncio.to_thread(self._search, regex, base, opts)
        return json.dumps({
            "type": "searchResults",
            "query": query,
            "totalMatches": sum(f["matchCount"] for f in files),
            "totalFiles": len(files),
            "files": files,
        })

    async def search_text(self, args: list[str], opts: dict[str, Any]) -> str:
        self._require(args, 1, "searchText <query> [path]")
        query = args[0]
        if not query.strip():
            raise CommandError("No search query provided")
        pattern = re.escape(query)
        if opts.get("wholeWord"):
            pattern = rf"\b{pattern}\b"
        flags = 0 if opts.get("caseSensitive") else re.IGNORECASE
        return await self._run_search(query, re.compile(pattern, flags), args, opts)

    async def search_regex(self, args: list[str], opts: dict[str, Any]) -> str:
        self._require(args, 1, "searchRegex <pattern> [path]")
        flags = re.IGNORECASE if opts.get("ignoreCase") else 0
        try:
            regex = re.compile(args[0], flags)
        except re.error as e:
            raise CommandError(f"Invalid pattern: {e}")
        return await self._run_search(args[0], regex, args, opts)

    async def glob(self, args: list[str], opts: dict[str, Any]) -> str:
        self._require(args, 1, "glob <pattern> [pattern...]")
        patterns = [glob_to_regex(p) for p in args]
        ignore = opts.get("ignore") or []
        if isinstance(ignore, str):
            ignore = [ignore]
        ignored = [glob_to_regex(str(p)) for p in ignore]
        limit = int(opts.get("limit") or MAX_LIST_ENTRIES)
        include_dirs = bool(opts.get("includeDirs"))

        def _collect() -> list[str]:
            out: list[str] = []
            for path, is_dir in self._walk(self.root, include_hidden=True):
                if is_dir and not include_dirs:
                    continue
                rel = self._rel(path)
                if any(r.match(rel) for r in patterns) and not any(r.match(rel) for r in ignored):
                    out.append(rel)
                    if len(out) >= limit:
                        break
            return out

        return "\n".join(await asyncio.to_thread(_collect))


def glob_to_regex(pattern: str) -> re.Pattern:
    """Translate ``**``, ``*`` and ``?`` into a regex over workspace-relative paths."""
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out) + r"\Z")
