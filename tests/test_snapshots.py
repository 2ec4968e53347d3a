from __future__ import annotations

from pathlib import Path

import pytest

from relay.snapshots import FileSnapshotStore, FileSystemAccessor


@pytest.fixture
def store(tmp_path):
    return FileSnapshotStore(tmp_path, capacity=50)


@pytest.mark.asyncio
async def test_capture_stores_current_content(store, tmp_path):
    (tmp_path / "a.txt").write_text("before")
    entry = await store.capture("a.txt")
    assert entry is not None
    assert entry.original_content == "before"
    assert entry.resolved_path == str((tmp_path / "a.txt").resolve())


@pytest.mark.asyncio
async def test_capture_twice_keeps_first_content(store, tmp_path):
    target = tmp_path / "a.txt"
    target.write_text("v1")
    await store.capture("a.txt")
    target.write_text("v2")
    await store.capture(str(target))

    assert len(store) == 1
    assert store.get("a.txt").original_content == "v1"


@pytest.mark.asyncio
async def test_capture_missing_file_is_not_an_error(store):
    assert await store.capture("new/file.txt") is None
    assert len(store) == 0


@pytest.mark.asyncio
async def test_eviction_removes_oldest_inserted(store, tmp_path):
    for i in range(51):
        (tmp_path / f"f{i}.txt").write_text(str(i))
        await store.capture(f"f{i}.txt")
    assert len(store) == 51

    removed = store.evict_oldest(50)

    assert removed == 1
    assert len(store) == 50
    assert "f0.txt" not in store
    assert "f1.txt" in store
    assert "f50.txt" in store


def test_evict_below_cap_is_noop(store):
    assert store.evict_oldest() == 0


@pytest.mark.asyncio
async def test_diff_returns_original_and_current(store, tmp_path):
    target = tmp_path / "a.txt"
    target.write_text("old\n")
    await store.capture("a.txt")
    target.write_text("new\n")

    assert store.diff("a.txt") == ("old\n", "new\n")
    rendered = store.unified_diff("a.txt")
    assert "-old" in rendered
    assert "+new" in rendered


def test_diff_without_backup(store, tmp_path):
    (tmp_path / "created.txt").write_text("hello")
    assert store.diff("created.txt") == (None, "hello")


@pytest.mark.asyncio
async def test_clear_all(store, tmp_path):
    (tmp_path / "a.txt").write_text("x")
    await store.capture("a.txt")
    store.clear_all()
    assert len(store) == 0
    assert store.paths() == []


@pytest.mark.asyncio
async def test_custom_accessor_is_used(tmp_path):
    class MemoryFS(FileSystemAccessor):
        def read_all(self, path: Path) -> str:
            return f"memory:{path.name}"

        def exists(self, path: Path) -> bool:
            return True

    store = FileSnapshotStore(tmp_path, fs=MemoryFS())
    entry = await store.capture("x.py")
    assert entry.original_content == "memory:x.py"
