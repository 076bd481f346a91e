from __future__ import annotations

from datetime import UTC, datetime

import pytest

from maillog_ingest.core.models import FileReadState
from maillog_ingest.core.store import MemoryStore
from maillog_ingest.core.tracker import FileStateTracker

MTIME = datetime(2025, 1, 5, 10, 0, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_first_sighting_starts_at_zero(store: MemoryStore) -> None:
    tracker = FileStateTracker(store)

    resolved = await tracker.resolve("mail.log", 100, 500, MTIME)

    assert resolved.start_offset == 0
    assert resolved.is_new_incarnation
    assert [s.inode for s in await store.get_file_states("mail.log")] == [100]


@pytest.mark.asyncio
async def test_resume_from_committed_offset(store: MemoryStore) -> None:
    tracker = FileStateTracker(store)
    resolved = await tracker.resolve("mail.log", 100, 500, MTIME)
    await tracker.commit(resolved.state, 320, MTIME)

    again = await FileStateTracker(store).resolve("mail.log", 100, 800, MTIME)

    assert again.start_offset == 320
    assert not again.is_new_incarnation


@pytest.mark.asyncio
async def test_rotation_discards_previous_inode(store: MemoryStore) -> None:
    await store.save_file_state(FileReadState("mail.log", inode=100, last_read_position=500))
    await store.save_file_state(FileReadState("mail.log.1", inode=50, last_read_position=900))
    tracker = FileStateTracker(store)

    resolved = await tracker.resolve("mail.log", 200, 40, MTIME)

    assert resolved.start_offset == 0
    assert resolved.is_new_incarnation
    assert [s.inode for s in await store.get_file_states("mail.log")] == [200]
    # Other file names are untouched.
    assert [s.inode for s in await store.get_file_states("mail.log.1")] == [50]


@pytest.mark.asyncio
async def test_truncated_file_restarts_at_zero(store: MemoryStore) -> None:
    await store.save_file_state(FileReadState("mail.log", inode=100, last_read_position=500))

    resolved = await FileStateTracker(store).resolve("mail.log", 100, 120, MTIME)

    assert resolved.start_offset == 0
    assert not resolved.is_new_incarnation


@pytest.mark.asyncio
async def test_commit_records_progress(store: MemoryStore) -> None:
    checked = datetime(2025, 1, 6, 0, 0, 0, tzinfo=UTC)
    tracker = FileStateTracker(store, now=lambda: checked)
    resolved = await tracker.resolve("mail.log", 7, 10, None)

    await tracker.commit(resolved.state, 10, MTIME)

    (state,) = await store.get_file_states("mail.log")
    assert state.last_read_position == 10
    assert state.last_modified == MTIME
    assert state.last_checked == checked
