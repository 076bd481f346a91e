"""Per-file read offsets and rotation identity."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from .models import FileReadState, ResolvedOffset
from .store import Store

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class FileStateTracker:
    """Decide where reading of a file incarnation resumes.

    A file is identified by (name, inode). A new inode under a known name is a
    rotation: the old rows are discarded, never merged.
    """

    def __init__(self, store: Store, *, now: Callable[[], datetime] = _utc_now) -> None:
        self._store = store
        self._now = now

    async def resolve(
        self,
        file_name: str,
        inode: int,
        size: int,
        mtime: datetime | None,
    ) -> ResolvedOffset:
        states = await self._store.get_file_states(file_name)

        current: FileReadState | None = None
        for state in states:
            if state.inode == inode:
                current = state
                continue
            logger.warning(
                "Deleting old state for rotated file: %s (inode %s)", file_name, state.inode
            )
            await self._store.delete_file_state(file_name, state.inode)

        if current is None:
            current = FileReadState(
                file_name=file_name,
                inode=inode,
                last_read_position=0,
                last_modified=mtime,
                last_checked=self._now(),
            )
            await self._store.save_file_state(current)
            logger.info("Created new state for file: %s (inode %s)", file_name, inode)
            return ResolvedOffset(state=current, start_offset=0, is_new_incarnation=True)

        if current.last_read_position > size:
            logger.warning(
                "File truncated: %s (%s > %s). Resetting position",
                file_name,
                current.last_read_position,
                size,
            )
            current.last_read_position = 0

        return ResolvedOffset(
            state=current,
            start_offset=current.last_read_position,
            is_new_incarnation=False,
        )

    async def commit(
        self,
        state: FileReadState,
        offset: int,
        mtime: datetime | None = None,
    ) -> None:
        """Persist progress after a batch has been fully handled."""
        state.last_read_position = offset
        if mtime is not None:
            state.last_modified = mtime
        state.last_checked = self._now()
        await self._store.save_file_state(state)
