"""Directory polling and per-file ingestion.

Files named ``<prefix>``, ``<prefix>.N`` and ``<prefix>.N.gz`` are processed
in rotation order: the unsuffixed file first, then ascending N. Each file
resumes at its committed offset, and the offset only moves after a batch of
lines has been handed to the correlator.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import UTC, datetime

import aiofiles.os

from .correlator import EventCorrelator
from .formats import LineParser
from .log_reader import is_compressed, iter_gzip_lines, iter_plain_lines
from .models import FileReadState
from .tracker import FileStateTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PollResult:
    files_seen: int
    files_processed: int
    lines: int


def rotation_index(file_name: str, prefix: str) -> int | None:
    """Rotation number of a log file name, or None if it is not one of ours.

    ``mail.log`` -> 0, ``mail.log.1`` -> 1, ``mail.log.2.gz`` -> 2.
    """
    m = re.fullmatch(re.escape(prefix) + r"(?:\.(?P<n>\d+))?(?:\.gz)?", file_name)
    if not m:
        return None
    n = m.group("n")
    return int(n) if n else 0


def sort_log_files(names: list[str], prefix: str) -> list[str]:
    """Filter candidate names and sort them in rotation order."""
    indexed = [(rotation_index(name, prefix), name) for name in names]
    return [name for _, name in sorted((i, n) for i, n in indexed if i is not None)]


class LogPoller:
    """Scan a directory and feed new lines of each log file to the correlator."""

    def __init__(
        self,
        *,
        log_dir: str | os.PathLike[str],
        prefix: str,
        parser: LineParser,
        tracker: FileStateTracker,
        correlator: EventCorrelator,
        batch_lines: int = 500,
        encoding: str = "utf-8",
    ) -> None:
        if batch_lines < 1:
            raise ValueError("batch_lines must be >= 1")
        self.log_dir = os.fspath(log_dir)
        self.prefix = prefix
        self._parser = parser
        self._tracker = tracker
        self._correlator = correlator
        self._batch_lines = batch_lines
        self._encoding = encoding
        self._locks: set[str] = set()

    def is_locked(self, file_name: str) -> bool:
        return file_name in self._locks

    async def list_log_files(self) -> list[str]:
        names = await aiofiles.os.listdir(self.log_dir)
        return sort_log_files(list(names), self.prefix)

    async def poll(self) -> PollResult:
        """One poll cycle over every candidate file."""
        logger.debug("Starting periodic log scan of %s", self.log_dir)
        try:
            names = await self.list_log_files()
        except OSError as exc:
            logger.error("Error listing %s: %s", self.log_dir, exc)
            return PollResult(files_seen=0, files_processed=0, lines=0)

        processed = 0
        total = 0
        for name in names:
            lines = await self.process_file(os.path.join(self.log_dir, name))
            if lines:
                processed += 1
                total += lines
        return PollResult(files_seen=len(names), files_processed=processed, lines=total)

    async def process_file(self, path: str) -> int:
        """Ingest new lines of one file. Returns the number of lines consumed.

        Failures are contained here so sibling files still get processed.
        """
        file_name = os.path.basename(path)
        if file_name in self._locks:
            logger.debug("Skipping locked file: %s", path)
            return 0

        self._locks.add(file_name)
        try:
            st = await aiofiles.os.stat(path)
            mtime = datetime.fromtimestamp(st.st_mtime, UTC)
            resolved = await self._tracker.resolve(file_name, st.st_ino, st.st_size, mtime)

            if st.st_size <= resolved.start_offset:
                logger.debug("No new data in %s", file_name)
                return 0

            if is_compressed(path):
                lines = await self._consume_gzip(path, resolved.state, st.st_size, mtime)
            else:
                lines = await self._consume_plain(
                    path, resolved.state, resolved.start_offset, mtime
                )

            if lines:
                logger.info(
                    "Processed %s lines from %s (up to %s bytes)",
                    lines,
                    file_name,
                    resolved.state.last_read_position,
                )
            return lines
        except FileNotFoundError:
            logger.warning("File disappeared during processing: %s", path)
            return 0
        except Exception:
            logger.exception("Error processing %s", path)
            return 0
        finally:
            self._locks.discard(file_name)

    async def _handle_line(self, text: str) -> None:
        parsed = self._parser.parse(text)
        if parsed is not None:
            await self._correlator.handle(parsed)

    async def _consume_plain(
        self,
        path: str,
        state: FileReadState,
        start_offset: int,
        mtime: datetime,
    ) -> int:
        count = 0
        in_batch = 0
        last_end = start_offset
        async for text, end in iter_plain_lines(path, start_offset, encoding=self._encoding):
            await self._handle_line(text)
            last_end = end
            count += 1
            in_batch += 1
            if in_batch >= self._batch_lines:
                await self._tracker.commit(state, last_end, mtime)
                in_batch = 0

        if in_batch:
            await self._tracker.commit(state, last_end, mtime)
        return count

    async def _consume_gzip(
        self,
        path: str,
        state: FileReadState,
        size: int,
        mtime: datetime,
    ) -> int:
        # Archives are immutable; the whole file is one batch and the
        # committed offset is its compressed size.
        count = 0
        async for text in iter_gzip_lines(path, encoding=self._encoding):
            await self._handle_line(text)
            count += 1
        await self._tracker.commit(state, size, mtime)
        return count
