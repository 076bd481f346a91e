"""Async line readers for plain and gzip-compressed log files."""

from __future__ import annotations

import gzip
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiofiles
from aiofiles.threadpool import wrap


def is_compressed(path: str | Path) -> bool:
    return Path(path).suffix.lower() == ".gz"


@asynccontextmanager
async def _open_gzip_text(path: Path, *, encoding: str, decode_errors: str):
    """Open a gzip file for async text reading."""
    f = gzip.open(path, mode="rt", encoding=encoding, errors=decode_errors)
    af = wrap(f)
    try:
        yield af
    finally:
        await af.close()


async def iter_plain_lines(
    path: str | Path,
    start_offset: int = 0,
    *,
    encoding: str = "utf-8",
    decode_errors: str = "replace",
) -> AsyncIterator[tuple[str, int]]:
    """Yield (line, end_offset) for each complete line after start_offset.

    end_offset is the byte position just past the line's newline. A trailing
    line without a newline is still being written and is not yielded.
    """
    position = start_offset
    async with aiofiles.open(path, mode="rb") as f:
        await f.seek(start_offset)
        async for raw in f:
            if not raw.endswith(b"\n"):
                break
            position += len(raw)
            yield raw.decode(encoding, errors=decode_errors).rstrip("\r\n"), position


async def iter_gzip_lines(
    path: str | Path,
    *,
    encoding: str = "utf-8",
    decode_errors: str = "replace",
) -> AsyncIterator[str]:
    """Yield every decompressed line of a gzip file."""
    async with _open_gzip_text(Path(path), encoding=encoding, decode_errors=decode_errors) as f:
        async for line in f:
            yield line.rstrip("\r\n")
