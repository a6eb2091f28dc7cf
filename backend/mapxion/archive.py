from __future__ import annotations

import io
import logging
import zipfile

from pathlib import Path
from typing import AsyncIterator, Iterator

from starlette.concurrency import iterate_in_threadpool

from mapxion.errors import NotFoundError


logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class _ChunkSink(io.RawIOBase):
    """Write-only, non-seekable buffer that hands out what was written so far."""

    def __init__(self) -> None:
        super().__init__()
        self._chunks: list[bytes] = []
        self._position = 0

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        self._position += len(data)
        return len(data)

    def tell(self) -> int:
        return self._position

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


def archive_members(directory: Path) -> list[Path]:
    if not directory.is_dir():
        raise NotFoundError("Nothing to archive yet.", code="not_found")
    members = sorted((p for p in directory.iterdir() if p.is_file()), key=lambda p: p.name)
    if not members:
        raise NotFoundError("Nothing to archive yet.", code="not_found")
    return members


def iter_zip(members: list[Path]) -> Iterator[bytes]:
    """Yield a deflate (level 9) zip of ``members`` piece by piece."""
    sink = _ChunkSink()
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for path in members:
            large = path.stat().st_size > zipfile.ZIP64_LIMIT
            with path.open("rb") as src, zf.open(path.name, mode="w", force_zip64=large) as dest:
                while True:
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    dest.write(chunk)
                    data = sink.drain()
                    if data:
                        yield data
            data = sink.drain()
            if data:
                yield data
    tail = sink.drain()
    if tail:
        yield tail


async def stream_archive(members: list[Path], label: str = "") -> AsyncIterator[bytes]:
    """Async zip stream; closing or cancelling it stops the archiving."""
    chunks = iter_zip(members)
    completed = False
    try:
        async for data in iterate_in_threadpool(chunks):
            yield data
        completed = True
    finally:
        chunks.close()
        if not completed:
            logger.info("archive stream %s aborted before completion", label)


def write_archive(directory: Path, dest: Path) -> Path:
    """Write the zip of ``directory`` to ``dest`` instead of streaming it."""
    members = [p for p in archive_members(directory) if p.resolve() != dest.resolve()]
    if not members:
        raise NotFoundError("Nothing to archive yet.", code="not_found")
    dest.parent.mkdir(parents=True, exist_ok=True)
    with dest.open("wb") as f:
        for data in iter_zip(members):
            f.write(data)
    return dest
