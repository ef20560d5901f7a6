"""Zip archives streamed chunk by chunk, without building the archive in memory."""
import logging
import zipfile
from pathlib import Path
from typing import Iterable, Iterator, Optional

logger = logging.getLogger("converter.archive")

CHUNK_SIZE = 1024 * 1024


class _ChunkSink:
    """Write-only, non-seekable file object; zipfile falls back to data descriptors."""

    def __init__(self):
        self._chunks: list[bytes] = []

    def write(self, data) -> int:
        if data:
            self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> Iterator[bytes]:
        chunks, self._chunks = self._chunks, []
        yield from chunks


def iter_zip(
    entries: Iterable[tuple[Path, str]],
    extra: Optional[dict[str, bytes]] = None,
    chunk_size: int = CHUNK_SIZE,
) -> Iterator[bytes]:
    """Yield a zip holding each (path, arcname) in order, then the extra in-memory members."""
    sink = _ChunkSink()
    count = 0
    try:
        with zipfile.ZipFile(sink, "w", zipfile.ZIP_DEFLATED) as zf:
            for path, arcname in entries:
                with open(path, "rb") as src, zf.open(arcname, "w") as dst:
                    while chunk := src.read(chunk_size):
                        dst.write(chunk)
                        yield from sink.drain()
                yield from sink.drain()
                count += 1
            for arcname, data in (extra or {}).items():
                zf.writestr(arcname, data)
                yield from sink.drain()
                count += 1
        yield from sink.drain()
    except Exception as e:
        logger.exception("Archive stream failed after %s entries: %s", count, e)
        raise
    logger.info("Streamed zip with %s entries", count)


def iter_file(path: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            yield chunk
