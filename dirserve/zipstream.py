"""
Streaming ZIP encoder

Wraps zipfile.ZipFile around an unseekable in-memory buffer. zipfile then
writes every file entry with a data descriptor instead of seeking back, and
the buffer is drained to an async sink after each step. ZIP64 records are
written by zipfile whenever a size, offset or the entry count needs them.
"""

import asyncio
import logging
import os
import time
import zipfile
from typing import AsyncIterable, Awaitable, Callable, List

logger = logging.getLogger(__name__)

ZIP_STORED = zipfile.ZIP_STORED
ZIP_DEFLATED = zipfile.ZIP_DEFLATED

_FILE_ATTRS = (0o100644 << 16)
_DIR_ATTRS = (0o040755 << 16) | 0x10

_MIN_DATE_TIME = (1980, 1, 1, 0, 0, 0)
_MAX_DATE_TIME = (2107, 12, 31, 23, 59, 58)

# Formats that are already compressed; deflating them only burns CPU
NO_COMPRESS_EXTENSIONS = frozenset({
    ".zip", ".gz", ".bz2", ".xz", ".7z",
    ".jpg", ".jpeg", ".png", ".gif", ".webp",
    ".mp3", ".mp4", ".avi", ".mkv", ".mov",
    ".pdf", ".docx", ".xlsx", ".pptx",
    ".apk", ".dmg", ".iso", ".deb", ".rpm",
})


def compression_method_for(name: str, compress: bool) -> int:
    """Pick STORED or DEFLATED for an entry name"""
    if not compress:
        return ZIP_STORED
    if os.path.splitext(name)[1].lower() in NO_COMPRESS_EXTENSIONS:
        return ZIP_STORED
    return ZIP_DEFLATED


def zip_timestamp(timestamp: float) -> tuple:
    """Local date_time tuple for a ZipInfo, clamped to what DOS dates can hold"""
    date_time = tuple(time.localtime(timestamp)[:6])
    if date_time < _MIN_DATE_TIME:
        return _MIN_DATE_TIME
    if date_time > _MAX_DATE_TIME:
        return _MAX_DATE_TIME
    return date_time


class _OutputBuffer:
    """
    Write-only target for ZipFile

    It has no tell() or seek(), so ZipFile treats it as a pipe.
    """

    def __init__(self):
        self._parts = []

    def write(self, data) -> int:
        self._parts.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def take(self) -> bytes:
        data = b"".join(self._parts)
        self._parts.clear()
        return data


class ZipStreamWriter:
    """
    Sequential ZIP writer that hands its output to an async callback

    Entries must be added one at a time; the writer cannot be shared between
    tasks. After a failed write the archive is unusable.
    """

    def __init__(self, write: Callable[[bytes], Awaitable[None]]):
        self._write = write
        self._buffer = _OutputBuffer()
        self._zip = zipfile.ZipFile(self._buffer, mode="w", allowZip64=True)
        self._closed = False
        self.offset = 0

    @property
    def entries(self) -> List[zipfile.ZipInfo]:
        return self._zip.infolist()

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("ZIP stream already closed")

    async def _drain(self) -> None:
        data = self._buffer.take()
        if data:
            self.offset += len(data)
            await self._write(data)

    def _info(self, name: str, modified: float, method: int, attrs: int) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(name, date_time=zip_timestamp(modified))
        info.compress_type = method
        info.external_attr = attrs
        return info

    async def add_directory(self, name: str, modified: float) -> None:
        self._check_open()
        if not name.endswith('/'):
            name += '/'
        self._zip.writestr(self._info(name, modified, ZIP_STORED, _DIR_ATTRS), b"")
        await self._drain()

    async def add_bytes(self, name: str, data: bytes, modified: float, compress: bool = False) -> None:
        """Add a small in-memory member"""
        self._check_open()
        info = self._info(name, modified, compression_method_for(name, compress), _FILE_ATTRS)
        self._zip.writestr(info, data)
        await self._drain()

    async def add_file(
        self,
        name: str,
        modified: float,
        size: int,
        chunks: AsyncIterable[bytes],
        compress: bool = False,
    ) -> None:
        """
        Stream one file member from chunks

        size must be the exact number of bytes chunks yields; it decides
        whether the entry needs ZIP64 sizes. Deflating runs in a worker thread
        so the event loop keeps serving other requests.

        Raises:
            ValueError: If chunks yields more or fewer than size bytes
        """
        self._check_open()
        method = compression_method_for(name, compress)
        info = self._info(name, modified, method, _FILE_ATTRS)
        info.file_size = size

        written = 0
        dest = self._zip.open(info, mode="w")
        try:
            async for chunk in chunks:
                written += len(chunk)
                if written > size:
                    raise ValueError(f"{name}: more than the declared {size} bytes")
                if method == ZIP_DEFLATED:
                    await asyncio.to_thread(dest.write, chunk)
                else:
                    dest.write(chunk)
                await self._drain()
            if written != size:
                raise ValueError(f"{name}: {written} bytes written, {size} declared")
        except BaseException:
            self._closed = True
            raise

        dest.close()
        await self._drain()

    async def close(self) -> None:
        """Write the central directory and end records"""
        self._check_open()
        self._closed = True
        self._zip.close()
        await self._drain()
        logger.debug(f"ZIP stream closed: {len(self.entries)} entries, {self.offset} bytes")
