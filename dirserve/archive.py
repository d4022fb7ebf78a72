"""
Streaming directory archives for dirserve

A job walks a directory through the VirtualFS, reads files with a fixed
number of concurrent workers and writes a ZIP stream strictly in walk order.
"""

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncGenerator, Callable, List, Optional

import aiofiles.tempfile

from .errors import (
    EntryNotFoundError,
    FileSystemError,
    FileTooLargeError,
    NotRegularFileError,
    PathTraversalError,
    ReadFailedError,
    SinkClosedError,
)
from .fs import VirtualFS
from .models import ArchiveConfig, ResolvedPath
from .utils import format_duration
from .zipstream import ZipStreamWriter

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
SPOOL_THRESHOLD = 1024 * 1024


@dataclass
class ArchiveJob:
    """State of one archive download; lives exactly as long as its request"""
    root: ResolvedPath
    show_hidden: bool = False
    concurrency: int = 4
    max_file_size: int = 0
    abort_on_error: bool = False
    compress: bool = False
    warnings_name: str = "ARCHIVE_WARNINGS.txt"

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("Archive concurrency must be at least 1")

    @classmethod
    def from_config(cls, root: ResolvedPath, config: ArchiveConfig, show_hidden: bool) -> "ArchiveJob":
        return cls(
            root=root,
            show_hidden=show_hidden,
            concurrency=config.concurrency,
            max_file_size=config.maxFileSize,
            abort_on_error=config.abortOnError,
            compress=config.compression == "deflate",
            warnings_name=config.warningsName,
        )

    @property
    def filename(self) -> str:
        return f"{self.root.name or 'archive'}.zip"


@dataclass
class PlannedEntry:
    """One member of the archive, in walk order"""
    arcname: str
    relative: str
    is_dir: bool
    size: int
    modified: float


@dataclass
class SkippedEntry:
    """A member left out of the archive and why"""
    arcname: str
    reason: str


@dataclass
class ArchivePlan:
    entries: List[PlannedEntry] = field(default_factory=list)
    skipped: List[SkippedEntry] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return sum(1 for e in self.entries if not e.is_dir)

    @property
    def total_size(self) -> int:
        return sum(e.size for e in self.entries if not e.is_dir)


@dataclass
class ArchiveResult:
    """Outcome of a completed archive job"""
    entries_written: int = 0
    files_written: int = 0
    bytes_read: int = 0
    bytes_written: int = 0
    skipped: List[SkippedEntry] = field(default_factory=list)
    peak_concurrent_reads: int = 0
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "entries": self.entries_written,
            "files": self.files_written,
            "bytes": self.bytes_written,
            "skipped": [{"path": s.arcname, "reason": s.reason} for s in self.skipped],
        }


@dataclass
class _Payload:
    entry: PlannedEntry
    spool: Optional[object] = None
    size: int = 0
    error: Optional[FileSystemError] = None

    async def release(self) -> None:
        if self.spool is not None:
            spool, self.spool = self.spool, None
            await spool.close()


class _ReadCounter:
    """Tracks reads in flight for one job"""

    def __init__(self):
        self.active = 0
        self.peak = 0

    def __enter__(self):
        self.active += 1
        self.peak = max(self.peak, self.active)
        return self

    def __exit__(self, *exc):
        self.active -= 1
        return False


class ArchiveStreamer:
    """Builds ZIP streams of directory trees served by a VirtualFS"""

    def __init__(self, vfs: VirtualFS, spool_threshold: int = SPOOL_THRESHOLD):
        self.vfs = vfs
        self.spool_threshold = spool_threshold

    async def plan(self, job: ArchiveJob) -> ArchivePlan:
        """
        Enumerate the job's tree depth-first

        The walk stays on the job's own mount: children are located relative
        to that mount's root, never matched against other mounts' prefixes.
        Every entry is re-validated, so a symlink that leaves the mount raises
        PathTraversalError here, before any byte of the archive exists.
        """
        plan = ArchivePlan()
        seen_dirs = set()
        mount = job.root.mount

        async def walk(relative: str, prefix: str) -> None:
            resolved = await self.vfs.locate(mount, relative)
            real = os.path.realpath(resolved.absolute)
            if real in seen_dirs:
                error = FileSystemError("Symlink loop")
                self._skip(job, plan.skipped, prefix or "/", "directory already included (symlink loop)", error)
                return
            seen_dirs.add(real)

            try:
                children = await self.vfs.read_dir(resolved, job.show_hidden)
            except PathTraversalError:
                raise
            except FileSystemError as e:
                self._skip(job, plan.skipped, prefix or "/", "unreadable directory", e)
                return

            for info in children:
                arcname = prefix + info.name
                child = f"{relative}/{info.name}" if relative else info.name
                try:
                    await self.vfs.locate(mount, child)
                except EntryNotFoundError as e:
                    self._skip(job, plan.skipped, arcname, "entry disappeared or dangling link", e)
                    continue

                if info.is_dir:
                    plan.entries.append(PlannedEntry(arcname + '/', child, True, 0, info.modified))
                    await walk(child, arcname + '/')
                elif info.is_special:
                    error = NotRegularFileError(f"Not a regular file: {arcname}")
                    self._skip(job, plan.skipped, arcname, "not a regular file", error)
                else:
                    plan.entries.append(PlannedEntry(arcname, child, False, info.size, info.modified))

        await walk(job.root.relative, "")
        logger.debug(
            f"Planned archive {job.filename}: {len(plan.entries)} entries, "
            f"{plan.file_count} files, {plan.total_size} bytes"
        )
        return plan

    def _skip(self, job: ArchiveJob, skipped: List[SkippedEntry], arcname: str, reason: str, error: FileSystemError) -> None:
        if job.abort_on_error:
            raise error
        logger.warning(f"Skipping {arcname!r} in {job.filename}: {reason}")
        skipped.append(SkippedEntry(arcname, reason))

    async def _build(self, job: ArchiveJob, entry: PlannedEntry, counter: _ReadCounter) -> _Payload:
        """Read one file into a spool, off the writer's path"""
        payload = _Payload(entry)
        if entry.is_dir:
            return payload

        if job.max_file_size and entry.size > job.max_file_size:
            payload.error = FileTooLargeError(f"{entry.size} bytes exceeds limit of {job.max_file_size}")
            return payload

        spool = await aiofiles.tempfile.SpooledTemporaryFile(max_size=self.spool_threshold)
        size = 0

        try:
            with counter:
                target = await self.vfs.locate(job.root.mount, entry.relative)
                handle = await self.vfs.open(target)
                try:
                    while True:
                        chunk = await handle.read(READ_CHUNK_SIZE)
                        if not chunk:
                            break
                        size += len(chunk)
                        if job.max_file_size and size > job.max_file_size:
                            raise FileTooLargeError(f"File grew beyond limit of {job.max_file_size} bytes")
                        await spool.write(chunk)
                finally:
                    await handle.close()
        except PathTraversalError:
            await spool.close()
            raise
        except FileTooLargeError as e:
            await spool.close()
            payload.error = e
            return payload
        except (FileSystemError, OSError) as e:
            await spool.close()
            payload.error = ReadFailedError(str(e))
            return payload
        except BaseException:
            await spool.close()
            raise

        payload.spool = spool
        payload.size = size
        return payload

    async def run(self, job: ArchiveJob, sink, plan: Optional[ArchivePlan] = None) -> ArchiveResult:
        """
        Stream the job's archive into sink

        Args:
            job: The archive job
            sink: Object with an async write(bytes) method
            plan: Enumeration from plan(); computed here when omitted

        Raises:
            PathTraversalError: A path left its mount; the job is aborted
            SinkClosedError: The sink failed; in-flight reads are cancelled
            FileTooLargeError, ReadFailedError: Only with abort_on_error
        """
        started = time.time()
        if plan is None:
            plan = await self.plan(job)

        result = ArchiveResult(skipped=list(plan.skipped))
        counter = _ReadCounter()

        async def write_to_sink(data: bytes) -> None:
            try:
                await sink.write(data)
            except SinkClosedError:
                raise
            except OSError as e:
                raise SinkClosedError(f"Archive sink failed: {e}") from e

        writer = ZipStreamWriter(write_to_sink)
        pending = deque()
        upcoming = iter(plan.entries)

        def fill() -> None:
            while len(pending) < job.concurrency:
                entry = next(upcoming, None)
                if entry is None:
                    return
                pending.append(asyncio.ensure_future(self._build(job, entry, counter)))

        logger.info(
            f"Starting archive {job.filename}: {len(plan.entries)} entries, "
            f"concurrency={job.concurrency}"
        )

        current = None
        try:
            fill()
            while pending:
                # The head stays queued until done so cancellation reaches it
                current = await pending[0]
                pending.popleft()
                fill()

                entry = current.entry
                if current.error is not None:
                    if job.abort_on_error:
                        raise current.error
                    reason = "file too large" if isinstance(current.error, FileTooLargeError) else f"read failed: {current.error}"
                    logger.warning(f"Skipping {entry.arcname!r} in {job.filename}: {reason}")
                    result.skipped.append(SkippedEntry(entry.arcname, reason))
                elif entry.is_dir:
                    await writer.add_directory(entry.arcname, entry.modified)
                    result.entries_written += 1
                else:
                    await self._write_payload(job, writer, current)
                    result.entries_written += 1
                    result.files_written += 1
                    result.bytes_read += current.size

                await current.release()
                current = None

            if result.skipped:
                await writer.add_bytes(job.warnings_name, self._manifest(job, result.skipped), time.time())

            await writer.close()

        except BaseException as e:
            if current is not None:
                await current.release()
            await self._abandon(pending)
            if isinstance(e, asyncio.CancelledError):
                logger.info(f"Archive {job.filename} cancelled after {writer.offset} bytes")
            elif isinstance(e, SinkClosedError):
                logger.info(f"Archive {job.filename} stopped: client went away after {writer.offset} bytes")
            else:
                logger.warning(f"Archive {job.filename} aborted: {type(e).__name__}")
            raise

        result.bytes_written = writer.offset
        result.peak_concurrent_reads = counter.peak
        result.duration = time.time() - started
        logger.info(
            f"Archive {job.filename} completed: {result.entries_written} entries, "
            f"{result.bytes_written} bytes, {len(result.skipped)} skipped "
            f"in {format_duration(result.duration)}"
        )
        return result

    async def _write_payload(self, job: ArchiveJob, writer: ZipStreamWriter, payload: _Payload) -> None:
        spool = payload.spool
        await spool.seek(0)

        async def chunks():
            while True:
                data = await spool.read(READ_CHUNK_SIZE)
                if not data:
                    return
                yield data

        entry = payload.entry
        await writer.add_file(entry.arcname, entry.modified, payload.size, chunks(), job.compress)

    async def _abandon(self, pending: deque) -> None:
        """Cancel outstanding workers and release whatever they produced"""
        for task in pending:
            task.cancel()
        outcomes = await asyncio.gather(*pending, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, _Payload):
                await outcome.release()
        pending.clear()

    def _manifest(self, job: ArchiveJob, skipped: List[SkippedEntry]) -> bytes:
        lines = [
            f"{len(skipped)} entries were left out of {job.filename}:",
            "",
        ]
        lines.extend(f"{s.arcname}\t{s.reason}" for s in skipped)
        return ("\n".join(lines) + "\n").encode("utf-8")


_EOF = object()


class QueueSink:
    """Bounded hand-off between an archive job and a response body iterator"""

    def __init__(self, max_chunks: int = 16):
        self._queue = asyncio.Queue(maxsize=max_chunks)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise SinkClosedError("Client disconnected")
        await self._queue.put(bytes(data))

    async def finish(self) -> None:
        if not self._closed:
            await self._queue.put(_EOF)

    def close(self) -> None:
        self._closed = True

    async def get(self):
        return await self._queue.get()


async def stream_archive(
    streamer: ArchiveStreamer,
    job: ArchiveJob,
    plan: Optional[ArchivePlan] = None,
    grace_seconds: float = 5.0,
    on_result: Optional[Callable[[ArchiveResult], None]] = None,
) -> AsyncGenerator[bytes, None]:
    """
    Adapt ArchiveStreamer.run to an async byte iterator for StreamingResponse

    Closing the iterator early (client disconnect) closes the sink, cancels
    the job and waits up to grace_seconds for it to wind down.
    """
    sink = QueueSink()

    async def produce() -> ArchiveResult:
        try:
            return await streamer.run(job, sink, plan)
        finally:
            await sink.finish()

    task = asyncio.ensure_future(produce())
    try:
        while True:
            chunk = await sink.get()
            if chunk is _EOF:
                break
            yield chunk
        result = await task
        if on_result is not None:
            on_result(result)
    finally:
        sink.close()
        if not task.done():
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=grace_seconds)
            if not done:
                logger.warning(f"Archive {job.filename} did not stop within {grace_seconds}s")
        if task.done() and not task.cancelled():
            # Retrieve so asyncio does not report it as never retrieved
            task.exception()
