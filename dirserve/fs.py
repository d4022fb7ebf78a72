"""
Virtual filesystem for dirserve

Maps request paths onto mounts and guarantees nothing escapes a mount root.
Every call re-validates its path; nothing is cached between calls.
"""

import os
import stat as stat_module
import logging
from typing import AsyncGenerator, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os

from .errors import (
    EntryNotFoundError,
    FileSystemError,
    ForbiddenError,
    IsDirectoryError,
    NotDirectoryError,
    NotRegularFileError,
    PathTraversalError,
    RangeNotSatisfiable,
)
from .models import FileInfo, HttpRange, ResolvedPath
from .mounts import Mount, MountTable
from .pathguard import is_hidden, is_within, safe_path
from .utils import get_mime_type

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# Opening a FIFO for reading blocks until a writer appears
O_NONBLOCK = getattr(os, 'O_NONBLOCK', 0)

Target = Union[str, ResolvedPath]


def _nonblocking_opener(path, flags):
    return os.open(path, flags | O_NONBLOCK)


def is_special(st: os.stat_result) -> bool:
    """True for FIFOs, sockets and devices"""
    return not (stat_module.S_ISDIR(st.st_mode) or stat_module.S_ISREG(st.st_mode))


class VirtualFS:
    """Single entry point for turning request paths into files and metadata"""

    def __init__(self, mounts: MountTable):
        self.mounts = mounts

    async def resolve(self, url_path: str, *, write: bool = False, must_exist: bool = True) -> ResolvedPath:
        """
        Resolve a request path to a mount and a confined absolute path

        Args:
            url_path: Request path, e.g. /docs/a/b.txt
            write: Whether the caller intends to modify the entry
            must_exist: Fail with EntryNotFoundError when nothing is there

        Raises:
            PathTraversalError: If the path escapes the mount
            EntryNotFoundError: If no mount matches or the entry is missing
            ForbiddenError: If write is requested on a read-only mount
        """
        mount, remainder = self.mounts.match(url_path)
        if mount is None:
            raise EntryNotFoundError("No mount for path")
        return await self.locate(mount, remainder, write=write, must_exist=must_exist)

    async def locate(
        self,
        mount: Mount,
        relative: str,
        *,
        write: bool = False,
        must_exist: bool = True,
    ) -> ResolvedPath:
        """
        Resolve a path relative to one mount, bypassing prefix matching

        Used to walk a mount's own tree, where a child directory may share
        its name with another mount's prefix.
        """
        try:
            absolute = safe_path(mount.root, relative)
        except PathTraversalError:
            logger.warning(f"Path traversal rejected on mount {mount.name!r}")
            raise

        if write and mount.readonly:
            raise ForbiddenError(f"Mount is read-only: {mount.name}")

        if must_exist and not await aiofiles.os.path.exists(absolute):
            raise EntryNotFoundError(f"Not found: {relative} on mount {mount.name!r}")

        relative = os.path.relpath(absolute, mount.root).replace(os.sep, '/')
        if relative == '.':
            relative = ''

        return ResolvedPath(mount=mount, relative=relative, absolute=absolute)

    async def _target(self, target: Target) -> ResolvedPath:
        if isinstance(target, ResolvedPath):
            return await self.locate(target.mount, target.relative)
        return await self.resolve(target)

    def _recheck(self, resolved: ResolvedPath) -> None:
        """Re-verify confinement after a call that may have followed a symlink"""
        if not is_within(resolved.mount.root, os.path.realpath(resolved.absolute)):
            logger.warning(f"Symlink escape detected on mount {resolved.mount.name!r}")
            raise PathTraversalError("Symlink points outside mount root")

    def _info(self, resolved: ResolvedPath, st: os.stat_result) -> FileInfo:
        is_dir = stat_module.S_ISDIR(st.st_mode)
        special = is_special(st)
        return FileInfo(
            name=resolved.name,
            path=resolved.url_path,
            size=0 if (is_dir or special) else st.st_size,
            is_dir=is_dir,
            modified=st.st_mtime,
            mime_type="" if is_dir else get_mime_type(resolved.name),
            is_special=special,
        )

    async def stat(self, target: Target) -> FileInfo:
        """
        Get file information

        Raises:
            FileSystemError: Subclass describing why the entry is unavailable
        """
        resolved = await self._target(target)
        try:
            st = await aiofiles.os.stat(resolved.absolute)
        except FileNotFoundError:
            raise EntryNotFoundError(f"Not found: {resolved.url_path}")
        except OSError as e:
            raise FileSystemError(f"Failed to get file info: {e}")

        self._recheck(resolved)
        return self._info(resolved, st)

    async def read_dir(self, target: Target, show_hidden: bool = False) -> List[FileInfo]:
        """
        List directory contents

        Entries are sorted directories first, then by case-insensitive name.
        Symlinks whose target leaves the mount are listed with their own
        metadata only, never the target's.
        """
        resolved = await self._target(target)

        if not await aiofiles.os.path.isdir(resolved.absolute):
            raise NotDirectoryError(f"Not a directory: {resolved.url_path}")
        self._recheck(resolved)

        try:
            names = await aiofiles.os.listdir(resolved.absolute)
        except OSError as e:
            raise FileSystemError(f"Failed to list directory: {e}")

        base_url = resolved.url_path.rstrip('/')
        root = resolved.mount.root
        entries = []
        for name in names:
            if not show_hidden and is_hidden(name):
                continue

            entry_path = os.path.join(resolved.absolute, name)
            try:
                lst = await aiofiles.os.stat(entry_path, follow_symlinks=False)
                is_link = stat_module.S_ISLNK(lst.st_mode)
                if is_link and not is_within(root, os.path.realpath(entry_path)):
                    st, confined = lst, False
                else:
                    st, confined = (await aiofiles.os.stat(entry_path) if is_link else lst), True
            except OSError as e:
                logger.warning(f"Failed to stat {name!r} in {base_url or '/'}: {e}")
                continue

            is_dir = confined and stat_module.S_ISDIR(st.st_mode)
            special = confined and is_special(st)
            entries.append(FileInfo(
                name=name,
                path=f"{base_url}/{name}",
                size=0 if (is_dir or special or not confined) else st.st_size,
                is_dir=is_dir,
                modified=st.st_mtime,
                mime_type="" if is_dir else get_mime_type(name),
                is_symlink=is_link,
                is_special=special,
            ))

        entries.sort(key=lambda x: (not x.is_dir, x.name.lower(), x.name))
        return entries

    async def open(self, target: Target):
        """
        Open a regular file for binary reading

        The returned aiofiles handle must be closed by the caller. The opened
        descriptor is checked against the confined path after opening, so a
        symlink swapped in between resolve and open is refused. FIFOs, sockets
        and devices raise NotRegularFileError without blocking.
        """
        resolved = await self._target(target)

        if await aiofiles.os.path.isdir(resolved.absolute):
            raise IsDirectoryError(f"Path is a directory: {resolved.url_path}")

        try:
            handle = await aiofiles.open(resolved.absolute, 'rb', opener=_nonblocking_opener)
        except FileNotFoundError:
            raise EntryNotFoundError(f"Not found: {resolved.url_path}")
        except OSError as e:
            raise FileSystemError(f"Failed to open file: {e}")

        try:
            opened = os.fstat(handle.fileno())
            self._recheck(resolved)
            if not stat_module.S_ISREG(opened.st_mode):
                raise NotRegularFileError(f"Not a regular file: {resolved.url_path}")
            current = await aiofiles.os.stat(resolved.absolute)
            if (opened.st_dev, opened.st_ino) != (current.st_dev, current.st_ino):
                raise PathTraversalError("File changed while opening")
        except BaseException:
            await handle.close()
            raise

        return handle

    async def open_for_download(
        self,
        target: Target,
        http_range: Optional[HttpRange] = None,
        chunk_size: int = CHUNK_SIZE,
    ) -> Tuple[AsyncGenerator[bytes, None], int, int, FileInfo]:
        """
        Open file for download with optional range support

        Returns:
            (file_generator, start_pos, end_pos, file_info) tuple; end_pos is
            inclusive and start_pos > end_pos means an empty body

        Raises:
            FileSystemError: If the file is unavailable or the range cannot be
                satisfied (RangeNotSatisfiable)
        """
        resolved = await self._target(target)
        info = await self.stat(resolved)
        if info.is_dir:
            raise IsDirectoryError(f"Path is a directory: {info.path}")
        if info.is_special:
            raise NotRegularFileError(f"Not a regular file: {info.path}")

        total_size = info.size
        if http_range:
            start, end = http_range.resolve(total_size)
            if start > end:
                raise RangeNotSatisfiable(f"Invalid range for {total_size} bytes")
        else:
            start, end = 0, total_size - 1

        handle = await self.open(resolved)

        async def file_generator():
            try:
                await handle.seek(start)
                remaining = end - start + 1
                while remaining > 0:
                    chunk = await handle.read(min(chunk_size, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    yield chunk
            finally:
                await handle.close()

        return file_generator(), start, end, info
