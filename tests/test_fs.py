"""
Tests for the virtual filesystem
"""

import asyncio
import os
import pytest
import tempfile
import shutil
from pathlib import Path

from dirserve.errors import (
    EntryNotFoundError,
    ForbiddenError,
    IsDirectoryError,
    NotDirectoryError,
    NotRegularFileError,
    PathTraversalError,
    RangeNotSatisfiable,
)
from dirserve.fs import VirtualFS
from dirserve.models import HttpRange
from dirserve.mounts import MountTable, make_mount


def run(coro):
    return asyncio.run(coro)


async def collect(generator):
    return b"".join([chunk async for chunk in generator])


class TestVirtualFS:
    """Test resolution, listing and reads through mounts"""

    def setup_method(self):
        self.temp_dir = Path(os.path.realpath(tempfile.mkdtemp()))
        self.root = self.temp_dir / "root"
        self.docs = self.temp_dir / "docs"
        self.writable = self.temp_dir / "writable"
        self.outside = self.temp_dir / "outside"
        for d in (self.root, self.docs, self.writable, self.outside):
            d.mkdir()

        (self.root / "a.txt").write_text("hello world")
        (self.root / "B.txt").write_text("b")
        (self.root / "sub").mkdir()
        (self.root / "sub" / "c.txt").write_text("c")
        (self.root / "Zeta").mkdir()
        (self.root / ".hidden").write_text("h")
        (self.root / "Thumbs.db").write_text("t")
        (self.root / "empty.bin").write_bytes(b"")
        (self.docs / "guide.md").write_text("# guide")
        (self.outside / "secret.txt").write_text("secret")

        self.symlinks = True
        try:
            (self.root / "escape").symlink_to(self.outside)
            (self.root / "escape_file").symlink_to(self.outside / "secret.txt")
            (self.root / "alias").symlink_to(self.root / "sub")
        except OSError:
            self.symlinks = False

        self.vfs = VirtualFS(MountTable([
            make_mount("", str(self.root)),
            make_mount("/docs", str(self.docs)),
            make_mount("/rw", str(self.writable), readonly=False),
        ]))

    def teardown_method(self):
        if self.temp_dir.exists():
            shutil.rmtree(self.temp_dir)

    def test_resolve(self):
        resolved = run(self.vfs.resolve("/sub/c.txt"))
        assert resolved.mount.is_default
        assert resolved.relative == "sub/c.txt"
        assert resolved.absolute == str(self.root / "sub" / "c.txt")
        assert resolved.url_path == "/sub/c.txt"
        assert resolved.name == "c.txt"

        resolved = run(self.vfs.resolve("/docs/guide.md"))
        assert resolved.mount.name == "docs"
        assert resolved.url_path == "/docs/guide.md"

        resolved = run(self.vfs.resolve("/docs"))
        assert resolved.relative == ""
        assert resolved.name == "docs"
        assert resolved.url_path == "/docs"

    def test_resolve_traversal(self):
        for path in ("/../outside/secret.txt", "/docs/../../outside", "/docs/%2e%2e/x", "/a.txt\x00"):
            with pytest.raises(PathTraversalError):
                run(self.vfs.resolve(path))

    def test_resolve_missing(self):
        with pytest.raises(EntryNotFoundError):
            run(self.vfs.resolve("/nope.txt"))
        resolved = run(self.vfs.resolve("/nope.txt", must_exist=False))
        assert resolved.absolute == str(self.root / "nope.txt")

    def test_resolve_write_on_readonly(self):
        with pytest.raises(ForbiddenError):
            run(self.vfs.resolve("/docs/new.txt", write=True, must_exist=False))
        resolved = run(self.vfs.resolve("/rw/new.txt", write=True, must_exist=False))
        assert resolved.mount.name == "rw"

    def test_stat(self):
        info = run(self.vfs.stat("/a.txt"))
        assert info.name == "a.txt"
        assert info.path == "/a.txt"
        assert info.size == len("hello world")
        assert not info.is_dir
        assert info.mime_type == "text/plain"

        info = run(self.vfs.stat("/sub"))
        assert info.is_dir
        assert info.size == 0

    def test_read_dir_order_and_hidden(self):
        names = [e.name for e in run(self.vfs.read_dir("/"))]
        expected_dirs = ["alias", "sub", "Zeta"] if self.symlinks else ["sub", "Zeta"]
        assert names[:len(expected_dirs)] == expected_dirs
        assert ".hidden" not in names
        assert "Thumbs.db" not in names
        files = [n for n in names if n in ("a.txt", "B.txt", "empty.bin")]
        assert files == ["a.txt", "B.txt", "empty.bin"]

        names = [e.name for e in run(self.vfs.read_dir("/", show_hidden=True))]
        assert ".hidden" in names
        assert "Thumbs.db" in names

    def test_read_dir_paths(self):
        entries = run(self.vfs.read_dir("/docs"))
        assert [(e.name, e.path) for e in entries] == [("guide.md", "/docs/guide.md")]

    def test_read_dir_escaping_symlink(self):
        if not self.symlinks:
            pytest.skip("Symlinks not supported on this system")

        entries = {e.name: e for e in run(self.vfs.read_dir("/"))}
        escape = entries["escape"]
        assert escape.is_symlink
        assert not escape.is_dir
        assert escape.size == 0
        assert entries["escape_file"].size == 0

        # Internal links keep their target's type
        assert entries["alias"].is_dir

        with pytest.raises(PathTraversalError):
            run(self.vfs.read_dir("/escape"))
        with pytest.raises(PathTraversalError):
            run(self.vfs.stat("/escape_file"))
        with pytest.raises(PathTraversalError):
            run(self.vfs.open("/escape_file"))

    def test_read_dir_on_file(self):
        with pytest.raises(NotDirectoryError):
            run(self.vfs.read_dir("/a.txt"))

    def test_open(self):
        async def read():
            handle = await self.vfs.open("/sub/c.txt")
            try:
                return await handle.read()
            finally:
                await handle.close()

        assert run(read()) == b"c"

        with pytest.raises(IsDirectoryError):
            run(self.vfs.open("/sub"))
        with pytest.raises(EntryNotFoundError):
            run(self.vfs.open("/missing.txt"))

    def test_open_for_download_full(self):
        async def download():
            generator, start, end, info = await self.vfs.open_for_download("/a.txt")
            return await collect(generator), start, end, info

        data, start, end, info = run(download())
        assert data == b"hello world"
        assert (start, end) == (0, 10)
        assert info.size == 11

    def test_open_for_download_ranges(self):
        async def download(http_range):
            generator, start, end, _ = await self.vfs.open_for_download("/a.txt", http_range, chunk_size=3)
            return await collect(generator), start, end

        assert run(download(HttpRange(start=0, end=4))) == (b"hello", 0, 4)
        assert run(download(HttpRange(start=6))) == (b"world", 6, 10)
        assert run(download(HttpRange(suffix_length=5))) == (b"world", 6, 10)
        assert run(download(HttpRange(start=6, end=100))) == (b"world", 6, 10)

        with pytest.raises(RangeNotSatisfiable):
            run(download(HttpRange(start=11)))
        with pytest.raises(RangeNotSatisfiable):
            run(download(HttpRange(suffix_length=0)))

    def test_open_for_download_empty_file(self):
        async def download():
            generator, start, end, _ = await self.vfs.open_for_download("/empty.bin")
            return await collect(generator), start, end

        assert run(download()) == (b"", 0, -1)

    def test_open_for_download_directory(self):
        with pytest.raises(IsDirectoryError):
            run(self.vfs.open_for_download("/sub"))

    def test_no_default_mount(self):
        vfs = VirtualFS(MountTable([make_mount("/docs", str(self.docs))]))
        with pytest.raises(EntryNotFoundError):
            run(vfs.resolve("/a.txt"))
        assert run(vfs.stat("/docs/guide.md")).size == len("# guide")

    def test_locate_ignores_other_mount_prefixes(self):
        # The default mount has its own docs/ directory next to the /docs mount
        (self.root / "docs").mkdir()
        (self.root / "docs" / "local.txt").write_text("local")

        default = self.vfs.mounts.default
        located = run(self.vfs.locate(default, "docs/local.txt"))
        assert located.mount is default
        assert located.absolute == str(self.root / "docs" / "local.txt")
        assert run(self.vfs.stat(located)).size == len("local")

        with pytest.raises(EntryNotFoundError):
            run(self.vfs.stat("/docs/local.txt"))
        with pytest.raises(PathTraversalError):
            run(self.vfs.locate(default, "../outside/secret.txt"))

    def test_resolved_paths_are_revalidated(self):
        if not self.symlinks:
            pytest.skip("Symlinks not supported on this system")

        resolved = run(self.vfs.resolve("/sub/c.txt"))
        (self.root / "sub" / "c.txt").unlink()
        (self.root / "sub" / "c.txt").symlink_to(self.outside / "secret.txt")
        with pytest.raises(PathTraversalError):
            run(self.vfs.open(resolved))

    def test_fifo_is_never_opened_for_reading(self):
        if not hasattr(os, "mkfifo"):
            pytest.skip("FIFOs not supported on this system")
        os.mkfifo(self.root / "pipe")

        entries = {e.name: e for e in run(self.vfs.read_dir("/"))}
        assert entries["pipe"].is_special
        assert entries["pipe"].size == 0
        assert not entries["a.txt"].is_special

        info = run(self.vfs.stat("/pipe"))
        assert info.is_special
        assert not info.is_dir

        async def open_pipe():
            return await asyncio.wait_for(self.vfs.open("/pipe"), timeout=5)

        with pytest.raises(NotRegularFileError):
            run(open_pipe())
        with pytest.raises(NotRegularFileError):
            run(asyncio.wait_for(self.vfs.open_for_download("/pipe"), timeout=5))
