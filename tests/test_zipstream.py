"""
Tests for the streaming ZIP encoder
"""

import asyncio
import io
import struct
import time
import zipfile

import pytest

from dirserve.zipstream import (
    ZIP_DEFLATED,
    ZIP_STORED,
    ZipStreamWriter,
    compression_method_for,
    zip_timestamp,
)


def build(populate) -> bytes:
    """Run populate(writer) against an in-memory sink and return the archive"""
    buffer = io.BytesIO()

    async def write(data):
        buffer.write(data)

    async def main():
        writer = ZipStreamWriter(write)
        await populate(writer)
        await writer.close()
        assert writer.offset == buffer.tell()

    asyncio.run(main())
    return buffer.getvalue()


async def chunked(data: bytes, size: int = 7):
    for i in range(0, len(data), size):
        yield data[i:i + size]


class TestZipStreamWriter:

    def test_files_and_directories(self):
        now = time.time()

        async def populate(writer):
            await writer.add_directory("docs", now)
            await writer.add_bytes("docs/readme.txt", b"hello zip", now)
            await writer.add_bytes("data.csv", b"a,b\n" * 1000, now, compress=True)
            await writer.add_bytes("empty.txt", b"", now)

        archive = build(populate)
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            assert zf.testzip() is None
            assert zf.namelist() == ["docs/", "docs/readme.txt", "data.csv", "empty.txt"]
            assert zf.read("docs/readme.txt") == b"hello zip"
            assert zf.read("data.csv") == b"a,b\n" * 1000
            assert zf.getinfo("docs/").is_dir()
            assert zf.getinfo("data.csv").compress_type == ZIP_DEFLATED
            assert zf.getinfo("data.csv").compress_size < 4000
            assert zf.getinfo("docs/readme.txt").compress_type == ZIP_STORED

    def test_streamed_file(self):
        payload = bytes(range(256)) * 50
        now = time.time()

        async def populate(writer):
            await writer.add_file("stored.bin", now, len(payload), chunked(payload))
            await writer.add_file("packed.txt", now, len(payload), chunked(payload, 1000), compress=True)
            await writer.add_file("empty.bin", now, 0, chunked(b""))

        archive = build(populate)
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            assert zf.testzip() is None
            assert zf.read("stored.bin") == payload
            assert zf.read("packed.txt") == payload
            assert zf.read("empty.bin") == b""
            # Written front to back, so sizes follow each entry's data
            assert zf.getinfo("stored.bin").flag_bits & 0x08
            assert zf.getinfo("packed.txt").compress_type == ZIP_DEFLATED

    def test_unicode_names(self):
        async def populate(writer):
            await writer.add_bytes("résumé/日本語.txt", b"x", time.time())

        with zipfile.ZipFile(io.BytesIO(build(populate))) as zf:
            info = zf.infolist()[0]
            assert info.filename == "résumé/日本語.txt"
            assert info.flag_bits & 0x800

    def test_size_mismatch(self):
        async def short(writer):
            await writer.add_file("a", time.time(), 10, chunked(b"12345"))

        async def long(writer):
            await writer.add_file("a", time.time(), 2, chunked(b"12345"))

        for populate in (short, long):
            with pytest.raises(ValueError):
                build(populate)

    def test_closed_writer_refuses_entries(self):
        async def main():
            async def write(data):
                pass

            writer = ZipStreamWriter(write)
            await writer.close()
            with pytest.raises(ValueError):
                await writer.add_bytes("late.txt", b"x", time.time())
            with pytest.raises(ValueError):
                await writer.close()

        asyncio.run(main())

    def test_output_reaches_sink_as_it_is_written(self):
        seen = []

        async def main():
            async def write(data):
                seen.append(len(data))

            writer = ZipStreamWriter(write)
            await writer.add_file("a.bin", time.time(), 3, chunked(b"abc", 1))
            written_before_close = sum(seen)
            await writer.close()
            return written_before_close

        before_close = asyncio.run(main())
        assert before_close > 3
        assert sum(seen) > before_close

    def test_zip64_entry_count(self):
        count = 70000

        async def populate(writer):
            for i in range(count):
                await writer.add_directory(f"d{i}", 0)

        archive = build(populate)
        assert struct.pack("<I", 0x06064B50) in archive[-200:]
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            names = zf.namelist()
            assert len(names) == count
            assert names[-1] == f"d{count - 1}/"


class TestHelpers:

    def test_compression_method_for(self):
        assert compression_method_for("a.txt", False) == ZIP_STORED
        assert compression_method_for("a.txt", True) == ZIP_DEFLATED
        assert compression_method_for("photo.JPG", True) == ZIP_STORED
        assert compression_method_for("bundle.tar.gz", True) == ZIP_STORED

    def test_zip_timestamp(self):
        stamp = time.mktime((2024, 5, 17, 13, 45, 30, 0, 0, -1))
        assert zip_timestamp(stamp) == (2024, 5, 17, 13, 45, 30)
        # Outside what a DOS date can hold
        assert zip_timestamp(0) == (1980, 1, 1, 0, 0, 0)
        assert zip_timestamp(time.mktime((2150, 1, 1, 0, 0, 0, 0, 0, -1))) == (2107, 12, 31, 23, 59, 58)
