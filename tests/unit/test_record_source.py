"""
Unit tests for record sources.

Tests cover:
- Newline handling
- File sources and their lifecycle
- Pipe sources and overlong lines
- Open failures
"""

import asyncio

import pytest
from s2_cli.errors import RecordReaderInit, RecordTooLarge
from s2_cli.session.source import (
    MAX_LINE_BYTES,
    FileRecordSource,
    IterableRecordSource,
    PipeRecordSource,
    open_record_source,
    strip_newline,
)


async def collect(source):
    return [line async for line in source]


class TestStripNewline:
    """Tests for newline stripping."""

    @pytest.mark.parametrize(
        "line,expected",
        [
            (b"abc\n", b"abc"),
            (b"abc\r\n", b"abc"),
            (b"abc", b"abc"),
            (b"\n", b""),
            (b"a\rb\n", b"a\rb"),
            (b"abc\n\n", b"abc\n"),
        ],
    )
    def test_strip(self, line, expected):
        assert strip_newline(line) == expected


class TestFileRecordSource:
    """Tests for FileRecordSource."""

    @pytest.mark.asyncio
    async def test_reads_lines(self, tmp_path):
        path = tmp_path / "input.txt"
        path.write_bytes(b"one\ntwo\r\n\nthree")

        lines = await collect(FileRecordSource.open(path))

        assert lines == [b"one", b"two", b"", b"three"]

    @pytest.mark.asyncio
    async def test_binary_bodies_untouched(self, tmp_path):
        path = tmp_path / "input.bin"
        path.write_bytes(b"\x00\xff \t\n")

        assert await collect(FileRecordSource.open(path)) == [b"\x00\xff \t"]

    @pytest.mark.asyncio
    async def test_closes_file(self, tmp_path):
        path = tmp_path / "input.txt"
        path.write_bytes(b"a\n")
        source = FileRecordSource.open(path)

        await collect(source)

        assert source._file.closed

    @pytest.mark.asyncio
    async def test_unowned_file_left_open(self, tmp_path):
        path = tmp_path / "input.txt"
        path.write_bytes(b"a\n")

        with open(path, "rb") as f:
            source = FileRecordSource(f, "borrowed", owned=False)
            assert await collect(source) == [b"a"]
            assert not f.closed

    def test_missing_file(self, tmp_path):
        with pytest.raises(RecordReaderInit) as exc_info:
            FileRecordSource.open(tmp_path / "missing.txt")

        assert "Record Reader" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_open_record_source_path(self, tmp_path):
        path = tmp_path / "input.txt"
        path.write_bytes(b"x\ny\n")

        source = await open_record_source(str(path))

        assert isinstance(source, FileRecordSource)
        assert await collect(source) == [b"x", b"y"]


def pipe_reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class TestPipeRecordSource:
    """Tests for PipeRecordSource."""

    @pytest.mark.asyncio
    async def test_reads_lines(self):
        source = PipeRecordSource(pipe_reader(b"one\ntwo\r\n\nthree"), "stdin")

        assert await collect(source) == [b"one", b"two", b"", b"three"]

    @pytest.mark.asyncio
    async def test_line_over_buffer_limit(self):
        """A line the reader cannot buffer is reported as an oversized record."""
        source = PipeRecordSource(pipe_reader(b"x" * (MAX_LINE_BYTES + 10) + b"\n"), "stdin")

        with pytest.raises(RecordTooLarge) as exc_info:
            await collect(source)

        assert exc_info.value.metered_bytes == 8 + MAX_LINE_BYTES + 10
        assert exc_info.value.limit == 1024 * 1024


class TestIterableRecordSource:
    """Tests for IterableRecordSource."""

    @pytest.mark.asyncio
    async def test_sync_iterable(self):
        source = IterableRecordSource([b"a\n", b"b"])
        assert await collect(source) == [b"a", b"b"]

    @pytest.mark.asyncio
    async def test_async_iterable(self):
        async def lines():
            yield b"a\r\n"
            yield b"b\n"

        assert await collect(IterableRecordSource(lines())) == [b"a", b"b"]
