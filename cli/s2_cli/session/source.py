"""
Record sources: lazy, ordered sequences of record bodies.

Each input line becomes one record body with its newline delimiter
("\\n" or "\\r\\n") removed and no other transformation. Sources are
consumed once, by the RecordBatcher that owns them.
"""

from __future__ import annotations

import asyncio
import logging
import os
import stat
import sys
from typing import AsyncIterable, AsyncIterator, BinaryIO, Iterable, Optional, Union

from ..errors import RecordRead, RecordReaderInit, RecordTooLarge
from ..types import MAX_BATCH_METERED_BYTES, Record

logger = logging.getLogger(__name__)

# Longest line a pipe reader buffers before giving up on it
MAX_LINE_BYTES = 2 * 1024 * 1024


def strip_newline(line: bytes) -> bytes:
    if line.endswith(b"\r\n"):
        return line[:-2]
    if line.endswith(b"\n"):
        return line[:-1]
    return line


class RecordSource:
    """Base class for record sources.

    Subclasses implement _readline(), returning b"" at end of input.
    """

    name = "records"

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._lines()

    async def _lines(self) -> AsyncIterator[bytes]:
        try:
            while True:
                try:
                    line = await self._readline()
                except (OSError, ValueError) as e:
                    raise RecordRead(f"{self.name}: {e}") from e
                if not line:
                    return
                yield strip_newline(line)
        finally:
            await self.aclose()

    async def _readline(self) -> bytes:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release the underlying input."""
        pass


class FileRecordSource(RecordSource):
    """Reads records from a file (or a regular file on stdin)."""

    def __init__(self, file: BinaryIO, name: str, *, owned: bool = True) -> None:
        self._file = file
        self.name = name
        self._owned = owned

    @classmethod
    def open(cls, path: Union[str, os.PathLike]) -> FileRecordSource:
        """Open a file for reading records.

        Raises:
            RecordReaderInit: If the file cannot be opened
        """
        try:
            file = open(path, "rb")
        except OSError as e:
            raise RecordReaderInit(str(e)) from e
        return cls(file, str(path))

    async def _readline(self) -> bytes:
        return await asyncio.to_thread(self._file.readline)

    async def aclose(self) -> None:
        if self._owned and not self._file.closed:
            self._file.close()


class PipeRecordSource(RecordSource):
    """Reads records from a pipe or terminal without blocking the loop."""

    def __init__(self, reader: asyncio.StreamReader, name: str) -> None:
        self._reader = reader
        self.name = name

    @classmethod
    async def connect(cls, file: BinaryIO, name: str) -> PipeRecordSource:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
        try:
            await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), file)
        except (OSError, ValueError) as e:
            raise RecordReaderInit(str(e)) from e
        return cls(reader, name)

    async def _readline(self) -> bytes:
        try:
            return await self._reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            return e.partial
        except asyncio.LimitOverrunError as e:
            # Line is past the buffer limit, which is well over any batch ceiling
            metered = Record(body=b"").metered_size() + e.consumed
            raise RecordTooLarge(metered, MAX_BATCH_METERED_BYTES) from e


class IterableRecordSource(RecordSource):
    """Serves record bodies from an in-memory (async) iterable."""

    name = "iterable"

    def __init__(self, lines: Union[Iterable[bytes], AsyncIterable[bytes]]) -> None:
        self._source = lines

    async def _lines(self) -> AsyncIterator[bytes]:
        if isinstance(self._source, AsyncIterable):
            async for line in self._source:
                yield strip_newline(line)
        else:
            for line in self._source:
                yield strip_newline(line)


async def open_record_source(path: Optional[str] = None) -> RecordSource:
    """Open a record source for a file path, or stdin for None / "-".

    Raises:
        RecordReaderInit: If the input cannot be opened
    """
    if path and path != "-":
        return FileRecordSource.open(path)

    stdin = sys.stdin.buffer
    try:
        mode = os.fstat(stdin.fileno()).st_mode
    except (OSError, ValueError) as e:
        raise RecordReaderInit(f"stdin: {e}") from e

    if stat.S_ISREG(mode):
        return FileRecordSource(stdin, "stdin", owned=False)
    logger.debug("Reading records from stdin pipe")
    return await PipeRecordSource.connect(stdin, "stdin")
