"""Buffered line-by-line reading from a file descriptor."""

from __future__ import annotations

import os
from typing import Iterator, Optional

#: Longest chunk of unreturned data held; no line may be longer.
LINEREAD_BUFFER_SIZE = 8192


class LineTooLongError(ValueError):
    """A line does not fit in the reader's buffer."""


class LineReader:
    """Reads lines from a file descriptor through a fixed-size buffer."""

    def __init__(self, fd: int) -> None:
        self.fd = fd
        self._buf = bytearray()

    def _take(self, length: int, keep_newline_out: bool) -> str:
        line = bytes(self._buf[:length - 1 if keep_newline_out else length])
        del self._buf[:length]
        return line.decode("utf-8", errors="surrogateescape")

    def get(self) -> Optional[str]:
        """Return the next line without its newline, or None at end of file.

        Raises LineTooLongError if a line does not fit in the buffer, and
        OSError if reading fails.
        """
        eof = False
        while True:
            nl = self._buf.find(b"\n")
            if nl >= 0:
                return self._take(nl + 1, True)
            if eof:
                if not self._buf:
                    return None
                return self._take(len(self._buf), False)

            room = LINEREAD_BUFFER_SIZE - len(self._buf)
            if room == 0:
                raise LineTooLongError(
                    f"line longer than {LINEREAD_BUFFER_SIZE} bytes")
            data = os.read(self.fd, room)
            if data:
                self._buf += data
            else:
                eof = True

    def __iter__(self) -> Iterator[str]:
        while (line := self.get()) is not None:
            yield line