"""Logging to standard error, a size-capped log file or the system logger."""

from __future__ import annotations

import fcntl
import mmap
import os
import socket
import sys
import time
from typing import Optional, TextIO

LOG_EMERG = 0
LOG_ALERT = 1
LOG_CRIT = 2
LOG_ERR = 3
LOG_WARNING = 4
LOG_NOTICE = 5
LOG_INFO = 6
LOG_DEBUG = 7

LOG_DAEMON = 3 << 3

BUFSIZ = 8192
PAGE_SIZE = mmap.PAGESIZE

VERSION = "unknown version"

LOGFILE_SIZE_DEFAULT = 1024 * 1024
LOGFILE_CUT_RATIO = 30
LOGFILE_SIZE_MIN = 5 * max(BUFSIZ, PAGE_SIZE)

_LOGFILE_PREFIX = {
    LOG_ERR: "ERROR:   ",
    LOG_WARNING: "WARNING: ",
    LOG_INFO: "info:    ",
    LOG_DEBUG: "         ",
}


def _mask(pri: int) -> int:
    return 1 << pri


def _cdiv(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


def _cmod(a: int, b: int) -> int:
    return a - b * _cdiv(a, b)


def _round_up(x: int, align: int) -> int:
    return (x + align - 1) // align * align


def logtime_fmt(now: Optional[int], start: int) -> str:
    """Format a monotonic time in nanoseconds, relative to ``start``.

    Gives seconds with four decimal places, or "<error>" if ``now`` is None.
    """
    if now is None:
        return "<error>"
    delta = _cdiv(now - start, 1000)
    return f"{_cdiv(delta, 1000000)}.{_cmod(_cdiv(delta, 100), 10000):04d}"


def _clip(text: str) -> bytes:
    return text.encode("utf-8", errors="replace")[:BUFSIZ - 1]


class Logger:
    """Routes messages by priority to stderr, a log file or syslog."""

    syslog_path = "/dev/log"

    def __init__(self, stderr: Optional[TextIO] = None) -> None:
        self._stream = stderr
        self.start = time.monotonic_ns()
        self.mask = 0
        self.ident = ""
        self.trace_enabled = False
        self.conf_parsed = False
        self.to_stderr = True

        self._sock: Optional[socket.socket] = None
        self._file: Optional[int] = None
        self._size = 0
        self._written = 0
        self._cut_size = 0
        self._header = ""

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def logmsg(self, newline: bool, cont: bool, pri: int, message: str) -> None:
        """Log ``message`` with syslog priority ``pri``.

        ``cont`` continues a previous message on the same line; ``newline``
        ends the line.
        """
        debug_print = bool(self.mask & _mask(LOG_DEBUG)) and self._file is None
        now = time.monotonic_ns()
        enabled = bool(self.mask & _mask(pri & 7))

        if debug_print and not cont:
            self.stream.write(f"{logtime_fmt(now, self.start)}: ")

        if enabled or not self.conf_parsed:
            if self._file is not None:
                self._logfile_write(newline, cont, pri, now, message)
            elif not self.mask & _mask(LOG_DEBUG):
                self._syslog(newline, pri, message)

        if debug_print or not self.conf_parsed or (self.to_stderr and enabled):
            self.stream.write(message + ("\n" if newline else ""))

    def logmsg_perror(self, pri: int, message: str, errno: int) -> None:
        """Log ``message`` followed by the description of ``errno``."""
        self.logmsg(False, False, pri, message)
        self.logmsg(True, True, pri, f": {os.strerror(errno)}")

    def open_syslog(self, ident: str, facility: int) -> None:
        """Connect to the system logger and set the identity to log under.

        If the logger cannot be reached, nothing changes.
        """
        if self._sock is None:
            try:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
            except OSError:
                return
            try:
                sock.connect(self.syslog_path)
            except OSError:
                sock.close()
                return
            self._sock = sock

        self.mask |= facility
        self.ident = ident[:BUFSIZ - 1]

    def set_mask(self, mask: int) -> None:
        """Set the mask of priorities that get logged."""
        self.mask = mask

    def _syslog(self, newline: bool, pri: int, message: str) -> None:
        data = _clip(f"<{pri}> {self.ident}: {message}" + ("\n" if newline else ""))
        if self._sock is None:
            return
        try:
            sent = self._sock.send(data)
        except OSError:
            sent = -1
        if sent != len(data) and self.to_stderr:
            self.stream.write(f"Failed to send {len(data)} bytes to syslog\n")

    def logfile_init(self, name: str, path, size: int) -> None:
        """Open the log file at ``path`` and write its header.

        ``size`` is the maximum file size, zero for the default.
        """
        exe = os.readlink("/proc/self/exe")
        flags = (os.O_CREAT | os.O_TRUNC | os.O_APPEND | os.O_RDWR
                 | getattr(os, "O_CLOEXEC", 0))
        self._file = os.open(path, flags, 0o600)
        self._size = size or LOGFILE_SIZE_DEFAULT
        self._header = f"{name} {VERSION}: {exe} ({os.getpid()})"[:BUFSIZ - 1]

        if (os.write(self._file, self._header.encode()) <= 0
                or os.write(self._file, b"\n") <= 0):
            raise OSError("Couldn't write to log file")

        self._cut_size = _round_up(self._size * LOGFILE_CUT_RATIO // 100,
                                   PAGE_SIZE)

    def _logfile_write(self, newline: bool, cont: bool, pri: int,
                       now: int, message: str) -> None:
        text = ""
        if not cont:
            text = f"{logtime_fmt(now, self.start)}: {_LOGFILE_PREFIX.get(pri, '')}"
        text += message
        if newline:
            text += "\n"
        data = _clip(text)

        if self._written + len(data) >= self._size and self._rotate(now):
            return

        try:
            self._written += os.write(self._file, data)
        except OSError:
            pass

    def _rotate(self, now: int) -> bool:
        """Cut the oldest part of the log file; return True on failure."""
        try:
            fcntl.fcntl(self._file, fcntl.F_SETFL, os.O_RDWR)
        except OSError:
            return True

        self._rotate_move(now)

        try:
            fcntl.fcntl(self._file, fcntl.F_SETFL, os.O_RDWR | os.O_APPEND)
        except OSError:
            return True
        return False

    def _rotate_move(self, now: int) -> None:
        fd = self._file
        header = _clip(f"{self._header} - log truncated at "
                       f"{logtime_fmt(now, self.start)}")
        header_len = len(header)

        try:
            os.pwrite(fd, header, 0)
        except OSError:
            return

        end = write_pos = header_len
        discard = self._cut_size + header_len

        try:
            head = os.pread(fd, BUFSIZ, discard)
            if head:
                nl = head.find(b"\n")
                if nl >= 0:
                    discard += nl + 1
                read_pos = discard
                while chunk := os.pread(fd, BUFSIZ, read_pos):
                    end = header_len
                    write_pos += os.pwrite(fd, chunk, write_pos)
                    read_pos = write_pos + discard - header_len
                    end = write_pos
        except OSError:
            pass

        try:
            os.ftruncate(fd, end)
        except OSError:
            return
        self._written = end

    def err(self, message: str) -> None:
        self.logmsg(True, False, LOG_ERR, message)

    def warn(self, message: str) -> None:
        self.logmsg(True, False, LOG_WARNING, message)

    def info(self, message: str) -> None:
        self.logmsg(True, False, LOG_INFO, message)

    def debug(self, message: str) -> None:
        self.logmsg(True, False, LOG_DEBUG, message)

    def trace(self, message: str) -> None:
        """Log at debug priority, only if tracing is enabled."""
        if self.trace_enabled:
            self.debug(message)