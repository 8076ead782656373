"""Helpers for scatter/gather vectors made of writable buffers."""

from __future__ import annotations

from itertools import islice
from typing import Sequence, Tuple


def _view(entry) -> memoryview:
    return memoryview(entry).cast("B")


def iov_skip_bytes(iov: Sequence, skip: int) -> Tuple[int, int]:
    """Locate the byte ``skip`` bytes into the vector.

    Returns (index, offset): the entry holding that byte and the byte's
    offset inside it.  If the whole vector has no more than ``skip`` bytes,
    the index is ``len(iov)`` and the offset is what is left of ``skip``.
    """
    off = skip
    for i, entry in enumerate(iov):
        size = _view(entry).nbytes
        if off < size:
            return i, off
        off -= size
    return len(iov), off


def iov_from_buf(iov: Sequence, offset: int, buf) -> int:
    """Copy ``buf`` into the vector starting ``offset`` bytes in.

    Returns the number of bytes copied, which is short if the vector runs out.
    """
    data = memoryview(buf).cast("B")
    total = data.nbytes
    index, offset = iov_skip_bytes(iov, offset)

    copied = 0
    for entry in islice(iov, index, None):
        if copied >= total:
            break
        dst = _view(entry)
        n = min(dst.nbytes - offset, total - copied)
        dst[offset:offset + n] = data[copied:copied + n]
        copied += n
        offset = 0
    return copied


def iov_to_buf(iov: Sequence, offset: int, size: int) -> bytes:
    """Return up to ``size`` bytes of the vector starting ``offset`` bytes in."""
    index, offset = iov_skip_bytes(iov, offset)

    chunks = []
    copied = 0
    for entry in islice(iov, index, None):
        if copied >= size:
            break
        src = _view(entry)
        n = min(src.nbytes - offset, size - copied)
        chunks.append(bytes(src[offset:offset + n]))
        copied += n
        offset = 0
    return b"".join(chunks)


def iov_size(iov: Sequence) -> int:
    """Return the total number of bytes in the vector."""
    return sum(_view(entry).nbytes for entry in iov)