"""Pools of packet descriptors pointing into a shared buffer."""

from __future__ import annotations

from typing import List, Tuple

UINT16_MAX = 0xFFFF
UINT32_MAX = 0xFFFFFFFF


class Pool:
    """A bounded set of (offset, length) descriptors into one buffer."""

    def __init__(self, buf, size: int) -> None:
        self.buf = memoryview(buf)
        self.size = size
        self._pkt: List[Tuple[int, int]] = []

    @property
    def buf_size(self) -> int:
        return self.buf.nbytes

    def add(self, start: int, length: int) -> None:
        """Add a descriptor for ``length`` bytes at ``start`` in the buffer."""
        if len(self._pkt) >= self.size:
            raise ValueError(
                f"add packet index {len(self._pkt)} to pool with size {self.size}")
        if start < 0:
            raise ValueError(f"add packet start {start} before buffer start")
        if length < 0 or start + length > self.buf_size:
            raise ValueError(
                f"add packet start {start}, length {length}, "
                f"buffer size {self.buf_size}")
        if length > UINT16_MAX:
            raise ValueError(f"add packet length {length}")
        if start > UINT32_MAX:
            raise ValueError(f"add packet start {start}")
        self._pkt.append((start, length))

    def get(self, idx: int, offset: int, length: int) -> Tuple[memoryview, int]:
        """Return (data, left): ``length`` bytes at ``offset`` in packet ``idx``
        and the number of packet bytes after that range.

        Raises IndexError if the packet or range is invalid.
        """
        if idx < 0 or idx >= self.size or idx >= len(self._pkt):
            raise IndexError(
                f"packet {idx} from pool size: {self.size}, count: {len(self._pkt)}")
        if (offset < 0 or length < 0 or length > UINT16_MAX
                or length + offset > UINT32_MAX):
            raise IndexError(f"packet data length {length}, offset {offset}")
        pkt_offset, pkt_len = self._pkt[idx]
        if pkt_offset + length + offset > self.buf_size:
            raise IndexError(
                f"packet offset plus length {pkt_offset + length + offset} "
                f"from size {self.buf_size}")
        if length + offset > pkt_len:
            raise IndexError(
                f"data length {length}, offset {offset} from length {pkt_len}")
        start = pkt_offset + offset
        return self.buf[start:start + length], pkt_len - offset - length

    def flush(self) -> None:
        """Drop all descriptors."""
        self._pkt.clear()

    def __len__(self) -> int:
        return len(self._pkt)