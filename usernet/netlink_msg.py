"""Routing netlink messages: wire formats and a request/response socket."""

from __future__ import annotations

import logging
import os
import socket
import struct
from collections import deque
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

_log = logging.getLogger(__name__)

#: Receive buffer size: at least the largest common page size.
NLBUFSIZ = 65536

NETLINK_ROUTE = 0
SOL_NETLINK = 270
NETLINK_GET_STRICT_CHK = 12

NLMSG_NOOP = 1
NLMSG_ERROR = 2
NLMSG_DONE = 3

NLM_F_REQUEST = 0x01
NLM_F_MULTI = 0x02
NLM_F_ACK = 0x04
NLM_F_ECHO = 0x08
NLM_F_DUMP_INTR = 0x10
NLM_F_DUMP_FILTERED = 0x20
NLM_F_ROOT = 0x100
NLM_F_MATCH = 0x200
NLM_F_DUMP = NLM_F_ROOT | NLM_F_MATCH
NLM_F_REPLACE = 0x100
NLM_F_EXCL = 0x200
NLM_F_CREATE = 0x400

RTM_NEWLINK = 16
RTM_GETLINK = 18
RTM_NEWADDR = 20
RTM_GETADDR = 22
RTM_NEWROUTE = 24
RTM_GETROUTE = 26

RTA_UNSPEC = 0
RTA_DST = 1
RTA_SRC = 2
RTA_IIF = 3
RTA_OIF = 4
RTA_GATEWAY = 5
RTA_PRIORITY = 6
RTA_PREFSRC = 7
RTA_MULTIPATH = 9
RTA_NH_ID = 30

IFA_UNSPEC = 0
IFA_ADDRESS = 1
IFA_LOCAL = 2
IFA_LABEL = 3
IFA_BROADCAST = 4
IFA_ANYCAST = 5
IFA_CACHEINFO = 6
IFA_MULTICAST = 7
IFA_FLAGS = 8

IFA_F_NODAD = 0x02
IFA_F_DEPRECATED = 0x20

IFLA_ADDRESS = 1
IFLA_MTU = 4

RT_TABLE_MAIN = 254
RT_SCOPE_UNIVERSE = 0
RT_SCOPE_LINK = 253
RTN_UNICAST = 1
RTPROT_BOOT = 3

_NLMSGHDR = struct.Struct("=IHHII")
_RTATTR = struct.Struct("=HH")
_RTNEXTHOP = struct.Struct("=HBBi")
_RTMSG = struct.Struct("=BBBBBBBBI")
_IFADDRMSG = struct.Struct("=BBBBI")
_IFINFOMSG = struct.Struct("=BxHiII")
_ERROR = struct.Struct("=i")

Attr = Tuple[int, bytes]
Nexthop = Tuple[int, int, int, List[Attr]]


class NetlinkError(OSError):
    """A netlink request failed, or the kernel's answer made no sense."""


def _align4(n: int) -> int:
    return (n + 3) & ~3


def rta_pack(rta_type: int, data: bytes) -> bytes:
    """Encode one routing attribute, padded to a 4-byte boundary."""
    data = bytes(data)
    length = _RTATTR.size + len(data)
    if length > 0xFFFF:
        raise ValueError(f"attribute too long: {len(data)} bytes")
    packed = _RTATTR.pack(length, rta_type) + data
    return packed + bytes(_align4(length) - length)


def rta_parse(data: bytes) -> List[Attr]:
    """Decode a run of routing attributes into (type, data) pairs.

    Decoding stops at the first attribute that does not fit.
    """
    data = bytes(data)
    attrs: List[Attr] = []
    off = 0
    while len(data) - off >= _RTATTR.size:
        length, rta_type = _RTATTR.unpack_from(data, off)
        if length < _RTATTR.size or length > len(data) - off:
            break
        attrs.append((rta_type, data[off + _RTATTR.size:off + length]))
        off += _align4(length)
    return attrs


def parse_nexthops(data: bytes) -> List[Nexthop]:
    """Decode the payload of an RTA_MULTIPATH attribute.

    Returns (flags, hops, ifindex, attributes) for each nexthop.
    """
    data = bytes(data)
    hops: List[Nexthop] = []
    off = 0
    while len(data) - off >= _RTNEXTHOP.size:
        length, flags, nhops, ifindex = _RTNEXTHOP.unpack_from(data, off)
        if length < _RTNEXTHOP.size or length > len(data) - off:
            break
        attrs = rta_parse(data[off + _RTNEXTHOP.size:off + length])
        hops.append((flags, nhops, ifindex, attrs))
        off += _align4(length)
    return hops


def pack_nexthops(nexthops: Sequence[Nexthop]) -> bytes:
    """Encode (flags, hops, ifindex, attributes) nexthops for RTA_MULTIPATH."""
    out = bytearray()
    for flags, nhops, ifindex, attrs in nexthops:
        body = b"".join(rta_pack(t, d) for t, d in attrs)
        out += _RTNEXTHOP.pack(_RTNEXTHOP.size + len(body), flags, nhops,
                               ifindex)
        out += body
    return bytes(out)


def _pack_attrs(attrs: Sequence[Attr]) -> bytes:
    return b"".join(rta_pack(t, d) for t, d in attrs)


@dataclass
class RtMsg:
    """Route message header with its attributes."""

    family: int = 0
    dst_len: int = 0
    src_len: int = 0
    tos: int = 0
    table: int = 0
    protocol: int = 0
    scope: int = 0
    route_type: int = 0
    flags: int = 0
    attrs: List[Attr] = field(default_factory=list)

    def pack(self) -> bytes:
        return _RTMSG.pack(self.family, self.dst_len, self.src_len, self.tos,
                           self.table, self.protocol, self.scope,
                           self.route_type, self.flags) + _pack_attrs(self.attrs)

    @classmethod
    def unpack(cls, data: bytes) -> "RtMsg":
        data = bytes(data)
        if len(data) < _RTMSG.size:
            raise NetlinkError("truncated route message")
        fields = _RTMSG.unpack_from(data)
        return cls(*fields, attrs=rta_parse(data[_RTMSG.size:]))


@dataclass
class IfAddrMsg:
    """Address message header with its attributes."""

    family: int = 0
    prefixlen: int = 0
    flags: int = 0
    scope: int = 0
    index: int = 0
    attrs: List[Attr] = field(default_factory=list)

    def pack(self) -> bytes:
        return _IFADDRMSG.pack(self.family, self.prefixlen, self.flags,
                               self.scope, self.index) + _pack_attrs(self.attrs)

    @classmethod
    def unpack(cls, data: bytes) -> "IfAddrMsg":
        data = bytes(data)
        if len(data) < _IFADDRMSG.size:
            raise NetlinkError("truncated address message")
        fields = _IFADDRMSG.unpack_from(data)
        return cls(*fields, attrs=rta_parse(data[_IFADDRMSG.size:]))


@dataclass
class IfInfoMsg:
    """Link message header with its attributes."""

    family: int = 0
    link_type: int = 0
    index: int = 0
    flags: int = 0
    change: int = 0
    attrs: List[Attr] = field(default_factory=list)

    def pack(self) -> bytes:
        return _IFINFOMSG.pack(self.family, self.link_type, self.index,
                               self.flags, self.change) + _pack_attrs(self.attrs)

    @classmethod
    def unpack(cls, data: bytes) -> "IfInfoMsg":
        data = bytes(data)
        if len(data) < _IFINFOMSG.size:
            raise NetlinkError("truncated link message")
        fields = _IFINFOMSG.unpack_from(data)
        return cls(*fields, attrs=rta_parse(data[_IFINFOMSG.size:]))


@dataclass
class NlMessage:
    """One netlink message: header fields and payload."""

    msg_type: int
    flags: int
    seq: int
    pid: int
    payload: bytes

    @property
    def error(self) -> int:
        """The error code carried by an NLMSG_ERROR message (0 is an ack)."""
        if len(self.payload) < _ERROR.size:
            raise NetlinkError("truncated netlink error message")
        return _ERROR.unpack_from(self.payload)[0]


def nlmsg_pack(msg_type: int, flags: int, seq: int, payload: bytes) -> bytes:
    """Encode a netlink message with the given header fields."""
    payload = bytes(payload)
    length = _NLMSGHDR.size + len(payload)
    if length > 0xFFFFFFFF:
        raise ValueError("netlink message too long")
    return _NLMSGHDR.pack(length, msg_type, flags, seq, 0) + payload


def nlmsg_parse(buf: bytes) -> List[NlMessage]:
    """Decode the netlink messages in one datagram.

    Decoding stops at the first message that does not fit.
    """
    buf = bytes(buf)
    msgs: List[NlMessage] = []
    off = 0
    while len(buf) - off >= _NLMSGHDR.size:
        length, msg_type, flags, seq, pid = _NLMSGHDR.unpack_from(buf, off)
        if length < _NLMSGHDR.size or length > len(buf) - off:
            break
        msgs.append(NlMessage(msg_type, flags, seq, pid,
                              buf[off + _NLMSGHDR.size:off + length]))
        off += _align4(length)
    return msgs


class NetlinkSocket:
    """Sends netlink requests and walks through the responses to them."""

    def __init__(self, sock) -> None:
        self.sock = sock
        self.seq = 1

    def send(self, msg_type: int, flags: int, payload: bytes) -> int:
        """Send a request, asking for an acknowledgement.

        Returns the request's sequence number.
        """
        seq = self.seq
        self.seq = (self.seq + 1) & 0xFFFFFFFF
        data = nlmsg_pack(msg_type, NLM_F_REQUEST | NLM_F_ACK | flags, seq,
                          payload)
        sent = self.sock.send(data)
        if sent < len(data):
            raise NetlinkError(f"Short send ({sent} of {len(data)} bytes)")
        return seq

    def responses(self, seq: int) -> Iterator[NlMessage]:
        """Yield the response messages to request ``seq`` until it completes.

        Raises NetlinkError if the kernel reports a failure or the answer
        belongs to another request.
        """
        pending: deque = deque()
        while True:
            if not pending:
                msgs = nlmsg_parse(self.sock.recv(NLBUFSIZ))
                if not msgs:
                    raise NetlinkError("Response datagram with no message")
                pending.extend(msgs)

            msg = pending.popleft()
            if msg.seq != seq:
                raise NetlinkError(
                    f"Unexpected sequence number ({msg.seq} != {seq})")
            if msg.msg_type == NLMSG_DONE:
                return
            if msg.msg_type == NLMSG_ERROR:
                error = msg.error
                if error < 0:
                    raise NetlinkError(-error, os.strerror(-error))
                return
            yield msg

    def do(self, msg_type: int, flags: int, payload: bytes) -> None:
        """Send a request and wait for its acknowledgement."""
        seq = self.send(msg_type, flags, payload)
        for _ in self.responses(seq):
            _log.warning("netlink: Unexpected response message")


def open_socket() -> NetlinkSocket:
    """Open and bind a routing netlink socket."""
    family = getattr(socket, "AF_NETLINK", None)
    if family is None:
        raise NetlinkError("Failed to get netlink socket")
    try:
        sock = socket.socket(family,
                             socket.SOCK_RAW | getattr(socket, "SOCK_CLOEXEC", 0),
                             NETLINK_ROUTE)
    except OSError as e:
        raise NetlinkError("Failed to get netlink socket") from e
    try:
        sock.bind((0, 0))
    except OSError as e:
        sock.close()
        raise NetlinkError("Failed to get netlink socket") from e
    try:
        sock.setsockopt(SOL_NETLINK, NETLINK_GET_STRICT_CHK, 1)
    except OSError:
        _log.debug("netlink: cannot set NETLINK_GET_STRICT_CHK on %d",
                   sock.fileno())
    return NetlinkSocket(sock)