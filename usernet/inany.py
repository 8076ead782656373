"""Addresses that may be IPv4 or IPv6, held as IPv6 with IPv4 mapped in."""

from __future__ import annotations

import socket
import struct
from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network
from typing import Optional, Tuple, Union

AddressLike = Union[IPv6Address, bytes, str, int]
Address4Like = Union[IPv4Address, bytes, str, int]

#: Longest text form of either family, including the terminator.
ADDRSTRLEN = 46

IN4_LOOPBACK = IPv4Address("127.0.0.1")
IN4_ANY = IPv4Address("0.0.0.0")

LOOPBACK6 = IPv6Address("::1")
ANY6 = IPv6Address("::")

_V4MAPPED_PREFIX = b"\x00" * 10 + b"\xff\xff"
_LINKLOCAL6 = IPv6Network("fe80::/10")
_MULTICAST6 = IPv6Network("ff00::/8")
_LOOPBACK4_NET = IPv4Network("127.0.0.0/8")
_MULTICAST4_NET = IPv4Network("224.0.0.0/4")
_BROADCAST4 = IPv4Address("255.255.255.255")


def _as6(addr: AddressLike) -> IPv6Address:
    return addr if isinstance(addr, IPv6Address) else IPv6Address(addr)


def _as4(addr: Address4Like) -> IPv4Address:
    return addr if isinstance(addr, IPv4Address) else IPv4Address(addr)


def from_v4(a4: Address4Like) -> IPv6Address:
    """Return the IPv4-mapped IPv6 form of an IPv4 address."""
    return IPv6Address(_V4MAPPED_PREFIX + _as4(a4).packed)


LOOPBACK4 = from_v4(IN4_LOOPBACK)
ANY4 = from_v4(IN4_ANY)


def v4(addr: AddressLike) -> Optional[IPv4Address]:
    """Return the IPv4 address held in ``addr``, or None if it is IPv6."""
    packed = _as6(addr).packed
    if packed[:12] != _V4MAPPED_PREFIX:
        return None
    return IPv4Address(packed[12:])


def equals(a: AddressLike, b: AddressLike) -> bool:
    """Return True if both addresses are the same."""
    return _as6(a) == _as6(b)


def equals4(a: AddressLike, b: Address4Like) -> bool:
    """Return True if ``a`` is IPv4 and equal to the IPv4 address ``b``."""
    a4 = v4(a)
    return a4 is not None and a4 == _as4(b)


def equals6(a: AddressLike, b: AddressLike) -> bool:
    """Return True if ``a`` equals the IPv6 address ``b``."""
    return _as6(a) == _as6(b)


def is_loopback4(a: AddressLike) -> bool:
    """Return True if ``a`` is in 127.0.0.0/8."""
    a4 = v4(a)
    return a4 is not None and a4 in _LOOPBACK4_NET


def is_loopback6(a: AddressLike) -> bool:
    """Return True if ``a`` is ::1."""
    return _as6(a) == LOOPBACK6


def is_loopback(a: AddressLike) -> bool:
    """Return True if ``a`` is ::1 or in 127.0.0.0/8."""
    return is_loopback4(a) or is_loopback6(a)


def is_unspecified4(a: AddressLike) -> bool:
    """Return True if ``a`` is 0.0.0.0."""
    return v4(a) == IN4_ANY


def is_unspecified6(a: AddressLike) -> bool:
    """Return True if ``a`` is ::."""
    return _as6(a) == ANY6


def is_unspecified(a: AddressLike) -> bool:
    """Return True if ``a`` is :: or 0.0.0.0."""
    return is_unspecified4(a) or is_unspecified6(a)


def is_linklocal6(a: AddressLike) -> bool:
    """Return True if ``a`` is in fe80::/10."""
    return _as6(a) in _LINKLOCAL6


def is_multicast(a: AddressLike) -> bool:
    """Return True for IPv6 multicast, IPv4 multicast or IPv4 broadcast."""
    addr = _as6(a)
    if addr in _MULTICAST6:
        return True
    a4 = v4(addr)
    return a4 is not None and (a4 in _MULTICAST4_NET or a4 == _BROADCAST4)


def is_unicast(a: AddressLike) -> bool:
    """Return True if ``a`` is specified and unicast."""
    return not is_unspecified(a) and not is_multicast(a)


def from_af(af: int, addr) -> IPv6Address:
    """Build an address from an IPv4 or IPv6 address of family ``af``."""
    if af == socket.AF_INET6:
        return _as6(addr)
    if af == socket.AF_INET:
        return from_v4(addr)
    raise ValueError(f"unsupported address family {af}")


def from_sockaddr(family: int, sockaddr: tuple) -> Tuple[IPv6Address, int]:
    """Return (address, port) from a socket-module address tuple."""
    if family not in (socket.AF_INET, socket.AF_INET6):
        raise ValueError(f"unsupported address family {family}")
    host, port = sockaddr[0], sockaddr[1]
    if family == socket.AF_INET6:
        host = host.split("%", 1)[0]
    return from_af(family, host), int(port)


def ntop(addr: AddressLike) -> str:
    """Return the text form: dotted quad for IPv4, RFC 5952 for IPv6."""
    a4 = v4(addr)
    if a4 is not None:
        return str(a4)
    return str(_as6(addr))


def pton(text: str) -> IPv6Address:
    """Parse an IPv4 or IPv6 address; raise ValueError if neither."""
    try:
        return from_v4(IPv4Address(text))
    except ValueError:
        pass
    if "%" in text:
        raise ValueError(f"not an IPv4 or IPv6 address: {text!r}")
    try:
        return IPv6Address(text)
    except ValueError:
        raise ValueError(f"not an IPv4 or IPv6 address: {text!r}") from None


def hash_words(addr: AddressLike) -> Tuple[int, int]:
    """Return the two 64-bit words fed to the flow hash for ``addr``."""
    w0, w1, w2, w3 = struct.unpack("=4I", _as6(addr).packed)
    return (w0 << 32) | w1, (w2 << 32) | w3