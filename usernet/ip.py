"""IP address predicates and IPv6 extension header walking."""

from __future__ import annotations

from ipaddress import IPv4Address, IPv6Address, IPv6Network
from typing import Optional, Tuple

from .packet import Pool

IPV6_HDR_LEN = 40
IPV6_OPT_HDR_LEN = 2
NO_NEXT_HEADER = 59

#: IPv6 link-local all-nodes multicast address.
ALL_NODES_LL = IPv6Address("ff02::1")

_IPV6_NH_OPT = frozenset({0, 43, 44, 50, 51, 60, 135, 139, 140, 253, 254})
_LINKLOCAL6 = IPv6Network("fe80::/10")


def ip4_is_linklocal(addr) -> bool:
    """Return True if the IPv4 address is in 169.254.0.0/16."""
    a4 = addr if isinstance(addr, IPv4Address) else IPv4Address(addr)
    return (int(a4) >> 16) == 0xA9FE


def ip4_is_prefix_linklocal(addr, prefix_len: int) -> bool:
    """Return True if the IPv4 prefix lies within 169.254.0.0/16."""
    return prefix_len >= 16 and ip4_is_linklocal(addr)


def ip6_is_prefix_linklocal(addr, prefix_len: int) -> bool:
    """Return True if the IPv6 prefix lies within fe80::/10."""
    a6 = addr if isinstance(addr, IPv6Address) else IPv6Address(addr)
    return prefix_len >= 10 and a6 in _LINKLOCAL6


def ipv6_l4hdr(pool: Pool, idx: int, offset: int) -> Optional[Tuple[int, int, int]]:
    """Find the L4 header of the IPv6 packet at ``offset`` in packet ``idx``.

    Returns (protocol, l4 offset in the packet, data length) or None if
    there is no L4 header.
    """
    try:
        ip6h, dlen = pool.get(idx, offset, IPV6_HDR_LEN)
    except IndexError:
        return None

    offset += IPV6_HDR_LEN
    nh = ip6h[6]

    if nh in _IPV6_NH_OPT:
        while True:
            try:
                opt, dlen = pool.get(idx, offset, IPV6_OPT_HDR_LEN)
            except IndexError:
                return None
            nh = opt[0]
            if nh not in _IPV6_NH_OPT:
                break
            offset += (opt[1] + 1) * 8

    if nh == NO_NEXT_HEADER:
        return None
    return nh, offset, dlen