"""Neighbour Discovery: answer solicitations and send router advertisements."""

from __future__ import annotations

import random
import struct
from ipaddress import IPv6Address
from itertools import islice, takewhile
from typing import Callable, Iterable, Optional

from .context import MAXDNSRCH, MAXNS, Context
from .ip import ALL_NODES_LL
from .packet import Pool

RT_LIFETIME = 65535

RS = 133
RA = 134
NS = 135
NA = 136

OPT_SRC_L2_ADDR = 1
OPT_TARGET_L2_ADDR = 2
OPT_PREFIX_INFO = 3
OPT_MTU = 5
OPT_RDNSS_TYPE = 25
OPT_DNSSL_TYPE = 31

NDP_NS_LEN = 24

#: Default interval between unsolicited RAs, seconds (RFC 4861, 6.2.1).
DEFAULT_MAX_RTR_ADV_INTERVAL = 600
#: Minimum interval between RAs, seconds (RFC 4861, 10).
MIN_DELAY_BETWEEN_RAS = 3

_INFINITE = 0xFFFFFFFF
_NA_FLAGS = 0x80 | 0x40 | 0x20  # router, solicited, override
_RA_MANAGED = 0x80

SendFn = Callable[[IPv6Address, IPv6Address, bytes], None]


def _send(ctx: Context, dst, payload: bytes, send: SendFn) -> None:
    send(IPv6Address(ctx.ip6.our_tap_ll), IPv6Address(dst), payload)


def encode_dns_search(domains: Iterable[str]) -> bytes:
    """Encode search domains as a sequence of DNS wire-format names.

    The list ends at the first empty domain.
    """
    out = bytearray()
    for domain in takewhile(bool, domains):
        for label in domain.split("."):
            raw = label.encode("ascii")
            out.append(len(raw))
            out += raw
        out.append(0)
    return bytes(out)


def ndp_na(ctx: Context, addr) -> bytes:
    """Build a Neighbour Advertisement for ``addr``."""
    return (struct.pack("!BBHB3x", NA, 0, 0, _NA_FLAGS)
            + IPv6Address(addr).packed
            + struct.pack("!BB", OPT_TARGET_L2_ADDR, 1)
            + bytes(ctx.our_tap_mac[:6]))


def ndp_ra(ctx: Context) -> bytes:
    """Build a Router Advertisement from the context's configuration."""
    msg = bytearray(struct.pack("!BBHBBH", RA, 0, 0, 255, _RA_MANAGED,
                                RT_LIFETIME))
    msg += struct.pack("!II", 0, 0)
    msg += struct.pack("!BBBBIII", OPT_PREFIX_INFO, 4, 64, 0xC0,
                       _INFINITE, _INFINITE, 0)
    msg += IPv6Address(ctx.ip6.addr).packed
    msg += struct.pack("!BB", OPT_SRC_L2_ADDR, 1) + bytes(ctx.our_tap_mac[:6])

    if ctx.mtu != -1:
        msg += struct.pack("!BBHI", OPT_MTU, 1, 0, ctx.mtu & 0xFFFFFFFF)

    if not ctx.no_dhcp_dns:
        servers = list(islice(
            takewhile(lambda a: IPv6Address(a) != IPv6Address("::"),
                      ctx.ip6.dns), MAXNS))
        names = b""
        if servers:
            msg += struct.pack("!BBHI", OPT_RDNSS_TYPE, 1 + 2 * len(servers),
                               0, _INFINITE)
            for server in servers:
                msg += IPv6Address(server).packed
            names = encode_dns_search(islice(ctx.dns_search, MAXDNSRCH))

        if not ctx.no_dhcp_dns_search and names:
            length = len(names)
            msg += struct.pack("!BBHI", OPT_DNSSL_TYPE,
                               (length + 7) // 8 + 1, 0, _INFINITE)
            msg += names
            msg += bytes(8 - length % 8)

    return bytes(msg)


def ndp(ctx: Context, icmp_type: int, saddr, pool: Pool,
        send: SendFn) -> bool:
    """Reply to an NDP solicitation if needed.

    Returns False if the ICMPv6 message is not an NDP message, True if it
    was handled.  Raises ValueError for a truncated Neighbour Solicitation.
    """
    if icmp_type < RS or icmp_type > NA:
        return False

    if ctx.no_ndp:
        return True

    saddr = IPv6Address(saddr)
    if icmp_type == NS:
        try:
            ns, _ = pool.get(0, 0, NDP_NS_LEN)
        except IndexError as e:
            raise ValueError("truncated neighbour solicitation") from e

        if saddr == IPv6Address("::"):
            return True

        target = IPv6Address(bytes(ns[8:24]))
        _send(ctx, saddr, ndp_na(ctx, target), send)
    elif icmp_type == RS:
        if ctx.no_ra:
            return True
        _send(ctx, saddr, ndp_ra(ctx), send)

    return True


class RaTimer:
    """Sends unsolicited Router Advertisements at randomised intervals."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng if rng is not None else random.Random()
        self.next_ra = 0

    def tick(self, ctx: Context, now: float, send: SendFn) -> Optional[int]:
        """Send an RA if one is due at ``now`` (seconds).

        Returns the interval until the next RA, or None if nothing was sent.
        """
        if ctx.no_ra or now < self.next_ra:
            return None

        max_interval = min(DEFAULT_MAX_RTR_ADV_INTERVAL, RT_LIFETIME - 1)
        max_interval = max(max_interval, MIN_DELAY_BETWEEN_RAS)
        min_interval = max(max_interval // 3, MIN_DELAY_BETWEEN_RAS)

        interval = min_interval + self.rng.randrange(max_interval - min_interval)

        _send(ctx, ALL_NODES_LL, ndp_ra(ctx), send)

        self.next_ra = int(now) + interval
        return interval