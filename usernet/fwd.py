"""Port forwarding helpers: ephemeral ports, listening port scans and NAT."""

from __future__ import annotations

import logging
import os
import re
import socket
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv6Address
from itertools import islice
from typing import Iterable, Optional, Set, Tuple

from . import inany
from .context import NUM_PORTS, Context, FwdPorts, Mode, Pif
from .lineread import LineReader, LineTooLongError

_log = logging.getLogger(__name__)

#: Ephemeral port range recommended by RFC 6335.
EPHEMERAL_MIN_DEFAULT = (1 << 15) + (1 << 14)
EPHEMERAL_MAX_DEFAULT = NUM_PORTS - 1

PORT_RANGE_SYSCTL = "/proc/sys/net/ipv4/ip_local_port_range"

#: Listening states, as found in the kernel's TCP state enumeration.
UDP_LISTEN = 0x07
TCP_LISTEN = 0x0A

IPPROTO_TCP = socket.IPPROTO_TCP
IPPROTO_UDP = socket.IPPROTO_UDP

_DNS_PORTS = frozenset({53, 853})

_INT_RE = re.compile(r"\s*[+-]?\d+")
_PROCFS_RE = re.compile(
    r"\s*\d+:\s*[0-9A-Fa-f]+:([0-9A-Fa-f]+)\s+"
    r"[0-9A-Fa-f]+:[0-9A-Fa-f]+\s+([0-9A-Fa-f]+)")

_ANY4 = IPv4Address("0.0.0.0")
_ANY6 = IPv6Address("::")


@dataclass
class FlowSide:
    """Addresses and ports of one side of a flow.

    ``e`` is the endpoint (the remote end), ``o`` is our end of it.
    """

    eaddr: IPv6Address = inany.ANY6
    eport: int = 0
    oaddr: IPv6Address = inany.ANY6
    oport: int = 0


@dataclass
class EphemeralPorts:
    """Range of ports the host allocates for outgoing connections."""

    min: int = EPHEMERAL_MIN_DEFAULT
    max: int = EPHEMERAL_MAX_DEFAULT

    def probe(self, path=PORT_RANGE_SYSCTL) -> bool:
        """Read the range from ``path``; keep the current one on failure.

        Returns True if the range was updated.
        """
        try:
            fd = os.open(path, os.O_RDONLY | getattr(os, "O_CLOEXEC", 0))
        except OSError as e:
            _log.warning("Unable to open %s: %s", path, e.strerror)
            return False

        try:
            line = LineReader(fd).get()
        except (OSError, LineTooLongError):
            line = None
        finally:
            os.close(fd)

        parsed = self._parse(line)
        if parsed is None:
            _log.warning("Unable to parse %s", path)
            return False
        self.min, self.max = parsed
        return True

    @staticmethod
    def _parse(line: Optional[str]) -> Optional[Tuple[int, int]]:
        if line is None or "\t" not in line:
            return None
        low_text, high_text = line.split("\t", 1)
        if not (_INT_RE.fullmatch(low_text) and _INT_RE.fullmatch(high_text)):
            return None
        low, high = int(low_text), int(high_text)
        if not (0 <= low < NUM_PORTS and 0 <= high < NUM_PORTS):
            return None
        return low, high

    def __contains__(self, port: int) -> bool:
        return self.min <= port <= self.max


def procfs_scan_listen(lines: Iterable[str], lstate: int,
                       portmap: Set[int], exclude: Set[int]) -> None:
    """Update ``portmap`` from the lines of a /proc/net socket table.

    The first line is a header and is skipped.  Ports of sockets in state
    ``lstate`` are added to ``portmap``, unless they are in ``exclude``, in
    which case they are removed from it.
    """
    for line in islice(lines, 1, None):
        match = _PROCFS_RE.match(line)
        if not match:
            continue
        port, state = int(match.group(1), 16), int(match.group(2), 16)
        if state != lstate:
            continue
        if port in exclude:
            portmap.discard(port)
        else:
            portmap.add(port)


def _read_table(source) -> Optional[list]:
    if source is None:
        return None
    try:
        if isinstance(source, (str, bytes, os.PathLike)):
            with open(source, "rb") as f:
                data = f.read()
        else:
            source.seek(0)
            data = source.read()
    except OSError as e:
        _log.warning("Failed to read /proc/net file: %s", e)
        return None
    if isinstance(data, bytes):
        data = data.decode("ascii", errors="replace")
    return data.splitlines()


def _scan(source, lstate: int, portmap: Set[int], exclude: Set[int]) -> None:
    lines = _read_table(source)
    if lines is not None:
        procfs_scan_listen(lines, lstate, portmap, exclude)


def scan_ports_tcp(fwd: FwdPorts, rev: FwdPorts) -> None:
    """Rebuild the TCP forwarding map of ``fwd`` from its /proc/net tables."""
    fwd.map.clear()
    _scan(fwd.scan4, TCP_LISTEN, fwd.map, rev.map)
    _scan(fwd.scan6, TCP_LISTEN, fwd.map, rev.map)


def scan_ports_udp(fwd: FwdPorts, rev: FwdPorts,
                   tcp_fwd: FwdPorts, tcp_rev: FwdPorts) -> None:
    """Rebuild the UDP forwarding map of ``fwd``.

    UDP ports with the numbers of bound TCP ports are forwarded too, and
    ports forwarded the other way, for either protocol, are left out.
    """
    exclude = rev.map | tcp_rev.map

    fwd.map.clear()
    _scan(fwd.scan4, UDP_LISTEN, fwd.map, exclude)
    _scan(fwd.scan6, UDP_LISTEN, fwd.map, exclude)

    _scan(tcp_fwd.scan4, TCP_LISTEN, fwd.map, exclude)
    _scan(tcp_fwd.scan6, TCP_LISTEN, fwd.map, exclude)


def _is_dns_flow(proto: int, ini: FlowSide) -> bool:
    return proto in (IPPROTO_UDP, IPPROTO_TCP) and ini.oport in _DNS_PORTS


def _guest_accessible4(ctx: Context, addr: IPv4Address) -> bool:
    if addr.is_loopback or addr == _ANY4:
        return False
    return addr not in (IPv4Address(ctx.ip4.addr), IPv4Address(ctx.ip4.addr_seen))


def _guest_accessible6(ctx: Context, addr: IPv6Address) -> bool:
    if addr == inany.LOOPBACK6:
        return False
    if addr == IPv6Address(ctx.ip6.addr):
        return False
    seen = IPv6Address(ctx.ip6.addr_seen)
    if seen != _ANY6 and addr == seen:
        return False
    return True


def guest_accessible(ctx: Context, addr) -> bool:
    """Return True if the host address ``addr`` reaches the guest untranslated."""
    a4 = inany.v4(addr)
    if a4 is not None:
        return _guest_accessible4(ctx, a4)
    return _guest_accessible6(ctx, IPv6Address(addr))


def _target_port(ctx: Context, proto: int, port: int, inbound: bool) -> int:
    if proto == IPPROTO_TCP:
        proto_ctx = ctx.tcp
    elif proto == IPPROTO_UDP:
        proto_ctx = ctx.udp
    else:
        return port
    fwd = proto_ctx.fwd_in if inbound else proto_ctx.fwd_out
    return fwd.target_port(port)


def fwd_nat_from_tap(ctx: Context, proto: int,
                     ini: FlowSide) -> Tuple[Pif, Optional[FlowSide]]:
    """Work out where a flow from the tap interface goes.

    Returns (target interface, target side).
    """
    tgt = FlowSide()
    oaddr = ini.oaddr
    ip4, ip6 = ctx.ip4, ctx.ip6

    if _is_dns_flow(proto, ini) and inany.equals4(oaddr, ip4.dns_match):
        tgt.eaddr = inany.from_v4(ip4.dns_host)
    elif _is_dns_flow(proto, ini) and inany.equals6(oaddr, ip6.dns_match):
        tgt.eaddr = IPv6Address(ip6.dns_host)
    elif inany.equals4(oaddr, ip4.map_host_loopback):
        tgt.eaddr = inany.LOOPBACK4
    elif inany.equals6(oaddr, ip6.map_host_loopback):
        tgt.eaddr = inany.LOOPBACK6
    elif inany.equals4(oaddr, ip4.map_guest_addr):
        tgt.eaddr = inany.from_v4(ip4.addr)
    elif inany.equals6(oaddr, ip6.map_guest_addr):
        tgt.eaddr = IPv6Address(ip6.addr)
    else:
        tgt.eaddr = IPv6Address(oaddr)

    tgt.eport = ini.oport

    # An unspecified source address lets the kernel pick one
    if inany.v4(tgt.eaddr) is not None:
        tgt.oaddr = inany.from_v4(ip4.addr_out)
    else:
        tgt.oaddr = IPv6Address(ip6.addr_out)

    # The kernel picks the source port, except for UDP where it is kept
    tgt.oport = ini.eport if proto == IPPROTO_UDP else 0

    return Pif.HOST, tgt


def fwd_nat_from_splice(ctx: Context, proto: int,
                        ini: FlowSide) -> Tuple[Pif, Optional[FlowSide]]:
    """Work out where a flow from the splice interface goes.

    Returns (target interface, target side), or (Pif.NONE, None) if the flow
    is not to be forwarded.
    """
    if (not inany.is_loopback(ini.eaddr)
            or (not inany.is_loopback(ini.oaddr)
                and not inany.is_unspecified(ini.oaddr))):
        _log.debug("Non loopback address on SPLICE: [%s]:%d -> [%s]:%d",
                   inany.ntop(ini.eaddr), ini.eport,
                   inany.ntop(ini.oaddr), ini.oport)
        return Pif.NONE, None

    tgt = FlowSide()
    if inany.v4(ini.eaddr) is not None:
        tgt.eaddr = inany.LOOPBACK4
    else:
        tgt.eaddr = inany.LOOPBACK6

    # Keep the specific loopback address used
    tgt.oaddr = IPv6Address(ini.eaddr)
    tgt.eport = _target_port(ctx, proto, ini.oport, inbound=False)
    tgt.oport = ini.eport if proto == IPPROTO_UDP else 0

    return Pif.HOST, tgt


def fwd_nat_from_host(ctx: Context, proto: int,
                      ini: FlowSide) -> Tuple[Pif, Optional[FlowSide]]:
    """Work out where a flow from the host interface goes.

    Returns (target interface, target side), or (Pif.NONE, None) if the flow
    cannot be forwarded.
    """
    ip4, ip6 = ctx.ip4, ctx.ip6
    tgt = FlowSide()
    tgt.eport = _target_port(ctx, proto, ini.oport, inbound=True)

    if (ctx.mode == Mode.PASTA and inany.is_loopback(ini.eaddr)
            and proto in (IPPROTO_TCP, IPPROTO_UDP)):
        # Spliced: by default go to the namespace's external address, so as
        # not to expose services listening only on its loopback address
        if inany.v4(ini.eaddr) is not None:
            tgt.eaddr = (inany.LOOPBACK4 if ctx.host_lo_to_ns_lo
                         else inany.from_v4(ip4.addr_seen))
            tgt.oaddr = inany.ANY4
        else:
            tgt.eaddr = (inany.LOOPBACK6 if ctx.host_lo_to_ns_lo
                         else IPv6Address(ip6.addr_seen))
            tgt.oaddr = inany.ANY6
        tgt.oport = ini.eport if proto == IPPROTO_UDP else 0
        return Pif.SPLICE, tgt

    eaddr = ini.eaddr
    if (IPv4Address(ip4.map_host_loopback) != _ANY4
            and inany.equals4(eaddr, inany.IN4_LOOPBACK)):
        # Specifically 127.0.0.1, not 127.0.0.0/8
        tgt.oaddr = inany.from_v4(ip4.map_host_loopback)
    elif (IPv6Address(ip6.map_host_loopback) != _ANY6
            and inany.equals6(eaddr, inany.LOOPBACK6)):
        tgt.oaddr = IPv6Address(ip6.map_host_loopback)
    elif (IPv4Address(ip4.map_guest_addr) != _ANY4
            and inany.equals4(eaddr, ip4.addr)):
        tgt.oaddr = inany.from_v4(ip4.map_guest_addr)
    elif (IPv6Address(ip6.map_guest_addr) != _ANY6
            and inany.equals6(eaddr, ip6.addr)):
        tgt.oaddr = IPv6Address(ip6.map_guest_addr)
    elif not guest_accessible(ctx, eaddr):
        if inany.v4(eaddr) is not None:
            if IPv4Address(ip4.our_tap_addr) == _ANY4:
                return Pif.NONE, None
            tgt.oaddr = inany.from_v4(ip4.our_tap_addr)
        else:
            tgt.oaddr = IPv6Address(ip6.our_tap_ll)
    else:
        tgt.oaddr = IPv6Address(eaddr)
    tgt.oport = ini.eport

    if inany.v4(tgt.oaddr) is not None:
        tgt.eaddr = inany.from_v4(ip4.addr_seen)
    elif inany.is_linklocal6(tgt.oaddr):
        tgt.eaddr = IPv6Address(ip6.addr_ll_seen)
    else:
        tgt.eaddr = IPv6Address(ip6.addr_seen)

    return Pif.TAP, tgt