"""Execution context: modes, interfaces, port forwarding state and addresses."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv6Address
from typing import Any, Dict, List, Optional, Set

#: Number of ports for both TCP and UDP.
NUM_PORTS = 1 << 16
PORT_BITMAP_SIZE = (NUM_PORTS + 7) // 8

UNIX_SOCK_MAX = 100
UNIX_SOCK_PATH = "/tmp/passt_%i.socket"

ETH_ALEN = 6
MAXNS = 3
MAXDNSRCH = 6
NS_MAXDNAME = 1025

FD_REF_BITS = 24
FD_REF_MAX = (1 << FD_REF_BITS) - 1

#: Default MAC address for our end of the tap link: unicast, locally
#: administered.
MAC_OUR_LAA = bytes((0x9A, 0x55, 0x9A, 0x55, 0x9A, 0x55))


class Mode(enum.IntEnum):
    """Operation mode: socket for a virtual machine, or tap in a namespace."""

    PASST = 0
    PASTA = 1


class FwdMode(enum.IntEnum):
    """Overall port forwarding mode for one protocol and direction."""

    UNSET = 0
    SPEC = 1
    NONE = 2
    AUTO = 3
    ALL = 4


class Pif(enum.IntEnum):
    """Interfaces a flow can be forwarded between."""

    NONE = 0
    HOST = 1
    TAP = 2
    SPLICE = 3


class EpollType(enum.IntEnum):
    """Kinds of file descriptors watched by the main loop."""

    NONE = 0
    TCP = 1
    TCP_SPLICE = 2
    TCP_LISTEN = 3
    TCP_TIMER = 4
    UDP_LISTEN = 5
    UDP_REPLY = 6
    PING = 7
    NSQUIT_INOTIFY = 8
    NSQUIT_TIMER = 9
    TAP_PASTA = 10
    TAP_PASST = 11
    TAP_LISTEN = 12


_EPOLL_TYPE_STR = {
    EpollType.TCP: "connected TCP socket",
    EpollType.TCP_SPLICE: "connected spliced TCP socket",
    EpollType.TCP_LISTEN: "listening TCP socket",
    EpollType.TCP_TIMER: "TCP timer",
    EpollType.UDP_LISTEN: "listening UDP socket",
    EpollType.UDP_REPLY: "UDP reply socket",
    EpollType.PING: "ICMP/ICMPv6 ping socket",
    EpollType.NSQUIT_INOTIFY: "namespace inotify watch",
    EpollType.NSQUIT_TIMER: "namespace timer watch",
    EpollType.TAP_PASTA: "/dev/net/tun device",
    EpollType.TAP_PASST: "connected qemu socket",
    EpollType.TAP_LISTEN: "listening qemu socket",
}


def epoll_type_str(n: int) -> str:
    """Return a description of epoll type ``n``, or "?" if it has none."""
    return _EPOLL_TYPE_STR.get(n, "?")


@dataclass
class FwdPorts:
    """Port forwarding for one protocol and direction.

    ``map`` holds the forwarded port numbers; ``delta`` maps an original
    destination port to the offset added to reach the target port.
    ``scan4`` and ``scan6`` are the /proc/net files scanned in AUTO mode.
    """

    mode: FwdMode = FwdMode.UNSET
    scan4: Optional[Any] = None
    scan6: Optional[Any] = None
    map: Set[int] = field(default_factory=set)
    delta: Dict[int, int] = field(default_factory=dict)

    def target_port(self, port: int) -> int:
        """Return the port that ``port`` is mapped to, wrapping at 16 bits."""
        return (port + self.delta.get(port, 0)) % NUM_PORTS


@dataclass
class ProtoContext:
    """State of one protocol handler: forwarding both ways and timer."""

    fwd_in: FwdPorts = field(default_factory=FwdPorts)
    fwd_out: FwdPorts = field(default_factory=FwdPorts)
    timer_run: float = 0.0


_ANY4 = IPv4Address("0.0.0.0")
_ANY6 = IPv6Address("::")


@dataclass
class Ip4Context:
    """IPv4 configuration."""

    addr: IPv4Address = _ANY4
    addr_seen: IPv4Address = _ANY4
    prefix_len: int = 0
    guest_gw: IPv4Address = _ANY4
    map_host_loopback: IPv4Address = _ANY4
    map_guest_addr: IPv4Address = _ANY4
    dns: List[IPv4Address] = field(default_factory=list)
    dns_match: IPv4Address = _ANY4
    our_tap_addr: IPv4Address = _ANY4
    dns_host: IPv4Address = _ANY4
    addr_out: IPv4Address = _ANY4
    ifname_out: str = ""
    no_copy_routes: bool = False
    no_copy_addrs: bool = False


@dataclass
class Ip6Context:
    """IPv6 configuration."""

    addr: IPv6Address = _ANY6
    addr_seen: IPv6Address = _ANY6
    addr_ll_seen: IPv6Address = _ANY6
    guest_gw: IPv6Address = _ANY6
    map_host_loopback: IPv6Address = _ANY6
    map_guest_addr: IPv6Address = _ANY6
    dns: List[IPv6Address] = field(default_factory=list)
    dns_match: IPv6Address = _ANY6
    our_tap_ll: IPv6Address = _ANY6
    dns_host: IPv6Address = _ANY6
    addr_out: IPv6Address = _ANY6
    ifname_out: str = ""
    no_copy_routes: bool = False
    no_copy_addrs: bool = False


@dataclass
class Context:
    """Execution context shared by all handlers.

    ``mtu`` is -1 when no MTU is to be advertised.
    """

    mode: Mode = Mode.PASST
    debug: bool = False
    trace: bool = False
    quiet: bool = False
    foreground: bool = False
    nofile: int = 0
    sock_path: str = ""
    pcap: str = ""
    pidfile: str = ""
    one_off: bool = False
    no_netns_quit: bool = False
    netns_base: str = ""
    netns_dir: str = ""

    our_tap_mac: bytes = MAC_OUR_LAA
    guest_mac: bytes = bytes(ETH_ALEN)
    hash_secret: bytes = bytes(16)

    ifi4: int = 0
    ip4: Ip4Context = field(default_factory=Ip4Context)
    dns_search: List[str] = field(default_factory=list)
    ifi6: int = 0
    ip6: Ip6Context = field(default_factory=Ip6Context)

    pasta_ifn: str = ""
    pasta_ifi: int = 0
    pasta_conf_ns: bool = False

    no_tcp: bool = False
    tcp: ProtoContext = field(default_factory=ProtoContext)
    no_udp: bool = False
    udp: ProtoContext = field(default_factory=ProtoContext)
    no_icmp: bool = False
    icmp: ProtoContext = field(default_factory=ProtoContext)

    mtu: int = -1
    no_dns: bool = False
    no_dns_search: bool = False
    no_dhcp_dns: bool = False
    no_dhcp_dns_search: bool = False
    no_dhcp: bool = False
    no_dhcpv6: bool = False
    no_ndp: bool = False
    no_ra: bool = False
    host_lo_to_ns_lo: bool = False
    freebind: bool = False

    low_wmem: bool = False
    low_rmem: bool = False