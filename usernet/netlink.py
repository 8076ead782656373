"""Routing netlink operations: interfaces, addresses and routes."""

from __future__ import annotations

import errno
import logging
import socket
import struct
from ipaddress import IPv4Address, IPv6Address
from typing import Iterator, List, Optional, Tuple, Union

from .ip import ip4_is_prefix_linklocal, ip6_is_prefix_linklocal
from .netlink_msg import (
    IFA_CACHEINFO,
    IFA_ADDRESS,
    IFA_F_DEPRECATED,
    IFA_F_NODAD,
    IFA_FLAGS,
    IFA_LABEL,
    IFA_LOCAL,
    IFA_UNSPEC,
    IFLA_ADDRESS,
    IFLA_MTU,
    NLM_F_CREATE,
    NLM_F_DUMP,
    NLM_F_DUMP_FILTERED,
    NLM_F_EXCL,
    NLM_F_REPLACE,
    RTA_DST,
    RTA_GATEWAY,
    RTA_MULTIPATH,
    RTA_NH_ID,
    RTA_OIF,
    RTA_PREFSRC,
    RTA_UNSPEC,
    RTM_GETADDR,
    RTM_GETLINK,
    RTM_GETROUTE,
    RTM_NEWADDR,
    RTM_NEWLINK,
    RTM_NEWROUTE,
    RT_SCOPE_LINK,
    RT_SCOPE_UNIVERSE,
    RT_TABLE_MAIN,
    RTN_UNICAST,
    RTPROT_BOOT,
    IfAddrMsg,
    IfInfoMsg,
    NetlinkError,
    NetlinkSocket,
    NlMessage,
    RtMsg,
    pack_nexthops,
    parse_nexthops,
)

_log = logging.getLogger(__name__)

ETH_ALEN = 6

_U32 = struct.Struct("=I")
_IGNORED_DUP_ERRORS = frozenset({errno.EEXIST, errno.ENETUNREACH,
                                 errno.EHOSTUNREACH})

IPAddress = Union[IPv4Address, IPv6Address]


def _af_name(af: int) -> str:
    return {socket.AF_INET: "IPv4", socket.AF_INET6: "IPv6"}.get(af, "?")


def _addr_len(af: int) -> int:
    return 16 if af == socket.AF_INET6 else 4


def _packed(af: int, addr) -> bytes:
    data = addr.packed if hasattr(addr, "packed") else bytes(addr)
    if len(data) != _addr_len(af):
        raise ValueError(f"address of {len(data)} bytes for {_af_name(af)}")
    return data


def _to_address(af: int, data: bytes) -> IPAddress:
    try:
        if af == socket.AF_INET6:
            return IPv6Address(bytes(data))
        return IPv4Address(bytes(data))
    except ValueError as e:
        raise NetlinkError(f"malformed {_af_name(af)} address attribute") from e


def _u32(data: bytes) -> int:
    if len(data) < _U32.size:
        raise NetlinkError("truncated 32-bit attribute")
    return _U32.unpack_from(data)[0]


def _with_nodad(data: bytes) -> bytes:
    return _U32.pack(_u32(data) | IFA_F_NODAD) + bytes(data[_U32.size:])


def _dump(nl: NetlinkSocket, msg_type: int, flags: int, payload: bytes,
          want: int) -> Iterator[NlMessage]:
    """Send a request and yield the responses of type ``want``."""
    seq = nl.send(msg_type, flags, payload)
    for msg in nl.responses(seq):
        if msg.msg_type != want:
            _log.warning("netlink: Unexpected message type")
            continue
        yield msg


def _dst_is_linklocal(af: int, dst: bytes, dst_len: int) -> bool:
    if af == socket.AF_INET and len(dst) >= 4:
        return ip4_is_prefix_linklocal(IPv4Address(bytes(dst[:4])), dst_len)
    if af == socket.AF_INET6 and len(dst) >= 16:
        return ip6_is_prefix_linklocal(IPv6Address(bytes(dst[:16])), dst_len)
    return False


def get_ext_if(nl: NetlinkSocket, af: int) -> int:
    """Return the index of an interface with routes for ``af``, 0 if none.

    An interface with a default route is preferred; otherwise the first
    interface with any route is picked.
    """
    payload = RtMsg(family=af, table=RT_TABLE_MAIN, scope=RT_SCOPE_UNIVERSE,
                    route_type=RTN_UNICAST).pack()
    defifi = anyifi = 0
    ndef = nany = 0

    try:
        for msg in _dump(nl, RTM_GETROUTE, NLM_F_DUMP, payload, RTM_NEWROUTE):
            rtm = RtMsg.unpack(msg.payload)
            if rtm.family != af:
                continue

            thisifi = 0
            dst: Optional[bytes] = None
            for rta_type, data in rtm.attrs:
                if rta_type == RTA_OIF:
                    thisifi = _u32(data)
                elif rta_type == RTA_MULTIPATH:
                    hops = parse_nexthops(data)
                    thisifi = hops[0][2] if hops else 0
                elif rta_type == RTA_DST:
                    dst = data

            if not thisifi:
                continue
            if dst is not None and _dst_is_linklocal(af, dst, rtm.dst_len):
                continue

            if rtm.dst_len == 0:
                ndef += 1
                if not defifi:
                    defifi = thisifi
            else:
                nany += 1
                if not anyifi:
                    anyifi = thisifi
    except NetlinkError as e:
        if e.errno is None:
            raise
        _log.warning("netlink: RTM_GETROUTE failed: %s", e.strerror)

    if defifi:
        if ndef > 1:
            _log.info("Multiple default %s routes, picked first", _af_name(af))
        return defifi

    if anyifi:
        if nany > 1:
            _log.info("Multiple interfaces with %s routes, picked first",
                      _af_name(af))
        return anyifi

    if not nany:
        _log.info("No interfaces with usable %s routes", _af_name(af))
    return 0


def route_get_def_multipath(data: bytes) -> Optional[bytes]:
    """Return the gateway from an RTA_MULTIPATH payload, or None.

    Nexthops with fewer hops than one already seen are skipped.
    """
    gw: Optional[bytes] = None
    hops = -1
    for _flags, nhops, _ifindex, attrs in parse_nexthops(data):
        if nhops < hops:
            continue
        hops = nhops
        for rta_type, value in attrs:
            if rta_type == RTA_GATEWAY:
                gw = value
    return gw


def _oif_request(af: int, ifi: int, protocol: int = 0,
                 extra: Optional[List[Tuple[int, bytes]]] = None) -> RtMsg:
    attrs = [(RTA_OIF, _U32.pack(ifi))]
    if extra:
        attrs.extend(extra)
    return RtMsg(family=af, table=RT_TABLE_MAIN, scope=RT_SCOPE_UNIVERSE,
                 route_type=RTN_UNICAST, protocol=protocol, attrs=attrs)


def route_get_def(nl: NetlinkSocket, ifi: int, af: int) -> Optional[IPAddress]:
    """Return the default gateway on interface ``ifi`` for ``af``, or None."""
    payload = _oif_request(af, ifi).pack()
    gw: Optional[bytes] = None
    found = False

    for msg in _dump(nl, RTM_GETROUTE, NLM_F_DUMP, payload, RTM_NEWROUTE):
        rtm = RtMsg.unpack(msg.payload)
        if found or rtm.dst_len:
            continue
        for rta_type, data in rtm.attrs:
            if rta_type == RTA_MULTIPATH:
                hop_gw = route_get_def_multipath(data)
                found = hop_gw is not None
                if found:
                    gw = hop_gw
            if rta_type != RTA_GATEWAY:
                continue
            gw = data
            found = True

    return None if gw is None else _to_address(af, gw)


def route_set_def(nl: NetlinkSocket, ifi: int, af: int, gw) -> None:
    """Add a default route through ``gw`` on interface ``ifi``."""
    gateway = _packed(af, gw)
    extra = [(RTA_DST, bytes(_addr_len(af))), (RTA_GATEWAY, gateway)]
    payload = _oif_request(af, ifi, protocol=RTPROT_BOOT, extra=extra).pack()
    nl.do(RTM_NEWROUTE, NLM_F_CREATE | NLM_F_EXCL, payload)


def _rewrite_route(attrs, ifi_src: int, ifi_dst: int):
    """Retarget route attributes to ``ifi_dst``; None if the route is foreign."""
    out = []
    for rta_type, data in attrs:
        if rta_type == RTA_OIF:
            if _u32(data) != ifi_src:
                return None
            data = _U32.pack(ifi_dst)
        elif rta_type == RTA_MULTIPATH:
            hops = parse_nexthops(data)
            if any(ifindex != ifi_src for _, _, ifindex, _ in hops):
                return None
            data = pack_nexthops([(flags, nhops, ifi_dst, hop_attrs)
                                  for flags, nhops, _, hop_attrs in hops])
        elif rta_type in (RTA_PREFSRC, RTA_NH_ID):
            # Host source addresses and nexthop IDs mean nothing in the target
            rta_type = RTA_UNSPEC
        out.append((rta_type, data))
    return out


def route_dup(nl_src: NetlinkSocket, ifi_src: int,
              nl_dst: NetlinkSocket, ifi_dst: int, af: int) -> None:
    """Copy the routes of ``ifi_src`` to ``ifi_dst`` in another namespace."""
    payload = _oif_request(af, ifi_src).pack()
    seq = nl_src.send(RTM_GETROUTE, NLM_F_DUMP, payload)

    routes: List[Tuple[int, bytes]] = []
    for msg in nl_src.responses(seq):
        if msg.msg_type != RTM_NEWROUTE:
            continue
        rtm = RtMsg.unpack(msg.payload)
        attrs = _rewrite_route(rtm.attrs, ifi_src, ifi_dst)
        if attrs is None:
            continue
        rtm.attrs = attrs
        flags = (msg.flags & ~NLM_F_DUMP_FILTERED) | NLM_F_CREATE
        routes.append((flags, rtm.pack()))

    # Routes may depend on each other: repeat until all went in, the kernel
    # working out the order
    for _ in routes:
        for flags, route in routes:
            try:
                nl_dst.do(RTM_NEWROUTE, flags, route)
            except NetlinkError as e:
                if e.errno not in _IGNORED_DUP_ERRORS:
                    raise


def addr_set_ll_nodad(nl: NetlinkSocket, ifi: int) -> None:
    """Set IFA_F_NODAD on the IPv6 link-local addresses of ``ifi``."""
    payload = IfAddrMsg(family=socket.AF_INET6, index=ifi).pack()
    failure: Optional[NetlinkError] = None
    updates: List[bytes] = []

    try:
        for msg in _dump(nl, RTM_GETADDR, NLM_F_DUMP, payload, RTM_NEWADDR):
            ifa = IfAddrMsg.unpack(msg.payload)
            if ifa.index != ifi or ifa.scope != RT_SCOPE_LINK:
                continue
            ifa.flags |= IFA_F_NODAD
            ifa.attrs = [(t, _with_nodad(d) if t == IFA_FLAGS else d)
                         for t, d in ifa.attrs]
            updates.append(ifa.pack())
    except NetlinkError as e:
        if e.errno is None:
            raise
        failure = e

    seqs = [nl.send(RTM_NEWADDR, NLM_F_REPLACE, update) for update in updates]
    for seq in seqs:
        try:
            for _ in nl.responses(seq):
                _log.warning("netlink: Unexpected response message")
        except NetlinkError as e:
            if e.errno is None:
                raise
            if failure is None:
                failure = e

    if failure is not None:
        raise failure


def addr_get(nl: NetlinkSocket, ifi: int, af: int
             ) -> Tuple[Optional[IPAddress], Optional[int], Optional[IPv6Address]]:
    """Return (address, prefix length, link-local address) of ``ifi``.

    The address is the one with the longest prefix; the prefix length is
    given for IPv4 only, the link-local address for IPv6 only.
    """
    payload = IfAddrMsg(family=af, index=ifi).pack()
    prefix_max = prefix_max_ll = 0
    addr: Optional[bytes] = None
    prefix_len: Optional[int] = None
    addr_l: Optional[bytes] = None

    for msg in _dump(nl, RTM_GETADDR, NLM_F_DUMP, payload, RTM_NEWADDR):
        ifa = IfAddrMsg.unpack(msg.payload)
        if ifa.index != ifi or ifa.flags & IFA_F_DEPRECATED:
            continue

        for rta_type, data in ifa.attrs:
            if ((af == socket.AF_INET and rta_type != IFA_LOCAL)
                    or (af == socket.AF_INET6 and rta_type != IFA_ADDRESS)):
                continue

            if af == socket.AF_INET and ifa.prefixlen > prefix_max:
                addr = data
                prefix_max = prefix_len = ifa.prefixlen
            elif (af == socket.AF_INET6 and ifa.scope == RT_SCOPE_UNIVERSE
                    and ifa.prefixlen > prefix_max):
                addr = data
                prefix_max = ifa.prefixlen

            if (af == socket.AF_INET6 and ifa.scope == RT_SCOPE_LINK
                    and ifa.prefixlen > prefix_max_ll):
                addr_l = data
                prefix_max_ll = ifa.prefixlen

    return (None if addr is None else _to_address(af, addr),
            prefix_len,
            None if addr_l is None else _to_address(socket.AF_INET6, addr_l))


def addr_get_ll(nl: NetlinkSocket, ifi: int) -> Optional[IPv6Address]:
    """Return the first IPv6 link-local address of ``ifi``, or None."""
    payload = IfAddrMsg(family=socket.AF_INET6, index=ifi).pack()
    found: Optional[bytes] = None

    for msg in _dump(nl, RTM_GETADDR, NLM_F_DUMP, payload, RTM_NEWADDR):
        ifa = IfAddrMsg.unpack(msg.payload)
        if ifa.index != ifi or ifa.scope != RT_SCOPE_LINK or found is not None:
            continue
        for rta_type, data in ifa.attrs:
            if rta_type == IFA_ADDRESS and found is None:
                found = data

    return None if found is None else _to_address(socket.AF_INET6, found)


def addr_set(nl: NetlinkSocket, ifi: int, af: int, addr,
             prefix_len: int) -> None:
    """Add ``addr`` with ``prefix_len`` to interface ``ifi``."""
    packed = _packed(af, addr)
    # IPv6 duplicate address detection is pointless here
    flags = IFA_F_NODAD if af == socket.AF_INET6 else 0
    msg = IfAddrMsg(family=af, prefixlen=prefix_len, flags=flags,
                    scope=RT_SCOPE_UNIVERSE, index=ifi,
                    attrs=[(IFA_LOCAL, packed), (IFA_ADDRESS, packed)])
    nl.do(RTM_NEWADDR, NLM_F_CREATE | NLM_F_EXCL, msg.pack())


def addr_dup(nl_src: NetlinkSocket, ifi_src: int,
             nl_dst: NetlinkSocket, ifi_dst: int, af: int) -> None:
    """Copy the global addresses of ``ifi_src`` to ``ifi_dst``."""
    payload = IfAddrMsg(family=af, index=ifi_src).pack()
    failure: Optional[NetlinkError] = None

    for msg in _dump(nl_src, RTM_GETADDR, NLM_F_DUMP, payload, RTM_NEWADDR):
        ifa = IfAddrMsg.unpack(msg.payload)
        if (failure is not None or ifa.scope == RT_SCOPE_LINK
                or ifa.index != ifi_src or ifa.flags & IFA_F_DEPRECATED):
            continue

        ifa.index = ifi_dst
        ifa.flags |= IFA_F_NODAD
        attrs = []
        for rta_type, data in ifa.attrs:
            # Labels and expiry information don't carry over
            if rta_type in (IFA_LABEL, IFA_CACHEINFO):
                rta_type = IFA_UNSPEC
            if rta_type == IFA_FLAGS:
                data = _with_nodad(data)
            attrs.append((rta_type, data))
        ifa.attrs = attrs

        flags = (msg.flags & ~NLM_F_DUMP_FILTERED) | NLM_F_CREATE
        try:
            nl_dst.do(RTM_NEWADDR, flags, ifa.pack())
        except NetlinkError as e:
            if e.errno is None:
                raise
            failure = e

    if failure is not None:
        raise failure


def link_get_mac(nl: NetlinkSocket, ifi: int) -> Optional[bytes]:
    """Return the MAC address of interface ``ifi``, or None if it has none."""
    payload = IfInfoMsg(family=socket.AF_UNSPEC, index=ifi).pack()
    mac: Optional[bytes] = None
    for msg in _dump(nl, RTM_GETLINK, 0, payload, RTM_NEWLINK):
        for rta_type, data in IfInfoMsg.unpack(msg.payload).attrs:
            if rta_type == IFLA_ADDRESS:
                mac = bytes(data[:ETH_ALEN])
    return mac


def link_set_mac(nl: NetlinkSocket, ifi: int, mac: bytes) -> None:
    """Set the MAC address of interface ``ifi``."""
    mac = bytes(mac)
    if len(mac) != ETH_ALEN:
        raise ValueError(f"MAC address of {len(mac)} bytes")
    msg = IfInfoMsg(family=socket.AF_UNSPEC, index=ifi,
                    attrs=[(IFLA_ADDRESS, mac)])
    nl.do(RTM_NEWLINK, 0, msg.pack())


def link_set_mtu(nl: NetlinkSocket, ifi: int, mtu: int) -> None:
    """Set the MTU of interface ``ifi``."""
    msg = IfInfoMsg(family=socket.AF_UNSPEC, index=ifi,
                    attrs=[(IFLA_MTU, _U32.pack(mtu & 0xFFFFFFFF))])
    nl.do(RTM_NEWLINK, 0, msg.pack())


def link_set_flags(nl: NetlinkSocket, ifi: int, flags_set: int,
                   change: int) -> None:
    """Set the flags in ``change`` of interface ``ifi`` to ``flags_set``."""
    msg = IfInfoMsg(family=socket.AF_UNSPEC, index=ifi, flags=flags_set,
                    change=change)
    nl.do(RTM_NEWLINK, 0, msg.pack())