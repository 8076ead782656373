import errno
import socket
import struct
from collections import deque
from ipaddress import IPv4Address, IPv6Address

import pytest

from usernet import netlink
from usernet.netlink_msg import (
    IFA_ADDRESS,
    IFA_F_DEPRECATED,
    IFA_F_NODAD,
    IFA_FLAGS,
    IFA_LABEL,
    IFA_LOCAL,
    IFA_UNSPEC,
    IFLA_ADDRESS,
    IFLA_MTU,
    NLM_F_ACK,
    NLM_F_CREATE,
    NLM_F_DUMP,
    NLM_F_DUMP_FILTERED,
    NLM_F_EXCL,
    NLM_F_MULTI,
    NLM_F_REPLACE,
    NLM_F_REQUEST,
    NLMSG_DONE,
    NLMSG_ERROR,
    RTA_DST,
    RTA_GATEWAY,
    RTA_MULTIPATH,
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
    RTPROT_BOOT,
    IfAddrMsg,
    IfInfoMsg,
    NetlinkError,
    NetlinkSocket,
    RtMsg,
    nlmsg_pack,
    nlmsg_parse,
    pack_nexthops,
)

AF4 = socket.AF_INET
AF6 = socket.AF_INET6

GW4 = IPv4Address("192.0.2.1")
GW4_OTHER = IPv4Address("192.0.2.254")
MAC = bytes.fromhex("020000000001")

_QUERIES = (RTM_GETLINK, RTM_GETADDR, RTM_GETROUTE)


def _ack(seq, error=0):
    return nlmsg_pack(NLMSG_ERROR, 0, seq, struct.pack("=i", error) + bytes(16))


def _done(seq):
    return nlmsg_pack(NLMSG_DONE, NLM_F_MULTI, seq, struct.pack("=i", 0))


class Kernel:
    """Socket stand-in answering dumps with canned replies and acks others."""

    def __init__(self, replies=(), dump_error=0, do_error=0):
        self.replies = list(replies)
        self.dump_error = dump_error
        self.do_error = do_error
        self.sent = []
        self._queue = deque()

    def send(self, data):
        for msg in nlmsg_parse(data):
            self.sent.append(msg)
            self._queue.extend(self._answer(msg))
        return len(data)

    def recv(self, size):
        return self._queue.popleft()

    def _answer(self, msg):
        if msg.msg_type in _QUERIES:
            if self.dump_error:
                return [_ack(msg.seq, -self.dump_error)]
            reply_type = msg.msg_type - 2
            body = b"".join(nlmsg_pack(reply_type, NLM_F_MULTI, msg.seq, p)
                            for p in self.replies)
            return [body + _done(msg.seq)]
        return [_ack(msg.seq, -self.do_error)]

    @property
    def changes(self):
        return [m for m in self.sent if m.msg_type not in _QUERIES]


def oif(ifi):
    return (RTA_OIF, struct.pack("=I", ifi))


def route(attrs, dst_len=0, family=AF4):
    return RtMsg(family=family, dst_len=dst_len, table=RT_TABLE_MAIN,
                 attrs=attrs).pack()


def addr_msg(family, prefixlen, index, attrs, scope=RT_SCOPE_UNIVERSE, flags=0):
    return IfAddrMsg(family=family, prefixlen=prefixlen, flags=flags,
                     scope=scope, index=index, attrs=attrs).pack()


# get_ext_if

def test_get_ext_if_prefers_default_route():
    kernel = Kernel([
        route([oif(3), (RTA_DST, IPv4Address("10.0.0.0").packed)], dst_len=8),
        route([oif(5)]),
    ])
    assert netlink.get_ext_if(NetlinkSocket(kernel), AF4) == 5


def test_get_ext_if_falls_back_to_any_route():
    kernel = Kernel([
        route([oif(4), (RTA_DST, IPv4Address("10.0.0.0").packed)], dst_len=8),
    ])
    assert netlink.get_ext_if(NetlinkSocket(kernel), AF4) == 4


def test_get_ext_if_skips_ipv4_link_local_routes():
    kernel = Kernel([
        route([oif(7), (RTA_DST, IPv4Address("169.254.0.0").packed)],
              dst_len=16),
    ])
    assert netlink.get_ext_if(NetlinkSocket(kernel), AF4) == 0


def test_get_ext_if_skips_ipv6_link_local_routes():
    kernel = Kernel([
        route([oif(7), (RTA_DST, IPv6Address("fe80::").packed)],
              dst_len=64, family=AF6),
    ])
    assert netlink.get_ext_if(NetlinkSocket(kernel), AF6) == 0


def test_get_ext_if_ignores_other_family():
    kernel = Kernel([route([oif(5)], family=AF6)])
    assert netlink.get_ext_if(NetlinkSocket(kernel), AF4) == 0


def test_get_ext_if_uses_multipath_interface():
    hops = pack_nexthops([(0, 0, 9, [])])
    kernel = Kernel([route([(RTA_MULTIPATH, hops)])])
    assert netlink.get_ext_if(NetlinkSocket(kernel), AF4) == 9


def test_get_ext_if_returns_zero_on_error():
    kernel = Kernel(dump_error=errno.EPERM)
    assert netlink.get_ext_if(NetlinkSocket(kernel), AF4) == 0


# routes

def test_route_get_def_multipath_skips_fewer_hops():
    data = pack_nexthops([
        (0, 1, 2, [(RTA_GATEWAY, GW4.packed)]),
        (0, 0, 3, [(RTA_GATEWAY, GW4_OTHER.packed)]),
    ])
    assert netlink.route_get_def_multipath(data) == GW4.packed


def test_route_get_def_multipath_without_gateway():
    assert netlink.route_get_def_multipath(pack_nexthops([(0, 0, 3, [])])) is None


def test_route_get_def_returns_gateway_and_asks_for_interface():
    kernel = Kernel([route([oif(2), (RTA_GATEWAY, GW4.packed)])])
    assert netlink.route_get_def(NetlinkSocket(kernel), 2, AF4) == GW4

    request = kernel.sent[0]
    assert request.msg_type == RTM_GETROUTE
    assert request.flags & NLM_F_DUMP == NLM_F_DUMP
    assert RtMsg.unpack(request.payload).attrs == [oif(2)]


def test_route_get_def_ignores_non_default_routes():
    kernel = Kernel([route([oif(2), (RTA_GATEWAY, GW4.packed)], dst_len=24)])
    assert netlink.route_get_def(NetlinkSocket(kernel), 2, AF4) is None


def test_route_get_def_from_multipath():
    hops = pack_nexthops([(0, 0, 2, [(RTA_GATEWAY, GW4.packed)])])
    kernel = Kernel([route([(RTA_MULTIPATH, hops)])])
    assert netlink.route_get_def(NetlinkSocket(kernel), 2, AF4) == GW4


def test_route_set_def_request():
    kernel = Kernel()
    netlink.route_set_def(NetlinkSocket(kernel), 3, AF4, GW4)

    (msg,) = kernel.changes
    assert msg.msg_type == RTM_NEWROUTE
    assert msg.flags == NLM_F_REQUEST | NLM_F_ACK | NLM_F_CREATE | NLM_F_EXCL
    rtm = RtMsg.unpack(msg.payload)
    assert rtm.protocol == RTPROT_BOOT
    assert rtm.attrs == [oif(3), (RTA_DST, bytes(4)), (RTA_GATEWAY, GW4.packed)]


def test_route_set_def_ipv6_destination_size():
    kernel = Kernel()
    gw = IPv6Address("2001:db8::1")
    netlink.route_set_def(NetlinkSocket(kernel), 3, AF6, gw)
    rtm = RtMsg.unpack(kernel.changes[0].payload)
    assert dict(rtm.attrs)[RTA_DST] == bytes(16)
    assert dict(rtm.attrs)[RTA_GATEWAY] == gw.packed


def test_route_set_def_error():
    kernel = Kernel(do_error=errno.EEXIST)
    with pytest.raises(NetlinkError) as info:
        netlink.route_set_def(NetlinkSocket(kernel), 3, AF4, GW4)
    assert info.value.errno == errno.EEXIST


def test_route_dup_rewrites_interface_and_strips_prefsrc():
    prefsrc = IPv4Address("198.51.100.7").packed
    src = Kernel([
        route([oif(2), (RTA_PREFSRC, prefsrc), (RTA_GATEWAY, GW4.packed)]),
        route([oif(8), (RTA_GATEWAY, GW4_OTHER.packed)]),
    ])
    dst = Kernel()
    netlink.route_dup(NetlinkSocket(src), 2, NetlinkSocket(dst), 5, AF4)

    (msg,) = dst.changes
    assert msg.msg_type == RTM_NEWROUTE
    assert msg.flags & NLM_F_CREATE
    assert not msg.flags & NLM_F_DUMP_FILTERED
    assert RtMsg.unpack(msg.payload).attrs == [
        oif(5), (RTA_UNSPEC, prefsrc), (RTA_GATEWAY, GW4.packed)]


def test_route_dup_repeats_and_ignores_existing():
    src = Kernel([route([oif(2)]), route([oif(2)], dst_len=24)])
    dst = Kernel(do_error=errno.EEXIST)
    netlink.route_dup(NetlinkSocket(src), 2, NetlinkSocket(dst), 5, AF4)
    assert len(dst.changes) == 2 * 2


def test_route_dup_raises_other_errors():
    src = Kernel([route([oif(2)])])
    dst = Kernel(do_error=errno.EPERM)
    with pytest.raises(NetlinkError) as info:
        netlink.route_dup(NetlinkSocket(src), 2, NetlinkSocket(dst), 5, AF4)
    assert info.value.errno == errno.EPERM


def test_route_dup_multipath():
    good = pack_nexthops([(0, 0, 2, [(RTA_GATEWAY, GW4.packed)])])
    foreign = pack_nexthops([(0, 0, 2, []), (0, 0, 6, [])])
    src = Kernel([route([(RTA_MULTIPATH, good)]),
                  route([(RTA_MULTIPATH, foreign)], dst_len=24)])
    dst = Kernel()
    netlink.route_dup(NetlinkSocket(src), 2, NetlinkSocket(dst), 5, AF4)

    (msg,) = dst.changes
    expected = pack_nexthops([(0, 0, 5, [(RTA_GATEWAY, GW4.packed)])])
    assert RtMsg.unpack(msg.payload).attrs == [(RTA_MULTIPATH, expected)]


# addresses

def test_addr_get_ipv4_longest_prefix():
    a = IPv4Address("10.0.0.2")
    b = IPv4Address("10.1.0.2")
    c = IPv4Address("10.2.0.2")
    d = IPv4Address("10.3.0.2")
    kernel = Kernel([
        addr_msg(AF4, 16, 2, [(IFA_LOCAL, a.packed)]),
        addr_msg(AF4, 24, 2, [(IFA_LOCAL, b.packed)]),
        addr_msg(AF4, 30, 2, [(IFA_LOCAL, c.packed)], flags=IFA_F_DEPRECATED),
        addr_msg(AF4, 32, 9, [(IFA_LOCAL, d.packed)]),
    ])
    assert netlink.addr_get(NetlinkSocket(kernel), 2, AF4) == (b, 24, None)


def test_addr_get_ipv6_global_and_link_local():
    glob = IPv6Address("2001:db8::2")
    ll = IPv6Address("fe80::2")
    kernel = Kernel([
        addr_msg(AF6, 64, 2, [(IFA_ADDRESS, glob.packed)]),
        addr_msg(AF6, 64, 2, [(IFA_ADDRESS, ll.packed)], scope=RT_SCOPE_LINK),
    ])
    assert netlink.addr_get(NetlinkSocket(kernel), 2, AF6) == (glob, None, ll)


def test_addr_get_ll_returns_first():
    first = IPv6Address("fe80::a")
    second = IPv6Address("fe80::b")
    kernel = Kernel([
        addr_msg(AF6, 64, 2, [(IFA_ADDRESS, first.packed)], scope=RT_SCOPE_LINK),
        addr_msg(AF6, 64, 2, [(IFA_ADDRESS, second.packed)], scope=RT_SCOPE_LINK),
    ])
    assert netlink.addr_get_ll(NetlinkSocket(kernel), 2) == first


def test_addr_get_ll_none():
    kernel = Kernel([addr_msg(AF6, 64, 2, [(IFA_ADDRESS, IPv6Address("2001:db8::1").packed)])])
    assert netlink.addr_get_ll(NetlinkSocket(kernel), 2) is None


def test_addr_set_ipv6():
    kernel = Kernel()
    addr = IPv6Address("2001:db8::5")
    netlink.addr_set(NetlinkSocket(kernel), 4, AF6, addr, 64)

    (msg,) = kernel.changes
    assert msg.msg_type == RTM_NEWADDR
    assert msg.flags & (NLM_F_CREATE | NLM_F_EXCL) == NLM_F_CREATE | NLM_F_EXCL
    ifa = IfAddrMsg.unpack(msg.payload)
    assert (ifa.index, ifa.prefixlen) == (4, 64)
    assert ifa.flags & IFA_F_NODAD
    assert ifa.attrs == [(IFA_LOCAL, addr.packed), (IFA_ADDRESS, addr.packed)]


def test_addr_set_ipv4_without_nodad():
    kernel = Kernel()
    addr = IPv4Address("10.0.2.15")
    netlink.addr_set(NetlinkSocket(kernel), 4, AF4, addr, 24)
    ifa = IfAddrMsg.unpack(kernel.changes[0].payload)
    assert not ifa.flags & IFA_F_NODAD
    assert ifa.attrs == [(IFA_LOCAL, addr.packed), (IFA_ADDRESS, addr.packed)]


def test_addr_set_rejects_wrong_length():
    with pytest.raises(ValueError):
        netlink.addr_set(NetlinkSocket(Kernel()), 4, AF4,
                         IPv6Address("2001:db8::5"), 64)


def test_addr_dup_copies_global_addresses():
    a = IPv4Address("10.0.2.15")
    label = b"eth0\0"
    src = Kernel([
        addr_msg(AF4, 24, 2, [(IFA_LOCAL, a.packed), (IFA_LABEL, label)]),
        addr_msg(AF4, 16, 2, [(IFA_LOCAL, a.packed)], scope=RT_SCOPE_LINK),
        addr_msg(AF4, 24, 9, [(IFA_LOCAL, a.packed)]),
    ])
    dst = Kernel()
    netlink.addr_dup(NetlinkSocket(src), 2, NetlinkSocket(dst), 5, AF4)

    (msg,) = dst.changes
    assert msg.flags & NLM_F_CREATE
    ifa = IfAddrMsg.unpack(msg.payload)
    assert ifa.index == 5
    assert ifa.flags & IFA_F_NODAD
    assert ifa.attrs == [(IFA_LOCAL, a.packed), (IFA_UNSPEC, label)]


def test_addr_dup_raises_first_error_and_stops():
    a = IPv4Address("10.0.2.15")
    src = Kernel([
        addr_msg(AF4, 24, 2, [(IFA_LOCAL, a.packed)]),
        addr_msg(AF4, 25, 2, [(IFA_LOCAL, a.packed)]),
    ])
    dst = Kernel(do_error=errno.EACCES)
    with pytest.raises(NetlinkError) as info:
        netlink.addr_dup(NetlinkSocket(src), 2, NetlinkSocket(dst), 5, AF4)
    assert info.value.errno == errno.EACCES
    assert len(dst.changes) == 1


def test_addr_set_ll_nodad_updates_link_local():
    ll = IPv6Address("fe80::2")
    kernel = Kernel([
        addr_msg(AF6, 64, 3, [(IFA_ADDRESS, ll.packed),
                              (IFA_FLAGS, struct.pack("=I", 0x80))],
                 scope=RT_SCOPE_LINK),
        addr_msg(AF6, 64, 3, [(IFA_ADDRESS, IPv6Address("2001:db8::2").packed)]),
    ])
    netlink.addr_set_ll_nodad(NetlinkSocket(kernel), 3)

    (msg,) = kernel.changes
    assert msg.msg_type == RTM_NEWADDR
    assert msg.flags & NLM_F_REPLACE
    ifa = IfAddrMsg.unpack(msg.payload)
    assert ifa.flags & IFA_F_NODAD
    flags = struct.unpack("=I", dict(ifa.attrs)[IFA_FLAGS])[0]
    assert flags == 0x80 | IFA_F_NODAD


def test_addr_set_ll_nodad_error():
    kernel = Kernel([addr_msg(AF6, 64, 3, [(IFA_ADDRESS, IPv6Address("fe80::2").packed)],
                              scope=RT_SCOPE_LINK)],
                    do_error=errno.EPERM)
    with pytest.raises(NetlinkError) as info:
        netlink.addr_set_ll_nodad(NetlinkSocket(kernel), 3)
    assert info.value.errno == errno.EPERM


# links

def test_link_get_mac():
    kernel = Kernel([IfInfoMsg(index=2, attrs=[(IFLA_ADDRESS, MAC)]).pack()])
    assert netlink.link_get_mac(NetlinkSocket(kernel), 2) == MAC
    assert kernel.sent[0].msg_type == RTM_GETLINK


def test_link_get_mac_absent():
    kernel = Kernel([IfInfoMsg(index=2).pack()])
    assert netlink.link_get_mac(NetlinkSocket(kernel), 2) is None


def test_link_set_mac():
    kernel = Kernel()
    netlink.link_set_mac(NetlinkSocket(kernel), 2, MAC)
    (msg,) = kernel.changes
    assert msg.msg_type == RTM_NEWLINK
    info = IfInfoMsg.unpack(msg.payload)
    assert (info.index, info.attrs) == (2, [(IFLA_ADDRESS, MAC)])


def test_link_set_mac_rejects_bad_length():
    with pytest.raises(ValueError):
        netlink.link_set_mac(NetlinkSocket(Kernel()), 2, MAC[:4])


def test_link_set_mtu():
    kernel = Kernel()
    netlink.link_set_mtu(NetlinkSocket(kernel), 2, 1500)
    info = IfInfoMsg.unpack(kernel.changes[0].payload)
    assert info.attrs == [(IFLA_MTU, struct.pack("=I", 1500))]


def test_link_set_flags():
    kernel = Kernel()
    netlink.link_set_flags(NetlinkSocket(kernel), 2, 1, 1)
    info = IfInfoMsg.unpack(kernel.changes[0].payload)
    assert (info.index, info.flags, info.change) == (2, 1, 1)


def test_link_set_flags_error():
    kernel = Kernel(do_error=errno.ENODEV)
    with pytest.raises(NetlinkError) as info:
        netlink.link_set_flags(NetlinkSocket(kernel), 2, 1, 1)
    assert info.value.errno == errno.ENODEV