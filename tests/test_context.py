from ipaddress import IPv4Address, IPv6Address

from usernet.context import (
    MAC_OUR_LAA,
    Context,
    EpollType,
    FwdMode,
    FwdPorts,
    Mode,
    epoll_type_str,
)


def test_epoll_type_str_known():
    assert epoll_type_str(EpollType.PING) == "ICMP/ICMPv6 ping socket"
    assert epoll_type_str(EpollType.TAP_PASTA) == "/dev/net/tun device"


def test_epoll_type_str_unknown():
    assert epoll_type_str(EpollType.NONE) == "?"
    assert epoll_type_str(255) == "?"


def test_fwd_mode_values_fixed():
    ctx = Context()
    assert ctx.udp.fwd_out.mode == 0
    assert FwdMode(ctx.tcp.fwd_in.mode) is FwdMode.UNSET
    assert FwdMode(1) is FwdMode.SPEC


def test_target_port_without_delta_is_identity():
    fwd = FwdPorts()
    assert fwd.target_port(8080) == 8080


def test_target_port_applies_delta():
    fwd = FwdPorts(delta={80: 8000})
    assert fwd.target_port(80) == 8080
    assert fwd.target_port(81) == 81


def test_target_port_wraps():
    fwd = FwdPorts(delta={65535: 2})
    assert fwd.target_port(65535) == 1


def test_context_defaults():
    ctx = Context()
    assert ctx.mode is Mode.PASST
    assert ctx.our_tap_mac == MAC_OUR_LAA
    assert ctx.ip4.addr == IPv4Address("0.0.0.0")
    assert ctx.ip6.addr == IPv6Address("::")
    assert ctx.tcp.fwd_in.mode is FwdMode.UNSET


def test_context_mutable_fields_independent():
    a, b = Context(), Context()
    a.dns_search.append("example.com")
    a.tcp.fwd_in.map.add(22)
    assert b.dns_search == []
    assert 22 not in b.tcp.fwd_in.map
    assert a.tcp.fwd_in is not a.tcp.fwd_out
    assert 22 not in a.udp.fwd_in.map