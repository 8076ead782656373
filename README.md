# usernet

Building blocks for user-mode networking on Linux, for a process that connects
a virtual machine or a network namespace to the host's network. The package
covers the bookkeeping side of that job:

- `usernet.inany`: IPv4 and IPv6 addresses in one form, as `IPv6Address`
  objects with IPv4 held as IPv4-mapped addresses. Predicates for loopback,
  unspecified, link-local, multicast and unicast addresses; `pton` and
  `ntop` for text; `from_af` and `from_sockaddr` to build addresses.
- `usernet.packet`: `Pool`, a bounded set of (offset, length) descriptors
  over one shared buffer, with range-checked access to packet data.
- `usernet.ip`: IPv4 and IPv6 link-local prefix checks, and `ipv6_l4hdr`,
  which walks the IPv6 extension-header chain of a packet in a `Pool` to
  find the layer-4 header.
- `usernet.iov`: copying data to and from lists of writable buffers
  (`iov_from_buf`, `iov_to_buf`, `iov_skip_bytes`, `iov_size`).
- `usernet.lineread`: `LineReader`, a line-by-line reader over a file
  descriptor with a fixed 8192-byte buffer; longer lines raise
  `LineTooLongError`.
- `usernet.log`: `Logger`, which writes by syslog priority to stderr, to the
  system logger, or to a size-limited log file that cuts out its oldest
  entries when full.
- `usernet.context`: the execution context as dataclasses (`Context`,
  `Ip4Context`, `Ip6Context`, `ProtoContext`, `FwdPorts`) and the enums
  `Mode`, `FwdMode`, `Pif` and `EpollType`.
- `usernet.fwd`: port-forwarding decisions. `EphemeralPorts` reads the
  host's ephemeral port range; `procfs_scan_listen`, `scan_ports_tcp` and
  `scan_ports_udp` find listening ports in `/proc/net` tables;
  `fwd_nat_from_tap`, `fwd_nat_from_splice` and `fwd_nat_from_host` work out
  the target interface and addresses of a new flow.
- `usernet.ndp`: builds Neighbour and Router Advertisements, answers
  solicitations through `ndp`, and `RaTimer` sends unsolicited Router
  Advertisements at randomised intervals.
- `usernet.netlink_msg` and `usernet.netlink`: rtnetlink message encoding
  and decoding, a request/response `NetlinkSocket`, and the queries and
  changes built on it for links, addresses and routes. Failures raise
  `NetlinkError`.

`usernet.fwd` and `usernet.netlink` report through the standard `logging`
module.

## Examples

Addresses:

```python
from usernet import inany

addr = inany.pton("127.0.0.1")
assert inany.is_loopback(addr)
print(inany.v4(addr))              # 127.0.0.1
print(inany.ntop(addr))            # 127.0.0.1

six = inany.pton("fe80::1")
assert inany.is_linklocal6(six)
```

A packet pool:

```python
from usernet.packet import Pool

buf = bytearray(2048)
pool = Pool(buf, 16)
pool.add(0, 64)
print(len(pool))                   # 1
data, left = pool.get(0, 0, 40)    # 40 bytes, 24 left after them
pool.flush()
```

`Pool.add` raises `ValueError` for a descriptor that does not fit;
`Pool.get` raises `IndexError` for a packet or range that does not exist.

Reading lines from a file descriptor:

```python
import os
from usernet.lineread import LineReader

fd = os.open("/proc/net/tcp", os.O_RDONLY)
try:
    for line in LineReader(fd):
        print(line)
finally:
    os.close(fd)
```

Ephemeral ports:

```python
from usernet.fwd import EphemeralPorts

ports = EphemeralPorts()           # defaults to 49152-65535
ports.probe()                      # True if the host's range was read
print(50000 in ports)
```

Where a flow from the guest goes:

```python
import socket
from usernet import inany
from usernet.context import Context
from usernet.fwd import FlowSide, fwd_nat_from_tap

ctx = Context()
ini = FlowSide(eaddr=inany.pton("10.0.2.15"), eport=40000,
               oaddr=inany.pton("192.0.2.1"), oport=80)
pif, tgt = fwd_nat_from_tap(ctx, socket.IPPROTO_TCP, ini)
```

A Router Advertisement:

```python
from usernet.context import Context
from usernet.ndp import ndp_ra

message = ndp_ra(Context(mtu=1500))   # ICMPv6 message bytes
```

Routing netlink queries:

```python
import socket
from usernet import netlink
from usernet.netlink_msg import open_socket

nl = open_socket()
ifi = netlink.get_ext_if(nl, socket.AF_INET)
gateway = netlink.route_get_def(nl, ifi, socket.AF_INET)
```

## What the package does not do

There is no command-line program and no forwarding loop. The package does not
open tap devices or listening sockets, does not relay TCP, UDP or ICMP
traffic, and does not send the Neighbour Discovery messages it builds:
`ndp` and `RaTimer.tick` hand them to a callback that the caller supplies.

## Requirements

Python 3.10 or later. The package uses only the standard library. The
netlink, `/proc` and log-file functions need Linux.