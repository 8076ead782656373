"""User-mode networking helpers: addresses, packet pools, port forwarding, NDP and rtnetlink."""

__version__ = "0.1.0"