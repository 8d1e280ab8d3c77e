from __future__ import annotations

import ipaddress
from typing import Any, Union

from relay_gateway.errors import ConfigError

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_network(raw: Any) -> Network:
    """Parse ``a.b.c.d/len`` or ``v6::/len``; a bare address is a full-width prefix.

    Host bits past the prefix are dropped, so ``192.168.69.7/24`` is
    ``192.168.69.0/24``.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(f"network must be a non-empty string, got {raw!r}")
    text = raw.strip()
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError as exc:
        raise ConfigError(f"network {text!r} is invalid: {exc}") from exc


def parse_address(raw: Any) -> Address | None:
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    # strip an IPv6 zone id, e.g. fe80::1%eth0
    if "%" in text:
        text = text.split("%", 1)[0]
    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def matches(network: Network, address: Address) -> bool:
    if network.version != address.version:
        return False
    mask = int(network.netmask)
    return int(address) & mask == int(network.network_address) & mask
