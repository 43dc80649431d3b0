"""Network endpoints made of an IP address and a port."""

from __future__ import annotations

import re
import socket
from dataclasses import dataclass

import psutil

#: Longest textual IP address handled (IPv6 presentation length).
ADDRESS_LEN = 46

_ADDRESS_RE = re.compile(r"([^:]{1,%d}):\s*([+-]?\d+)" % ADDRESS_LEN)
_LOCAL_FAMILIES = (socket.AF_INET, socket.AF_INET6)


def local_addresses() -> frozenset[str]:
    """Return the IP addresses configured on the local network devices."""
    found = set()
    for addresses in psutil.net_if_addrs().values():
        for entry in addresses:
            if entry.family not in _LOCAL_FAMILIES or not entry.address:
                continue
            found.add(entry.address.split("%", 1)[0])
    return frozenset(found)


@dataclass(frozen=True)
class Address:
    """An IP address with a port; equality compares both."""

    ip: str = ""
    port: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    @classmethod
    def parse(cls, text: str) -> Address:
        """Build an address from an ``IP:PORT`` string.

        Raises ValueError when the text is not in that form.
        """
        if len(text) > ADDRESS_LEN + 6:
            raise ValueError(f"address too long: {text!r}")
        match = _ADDRESS_RE.match(text)
        if match is None:
            raise ValueError(f"not an IP:PORT address: {text!r}")
        return cls(match.group(1), int(match.group(2)) & 0xFFFF)

    def same_host(self, other: Address) -> bool:
        """Tell whether both addresses share the IP, ignoring ports."""
        return self.ip == other.ip

    def is_local(self) -> bool:
        """Tell whether the IP belongs to a local network device."""
        return bool(self.ip) and self.ip in local_addresses()

    def __bool__(self) -> bool:
        return bool(self.ip)

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"