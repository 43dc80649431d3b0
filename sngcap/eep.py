"""Sending and receiving packets over HEP/EEP UDP sockets."""

from __future__ import annotations

import socket
from collections.abc import Callable

from .hep import HepError, decode_v2, decode_v3, encode_v2, encode_v3, parse_url
from .packet import MAX_CAPTURE_LEN, Packet, PacketType

_VERSIONS = (2, 3)
# How long a blocking receive waits before checking whether it was closed.
_POLL_INTERVAL = 0.5


def _check_version(version: int) -> int:
    if version not in _VERSIONS:
        raise ValueError(f"unsupported HEP version {version}")
    return version


def _resolve(host: str, port: str | int) -> tuple:
    infos = socket.getaddrinfo(
        host,
        str(port),
        socket.AF_UNSPEC,
        socket.SOCK_DGRAM,
        socket.IPPROTO_UDP,
        socket.AI_NUMERICSERV,
    )
    if not infos:
        raise OSError(f"failed getaddrinfo() for {host}:{port}")
    return infos[0]


class EepClient:
    """Sends captured packets to a remote HEP collector."""

    def __init__(
        self,
        host: str,
        port: str | int,
        version: int = 3,
        capture_id: int = 0,
        password: str | None = None,
    ) -> None:
        self.version = _check_version(version)
        self.host = host
        self.port = str(port)
        self.capture_id = capture_id
        self.password = password
        family, socktype, proto, _, address = _resolve(host, port)
        self._sock = socket.socket(family, socktype, proto)
        try:
            self._sock.connect(address)
        except OSError:
            self._sock.close()
            raise

    @classmethod
    def from_url(
        cls,
        url: str,
        version: int = 3,
        capture_id: int = 0,
        password: str | None = None,
    ) -> EepClient:
        """Create a client from a ``proto:address:port`` URL."""
        host, port = parse_url(url)
        return cls(host, port, version, capture_id, password)

    def encode(self, packet: Packet) -> bytes:
        """Encapsulate a packet in the configured HEP version."""
        if self.version == 2:
            return encode_v2(packet, self.capture_id)
        return encode_v3(packet, self.capture_id, self.password)

    def send(self, packet: Packet) -> bool:
        """Send a packet; RTP packets and failed sends return False."""
        if packet.type is PacketType.RTP:
            return False
        try:
            message = self.encode(packet)
            self._sock.send(message)
        except (HepError, OSError):
            return False
        return True

    def close(self) -> None:
        """Close the sending socket."""
        self._sock.close()

    def __enter__(self) -> EepClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EepServer:
    """Receives HEP messages on a local UDP port and decodes them."""

    def __init__(
        self,
        host: str,
        port: str | int,
        version: int = 3,
        password: str | None = None,
    ) -> None:
        self.version = _check_version(version)
        self.host = host
        self.port = str(port)
        self.password = password
        self._closed = False
        family, socktype, proto, _, address = _resolve(host, port)
        self._sock = socket.socket(family, socktype, proto)
        try:
            self._sock.bind(address)
        except OSError:
            self._sock.close()
            raise
        self._sock.settimeout(_POLL_INTERVAL)

    @classmethod
    def from_url(
        cls, url: str, version: int = 3, password: str | None = None
    ) -> EepServer:
        """Create a server from a ``proto:address:port`` URL."""
        host, port = parse_url(url)
        return cls(host, port, version, password)

    @property
    def address(self) -> tuple:
        """The local address the socket is bound to."""
        return self._sock.getsockname()

    @property
    def closed(self) -> bool:
        """Tell whether the server has been closed."""
        return self._closed

    def decode(self, data: bytes) -> Packet:
        """Decode a message in the configured HEP version."""
        if self.version == 2:
            return decode_v2(data)
        return decode_v3(data, self.password)

    def receive(self) -> Packet | None:
        """Wait for one message; return its packet, or None if none is usable."""
        if self._closed:
            return None
        try:
            data, _ = self._sock.recvfrom(MAX_CAPTURE_LEN)
        except (socket.timeout, OSError):
            return None
        try:
            return self.decode(data)
        except HepError:
            return None

    def serve(self, handler: Callable[[Packet], object]) -> None:
        """Hand every received packet to a handler until the server is closed."""
        while not self._closed:
            packet = self.receive()
            if packet is not None:
                handler(packet)

    def close(self) -> None:
        """Stop serving and close the listening socket."""
        self._closed = True
        self._sock.close()

    def __enter__(self) -> EepServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()