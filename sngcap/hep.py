"""Encoding and decoding of HEP/EEP encapsulated packets (versions 2 and 3)."""

from __future__ import annotations

import re
import socket
import struct
from enum import IntEnum

from .address import ADDRESS_LEN, Address
from .packet import Frame, Packet, PacketType

#: Identifier that opens every HEPv3 message.
HEP3_MAGIC = b"HEP3"
#: Address family values carried on the wire.
HEP_AF_INET = 2
HEP_AF_INET6 = 10

_CHUNK = struct.Struct("!HHH")
_CTRL_LEN = 6
_V2_HEADER = struct.Struct("!BBBBHH")
# The time header is written in host order by common agents; little-endian here.
_V2_TIME = struct.Struct("<IIH2x")

_ETHER_DST = b"\xbb" * 6
_ETHER_SRC = b"\xaa" * 6
_ETHERTYPE_IP = 0x0800
_IPPROTO_UDP = 17
_IP_TTL = 128

_URL_RE = re.compile(r"[^:]+:([^:]{1,%d}):\s*(\S{1,5})" % ADDRESS_LEN)


class HepError(ValueError):
    """Raised when a HEP message cannot be built or understood."""


class ChunkType(IntEnum):
    """Generic (vendor 0) HEPv3 chunk types."""

    INVALID = 0
    FAMILY = 1
    PROTO = 2
    SRC_IP4 = 3
    DST_IP4 = 4
    SRC_IP6 = 5
    DST_IP6 = 6
    SRC_PORT = 7
    DST_PORT = 8
    TS_SEC = 9
    TS_USEC = 10
    PROTO_TYPE = 11
    CAPT_ID = 12
    KEEP_TM = 13
    AUTH_KEY = 14
    PAYLOAD = 15
    CORRELATION_ID = 16


def _unpack(fmt: str, data: bytes, offset: int) -> tuple:
    try:
        return struct.unpack_from(fmt, data, offset)
    except struct.error:
        raise HepError("truncated HEP message") from None


def _take(data: bytes, offset: int, size: int) -> bytes:
    if offset + size > len(data):
        raise HepError("truncated HEP message")
    return data[offset:offset + size]


def _ipv4_or_zero(ip: str) -> bytes:
    try:
        return socket.inet_pton(socket.AF_INET, ip)
    except OSError:
        return bytes(4)


def _family_of(packet: Packet) -> tuple[int, int]:
    if packet.ip_version == 4:
        return HEP_AF_INET, socket.AF_INET
    if packet.ip_version == 6:
        return HEP_AF_INET6, socket.AF_INET6
    raise HepError(f"unsupported IP version {packet.ip_version}")


def _pton(family: int, ip: str) -> bytes:
    try:
        return socket.inet_pton(family, ip)
    except OSError:
        raise HepError(f"invalid IP address {ip!r}") from None


def build_frame(
    timestamp: tuple[int, int], payload: bytes, src: Address, dst: Address
) -> Frame:
    """Build an Ethernet/IPv4/UDP frame that carries the given payload."""
    seconds, microseconds = timestamp
    ether = _ETHER_DST + _ETHER_SRC + struct.pack("!H", _ETHERTYPE_IP)
    ip = struct.pack(
        "!BBHHHBBH4s4s",
        0x45,
        0,
        (20 + 8 + len(payload)) & 0xFFFF,
        0,
        0,
        _IP_TTL,
        _IPPROTO_UDP,
        0,
        _ipv4_or_zero(src.ip),
        _ipv4_or_zero(dst.ip),
    )
    udp = struct.pack("!HHHH", src.port, dst.port, (8 + len(payload)) & 0xFFFF, 0)
    return Frame(ether + ip + udp + bytes(payload), seconds, microseconds)


def _received_packet(
    ip_version: int,
    proto: int,
    src: Address,
    dst: Address,
    timestamp: tuple[int, int],
    payload: bytes,
) -> Packet:
    frame = build_frame(timestamp, payload, src, dst)
    return Packet(
        ip_version,
        proto,
        src,
        dst,
        frames=[frame],
        type=PacketType.SIP_UDP,
        payload=bytes(payload),
    )


def encode_v2(packet: Packet, capture_id: int = 0) -> bytes:
    """Encapsulate a packet in a HEPv2 message."""
    family, af = _family_of(packet)
    addresses = _pton(af, packet.src.ip) + _pton(af, packet.dst.ip)
    seconds, microseconds = packet.time
    time_header = _V2_TIME.pack(
        seconds & 0xFFFFFFFF, microseconds & 0xFFFFFFFF, capture_id & 0xFFFF
    )
    header_len = _V2_HEADER.size + len(addresses) + len(time_header)
    header = _V2_HEADER.pack(
        2, header_len, family, packet.proto & 0xFF, packet.src.port, packet.dst.port
    )
    return header + addresses + time_header + bytes(packet.payload)


def decode_v2(data: bytes) -> Packet:
    """Build a packet from a HEPv2 message.

    Raises HepError when the message is not a valid HEPv2 message.
    """
    version, _hlen, family, proto, sport, dport = _unpack(_V2_HEADER.format, data, 0)
    if version != 2:
        raise HepError(f"not a HEPv2 message (version {version})")
    if family == HEP_AF_INET:
        af, size, ip_version = socket.AF_INET, 4, 4
    elif family == HEP_AF_INET6:
        af, size, ip_version = socket.AF_INET6, 16, 6
    else:
        raise HepError(f"unsupported address family {family}")

    pos = _V2_HEADER.size
    src_ip = socket.inet_ntop(af, _take(data, pos, size))
    dst_ip = socket.inet_ntop(af, _take(data, pos + size, size))
    pos += 2 * size
    seconds, microseconds, _capture_id = _unpack(_V2_TIME.format, data, pos)
    pos += _V2_TIME.size

    return _received_packet(
        ip_version,
        proto,
        Address(src_ip, sport),
        Address(dst_ip, dport),
        (seconds, microseconds),
        data[pos:],
    )


def _chunk(kind: ChunkType, body: bytes) -> bytes:
    length = _CHUNK.size + len(body)
    if length > 0xFFFF:
        raise HepError("HEP chunk too large")
    return _CHUNK.pack(0, int(kind), length) + body


def encode_v3(packet: Packet, capture_id: int = 0, password: str | None = None) -> bytes:
    """Encapsulate a packet in a HEPv3 message, with an auth key if given."""
    family, af = _family_of(packet)
    seconds, microseconds = packet.time
    chunks = [
        _chunk(ChunkType.FAMILY, struct.pack("!B", family)),
        _chunk(ChunkType.PROTO, struct.pack("!B", packet.proto & 0xFF)),
        _chunk(ChunkType.SRC_PORT, struct.pack("!H", packet.src.port)),
        _chunk(ChunkType.DST_PORT, struct.pack("!H", packet.dst.port)),
        _chunk(ChunkType.TS_SEC, struct.pack("!I", seconds & 0xFFFFFFFF)),
        _chunk(ChunkType.TS_USEC, struct.pack("!I", microseconds & 0xFFFFFFFF)),
        _chunk(ChunkType.PROTO_TYPE, struct.pack("!B", 1)),
        _chunk(ChunkType.CAPT_ID, struct.pack("!I", capture_id & 0xFFFFFFFF)),
    ]
    if af == socket.AF_INET:
        chunks.append(_chunk(ChunkType.SRC_IP4, _pton(af, packet.src.ip)))
        chunks.append(_chunk(ChunkType.DST_IP4, _pton(af, packet.dst.ip)))
    else:
        chunks.append(_chunk(ChunkType.SRC_IP6, _pton(af, packet.src.ip)))
        chunks.append(_chunk(ChunkType.DST_IP6, _pton(af, packet.dst.ip)))
    if password is not None:
        chunks.append(_chunk(ChunkType.AUTH_KEY, password.encode()))
    chunks.append(_chunk(ChunkType.PAYLOAD, bytes(packet.payload)))

    body = b"".join(chunks)
    total = _CTRL_LEN + len(body)
    if total > 0xFFFF:
        raise HepError("HEP message too large")
    return HEP3_MAGIC + struct.pack("!H", total) + body


def decode_v3(data: bytes, password: str | None = None) -> Packet:
    """Build a packet from a HEPv3 message.

    When a password is given, the message must carry an auth key starting
    with it. Raises HepError for invalid or unauthorised messages.
    """
    if data[:4] != HEP3_MAGIC:
        raise HepError("not a HEPv3 message")
    (total,) = _unpack("!H", data, 4)

    family = proto = 0
    src_ip = dst_ip = ""
    sport = dport = 0
    seconds = microseconds = 0
    auth_key = b""
    payload = b""

    pos = _CTRL_LEN
    while pos < total:
        vendor, kind, length = _unpack(_CHUNK.format, data, pos)
        if length == 0:
            raise HepError("HEP chunk with zero length")
        if vendor != 0:
            pos += length
            continue
        start = pos + _CHUNK.size
        if kind == ChunkType.INVALID:
            raise HepError("invalid HEP chunk")
        elif kind == ChunkType.FAMILY:
            (family,) = _unpack("!B", data, start)
        elif kind == ChunkType.PROTO:
            (proto,) = _unpack("!B", data, start)
        elif kind == ChunkType.SRC_IP4:
            src_ip = socket.inet_ntop(socket.AF_INET, _take(data, start, 4))
        elif kind == ChunkType.DST_IP4:
            dst_ip = socket.inet_ntop(socket.AF_INET, _take(data, start, 4))
        elif kind == ChunkType.SRC_IP6:
            src_ip = socket.inet_ntop(socket.AF_INET6, _take(data, start, 16))
        elif kind == ChunkType.DST_IP6:
            dst_ip = socket.inet_ntop(socket.AF_INET6, _take(data, start, 16))
        elif kind == ChunkType.SRC_PORT:
            (sport,) = _unpack("!H", data, start)
        elif kind == ChunkType.DST_PORT:
            (dport,) = _unpack("!H", data, start)
        elif kind == ChunkType.TS_SEC:
            (seconds,) = _unpack("!I", data, start)
        elif kind == ChunkType.TS_USEC:
            (microseconds,) = _unpack("!I", data, start)
        elif kind == ChunkType.AUTH_KEY:
            auth_key = _take(data, start, length - _CHUNK.size)
        elif kind == ChunkType.PAYLOAD:
            payload = _take(data, start, length - _CHUNK.size)
        pos += length

    if password is not None:
        received = auth_key.split(b"\0", 1)[0]
        if not received:
            raise HepError("HEP message without auth key")
        if not received.startswith(password.encode()):
            raise HepError("HEP auth key mismatch")

    return _received_packet(
        4 if family == HEP_AF_INET else 6,
        proto,
        Address(src_ip, sport),
        Address(dst_ip, dport),
        (seconds, microseconds),
        payload,
    )


def parse_url(url: str) -> tuple[str, str]:
    """Split a ``proto:address:port`` URL into its address and port.

    Raises ValueError when the URL is not in that form.
    """
    match = _URL_RE.match(url)
    if match is None:
        raise ValueError(f"invalid HEP URL: {url!r}")
    return match.group(1), match.group(2)