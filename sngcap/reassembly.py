"""Reassembly of IP fragments, TCP segments and WebSocket frames."""

from __future__ import annotations

import socket
import struct
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import NamedTuple

from .address import Address
from .packet import (
    MAX_CAPTURE_LEN,
    Frame,
    LinkType,
    Packet,
    PacketType,
    datalink_size,
)

IPPROTO_IPIP = 4
IPPROTO_TCP = 6
IPPROTO_UDP = 17
IPPROTO_FRAGMENT = 44

ETHERTYPE_8021Q = 0x8100
NFULA_PAYLOAD = 9

IP_MF = 0x2000
IP_OFFMASK = 0x1FFF
IP6F_OFF_MASK = 0xFFF8
IP6F_MORE_FRAG = 0x0001

TH_PUSH = 0x08

WH_OPCODE = 0x0F
WH_MASK = 0x80
WH_LEN = 0x7F
WS_OPCODE_TEXT = 0x1

_IPV4_HDR_LEN = 20
_IPV6_HDR_LEN = 40
_IPV6_FRAG_LEN = 8
_UDP_HDR_LEN = 8
_TCP_HDR_LEN = 20


class Validation(Enum):
    """Outcome of checking an assembled TCP payload for SIP content.

    A validator returning MULTIPLE_SIP must shorten ``packet.payload`` to the
    first complete message; the rest is kept for further reassembly.
    """

    NOT_SIP = auto()
    PARTIAL_SIP = auto()
    COMPLETE_SIP = auto()
    MULTIPLE_SIP = auto()


Validator = Callable[[Packet], Validation]


def _accept_all(packet: Packet) -> Validation:
    return Validation.COMPLETE_SIP


class _IpHeader(NamedTuple):
    version: int
    header_len: int
    proto: int
    length: int
    ident: int
    fragmented: bool
    frag_off: int
    more: bool
    data_offset: int
    next_proto: int
    src: Address
    dst: Address

    @property
    def data_len(self) -> int:
        return self.length - self.data_offset


def _parse_ip(data: bytes, offset: int) -> _IpHeader | None:
    if len(data) <= offset:
        return None
    version = data[offset] >> 4
    if version == 4:
        if len(data) < offset + _IPV4_HDR_LEN:
            return None
        vihl, _, length, ident, off, _, proto, _, src, dst = struct.unpack_from(
            "!BBHHHBBH4s4s", data, offset
        )
        header_len = (vihl & 0x0F) * 4
        if header_len < _IPV4_HDR_LEN:
            return None
        frag = off & (IP_MF | IP_OFFMASK)
        return _IpHeader(
            4, header_len, proto, length, ident, bool(frag),
            (off & IP_OFFMASK) * 8 if frag else 0, bool(off & IP_MF),
            header_len, proto,
            Address(socket.inet_ntop(socket.AF_INET, src)),
            Address(socket.inet_ntop(socket.AF_INET, dst)),
        )
    if version == 6:
        if len(data) < offset + _IPV6_HDR_LEN:
            return None
        _, plen, nxt, _, src, dst = struct.unpack_from("!IHBB16s16s", data, offset)
        src_addr = Address(socket.inet_ntop(socket.AF_INET6, src))
        dst_addr = Address(socket.inet_ntop(socket.AF_INET6, dst))
        length = plen + _IPV6_HDR_LEN
        if nxt == IPPROTO_FRAGMENT:
            if len(data) < offset + _IPV6_HDR_LEN + _IPV6_FRAG_LEN:
                return None
            inner, _, offlg, ident = struct.unpack_from(
                "!BBHI", data, offset + _IPV6_HDR_LEN
            )
            return _IpHeader(
                6, _IPV6_HDR_LEN, nxt, length, ident, True,
                offlg & IP6F_OFF_MASK, bool(offlg & IP6F_MORE_FRAG),
                _IPV6_HDR_LEN + _IPV6_FRAG_LEN, inner, src_addr, dst_addr,
            )
        return _IpHeader(
            6, _IPV6_HDR_LEN, nxt, length, 0, False, 0, False,
            _IPV6_HDR_LEN, nxt, src_addr, dst_addr,
        )
    return None


@dataclass
class IpDatagram:
    """A complete IP packet and the bytes following its IP header."""

    packet: Packet
    transport: bytes


class IpReassembler:
    """Turns frames into complete IP datagrams, joining fragments."""

    def __init__(self, link_type: int) -> None:
        self.link_hl = datalink_size(link_type)
        self.link_type = int(link_type)
        self.pending: list[Packet] = []

    def _link_header(self, data: bytes) -> int:
        link_hl = self.link_hl
        if self.link_type == LinkType.EN10MB:
            if len(data) >= 14 and struct.unpack_from("!H", data, 12)[0] == ETHERTYPE_8021Q:
                link_hl += 4
        elif self.link_type == LinkType.LINUX_SLL:
            if len(data) >= 16 and struct.unpack_from("!H", data, 14)[0] == ETHERTYPE_8021Q:
                link_hl += 4
        elif self.link_type == LinkType.NFLOG:
            while link_hl + 8 <= len(data):
                tlv_length, tlv_type = struct.unpack_from("<HH", data, link_hl)
                if tlv_type == NFULA_PAYLOAD:
                    link_hl += 4
                    break
                if tlv_length < 4:
                    break
                link_hl += (tlv_length + 3) & ~3
        return link_hl

    def feed(self, frame: Frame) -> IpDatagram | None:
        """Process a frame; return a datagram once one is complete."""
        data = frame.data
        link_hl = self._link_header(data)
        size = len(data) - link_hl
        caplen = len(data)
        header = None
        while size >= _IPV4_HDR_LEN:
            header = _parse_ip(data, link_hl)
            if header is None:
                return None
            # Trailing bytes after the IP datagram (padding, trailers) are ignored.
            caplen = link_hl + header.length
            size = header.length - header.header_len
            if header.proto != IPPROTO_IPIP:
                break
            link_hl += header.header_len
        if header is None or header.proto == IPPROTO_IPIP:
            return None
        if caplen > MAX_CAPTURE_LEN:
            return None

        if not header.fragmented:
            packet = Packet(header.version, header.proto, header.src, header.dst, header.ident)
            packet.add_frame(frame)
            return IpDatagram(packet, data[link_hl + header.data_offset:caplen])

        packet = next(
            (
                p for p in self.pending
                if p.src == header.src and p.dst == header.dst and p.ip_id == header.ident
            ),
            None,
        )
        if packet is None:
            packet = Packet(header.version, header.proto, header.src, header.dst, header.ident)
            self.pending.append(packet)
        packet.add_frame(frame)

        packet.ip_cap_len += header.data_len
        if not header.more:
            packet.ip_exp_len = header.frag_off + header.data_len
        if packet.ip_cap_len != packet.ip_exp_len:
            return None

        self.pending.remove(packet)
        return self._assemble(packet, link_hl)

    @staticmethod
    def _assemble(packet: Packet, link_hl: int) -> IpDatagram | None:
        pieces = []
        for part in packet.frames:
            header = _parse_ip(part.data, link_hl)
            if header is None:
                continue
            chunk = part.data[link_hl + header.data_offset:link_hl + header.length]
            pieces.append((header.frag_off, chunk))
            if header.version == 6:
                packet.proto = header.next_proto
        if sum(len(chunk) for _, chunk in pieces) > MAX_CAPTURE_LEN:
            return None
        buffer = bytearray(max((off + len(chunk) for off, chunk in pieces), default=0))
        for off, chunk in pieces:
            buffer[off:off + len(chunk)] = chunk
        return IpDatagram(packet, bytes(buffer))


class TcpReassembler:
    """Joins TCP segments of one flow until the validator accepts them."""

    def __init__(self, validator: Validator | None = None) -> None:
        self.validator = validator or _accept_all
        self.pending: list[Packet] = []

    def feed(self, packet: Packet, seq: int, flags: int, payload: bytes) -> Packet | None:
        """Add a segment; return a packet once its payload is ready."""
        if not payload:
            return packet

        stored = next(
            (p for p in self.pending if p.src == packet.src and p.dst == packet.dst),
            None,
        )
        if stored is not None:
            for frame in packet.frames:
                stored.add_frame(frame)
        else:
            stored = packet
            self.pending.append(stored)

        if stored.tcp_seq == 0:
            stored.tcp_seq = seq

        if len(stored.frames) == 1:
            stored.payload = bytes(payload)
        else:
            if len(stored.payload) + len(payload) > MAX_CAPTURE_LEN:
                self.pending.remove(stored)
                return None
            if stored.tcp_seq < seq:
                stored.tcp_seq = seq
                stored.payload = stored.payload + payload
            else:
                stored.payload = payload + stored.payload

        if len(stored.payload) > MAX_CAPTURE_LEN:
            self.pending.remove(stored)
            return None

        full_payload = stored.payload
        valid = self.validator(stored)
        if valid is Validation.COMPLETE_SIP:
            self.pending.remove(stored)
            return stored
        if valid is Validation.MULTIPLE_SIP:
            self.pending.remove(stored)
            rest = full_payload[len(stored.payload):]
            if 0 < len(rest) < MAX_CAPTURE_LEN:
                continuation = stored.clone()
                continuation.payload = rest
                self.pending.append(continuation)
            return stored
        if valid is Validation.NOT_SIP and flags & TH_PUSH:
            self.pending.remove(stored)
            return stored
        return None


def unwrap_websocket(packet: Packet) -> bool:
    """Replace a WebSocket text frame payload with its unmasked content.

    Returns True when the payload was a WebSocket frame and has been unwrapped.
    """
    payload = packet.payload
    size = len(payload)
    if size <= 2:
        return False
    if payload[0] & WH_OPCODE != WS_OPCODE_TEXT:
        return False

    masked = bool(payload[1] & WH_MASK)
    length = payload[1] & WH_LEN
    offset = 2
    if length == 126:
        offset += 2
    elif length == 127:
        offset += 8
    else:
        return False

    if size - offset <= 0:
        return False
    key = b""
    if masked:
        if size - offset - 4 <= 0:
            return False
        key = payload[offset:offset + 4]
        offset += 4

    data = payload[offset:]
    if not data:
        return False
    if masked:
        data = bytes(byte ^ key[i % 4] for i, byte in enumerate(data))
    packet.payload = data
    packet.type = PacketType.SIP_WSS if packet.type is PacketType.SIP_TLS else PacketType.SIP_WS
    return True


class Dissector:
    """Decodes frames of one link type into UDP or TCP payload packets."""

    def __init__(self, link_type: int, validator: Validator | None = None) -> None:
        self.ip = IpReassembler(link_type)
        self.tcp = TcpReassembler(validator)

    def dissect(self, frame: Frame) -> Packet | None:
        """Return a packet with transport data set, or None if not ready."""
        if frame.caplen > MAX_CAPTURE_LEN:
            return None
        datagram = self.ip.feed(frame)
        if datagram is None:
            return None
        packet, segment = datagram.packet, datagram.transport

        if packet.proto == IPPROTO_UDP:
            if len(segment) < _UDP_HDR_LEN:
                return None
            sport, dport = struct.unpack_from("!HH", segment)
            packet.src = Address(packet.src.ip, sport)
            packet.dst = Address(packet.dst.ip, dport)
            packet.type = PacketType.SIP_UDP
            packet.payload = segment[_UDP_HDR_LEN:]
            return packet

        if packet.proto == IPPROTO_TCP:
            if len(segment) < _TCP_HDR_LEN:
                return None
            sport, dport, seq, offx, flags = struct.unpack_from("!HHIxxxxBB", segment)
            packet.src = Address(packet.src.ip, sport)
            packet.dst = Address(packet.dst.ip, dport)
            payload = segment[(offx >> 4) * 4:]
            packet.type = PacketType.SIP_TCP
            packet.payload = payload
            assembled = self.tcp.feed(packet, seq, flags, payload)
            if assembled is None:
                return None
            unwrap_websocket(assembled)
            return assembled

        return None