import socket
import struct

import pytest

from sngcap.address import Address
from sngcap.packet import MAX_CAPTURE_LEN, Frame, LinkType, Packet, PacketType
from sngcap.reassembly import (
    Dissector,
    IpReassembler,
    TcpReassembler,
    Validation,
    unwrap_websocket,
)

SIP = b"OPTIONS sip:alice@example.com SIP/2.0|"


def ipv4(src, dst, proto, payload, ident=0, flags_off=0):
    header = struct.pack(
        "!BBHHHBBH4s4s", 0x45, 0, 20 + len(payload), ident, flags_off, 64, proto, 0,
        socket.inet_aton(src), socket.inet_aton(dst),
    )
    return header + payload


def ipv6(src, dst, nxt, payload):
    header = struct.pack(
        "!IHBB16s16s", 0x60000000, len(payload), nxt, 64,
        socket.inet_pton(socket.AF_INET6, src), socket.inet_pton(socket.AF_INET6, dst),
    )
    return header + payload


def udp(sport, dport, payload):
    return struct.pack("!HHHH", sport, dport, 8 + len(payload), 0) + payload


def tcp(sport, dport, seq, flags, payload):
    return struct.pack("!HHIIBBHHH", sport, dport, seq, 0, 5 << 4, flags, 65535, 0, 0) + payload


def ether(payload, vlan=False):
    head = b"\x02" * 6 + b"\x04" * 6
    if vlan:
        head += b"\x81\x00\x00\x01"
    return head + b"\x08\x00" + payload


def delimited(packet):
    data = packet.payload
    if data.startswith(b"X"):
        return Validation.NOT_SIP
    end = data.find(b"|")
    if end < 0:
        return Validation.PARTIAL_SIP
    if end + 1 == len(data):
        return Validation.COMPLETE_SIP
    packet.payload = data[:end + 1]
    return Validation.MULTIPLE_SIP


def flow_packet():
    packet = Packet(4, 6, Address("10.0.0.1", 5060), Address("10.0.0.2", 5061))
    packet.add_frame(Frame(b"raw"))
    return packet


def test_udp_over_ethernet():
    frame = Frame(ether(ipv4("10.0.0.1", "10.0.0.2", 17, udp(5060, 5070, SIP))))
    packet = Dissector(LinkType.EN10MB).dissect(frame)
    assert packet.src == Address("10.0.0.1", 5060)
    assert packet.dst == Address("10.0.0.2", 5070)
    assert packet.payload == SIP
    assert packet.type is PacketType.SIP_UDP
    assert packet.frames == [frame]


def test_vlan_tag_is_skipped():
    frame = Frame(ether(ipv4("10.0.0.1", "10.0.0.2", 17, udp(5060, 5060, SIP)), vlan=True))
    packet = Dissector(LinkType.EN10MB).dissect(frame)
    assert packet.payload == SIP
    assert packet.src.ip == "10.0.0.1"


def test_ethernet_padding_is_trimmed():
    frame = Frame(ether(ipv4("10.0.0.1", "10.0.0.2", 17, udp(5060, 5060, SIP))) + b"\x00" * 6)
    assert Dissector(LinkType.EN10MB).dissect(frame).payload == SIP


def test_raw_link_ip_reassembler_datagram():
    datagram = udp(1, 2, SIP)
    result = IpReassembler(LinkType.RAW).feed(Frame(ipv4("10.0.0.1", "10.0.0.2", 17, datagram, ident=42)))
    assert result.transport == datagram
    assert result.packet.ip_id == 42
    assert result.packet.proto == 17


def test_ipip_tunnel_uses_inner_header():
    inner = ipv4("10.1.1.1", "10.1.1.2", 17, udp(5060, 5060, SIP))
    frame = Frame(ether(ipv4("192.0.2.1", "192.0.2.2", 4, inner)))
    packet = Dissector(LinkType.EN10MB).dissect(frame)
    assert packet.src.ip == "10.1.1.1"
    assert packet.dst.ip == "10.1.1.2"
    assert packet.payload == SIP


def test_nflog_payload_tlv():
    ip = ipv4("10.0.0.1", "10.0.0.2", 17, udp(5060, 5060, SIP))
    body = b"\x02\x00\x00\x00"
    body += struct.pack("<HH", 8, 1) + b"pfx\x00"
    body += struct.pack("<HH", 4 + len(ip), 9) + ip
    packet = Dissector(LinkType.NFLOG).dissect(Frame(body))
    assert packet.payload == SIP


@pytest.mark.parametrize("order", [(0, 1), (1, 0)])
def test_ipv4_fragments_are_joined(order):
    datagram = udp(5060, 5060, SIP)
    fragments = [
        ipv4("10.0.0.1", "10.0.0.2", 17, datagram[:16], ident=77, flags_off=0x2000),
        ipv4("10.0.0.1", "10.0.0.2", 17, datagram[16:], ident=77, flags_off=2),
    ]
    dissector = Dissector(LinkType.RAW)
    first, second = (Frame(fragments[i]) for i in order)
    assert dissector.dissect(first) is None
    packet = dissector.dissect(second)
    assert packet.payload == SIP
    assert len(packet.frames) == 2
    assert dissector.ip.pending == []


def test_ipv6_udp():
    frame = Frame(ipv6("2001:db8::1", "2001:db8::2", 17, udp(5060, 5080, SIP)))
    packet = Dissector(LinkType.RAW).dissect(frame)
    assert packet.ip_version == 6
    assert packet.src == Address("2001:db8::1", 5060)
    assert packet.payload == SIP


def test_ipv6_fragments_are_joined():
    datagram = udp(5060, 5060, SIP)
    first = ipv6("2001:db8::1", "2001:db8::2", 44, struct.pack("!BBHI", 17, 0, 1, 99) + datagram[:16])
    second = ipv6("2001:db8::1", "2001:db8::2", 44, struct.pack("!BBHI", 17, 0, 16, 99) + datagram[16:])
    dissector = Dissector(LinkType.RAW)
    assert dissector.dissect(Frame(first)) is None
    packet = dissector.dissect(Frame(second))
    assert packet.proto == 17
    assert packet.payload == SIP


def test_unknown_ip_version_is_dropped():
    assert IpReassembler(LinkType.RAW).feed(Frame(b"\x50" + b"\x00" * 39)) is None


def test_short_frame_is_dropped():
    assert Dissector(LinkType.EN10MB).dissect(Frame(b"\x00" * 20)) is None


def test_other_protocols_are_dropped():
    frame = Frame(ipv4("10.0.0.1", "10.0.0.2", 1, b"\x08\x00" + b"\x00" * 10))
    assert Dissector(LinkType.RAW).dissect(frame) is None


def test_unknown_link_type_raises():
    with pytest.raises(ValueError):
        IpReassembler(999)


def test_tcp_segment_through_dissector():
    frame = Frame(ipv4("10.0.0.1", "10.0.0.2", 6, tcp(5060, 5062, 1000, 0x18, SIP)))
    packet = Dissector(LinkType.RAW, delimited).dissect(frame)
    assert packet.type is PacketType.SIP_TCP
    assert packet.dst == Address("10.0.0.2", 5062)
    assert packet.payload == SIP


def test_tcp_segments_are_appended():
    reassembler = TcpReassembler(delimited)
    assert reassembler.feed(flow_packet(), 100, 0, b"INVITE ") is None
    packet = reassembler.feed(flow_packet(), 107, 0, b"sip|")
    assert packet.payload == b"INVITE sip|"
    assert len(packet.frames) == 2
    assert reassembler.pending == []


def test_earlier_segment_is_prepended():
    reassembler = TcpReassembler(delimited)
    assert reassembler.feed(flow_packet(), 300, 0, b"world") is None
    assert reassembler.feed(flow_packet(), 100, 0, b"hello ") is None
    assert reassembler.pending[0].payload == b"hello world"
    packet = reassembler.feed(flow_packet(), 400, 0, b"|")
    assert packet.payload == b"hello world|"


def test_multiple_messages_keep_the_rest():
    reassembler = TcpReassembler(delimited)
    first = reassembler.feed(flow_packet(), 10, 0, b"one|two")
    assert first.payload == b"one|"
    assert [p.payload for p in reassembler.pending] == [b"two"]
    second = reassembler.feed(flow_packet(), 20, 0, b"|")
    assert second.payload == b"two|"


def test_not_sip_waits_for_push():
    reassembler = TcpReassembler(delimited)
    assert reassembler.feed(flow_packet(), 1, 0, b"Xdata") is None
    assert len(reassembler.pending) == 1
    packet = reassembler.feed(flow_packet(), 2, 0x18, b"Xmore")
    assert packet.payload == b"XdataXmore"
    assert reassembler.pending == []


def test_empty_payload_passes_through():
    packet = flow_packet()
    assert TcpReassembler(delimited).feed(packet, 1, 0, b"") is packet


def test_oversized_flow_is_dropped():
    reassembler = TcpReassembler(delimited)
    assert reassembler.feed(flow_packet(), 1, 0, b"a" * MAX_CAPTURE_LEN) is None
    assert reassembler.feed(flow_packet(), 2, 0, b"b") is None
    assert reassembler.pending == []


def ws_frame(text, key=None):
    head = bytes([0x81, (0x80 if key else 0) | 126]) + struct.pack("!H", len(text))
    if key is None:
        return head + text
    return head + key + bytes(b ^ key[i % 4] for i, b in enumerate(text))


@pytest.mark.parametrize(
    "start, expected",
    [(PacketType.SIP_TCP, PacketType.SIP_WS), (PacketType.SIP_TLS, PacketType.SIP_WSS)],
)
def test_masked_websocket_is_unwrapped(start, expected):
    packet = flow_packet()
    packet.type = start
    packet.payload = ws_frame(SIP, key=b"\x11\x22\x33\x44")
    assert unwrap_websocket(packet) is True
    assert packet.payload == SIP
    assert packet.type is expected


def test_unmasked_websocket_is_unwrapped():
    packet = flow_packet()
    packet.payload = ws_frame(SIP)
    assert unwrap_websocket(packet) is True
    assert packet.payload == SIP


@pytest.mark.parametrize("payload", [bytes([0x82, 126, 0, 4]) + b"data", bytes([0x81, 4]) + b"data", b"\x81"])
def test_non_websocket_payload_is_left_alone(payload):
    packet = flow_packet()
    packet.payload = payload
    assert unwrap_websocket(packet) is False
    assert packet.payload == payload


def test_websocket_over_tcp_dissector():
    frame = Frame(ipv4("10.0.0.1", "10.0.0.2", 6, tcp(5060, 8080, 5, 0x18, ws_frame(SIP, b"\x01\x02\x03\x04"))))
    packet = Dissector(LinkType.RAW).dissect(frame)
    assert packet.type is PacketType.SIP_WS
    assert packet.payload == SIP