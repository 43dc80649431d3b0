# sngcap

`sngcap` holds the packet-handling core of a SIP message capture tool. It
turns raw link-layer frames into packets, rebuilds fragmented IP datagrams
and segmented TCP streams, strips WebSocket framing from SIP-over-WS
traffic, and sends or receives packets wrapped in the HEP/EEP encapsulation
protocol (versions 2 and 3).

It is a library. Deciding whether a payload is SIP is left to the caller,
who supplies it as a plain callable.

## Requirements

Python 3.10 or later. `psutil` is used to list the addresses of local
network interfaces.

## Overview

| Module              | What it holds                                                              |
|---------------------|----------------------------------------------------------------------------|
| `sngcap.address`    | `Address` (IP and port), `ADDRESS_LEN`, `local_addresses`                  |
| `sngcap.packet`     | `Frame`, `Packet`, `LinkType`, `PacketType`, `CaptureStorage`, `datalink_size`, `MAX_CAPTURE_LEN` |
| `sngcap.reassembly` | `IpReassembler`, `TcpReassembler`, `Dissector`, `IpDatagram`, `unwrap_websocket`, `Validation` |
| `sngcap.hep`        | `encode_v2`, `encode_v3`, `decode_v2`, `decode_v3`, `build_frame`, `parse_url`, `ChunkType`, `HepError` |
| `sngcap.eep`        | `EepClient` and `EepServer` over UDP                                       |

## Addresses

```python
from sngcap.address import Address

server = Address.parse("10.0.0.1:5060")
server.same_host(Address.parse("10.0.0.1:5080"))   # True: port ignored
server == Address.parse("10.0.0.1:5060")            # True: IP and port
server.is_local()                                   # is the IP on a local interface?
str(server)                                         # "10.0.0.1:5060"
```

`Address.parse` raises `ValueError` when the text is not in `IP:PORT` form
or is too long. An `Address` with an empty IP is false in a boolean
context. `local_addresses()` returns the set of IPv4 and IPv6 addresses of
the local interfaces.

## Frames and packets

A `Frame` is the captured bytes with a timestamp (`seconds`,
`microseconds`); `Frame.time` gives `(seconds, microseconds)` for ordering
and `Frame.timestamp` a float. A `Packet` carries the IP version, protocol,
source and destination `Address`, the frames it was built from, its
`PacketType` and its payload. `Packet.clone()` copies a packet with its own
frame list.

`datalink_size(link)` returns the link-layer header length for a
`LinkType` (Ethernet, Linux cooked capture, NFLOG, raw IP and others) and
raises `ValueError` for link types that are not handled.

## Dissecting frames

A `Dissector` takes link-layer frames of one link type and returns a
`Packet` once the IP datagram and, for TCP, the message are whole; until
then it returns `None`. UDP and TCP are handled; other protocols give
`None`. VLAN tags and NFLOG headers are skipped and IP-in-IP tunnels are
unwrapped.

The validator is called with the TCP packet gathered so far and returns a
`Validation` member:

- `COMPLETE_SIP`: the packet is returned;
- `MULTIPLE_SIP`: the validator shortens `packet.payload` to the first
  message, that packet is returned and the rest is kept for further segments;
- `PARTIAL_SIP`: more segments are awaited;
- `NOT_SIP`: the packet is kept until a segment with the PSH flag arrives.

Without a validator every TCP payload counts as complete.

```python
from sngcap.packet import Frame, LinkType
from sngcap.reassembly import Dissector, Validation

def validate(packet):
    if packet.payload.endswith(b"\r\n\r\n"):
        return Validation.COMPLETE_SIP
    return Validation.PARTIAL_SIP

dissector = Dissector(LinkType.EN10MB, validate)
packet = dissector.dissect(Frame(raw_bytes, seconds, microseconds))
if packet is not None:
    print(packet.src, "->", packet.dst, packet.type, packet.payload)
```

Assembled TCP payloads carried in WebSocket text frames are unwrapped (and
unmasked) by `unwrap_websocket`; the packet type becomes
`PacketType.SIP_WS`, or `PacketType.SIP_WSS` if it was `SIP_TLS`.
`IpReassembler` and `TcpReassembler` can also be used on their own.
Frames and assembled payloads over `MAX_CAPTURE_LEN` (20480 bytes) are
dropped.

## HEP/EEP

`sngcap.hep` works on bytes:

```python
from sngcap.hep import decode_v3, encode_v3

message = encode_v3(packet, capture_id=2001)
received = decode_v3(message)
```

`decode_v2` and `decode_v3` raise `HepError` on data that is not valid HEP;
given a password, `decode_v3` also raises it when the message carries no
auth key or one that does not match. The decoded packet gets a synthetic
Ethernet/IPv4/UDP frame built by `build_frame`.

`sngcap.eep` sends and receives over UDP sockets:

```python
from sngcap.eep import EepClient, EepServer

with EepServer.from_url("udp:0.0.0.0:9060", version=3) as server:
    packet = server.receive()      # None on timeout or undecodable data

with EepClient.from_url("udp:10.10.0.100:9060", version=3, capture_id=2001) as client:
    client.send(packet)            # False for RTP packets or when sending fails
```

`EepServer.serve(handler)` passes every received packet to `handler` until
`close()` is called from another thread. `parse_url` splits a
`proto:address:port` URL and raises `ValueError` on anything else.

## What this package does not do

- It does not read or write capture files, and it does not capture from
  network interfaces: frames have to be supplied by the caller.
- It does not manage capture sessions: call limits, pausing and dump-file
  rotation are not provided.
- It does not recognise SIP or RTP or keep track of calls; that is the
  validator's and the caller's job.
- It does not decrypt TLS and has no user interface or command-line program.