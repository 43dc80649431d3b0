"""Captured frames and the packets built from them."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto

from .address import Address

#: Largest assembled packet that is handled.
MAX_CAPTURE_LEN = 20480
#: Largest frame a live capture asks for.
MAXIMUM_SNAPLEN = 262144


class LinkType(IntEnum):
    """Link-layer header types as stored in capture files."""

    NULL = 0
    EN10MB = 1
    IEEE802 = 6
    SLIP = 8
    PPP = 9
    FDDI = 10
    PPP_SERIAL = 50
    PPP_ETHER = 51
    RAW = 101
    SLIP_BSDOS = 102
    PPP_BSDOS = 103
    LOOP = 108
    ENC = 109
    LINUX_SLL = 113
    IPNET = 226
    NFLOG = 239
    LINUX_SLL2 = 276


class PacketType(Enum):
    """What a packet has been recognised to carry."""

    SIP_UDP = auto()
    SIP_TCP = auto()
    SIP_TLS = auto()
    SIP_WS = auto()
    SIP_WSS = auto()
    RTP = auto()


class CaptureStorage(IntEnum):
    """Where captured frames are kept."""

    NONE = 0
    MEMORY = 1
    DISK = 2


# Platform link type numbers that differ from the capture-file ones.
_LINK_ALIASES = {12: LinkType.RAW}

_LINK_HEADER_SIZES = {
    LinkType.EN10MB: 14,
    LinkType.IEEE802: 22,
    LinkType.LOOP: 4,
    LinkType.NULL: 4,
    LinkType.SLIP: 16,
    LinkType.SLIP_BSDOS: 16,
    LinkType.PPP: 4,
    LinkType.PPP_BSDOS: 4,
    LinkType.PPP_SERIAL: 4,
    LinkType.PPP_ETHER: 4,
    LinkType.RAW: 0,
    LinkType.FDDI: 21,
    LinkType.ENC: 12,
    LinkType.NFLOG: 4,
    LinkType.LINUX_SLL: 16,
    LinkType.LINUX_SLL2: 20,
    LinkType.IPNET: 24,
}


def datalink_size(link: int) -> int:
    """Return the link-layer header size for a link type.

    Raises ValueError for link types that are not handled.
    """
    try:
        kind = LinkType(link)
    except ValueError:
        kind = _LINK_ALIASES.get(link)
    if kind is None or kind not in _LINK_HEADER_SIZES:
        raise ValueError(f"Unable to handle linktype {link}")
    return _LINK_HEADER_SIZES[kind]


@dataclass(frozen=True)
class Frame:
    """One captured frame: its bytes and capture timestamp."""

    data: bytes
    seconds: int = 0
    microseconds: int = 0
    length: int = -1

    def __post_init__(self) -> None:
        if self.length < 0:
            object.__setattr__(self, "length", len(self.data))

    @property
    def caplen(self) -> int:
        """Number of bytes actually captured."""
        return len(self.data)

    @property
    def time(self) -> tuple[int, int]:
        """Timestamp as (seconds, microseconds), suitable for ordering."""
        return (self.seconds, self.microseconds)

    @property
    def timestamp(self) -> float:
        """Timestamp as seconds since the epoch."""
        return self.seconds + self.microseconds / 1_000_000


@dataclass
class Packet:
    """A network packet assembled from one or more frames."""

    ip_version: int
    proto: int
    src: Address
    dst: Address
    ip_id: int = 0
    frames: list[Frame] = field(default_factory=list)
    type: PacketType | None = None
    payload: bytes = b""
    tcp_seq: int = 0
    ip_cap_len: int = 0
    ip_exp_len: int = 0

    def add_frame(self, frame: Frame) -> None:
        """Append a frame belonging to this packet."""
        self.frames.append(frame)

    def clone(self) -> Packet:
        """Return a copy that has its own list of frames."""
        return dataclasses.replace(self, frames=list(self.frames))

    @property
    def time(self) -> tuple[int, int]:
        """Timestamp of the first frame, or (0, 0) without frames."""
        return self.frames[0].time if self.frames else (0, 0)