import copy
import itertools
from dataclasses import dataclass, field
from enum import IntEnum

# AODV Message Types
class MessageType(IntEnum):
    RREQ = 1
    RREP = 2
    RERR = 3
    RREP_ACK = 4


class MalformedPacketError(ValueError):
    pass


_uids = itertools.count(1)


def next_uid():
    return next(_uids)


@dataclass
class TypeHeader:
    msg_type: int

    def is_valid(self):
        return self.msg_type in MessageType._value2member_map_

    def get(self):
        return MessageType(self.msg_type) if self.is_valid() else self.msg_type


@dataclass
class RreqHeader:
    request_id: int
    dst: str
    dst_seqno: int
    origin: str
    origin_seqno: int
    hop_count: int = 0
    unknown_seqno: bool = False
    gratuitous_rrep: bool = False
    destination_only: bool = False


@dataclass
class RrepHeader:
    dst: str
    dst_seqno: int
    origin: str
    lifetime: float
    hop_count: int = 0
    ack_required: bool = False


@dataclass
class RerrHeader:
    # {unreachable destination: its last known sequence number}
    unreachable: dict = field(default_factory=dict)
    no_delete: bool = False

    def add_unreachable(self, dst, seqno):
        if dst in self.unreachable:
            return False
        self.unreachable[dst] = seqno
        return True


@dataclass
class RrepAckHeader:
    pass


class Packet:
    """
    Control packet: a stack of headers (outermost first) plus an IP TTL tag.
    """
    def __init__(self, headers=None, ttl=None):
        self.uid = next_uid()
        self.headers = list(headers or [])
        self.ttl = ttl

    def add_header(self, header):
        self.headers.insert(0, header)

    def remove_header(self):
        if not self.headers:
            raise MalformedPacketError(f"Packet {self.uid} has no header to remove")
        return self.headers.pop(0)

    def peek_header(self):
        if not self.headers:
            raise MalformedPacketError(f"Packet {self.uid} has no header to peek")
        return self.headers[0]

    def copy(self):
        """Copy with the same uid, so overhearing nodes can match retransmissions."""
        return copy.deepcopy(self)

    def __repr__(self):
        return f"Packet(uid={self.uid}, ttl={self.ttl}, headers={self.headers})"


def make_control_packet(msg_type, header, ttl):
    packet = Packet(ttl=ttl)
    packet.add_header(header)
    packet.add_header(TypeHeader(int(msg_type)))
    return packet


@dataclass
class DataPacket:
    source: str
    destination: str
    size: int = 512
    ttl: int = 64
    created_at: float = 0.0
    uid: int = field(default_factory=next_uid)

    def copy(self):
        return copy.copy(self)
