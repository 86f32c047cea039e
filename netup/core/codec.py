"""
Wire codec for netup probe messages.

Message layout (all fields big-endian):
  [index: 8 bytes][sent_time: 16 bytes][integrity_hash: 16 bytes]

The addressed variant prefixes a 2-byte return port so that a responder
running the return-port policy can echo to a socket other than the one
the probe was sent from:
  [return_port: 2 bytes][index][sent_time][integrity_hash]

The integrity hash is the first 16 bytes of SHA-256 over the decimal
text of index followed by the decimal text of sent_time. It detects
corruption only; anyone can compute it.
"""

import hashlib
import struct
from dataclasses import dataclass
from typing import Tuple

from .exceptions import DecodeError


class WireConst:
    """Constants for the wire format"""
    BYTE_ORDER = "big"
    INDEX_SIZE = 8
    TIME_SIZE = 16
    HASH_SIZE = 16
    PORT_SIZE = 2
    MESSAGE_SIZE = INDEX_SIZE + TIME_SIZE + HASH_SIZE
    ADDRESSED_SIZE = PORT_SIZE + MESSAGE_SIZE
    MAX_INDEX = (1 << 64) - 1
    MAX_TIME = (1 << 128) - 1
    MAX_PORT = 0xFFFF


@dataclass(frozen=True)
class WireMessage:
    """A probe message as exchanged on the network"""
    index: int
    sent_time: int
    integrity_hash: int

    def to_bytes(self) -> bytes:
        return encode(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "WireMessage":
        return decode(data)

    def is_valid(self) -> bool:
        return verify(self)


def compute_hash(index: int, sent_time: int) -> int:
    """Derive the 128-bit integrity hash for a probe."""
    digest = hashlib.sha256(f"{index}{sent_time}".encode("ascii")).digest()
    return int.from_bytes(digest[:WireConst.HASH_SIZE], WireConst.BYTE_ORDER)


def build(index: int, sent_time: int) -> WireMessage:
    """Build a message for the given index and send time."""
    if not 0 <= index <= WireConst.MAX_INDEX:
        raise ValueError(f"Index {index} does not fit in 64 bits")
    if not 0 <= sent_time <= WireConst.MAX_TIME:
        raise ValueError(f"Timestamp {sent_time} does not fit in 128 bits")
    return WireMessage(index, sent_time, compute_hash(index, sent_time))


def verify(message: WireMessage) -> bool:
    """Check that the carried hash matches the index and send time."""
    return message.integrity_hash == compute_hash(message.index, message.sent_time)


def encode(message: WireMessage) -> bytes:
    """Serialize a message to its fixed 40-byte form."""
    try:
        return (
            message.index.to_bytes(WireConst.INDEX_SIZE, WireConst.BYTE_ORDER)
            + message.sent_time.to_bytes(WireConst.TIME_SIZE, WireConst.BYTE_ORDER)
            + message.integrity_hash.to_bytes(WireConst.HASH_SIZE, WireConst.BYTE_ORDER)
        )
    except OverflowError as e:
        raise ValueError(f"Message field out of range: {e}") from e


def decode(data: bytes) -> WireMessage:
    """Parse a 40-byte datagram. Raises DecodeError on malformed input."""
    if len(data) != WireConst.MESSAGE_SIZE:
        raise DecodeError(
            f"Expected {WireConst.MESSAGE_SIZE} bytes, got {len(data)}"
        )
    time_start = WireConst.INDEX_SIZE
    hash_start = time_start + WireConst.TIME_SIZE
    return WireMessage(
        index=int.from_bytes(data[:time_start], WireConst.BYTE_ORDER),
        sent_time=int.from_bytes(data[time_start:hash_start], WireConst.BYTE_ORDER),
        integrity_hash=int.from_bytes(data[hash_start:], WireConst.BYTE_ORDER),
    )


def encode_addressed(message: WireMessage, return_port: int) -> bytes:
    """Serialize a message behind a 2-byte return port prefix."""
    if not 0 <= return_port <= WireConst.MAX_PORT:
        raise ValueError(f"Return port {return_port} out of range")
    return struct.pack("!H", return_port) + encode(message)


def read_return_port(data: bytes) -> int:
    """Extract the return port prefix without decoding the rest."""
    if len(data) < WireConst.PORT_SIZE:
        raise DecodeError(
            f"Datagram of {len(data)} bytes is too short for a return port"
        )
    return struct.unpack("!H", data[:WireConst.PORT_SIZE])[0]


def decode_addressed(data: bytes) -> Tuple[int, WireMessage]:
    """Parse a 42-byte addressed datagram into (return_port, message)."""
    if len(data) != WireConst.ADDRESSED_SIZE:
        raise DecodeError(
            f"Expected {WireConst.ADDRESSED_SIZE} bytes, got {len(data)}"
        )
    return read_return_port(data), decode(data[WireConst.PORT_SIZE:])
