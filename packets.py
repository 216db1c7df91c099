import time
from dataclasses import dataclass
from typing import Optional, Union

PKT_TYPE_DATA = ord("d")
PKT_TYPE_REPLAY = ord("r")
PKT_TYPE_LISTEN = ord("l")
PKT_TYPE_STOP = ord("s")

# Header: Type(1B), Seq(4B), SentAtMs(8B) + opaque payload
DATA_HEADER_LEN = 1 + 4 + 8


class MalformedPacket(ValueError):
    """Raised when a received buffer cannot be classified or is too short for its type."""


@dataclass(frozen=True)
class DataPacket:
    sequence: int
    sent_at_ms: int
    length: int


@dataclass(frozen=True)
class ReplayPacket:
    sequence: int
    sent_at_ms: int
    length: int


@dataclass(frozen=True)
class ListenPacket:
    pass


@dataclass(frozen=True)
class StopPacket:
    pass


@dataclass(frozen=True)
class UnknownPacket:
    type_byte: int
    length: int


Packet = Union[DataPacket, ReplayPacket, ListenPacket, StopPacket, UnknownPacket]


def encode_listen() -> bytes:
    return bytes([PKT_TYPE_LISTEN])


def encode_stop() -> bytes:
    return bytes([PKT_TYPE_STOP])


def make_data(sequence: int, sent_at_ms: Optional[int] = None, payload_size: int = DATA_HEADER_LEN) -> bytes:
    """Build a data packet, padded with filler bytes up to payload_size."""
    if sent_at_ms is None:
        sent_at_ms = int(time.time() * 1000)
    header = (bytes([PKT_TYPE_DATA])
              + (sequence & 0xFFFFFFFF).to_bytes(4, "big")
              + (sent_at_ms & 0xFFFFFFFFFFFFFFFF).to_bytes(8, "big"))
    return header.ljust(payload_size, b"x")


def _decode_measurement(data, length: int):
    if length < DATA_HEADER_LEN:
        raise MalformedPacket(
            f"expects at least {DATA_HEADER_LEN} bytes for a data header, found {length}")
    seq = int.from_bytes(data[1:5], "big")
    sent_at_ms = int.from_bytes(data[5:13], "big")
    return seq, sent_at_ms


def decode_header(data) -> Packet:
    """Classify a received buffer by its leading type byte.

    Accepts bytes, bytearray or memoryview. Data and Replay packets need the full
    13-byte header; anything shorter raises MalformedPacket, as does an empty buffer.
    Trailing bytes after the header are payload and are not inspected.
    """
    length = len(data)
    if length == 0:
        raise MalformedPacket("empty packet")

    pkt_type = data[0]
    if pkt_type == PKT_TYPE_DATA:
        seq, sent_at_ms = _decode_measurement(data, length)
        return DataPacket(sequence=seq, sent_at_ms=sent_at_ms, length=length)
    if pkt_type == PKT_TYPE_REPLAY:
        seq, sent_at_ms = _decode_measurement(data, length)
        return ReplayPacket(sequence=seq, sent_at_ms=sent_at_ms, length=length)
    if pkt_type == PKT_TYPE_LISTEN:
        return ListenPacket()
    if pkt_type == PKT_TYPE_STOP:
        return StopPacket()
    return UnknownPacket(type_byte=pkt_type, length=length)


def retag_as_replay(buf) -> None:
    # in place: only the type byte changes, payload is echoed verbatim
    buf[0] = PKT_TYPE_REPLAY
