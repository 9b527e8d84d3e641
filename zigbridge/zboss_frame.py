"""Low-level framing of the ZBOSS NCP serial protocol."""

from __future__ import annotations

import struct
from dataclasses import dataclass

SIGNATURE = 0xDEAD
PROTOCOL_VERSION = 0x00
NCP_API_HL = 0x06

TYPE_REQUEST = 0x00
TYPE_RESPONSE = 0x01

FLAG_ACK = 0x01
FLAG_FIRST_FRAGMENT = 0x40
FLAG_LAST_FRAGMENT = 0x80

HEADER_SIZE = 7
COMMON_HEADER_SIZE = 4
_PACKET_OFFSET = 9

_SIGNATURE_BYTES = struct.pack(">H", SIGNATURE)

_CRC8_TABLE = bytes((
    0xEA, 0xD4, 0x96, 0xA8, 0x12, 0x2C, 0x6E, 0x50, 0x7F, 0x41, 0x03, 0x3D, 0x87, 0xB9, 0xFB, 0xC5,
    0xA5, 0x9B, 0xD9, 0xE7, 0x5D, 0x63, 0x21, 0x1F, 0x30, 0x0E, 0x4C, 0x72, 0xC8, 0xF6, 0xB4, 0x8A,
    0x74, 0x4A, 0x08, 0x36, 0x8C, 0xB2, 0xF0, 0xCE, 0xE1, 0xDF, 0x9D, 0xA3, 0x19, 0x27, 0x65, 0x5B,
    0x3B, 0x05, 0x47, 0x79, 0xC3, 0xFD, 0xBF, 0x81, 0xAE, 0x90, 0xD2, 0xEC, 0x56, 0x68, 0x2A, 0x14,
    0xB3, 0x8D, 0xCF, 0xF1, 0x4B, 0x75, 0x37, 0x09, 0x26, 0x18, 0x5A, 0x64, 0xDE, 0xE0, 0xA2, 0x9C,
    0xFC, 0xC2, 0x80, 0xBE, 0x04, 0x3A, 0x78, 0x46, 0x69, 0x57, 0x15, 0x2B, 0x91, 0xAF, 0xED, 0xD3,
    0x2D, 0x13, 0x51, 0x6F, 0xD5, 0xEB, 0xA9, 0x97, 0xB8, 0x86, 0xC4, 0xFA, 0x40, 0x7E, 0x3C, 0x02,
    0x62, 0x5C, 0x1E, 0x20, 0x9A, 0xA4, 0xE6, 0xD8, 0xF7, 0xC9, 0x8B, 0xB5, 0x0F, 0x31, 0x73, 0x4D,
    0x58, 0x66, 0x24, 0x1A, 0xA0, 0x9E, 0xDC, 0xE2, 0xCD, 0xF3, 0xB1, 0x8F, 0x35, 0x0B, 0x49, 0x77,
    0x17, 0x29, 0x6B, 0x55, 0xEF, 0xD1, 0x93, 0xAD, 0x82, 0xBC, 0xFE, 0xC0, 0x7A, 0x44, 0x06, 0x38,
    0xC6, 0xF8, 0xBA, 0x84, 0x3E, 0x00, 0x42, 0x7C, 0x53, 0x6D, 0x2F, 0x11, 0xAB, 0x95, 0xD7, 0xE9,
    0x89, 0xB7, 0xF5, 0xCB, 0x71, 0x4F, 0x0D, 0x33, 0x1C, 0x22, 0x60, 0x5E, 0xE4, 0xDA, 0x98, 0xA6,
    0x01, 0x3F, 0x7D, 0x43, 0xF9, 0xC7, 0x85, 0xBB, 0x94, 0xAA, 0xE8, 0xD6, 0x6C, 0x52, 0x10, 0x2E,
    0x4E, 0x70, 0x32, 0x0C, 0xB6, 0x88, 0xCA, 0xF4, 0xDB, 0xE5, 0xA7, 0x99, 0x23, 0x1D, 0x5F, 0x61,
    0x9F, 0xA1, 0xE3, 0xDD, 0x67, 0x59, 0x1B, 0x25, 0x0A, 0x34, 0x76, 0x48, 0xF2, 0xCC, 0x8E, 0xB0,
    0xD0, 0xEE, 0xAC, 0x92, 0x28, 0x16, 0x54, 0x6A, 0x45, 0x7B, 0x39, 0x07, 0xBD, 0x83, 0xC1, 0xFF,
))


def _crc16_entry(value: int) -> int:
    for _ in range(8):
        value = (value >> 1) ^ 0x8408 if value & 1 else value >> 1
    return value


_CRC16_TABLE = tuple(_crc16_entry(i) for i in range(256))


class FrameError(ValueError):
    """Raised when received data is not a valid frame.

    ``frames`` holds the frames decoded before the fault was found.
    """

    def __init__(self, message: str, frames: list[LowLevelFrame] | None = None) -> None:
        super().__init__(message)
        self.frames = list(frames or [])


@dataclass(frozen=True)
class LowLevelFrame:
    """A frame received from the NCP, with its high-level packet if any."""

    frame_type: int
    flags: int
    payload: bytes = b""

    @property
    def is_ack(self) -> bool:
        """True if the frame acknowledges one of ours."""
        return bool(self.flags & FLAG_ACK)

    @property
    def ack_sequence(self) -> int:
        """Sequence number an acknowledge frame refers to."""
        return (self.flags >> 4) & 0x03

    @property
    def sequence(self) -> int:
        """Sequence number of a data frame."""
        return (self.flags >> 2) & 0x03


def crc8(data: bytes) -> int:
    """Return the low-level header checksum of ``data``."""
    crc = 0
    for byte in data:
        crc = _CRC8_TABLE[crc ^ byte]
    return crc


def crc16(data: bytes) -> int:
    """Return the packet checksum of ``data``."""
    crc = 0
    for byte in data:
        crc = (crc >> 8) ^ _CRC16_TABLE[(crc ^ byte) & 0xFF]
    return crc


def _low_level_header(length: int, flags: int) -> bytes:
    body = struct.pack("<HBB", length, NCP_API_HL, flags)
    return _SIGNATURE_BYTES + body + bytes([crc8(body)])


def build_request_frame(command: int, data: bytes, request_id: int, sequence_id: int) -> bytes:
    """Build a complete request frame for ``command`` carrying ``data``."""
    if not 0 <= sequence_id <= 3:
        raise ValueError(f"sequence id {sequence_id} outside 0..3")
    if not 0 <= request_id <= 0xFF:
        raise ValueError(f"request id {request_id} is not 8-bit")
    if not 0 <= command <= 0xFFFF:
        raise ValueError(f"command {command:#x} is not 16-bit")
    data = bytes(data)
    packet = struct.pack("<BBHB", PROTOCOL_VERSION, TYPE_REQUEST, command, request_id) + data
    flags = sequence_id << 2 | FLAG_FIRST_FRAGMENT | FLAG_LAST_FRAGMENT
    header = _low_level_header(len(data) + 12, flags)
    return header + struct.pack("<H", crc16(packet)) + packet


def build_acknowledge(acknowledge_id: int) -> bytes:
    """Build the frame acknowledging a received frame with ``acknowledge_id``."""
    if not 0 <= acknowledge_id <= 3:
        raise ValueError(f"acknowledge id {acknowledge_id} outside 0..3")
    return _low_level_header(5, FLAG_ACK | acknowledge_id << 4)


def split_packet(packet: bytes) -> tuple[int, int, bytes]:
    """Split a packet into its type, command id and the data after the common header."""
    if len(packet) < COMMON_HEADER_SIZE:
        raise FrameError(f"packet of {len(packet)} bytes is shorter than its header")
    _version, packet_type, command = struct.unpack_from("<BBH", packet)
    return packet_type, command, bytes(packet[COMMON_HEADER_SIZE:])


class FrameReader:
    """Collects received bytes and cuts them into frames."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for the rest of their frame."""
        return len(self._buffer)

    def _fail(self, message: str, frames: list[LowLevelFrame]) -> FrameError:
        self._buffer.clear()
        return FrameError(message, frames)

    def feed(self, data: bytes) -> list[LowLevelFrame]:
        """Add ``data`` and return every frame now complete.

        Data not starting with the frame signature is discarded. A checksum
        fault discards the buffer and raises :class:`FrameError`.
        """
        self._buffer.extend(data)
        frames: list[LowLevelFrame] = []

        while len(self._buffer) >= HEADER_SIZE:
            buffer = self._buffer

            if buffer[:2] != _SIGNATURE_BYTES:
                buffer.clear()
                break

            length, frame_type, flags, header_crc = struct.unpack_from("<HBBB", buffer, 2)
            total = length + 2

            if header_crc != crc8(buffer[2:6]):
                shown = bytes(buffer[:total]).hex(":")
                raise self._fail(f"Frame {shown} low level header CRC mismatch", frames)

            if total < HEADER_SIZE:
                raise self._fail(f"Frame length {length} shorter than its header", frames)

            if len(buffer) < total:
                break

            payload = b""

            if total > _PACKET_OFFSET:
                (packet_crc,) = struct.unpack_from("<H", buffer, HEADER_SIZE)
                payload = bytes(buffer[_PACKET_OFFSET:total])

                if packet_crc != crc16(payload):
                    shown = bytes(buffer[:total]).hex(":")
                    raise self._fail(f"Packet {shown} CRC mismatch", frames)

            frames.append(LowLevelFrame(frame_type, flags, payload))
            del buffer[:total]

        return frames