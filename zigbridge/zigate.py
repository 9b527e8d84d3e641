"""Coordinator driver for NXP ZiGate adapters."""

from __future__ import annotations

import logging
import struct
import time
from collections import deque
from dataclasses import dataclass
from enum import IntEnum

from .common import (
    PERMIT_JOIN_BROADCAST_ADDRESS,
    PROFILE_HA,
    ZDO_ACTIVE_ENDPOINTS_REQUEST,
    ZDO_NODE_DESCRIPTOR_REQUEST,
    ZDO_SIMPLE_DESCRIPTOR_REQUEST,
    AdapterError,
    AdapterListener,
    AddressMode,
    LogicalType,
    NetworkSettings,
    Transport,
)

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 2.0
SECURITY_MODE = 0x02
RADIUS = 0x1E

FRAME_START = 0x01
FRAME_ESCAPE = 0x02
FRAME_END = 0x03


class Command(IntEnum):
    """ZiGate command and message identifiers."""

    SET_RAW_MODE = 0x0002
    GET_NETWORK_STATUS = 0x0009
    GET_VERSION = 0x0010
    RESET = 0x0011
    ERASE_PERSISTENT_DATA = 0x0012
    SET_EXTENDED_PANID = 0x0020
    SET_CHANNEL_LIST = 0x0021
    SET_NETWORK_KEY = 0x0022
    SET_LOGICAL_TYPE = 0x0023
    START_NETWORK = 0x0024
    BIND_REQUEST = 0x0030
    UNBIND_REQUEST = 0x0031
    NODE_DESCRIPTOR_REQUEST = 0x0042
    SIMPLE_DESCRIPTOR_REQUEST = 0x0043
    ACTIVE_ENDPOINTS_REQUEST = 0x0045
    LEAVE_REQUEST = 0x0047
    SET_PERMIT_JOIN = 0x0049
    DEVICE_ANNOUNCE = 0x004D
    LQI_REQUEST = 0x004E
    ADD_GROUP = 0x0060
    APS_REQUEST = 0x0530
    STATUS = 0x8000
    DATA_INDICATION = 0x8002
    RESTART_NON_FACTORY = 0x8006
    RESTART_FACTORY = 0x8007
    DATA_ACK = 0x8011
    DEVICE_LEAVE_INDICATION = 0x8048


_HEADER = struct.Struct(">HHB")
_STATUS = struct.Struct(">BBH")
_NETWORK_STATUS = struct.Struct(">H8sHQB")
_DATA_INDICATION = struct.Struct(">BHHBB")
_DATA_ACK = struct.Struct(">BHBHB")
_ADD_GROUP = struct.Struct(">BHBBH")
_APS_REQUEST = struct.Struct(">BHBBHHBBB")
_BIND_REQUEST = struct.Struct(">8sBHB")
_DEVICE_ANNOUNCE = struct.Struct(">H8s")

_NO_REPLY_COMMANDS = (Command.RESET, Command.ERASE_PERSISTENT_DATA)


def checksum(header: bytes, payload: bytes) -> int:
    """Return the XOR checksum over the command and length fields and the payload."""
    result = 0
    for byte in bytes(header[:4]) + bytes(payload):
        result ^= byte
    return result


def encode_frame(data: bytes) -> bytes:
    """Wrap ``data`` in start and end markers, escaping bytes below 0x10."""
    frame = bytearray([FRAME_START])
    for byte in bytes(data):
        if byte < 0x10:
            frame += bytes([FRAME_ESCAPE, byte ^ 0x10])
        else:
            frame.append(byte)
    frame.append(FRAME_END)
    return bytes(frame)


def decode_frames(buffer: bytes) -> tuple[list[bytes], bytes]:
    """Cut complete frames from ``buffer``.

    Returns the unescaped packets and the bytes left over. Decoding stops at
    data that does not start a frame or at a frame that is not yet complete.
    """
    rest = bytes(buffer)
    packets: list[bytes] = []

    while rest:
        end = rest.find(FRAME_END)
        if rest[0] != FRAME_START or end < 6:
            break

        packet = bytearray()
        body = iter(rest[1:end])
        for byte in body:
            if byte == FRAME_ESCAPE:
                escaped = next(body, None)
                if escaped is not None:
                    packet.append(escaped ^ 0x10)
            else:
                packet.append(byte)

        packets.append(bytes(packet))
        rest = rest[end + 1 :]

    return packets, rest


@dataclass
class _Pending:
    answered: bool = False


class ZiGateAdapter:
    """Drives a ZiGate coordinator over a byte transport.

    Events emitted on the listener: ``coordinatorReady``, ``deviceJoined``,
    ``deviceLeft``, ``zdoMessageReceived``, ``zclMessageReceived`` and
    ``requestFinished``.
    """

    request_timeout = REQUEST_TIMEOUT

    def __init__(self, transport: Transport, settings: NetworkSettings, listener: AdapterListener) -> None:
        self._transport = transport
        self._settings = settings
        self._listener = listener
        self._buffer = bytearray()
        self._queue: deque[bytes] = deque()
        self._pending: _Pending | None = None

        self._command: int | None = None
        self._command_reply = False
        self._reply_status = 0xFF
        self._reply_data = b""
        self._request_id = 0
        self._requests: dict[int, int] = {}

        self.ieee_address = bytes(8)
        self.request_address = bytes(8)
        self.manufacturer_name = ""
        self.model_name = ""
        self.firmware = ""
        self.inter_pan_channel: int | None = None

    @property
    def reply_status(self) -> int:
        """Status of the last reply, 0xFF if none arrived."""
        return self._reply_status

    def _request_ok(self, command: int, data: bytes = b"", request_id: int = 0) -> bool:
        return self._send_request(command, data, request_id) and not self._reply_status

    def _require(self, command: int, data: bytes, message: str) -> None:
        if not self._request_ok(command, data):
            raise AdapterError(message)

    def _aps_request(
        self,
        request_id: int,
        mode: AddressMode,
        address: int,
        src_endpoint_id: int,
        dst_endpoint_id: int,
        cluster_id: int,
        payload: bytes,
    ) -> bool:
        payload = bytes(payload)
        request = _APS_REQUEST.pack(
            mode,
            address,
            src_endpoint_id,
            dst_endpoint_id,
            cluster_id,
            PROFILE_HA,
            SECURITY_MODE,
            RADIUS,
            len(payload) & 0xFF,
        )
        return self._request_ok(Command.APS_REQUEST, request + payload, request_id)

    def unicast_request(
        self,
        request_id: int,
        network_address: int,
        src_endpoint_id: int,
        dst_endpoint_id: int,
        cluster_id: int,
        payload: bytes,
    ) -> bool:
        """Send a ZCL payload to one device; True if the adapter accepted it."""
        return self._aps_request(
            request_id, AddressMode.SHORT, network_address, src_endpoint_id, dst_endpoint_id, cluster_id, payload
        )

    def multicast_request(
        self,
        request_id: int,
        group_id: int,
        src_endpoint_id: int,
        dst_endpoint_id: int,
        cluster_id: int,
        payload: bytes,
    ) -> bool:
        """Send a ZCL payload to a group; True if the adapter accepted it."""
        return self._aps_request(
            request_id, AddressMode.GROUP, group_id, src_endpoint_id, dst_endpoint_id, cluster_id, payload
        )

    @staticmethod
    def _reject_inter_pan(description: str) -> bool:
        log.debug("Inter-PAN %s rejected: not supported by ZiGate", description)
        return False

    def unicast_inter_pan_request(self, request_id: int, ieee_address: bytes, cluster_id: int, payload: bytes) -> bool:
        """Inter-PAN messages are not supported by this adapter; always False."""
        return self._reject_inter_pan(
            f"request {request_id} to {bytes(ieee_address).hex(':')} cluster 0x{cluster_id:04x}"
        )

    def broadcast_inter_pan_request(self, request_id: int, cluster_id: int, payload: bytes) -> bool:
        """Inter-PAN messages are not supported by this adapter; always False."""
        return self._reject_inter_pan(f"broadcast {request_id} cluster 0x{cluster_id:04x}")

    def set_inter_pan_channel(self, channel: int) -> bool:
        """Inter-PAN channels are not supported by this adapter; always False."""
        return self._reject_inter_pan(f"channel {channel}")

    def reset_inter_pan_channel(self) -> None:
        """Return to the network channel; the adapter never leaves it."""
        self.inter_pan_channel = None

    def zdo_request(self, request_id: int, network_address: int, cluster_id: int, data: bytes = b"") -> bool:
        """Send a ZDO descriptor request; False for clusters the adapter does not handle."""
        commands = {
            ZDO_NODE_DESCRIPTOR_REQUEST: Command.NODE_DESCRIPTOR_REQUEST,
            ZDO_SIMPLE_DESCRIPTOR_REQUEST: Command.SIMPLE_DESCRIPTOR_REQUEST,
            ZDO_ACTIVE_ENDPOINTS_REQUEST: Command.ACTIVE_ENDPOINTS_REQUEST,
        }
        command = commands.get(cluster_id)
        if command is None:
            return False
        return self._request_ok(command, struct.pack(">H", network_address) + bytes(data), request_id)

    def bind_request(
        self,
        request_id: int,
        network_address: int,
        endpoint_id: int,
        cluster_id: int,
        address: bytes = b"",
        dst_endpoint_id: int = 0,
        unbind: bool = False,
    ) -> bool:
        """Bind or unbind a cluster to a device (8-byte address), a group (2 bytes) or the coordinator."""
        target = bytes(address) if address else self.ieee_address
        if len(target) not in (2, 8):
            raise ValueError(f"binding address must be 2 or 8 bytes, not {len(target)}")

        if len(target) == 2:
            mode = AddressMode.GROUP
            destination = struct.pack(">H", int.from_bytes(target, "little"))
        else:
            mode = AddressMode.IEEE
            destination = target

        request = (
            _BIND_REQUEST.pack(self.request_address[:8], endpoint_id, cluster_id, mode)
            + destination
            + bytes([dst_endpoint_id or 0x01])
        )
        command = Command.UNBIND_REQUEST if unbind else Command.BIND_REQUEST
        return self._request_ok(command, request, request_id)

    def leave_request(self, request_id: int, network_address: int) -> bool:
        """Ask the device at ``request_address`` to leave the network."""
        data = struct.pack(">H", network_address) + self.request_address + bytes(2)
        return self._request_ok(Command.LEAVE_REQUEST, data, request_id)

    def lqi_request(self, request_id: int, network_address: int, index: int) -> bool:
        """Request the neighbour table of a device starting at ``index``."""
        data = struct.pack(">HB", network_address, index)
        return self._request_ok(Command.LQI_REQUEST, data, request_id)

    def permit_join(self, enabled: bool) -> None:
        """Open or close the network for joining; raises AdapterError on failure."""
        address = self._settings.permit_join_address if enabled else PERMIT_JOIN_BROADCAST_ADDRESS
        data = struct.pack(">HB", address, 0xF0 if enabled else 0x00)
        if not self._request_ok(Command.SET_PERMIT_JOIN, data):
            raise AdapterError("Set permit join request failed")

    def soft_reset(self) -> None:
        """Reset the adapter without waiting for an answer."""
        self._send_request(Command.RESET)

    def _send_request(self, command: int, data: bytes = b"", request_id: int = 0) -> bool:
        data = bytes(data)
        log.debug("--> 0x%04x %s", command, data.hex(":"))

        self._command_reply = not data
        self._command = command
        self._reply_status = 0xFF
        self._reply_data = b""
        self._request_id = request_id & 0xFF

        payload = data + b"\x00" if data else b""
        header = struct.pack(">HH", command, len(payload))
        pending = _Pending()
        self._pending = pending

        self._transport.write(encode_frame(header + bytes([checksum(header, payload)]) + payload))

        if command in _NO_REPLY_COMMANDS:
            return True

        return self._wait(pending)

    def _wait(self, pending: _Pending) -> bool:
        deadline = time.monotonic() + self.request_timeout
        while not pending.answered:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            chunk = self._transport.read(remaining)
            if chunk:
                self.receive(chunk)
        return True

    def _data_received(self) -> None:
        if self._pending is not None:
            self._pending.answered = True

    def receive(self, data: bytes) -> None:
        """Process bytes received from the adapter."""
        self._buffer.extend(data)

        while True:
            start = self._buffer.find(FRAME_START)
            if start < 0:
                self._buffer.clear()
                break
            del self._buffer[:start]

            packets, rest = decode_frames(self._buffer)
            self._buffer = bytearray(rest)
            if not packets:
                break
            self._queue.extend(packets)

        while self._queue:
            self._handle_packet(self._queue.popleft())

    def _handle_packet(self, packet: bytes) -> None:
        if len(packet) < _HEADER.size:
            log.warning("Packet %s too short", packet.hex(":"))
            return

        command, length, expected = _HEADER.unpack_from(packet)
        payload = packet[_HEADER.size : _HEADER.size + length]

        if checksum(packet, payload) != expected:
            log.warning("Packet %s checksum mismatch", packet.hex(":"))
            return

        try:
            self._parse_packet(command, payload)
        except (struct.error, IndexError) as error:
            log.warning("Malformed packet %s: %s", packet.hex(":"), error)

    def _finish_request(self, sequence: int, status: int) -> None:
        request_id = self._requests.pop(sequence, None)
        if request_id is not None:
            self._listener.emit("requestFinished", request_id, status)

    def _parse_packet(self, command: int, payload: bytes) -> None:
        log.debug("<-- 0x%04x %s", command, payload.hex(":"))

        if self._command is not None and command == self._command | 0x8000:
            self._reply_data = payload[:-1]
            if self._command_reply:
                self._data_received()
            return

        if command == Command.STATUS:
            status, sequence, status_command = _STATUS.unpack_from(payload)
            if status_command == self._command:
                self._reply_status = status
                if self._command_reply:
                    return
                if not status:
                    self._requests[sequence] = self._request_id
                self._data_received()

        elif command == Command.DATA_INDICATION:
            status, profile_id, cluster_id, src_endpoint_id, _dst = _DATA_INDICATION.unpack_from(payload)
            offset = _DATA_INDICATION.size

            if payload[offset] != AddressMode.SHORT or payload[offset + 3] not in (
                AddressMode.GROUP,
                AddressMode.SHORT,
            ):
                log.warning("Unsupported address mode in incoming message: %s", payload.hex(":"))
                return

            (network_address,) = struct.unpack_from(">H", payload, offset + 1)
            offset += 6

            if not profile_id:
                self._finish_request(payload[offset], status)
                offset += 1
                self._listener.emit("zdoMessageReceived", network_address, cluster_id, payload[offset:])
                return

            self._listener.emit(
                "zclMessageReceived", network_address, src_endpoint_id, cluster_id, payload[-1], payload[offset:]
            )

        elif command in (Command.RESTART_NON_FACTORY, Command.RESTART_FACTORY):
            try:
                self.start_coordinator(command == Command.RESTART_FACTORY)
            except AdapterError as error:
                log.warning("%s", error)
                log.warning("Coordinator startup failed")

        elif command == Command.DATA_ACK:
            status, _address, _endpoint, _cluster, sequence = _DATA_ACK.unpack_from(payload)
            self._finish_request(sequence, status)

        elif command == Command.DEVICE_ANNOUNCE:
            network_address, ieee_address = _DEVICE_ANNOUNCE.unpack_from(payload)
            self._listener.emit("deviceJoined", ieee_address, network_address)

        elif command == Command.DEVICE_LEAVE_INDICATION:
            self._listener.emit("deviceLeft", payload[:8])

    def start_coordinator(self, clear: bool) -> None:
        """Configure the adapter and start the network; raises AdapterError on failure."""
        settings = self._settings

        self._require(Command.SET_RAW_MODE, b"\x01", "Set raw mode request failed")
        self._require(Command.GET_VERSION, b"", "Adapter version request failed")

        version = self._reply_data
        if len(version) < 4 or version[2] != 3 or version[3] < 0x1B:
            raise AdapterError(f"Unsupported ZiGate version: {version.hex(':')}")

        self.manufacturer_name = "NXP"
        self.model_name = "ZiGate"
        self.firmware = f"{version[2]:x}.{version[3]:x}"
        log.info("Adapter type: ZiGate %s", self.firmware)

        self._require(Command.GET_NETWORK_STATUS, b"", "Network status request failed")
        if len(self._reply_data) < _NETWORK_STATUS.size:
            raise AdapterError("Network status reply too short")
        _address, ieee_address, pan_id, _extended, _channel = _NETWORK_STATUS.unpack_from(self._reply_data)
        self.ieee_address = ieee_address

        if clear:
            self._require(Command.SET_EXTENDED_PANID, self.ieee_address, "Set extended PAN ID request failed")

        self._require(
            Command.SET_CHANNEL_LIST, struct.pack(">I", settings.channel_mask()), "Set channel list request failed"
        )
        self._require(Command.SET_NETWORK_KEY, b"\x02" + settings.network_key, "Set network key request failed")
        self._require(
            Command.SET_LOGICAL_TYPE, bytes([LogicalType.COORDINATOR]), "Set adapter logical type request failed"
        )
        self._require(Command.START_NETWORK, b"", "Start network request failed")

        if clear and self._request_ok(Command.GET_NETWORK_STATUS) and len(self._reply_data) >= _NETWORK_STATUS.size:
            _address, _ieee, pan_id, _extended, _channel = _NETWORK_STATUS.unpack_from(self._reply_data)
            log.info("New network started")

        for group_id in settings.multicast:
            request = _ADD_GROUP.pack(AddressMode.SHORT, 0x0000, 0x01, 0x01, group_id)
            if not self._request_ok(Command.ADD_GROUP, request):
                log.warning("Add group 0x%04x request failed", group_id)

        log.info("ZiGate managed PAN ID: 0x%04x", pan_id)
        self._listener.emit("coordinatorReady")