"""Coordinator driver for adapters speaking the ZBOSS NCP serial protocol."""

from __future__ import annotations

import logging
import struct
import time
from collections import deque
from dataclasses import dataclass
from enum import IntEnum

from .common import (
    PERMIT_JOIN_BROADCAST_ADDRESS,
    ZDO_ACTIVE_ENDPOINTS_REQUEST,
    ZDO_LQI_REQUEST,
    ZDO_NODE_DESCRIPTOR_REQUEST,
    ZDO_SIMPLE_DESCRIPTOR_REQUEST,
    AdapterError,
    AdapterListener,
    AddressMode,
    LogicalType,
    NetworkSettings,
    Transport,
)
from .zboss_frame import (
    TYPE_RESPONSE,
    FrameError,
    FrameReader,
    LowLevelFrame,
    build_acknowledge,
    build_request_frame,
    split_packet,
)

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 2.0
ROUTE_DISCOVERY = 0x02
DEFAULT_RADIUS = 0x03

_MIN_CHANNEL = 11
_MAX_CHANNEL = 26


class Command(IntEnum):
    """ZBOSS NCP command identifiers."""

    GET_MODULE_VERSION = 0x0001
    NCP_RESET = 0x0002
    GET_ZIGBEE_ROLE = 0x0004
    SET_ZIGBEE_ROLE = 0x0005
    GET_ZIGBEE_CHANNEL_MASK = 0x0006
    SET_ZIGBEE_CHANNEL_MASK = 0x0007
    GET_PAN_ID = 0x0009
    SET_PAN_ID = 0x000A
    GET_LOCAL_IEEE_ADDR = 0x000B
    SET_TX_POWER = 0x0011
    SET_RX_ON_WHEN_IDLE = 0x0013
    SET_ED_TIMEOUT = 0x0017
    SET_NWK_KEY = 0x001B
    GET_NWK_KEYS = 0x001E
    NCP_RESET_IND = 0x002B
    SET_TC_POLICY = 0x0032
    SET_MAX_CHILDREN = 0x0034
    AF_SET_SIMPLE_DESC = 0x0101
    ZDO_NODE_DESC_REQ = 0x0204
    ZDO_SIMPLE_DESC_REQ = 0x0205
    ZDO_ACTIVE_EP_REQ = 0x0206
    ZDO_BIND_REQ = 0x0208
    ZDO_UNBIND_REQ = 0x0209
    ZDO_MGMT_LEAVE_REQ = 0x020A
    ZDO_PERMIT_JOINING_REQ = 0x020B
    ZDO_DEV_ANNCE_IND = 0x020C
    ZDO_MGMT_LQI_REQ = 0x0210
    APSDE_DATA_REQ = 0x0301
    APSDE_DATA_IND = 0x0306
    NWK_FORMATION = 0x0401
    NWK_LEAVE_IND = 0x040B
    NWK_START_WITHOUT_FORMATION = 0x041D


class Policy(IntEnum):
    """Trust centre policy identifiers."""

    TC_LINK_KEYS_REQUIRED = 0x0000
    IC_REQUIRED = 0x0001
    TC_REJOIN_ENABLED = 0x0002
    IGNORE_TC_REJOIN = 0x0003
    APS_INSECURE_JOIN = 0x0004
    DISABLE_NWK_MGMT_CHANNEL_UPDATE = 0x0005


_DATA_REQUEST = struct.Struct("<BHQHHBBBBBBHB")
_BIND_REQUEST = struct.Struct("<HQBHBQB")
_LEAVE_REQUEST = struct.Struct("<HQB")
_PERMIT_JOIN = struct.Struct("<HBB")
_SET_POLICY = struct.Struct("<HB")
_REGISTER_ENDPOINT = struct.Struct("<BHHBBB")
_FORMATION = struct.Struct("<BBIBBH")
_SIMPLE_DESCRIPTOR = struct.Struct("<BHHBBB")
_INCOMING_MESSAGE = struct.Struct("<BHBHHHBBHHBHHBbB")
_NODE_DESCRIPTOR_SIZE = 13

_SKIPPED_ENDPOINTS = (0x08, 0x0C)


@dataclass
class _Pending:
    acknowledged: bool = False
    answered: bool = False

    def complete(self, acknowledge: bool) -> bool:
        return self.acknowledged if acknowledge else self.answered


class ZBossAdapter:
    """Drives a ZBOSS NCP coordinator over a byte transport.

    Events emitted on the listener: ``coordinatorReady``, ``deviceJoined``,
    ``deviceLeft``, ``zdoMessageReceived``, ``zclMessageReceived`` and
    ``requestFinished``.
    """

    request_timeout = REQUEST_TIMEOUT

    def __init__(self, transport: Transport, settings: NetworkSettings, listener: AdapterListener) -> None:
        self._transport = transport
        self._settings = settings
        self._listener = listener
        self._reader = FrameReader()
        self._queue: deque[bytes] = deque()
        self._pending: _Pending | None = None

        self._clear = False
        self._command = 0
        self._reply_status = 0xFF
        self._reply_data = b""
        self._sequence_id = 0
        self._acknowledge_id = 0
        self._lqi_request_address = 0

        self.ieee_address = bytes(8)
        self.request_address = bytes(8)
        self.manufacturer_name = ""
        self.model_name = ""
        self.firmware = ""
        self.inter_pan_channel: int | None = None

        self._policy = [
            (Policy.TC_LINK_KEYS_REQUIRED, 0x00),
            (Policy.IC_REQUIRED, 0x00),
            (Policy.TC_REJOIN_ENABLED, 0x01),
            (Policy.IGNORE_TC_REJOIN, 0x00),
            (Policy.APS_INSECURE_JOIN, 0x00),
            (Policy.DISABLE_NWK_MGMT_CHANNEL_UPDATE, 0x00),
        ]

    @property
    def reply_status(self) -> int:
        """Status of the last reply, 0xFF if none arrived."""
        return self._reply_status

    def _profile_id(self, endpoint_id: int) -> int:
        endpoint = self._settings.endpoints.get(endpoint_id)
        return endpoint.profile_id if endpoint is not None else 0x0000

    def _data_request(
        self,
        request_id: int,
        address: int,
        mode: AddressMode,
        src_endpoint_id: int,
        dst_endpoint_id: int,
        cluster_id: int,
        payload: bytes,
    ) -> bool:
        payload = bytes(payload)
        request = _DATA_REQUEST.pack(
            0x15,
            len(payload),
            address,
            self._profile_id(src_endpoint_id),
            cluster_id,
            dst_endpoint_id,
            src_endpoint_id,
            DEFAULT_RADIUS,
            mode,
            ROUTE_DISCOVERY,
            0,
            0,
            0,
        )
        return self._send_request(Command.APSDE_DATA_REQ, request + payload, request_id)

    def unicast_request(
        self,
        request_id: int,
        network_address: int,
        src_endpoint_id: int,
        dst_endpoint_id: int,
        cluster_id: int,
        payload: bytes,
    ) -> bool:
        """Send a ZCL payload to one device; True if the adapter answered."""
        return self._data_request(
            request_id, network_address, AddressMode.SHORT, src_endpoint_id, dst_endpoint_id, cluster_id, payload
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
        """Send a ZCL payload to a group; True if the adapter answered."""
        return self._data_request(
            request_id, group_id, AddressMode.GROUP, src_endpoint_id, dst_endpoint_id, cluster_id, payload
        )

    @staticmethod
    def _check_cluster(cluster_id: int) -> None:
        if not 0 <= cluster_id <= 0xFFFF:
            raise ValueError(f"cluster id 0x{cluster_id:x} out of range")

    def unicast_inter_pan_request(self, request_id: int, ieee_address: bytes, cluster_id: int, payload: bytes) -> bool:
        """Validate an inter-PAN request; always False, the adapter cannot send it."""
        if len(bytes(ieee_address)) != 8:
            raise ValueError("inter-PAN destination must be an 8-byte IEEE address")
        self._check_cluster(cluster_id)
        log.debug(
            "Inter-PAN request %d to %s rejected, not supported by adapter",
            request_id,
            bytes(ieee_address).hex(":"),
        )
        return False

    def broadcast_inter_pan_request(self, request_id: int, cluster_id: int, payload: bytes) -> bool:
        """Validate an inter-PAN broadcast; always False, the adapter cannot send it."""
        self._check_cluster(cluster_id)
        log.debug("Inter-PAN broadcast %d rejected, not supported by adapter", request_id)
        return False

    def set_inter_pan_channel(self, channel: int) -> bool:
        """Validate the channel; always False, the adapter cannot switch channels."""
        if not _MIN_CHANNEL <= channel <= _MAX_CHANNEL:
            raise ValueError(f"channel {channel} outside {_MIN_CHANNEL}..{_MAX_CHANNEL}")
        return self.inter_pan_channel == channel

    def reset_inter_pan_channel(self) -> None:
        """Forget any inter-PAN channel and stay on the network channel."""
        self.inter_pan_channel = None

    def zdo_request(self, request_id: int, network_address: int, cluster_id: int, data: bytes = b"") -> bool:
        """Send a ZDO descriptor request; False for clusters the adapter does not handle."""
        commands = {
            ZDO_NODE_DESCRIPTOR_REQUEST: Command.ZDO_NODE_DESC_REQ,
            ZDO_SIMPLE_DESCRIPTOR_REQUEST: Command.ZDO_SIMPLE_DESC_REQ,
            ZDO_ACTIVE_ENDPOINTS_REQUEST: Command.ZDO_ACTIVE_EP_REQ,
        }
        command = commands.get(cluster_id)
        if command is None:
            return False
        return self._send_request(command, struct.pack("<H", network_address) + bytes(data), request_id)

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

        source = int.from_bytes(self.request_address[:8], "big")

        if len(target) == 2:
            mode = AddressMode.GROUP
            destination = int.from_bytes(target, "little")
            dst_endpoint = 0x00
        else:
            mode = AddressMode.IEEE
            destination = int.from_bytes(target, "big")
            dst_endpoint = dst_endpoint_id or 0x01

        request = _BIND_REQUEST.pack(
            network_address, source, endpoint_id, cluster_id, mode, destination, dst_endpoint
        )
        command = Command.ZDO_UNBIND_REQ if unbind else Command.ZDO_BIND_REQ
        return self._send_request(command, request, request_id)

    def leave_request(self, request_id: int, network_address: int) -> bool:
        """Ask the device at ``request_address`` to leave the network."""
        destination = int.from_bytes(self.request_address[:8], "big")
        request = _LEAVE_REQUEST.pack(network_address, destination, 0x00)
        return self._send_request(Command.ZDO_MGMT_LEAVE_REQ, request, request_id)

    def lqi_request(self, request_id: int, network_address: int, index: int) -> bool:
        """Request the neighbour table of a device starting at ``index``."""
        self._lqi_request_address = network_address
        data = struct.pack("<HB", network_address, index)
        return self._send_request(Command.ZDO_MGMT_LQI_REQ, data, request_id)

    def permit_join(self, enabled: bool) -> None:
        """Open or close the network for joining; raises AdapterError on failure."""
        network_address = self._settings.permit_join_address if enabled else PERMIT_JOIN_BROADCAST_ADDRESS
        duration = 0xF0 if enabled else 0x00

        if network_address == PERMIT_JOIN_BROADCAST_ADDRESS and not self._request_ok(
            Command.ZDO_PERMIT_JOINING_REQ, _PERMIT_JOIN.pack(0x0000, duration, 0)
        ):
            raise AdapterError("Local permit join request failed")

        if not self._request_ok(Command.ZDO_PERMIT_JOINING_REQ, _PERMIT_JOIN.pack(network_address, duration, 0)):
            raise AdapterError("Permit join request failed")

    def soft_reset(self) -> None:
        """Reset the NCP, erasing its network data when a new network is pending."""
        self._send_request(Command.NCP_RESET, b"\x02" if self._clear else b"\x00")

    def _send_request(self, command: int, data: bytes = b"", request_id: int = 0) -> bool:
        data = bytes(data)
        log.debug("--> 0x%04x %s", command, data.hex(":"))

        self._command = command
        self._reply_status = 0xFF
        pending = _Pending()
        self._pending = pending

        self._transport.write(build_request_frame(command, data, request_id & 0xFF, self._sequence_id))
        acknowledge = bool(command & 0x0200) and command != Command.ZDO_PERMIT_JOINING_REQ
        return self._wait(pending, acknowledge)

    def _request_ok(self, command: int, data: bytes = b"") -> bool:
        return self._send_request(command, data) and not self._reply_status

    def _require(self, command: int, data: bytes, message: str) -> None:
        if not self._request_ok(command, data):
            raise AdapterError(message)

    def _try(self, command: int, data: bytes, message: str) -> None:
        if not self._request_ok(command, data):
            log.warning("%s", message)

    def _wait(self, pending: _Pending, acknowledge: bool) -> bool:
        deadline = time.monotonic() + self.request_timeout
        while not pending.complete(acknowledge):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            chunk = self._transport.read(remaining)
            if chunk:
                self.receive(chunk)
        return True

    def receive(self, data: bytes) -> None:
        """Process bytes received from the NCP."""
        try:
            frames = self._reader.feed(data)
        except FrameError as error:
            log.warning("%s", error)
            frames = error.frames

        for frame in frames:
            self._handle_frame(frame)

        while self._queue:
            packet = self._queue.popleft()
            try:
                packet_type, command, body = split_packet(packet)
                self._parse_packet(packet_type, command, body)
            except (FrameError, struct.error, IndexError) as error:
                log.warning("Malformed packet %s: %s", packet.hex(":"), error)

    def _handle_frame(self, frame: LowLevelFrame) -> None:
        if frame.is_ack:
            if self._sequence_id == frame.ack_sequence:
                self._sequence_id = (self._sequence_id + 1) & 0x03
                if self._pending is not None:
                    self._pending.acknowledged = True
        else:
            self._acknowledge_id = frame.sequence
            self._transport.write(build_acknowledge(self._acknowledge_id))

        if frame.payload:
            self._queue.append(frame.payload)

    def _parse_packet(self, packet_type: int, command: int, data: bytes) -> None:
        log.debug("<-- 0x%04x %s", command, data.hex(":"))

        if packet_type == TYPE_RESPONSE and command == self._command and len(data) >= 3:
            self._reply_status = data[2]
            self._reply_data = data[3:]
            if self._pending is not None:
                self._pending.answered = True

        status = bytes([self._reply_status & 0xFF])

        if command in (Command.NCP_RESET, Command.NCP_RESET_IND):
            self._sequence_id = 0
            try:
                self.start_coordinator()
            except AdapterError as error:
                log.warning("%s", error)
                log.warning("Coordinator startup failed")

        elif command == Command.ZDO_NODE_DESC_REQ:
            reply = self._reply_data
            (network_address,) = struct.unpack_from("<H", reply, len(reply) - 2)
            payload = status + struct.pack("<H", network_address) + reply[:_NODE_DESCRIPTOR_SIZE]
            self._listener.emit("zdoMessageReceived", network_address, ZDO_NODE_DESCRIPTOR_REQUEST, payload)

        elif command == Command.ZDO_SIMPLE_DESC_REQ:
            reply = self._reply_data
            *_, in_count, out_count = _SIMPLE_DESCRIPTOR.unpack_from(reply)
            (network_address,) = struct.unpack_from("<H", data, len(data) - 2)
            start = _SIMPLE_DESCRIPTOR.size
            in_clusters = reply[start : start + in_count * 2]
            out_clusters = reply[start + in_count * 2 : start + in_count * 2 + out_count * 2]
            length = (in_count * 2 + out_count * 2 + _SIMPLE_DESCRIPTOR.size) & 0xFF
            payload = (
                status
                + struct.pack("<H", network_address)
                + bytes([length])
                + reply[: _SIMPLE_DESCRIPTOR.size - 2]
                + bytes([in_count])
                + in_clusters
                + bytes([out_count])
                + out_clusters
            )
            self._listener.emit("zdoMessageReceived", network_address, ZDO_SIMPLE_DESCRIPTOR_REQUEST, payload)

        elif command == Command.ZDO_ACTIVE_EP_REQ:
            (network_address,) = struct.unpack_from("<H", data, len(data) - 2)
            payload = status + struct.pack("<H", network_address) + data[3:-2]
            self._listener.emit("zdoMessageReceived", network_address, ZDO_ACTIVE_ENDPOINTS_REQUEST, payload)

        elif command == Command.ZDO_MGMT_LQI_REQ:
            self._listener.emit("zdoMessageReceived", self._lqi_request_address, ZDO_LQI_REQUEST, data[2:])

        elif command == Command.ZDO_DEV_ANNCE_IND:
            (network_address,) = struct.unpack_from("<H", data)
            ieee_address = data[2:10]
            if len(ieee_address) != 8:
                raise FrameError("device announce too short")
            self._listener.emit("deviceJoined", ieee_address[::-1], network_address)

        elif command == Command.APSDE_DATA_IND:
            fields = _INCOMING_MESSAGE.unpack_from(data)
            data_length, src_address, src_endpoint, cluster_id, link_quality = (
                fields[1],
                fields[3],
                fields[7],
                fields[8],
                fields[13],
            )
            start = _INCOMING_MESSAGE.size
            self._listener.emit(
                "zclMessageReceived",
                src_address,
                src_endpoint,
                cluster_id,
                link_quality,
                data[start : start + data_length],
            )

        elif command == Command.NWK_LEAVE_IND:
            ieee_address = data[:8]
            if len(ieee_address) != 8:
                raise FrameError("leave indication too short")
            self._listener.emit("deviceLeft", ieee_address[::-1])

        elif packet_type != TYPE_RESPONSE:
            log.debug(
                "Unrecognized ZBoss command 0x%04x with data %s", command, data.hex(":") if data else "(empty)"
            )

        if data:
            self._listener.emit("requestFinished", data[0], self._reply_status)

    def start_coordinator(self) -> None:
        """Configure the NCP and start the network; raises AdapterError on failure."""
        settings = self._settings
        channel_mask = settings.channel_mask()

        self._require(Command.GET_LOCAL_IEEE_ADDR, b"", "Local IEEE address request failed")
        ieee_raw = self._reply_data[1:9]
        if len(ieee_raw) != 8:
            raise AdapterError("Local IEEE address reply too short")

        for policy, value in self._policy:
            if not self._request_ok(Command.SET_TC_POLICY, _SET_POLICY.pack(policy, value)):
                log.warning("Set policy 0x%04x request failed", policy)

        if not self._clear:
            check = False

            self._require(Command.GET_MODULE_VERSION, b"", "Adapter version request failed")
            version = self._reply_data
            if len(version) < 4:
                raise AdapterError("Adapter version reply too short")
            self.manufacturer_name = "Nordic Semiconductor"
            self.model_name = "ZBOSS NCP"
            self.firmware = f"{version[3]}.{version[2]}.{version[1]}.{version[0]}"
            log.info("Adapter type: %s (%s)", self.model_name, self.firmware)

            self._require(Command.GET_ZIGBEE_ROLE, b"", "Get adapter logical type request failed")
            if self._reply_data[:1] != bytes([LogicalType.COORDINATOR]):
                log.warning("Adapter logical type doesn't match coordinator")
                check = True

            self._require(Command.GET_ZIGBEE_CHANNEL_MASK, b"", "Get adapter channel request failed")
            if self._reply_data[2:6] != struct.pack("<I", channel_mask):
                log.warning("Adapter channel doesn't match configuration")
                check = True

            self._require(Command.GET_PAN_ID, b"", "Get adapter panid request failed")
            if self._reply_data[:2] != struct.pack("<H", settings.pan_id):
                log.warning("Adapter panid doesn't match configuration")
                check = True

            self._require(Command.GET_NWK_KEYS, b"", "Get adapter network key request failed")
            if self._reply_data[: len(settings.network_key)] != settings.network_key:
                log.warning("Adapter network key doesn't match configuration")
                check = True

            if check:
                if not settings.write:
                    raise AdapterError("Adapter configuration can't be changed, write protection enabled")
                self._clear = True
                self.soft_reset()
                return

            self._require(Command.NWK_START_WITHOUT_FORMATION, b"", "Network startup failed")
        else:
            log.info("Starting new network...")
            self._clear = False

            self._require(
                Command.SET_ZIGBEE_ROLE,
                bytes([LogicalType.COORDINATOR]),
                "Set adapter logical type request failed",
            )
            self._require(
                Command.SET_ZIGBEE_CHANNEL_MASK,
                b"\x00" + struct.pack("<I", channel_mask),
                "Set channel mask request failed",
            )
            self._require(Command.SET_PAN_ID, struct.pack("<H", settings.pan_id), "Set panid request failed")
            self._require(Command.SET_NWK_KEY, settings.network_key + b"\x00", "Set nwk request failed")

            formation = _FORMATION.pack(0x01, 0x00, channel_mask, 0x05, 0x00, 0x0000) + ieee_raw
            self._require(Command.NWK_FORMATION, formation, "Network startup failed")

        for endpoint_id, endpoint in sorted(settings.endpoints.items()):
            if endpoint_id in _SKIPPED_ENDPOINTS:
                continue

            request = _REGISTER_ENDPOINT.pack(
                endpoint_id,
                endpoint.profile_id,
                endpoint.device_id,
                0x00,
                len(endpoint.in_clusters) & 0xFF,
                len(endpoint.out_clusters) & 0xFF,
            )
            clusters = b"".join(struct.pack("<H", cluster) for cluster in (*endpoint.in_clusters, *endpoint.out_clusters))

            if not self._request_ok(Command.AF_SET_SIMPLE_DESC, request + clusters):
                log.warning("Endpoint 0x%02x register request failed", endpoint_id)
                continue

            log.info("Endpoint 0x%02x registered successfully", endpoint_id)

        self._try(Command.SET_TX_POWER, bytes([settings.power & 0xFF]), "Set TX power request failed")
        self._try(Command.SET_RX_ON_WHEN_IDLE, b"\x01", "Set RX enabled when idle request failed")
        self._try(Command.SET_ED_TIMEOUT, b"\x08", "Set end device timeout request failed")
        self._try(Command.SET_MAX_CHILDREN, b"\x64", "Set maximum children number request failed")

        self.ieee_address = bytes(ieee_raw[::-1])
        self._listener.emit("coordinatorReady")