"""Types shared by the serial adapter implementations."""

from __future__ import annotations

import queue
from collections import defaultdict
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Optional

PROFILE_HA = 0x0104
PERMIT_JOIN_BROADCAST_ADDRESS = 0xFFFC

ZDO_NODE_DESCRIPTOR_REQUEST = 0x0002
ZDO_SIMPLE_DESCRIPTOR_REQUEST = 0x0004
ZDO_ACTIVE_ENDPOINTS_REQUEST = 0x0005
ZDO_BIND_REQUEST = 0x0021
ZDO_UNBIND_REQUEST = 0x0022
ZDO_LQI_REQUEST = 0x0031
ZDO_LEAVE_REQUEST = 0x0034


class AddressMode(IntEnum):
    """APS destination address modes."""

    GROUP = 0x01
    SHORT = 0x02
    IEEE = 0x03


class LogicalType(IntEnum):
    """Zigbee node logical types."""

    COORDINATOR = 0x00
    ROUTER = 0x01
    END_DEVICE = 0x02


class AdapterError(Exception):
    """Raised when an adapter cannot complete an operation."""


@dataclass
class EndpointDescriptor:
    """A local endpoint registered on the coordinator."""

    profile_id: int = PROFILE_HA
    device_id: int = 0x0005
    in_clusters: list[int] = field(default_factory=list)
    out_clusters: list[int] = field(default_factory=list)


@dataclass
class NetworkSettings:
    """Network parameters the coordinator is started with."""

    channel: int = 11
    pan_id: int = 0x1A62
    network_key: bytes = bytes(16)
    power: int = 10
    write: bool = False
    permit_join_address: int = PERMIT_JOIN_BROADCAST_ADDRESS
    endpoints: dict[int, EndpointDescriptor] = field(
        default_factory=lambda: {0x01: EndpointDescriptor()}
    )
    multicast: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not 11 <= self.channel <= 26:
            raise ValueError(f"channel {self.channel} outside 11..26")
        if not 0 <= self.pan_id <= 0xFFFF:
            raise ValueError(f"PAN ID {self.pan_id:#x} is not 16-bit")
        if len(self.network_key) != 16:
            raise ValueError("network key must be 16 bytes")
        self.network_key = bytes(self.network_key)

    def channel_mask(self) -> int:
        """Return the channel as a 32-bit channel mask."""
        return 1 << self.channel


class AdapterListener:
    """Dispatches adapter events to subscribed callbacks."""

    def __init__(self) -> None:
        self._callbacks: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    def subscribe(self, event: str, callback: Callable[..., Any]) -> None:
        """Register ``callback`` to be called when ``event`` is emitted."""
        self._callbacks[event].append(callback)

    def emit(self, event: str, *args: Any) -> None:
        """Call every callback subscribed to ``event`` in subscription order."""
        for callback in list(self._callbacks.get(event, ())):
            callback(*args)


class Transport:
    """Byte transport between an adapter and its device.

    Written data is kept in ``sent``; an optional responder may answer each
    write with bytes that become readable. Incoming data can also be pushed
    with :meth:`inject`.
    """

    def __init__(self, responder: Optional[Callable[[bytes], Optional[bytes]]] = None) -> None:
        self.responder = responder
        self.sent: list[bytes] = []
        self._incoming: queue.Queue[bytes] = queue.Queue()

    def inject(self, data: bytes) -> None:
        """Make ``data`` available to the next read."""
        if data:
            self._incoming.put(bytes(data))

    def write(self, data: bytes) -> None:
        """Send ``data`` to the device."""
        data = bytes(data)
        self.sent.append(data)
        if self.responder is not None:
            reply = self.responder(data)
            if reply:
                self.inject(reply)

    def read(self, timeout: float) -> bytes:
        """Return received bytes, or empty bytes if none arrive within ``timeout`` seconds."""
        try:
            return self._incoming.get(timeout=timeout)
        except queue.Empty:
            return b""