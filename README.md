# zigbridge

Building blocks for driving Zigbee coordinator adapters over a byte link:
Zigbee Cluster Library (ZCL) frame builders and drivers for adapters running
ZBOSS NCP or ZiGate firmware.

## Modules

- `zigbridge.zcl`: ZCL constants (frame control flags, command ids, status
  codes, cluster ids), the `DataType` enum, and the helpers
  `zcl_header`, `read_attributes_request`, `write_attribute_request`,
  `zcl_data_size` and `zcl_value_size`.
- `zigbridge.common`: types shared by the drivers: `AddressMode`,
  `LogicalType`, `EndpointDescriptor`, `NetworkSettings`, the event hub
  `AdapterListener`, the byte `Transport` and `AdapterError`.
- `zigbridge.zboss_frame`: ZBOSS NCP framing: `crc8`, `crc16`,
  `build_request_frame`, `build_acknowledge`, `split_packet`, the
  `LowLevelFrame` record, the incremental `FrameReader` and `FrameError`.
- `zigbridge.zboss`: `ZBossAdapter`, the ZBOSS NCP coordinator driver.
- `zigbridge.zigate`: `ZiGateAdapter`, the ZiGate coordinator driver, and
  its framing helpers `checksum`, `encode_frame` and `decode_frames`.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Building ZCL frames

```python
from zigbridge.zcl import DataType, read_attributes_request, zcl_data_size, zcl_value_size

frame = read_attributes_request(1, 0x0000, [0x0004, 0x0005])
# b"\x10\x01\x00\x04\x00\x05\x00"

zcl_data_size(DataType.UNSIGNED_16)                        # 2
zcl_value_size(DataType.CHARACTER_STRING, b"\x03abc", 0)   # (3, 1)
```

`zcl_header` adds the manufacturer-specific flag and the little-endian
manufacturer code when a non-zero code is given. `zcl_value_size` returns
the size of a value and the offset where it starts: string types consume
their length byte, arrays and structures take the rest of the data, and
other types use their fixed size (0 when unknown).

## Driving an adapter

Each driver is built from a `Transport`, the `NetworkSettings` of the
network and an `AdapterListener`:

```python
from zigbridge.common import AdapterListener, NetworkSettings, Transport
from zigbridge.zboss import ZBossAdapter

listener = AdapterListener()
listener.subscribe("deviceJoined", lambda ieee, nwk: print(ieee.hex(":"), hex(nwk)))

settings = NetworkSettings(channel=15, pan_id=0x1A62)
adapter = ZBossAdapter(Transport(), settings, listener)
```

`Transport` keeps every written frame in `sent`. Its optional `responder`
is called with each write and may return bytes to be read back, and
`inject` queues incoming bytes; `read(timeout)` returns queued bytes or
`b""` after the timeout. To talk to real hardware, subclass it and
override `write` and `read`.

A driver sends a request and then reads from the transport until the
adapter answers or `request_timeout` (2 seconds) passes. Bytes that
arrive outside a request can be handed to `receive`.

Events emitted on the listener:

| event | arguments |
| --- | --- |
| `coordinatorReady` | none |
| `deviceJoined` | IEEE address (8 bytes), network address |
| `deviceLeft` | IEEE address |
| `zdoMessageReceived` | network address, ZDO cluster id, payload |
| `zclMessageReceived` | network address, endpoint id, cluster id, link quality, ZCL payload |
| `requestFinished` | request id, status |

Request methods (`unicast_request`, `multicast_request`, `zdo_request`,
`bind_request`, `leave_request`, `lqi_request`) return `True` when the
adapter answered (ZiGate: answered with status 0). `zdo_request` returns
`False` for clusters other than node descriptor, simple descriptor and
active endpoints. `bind_request` and `leave_request` act on the device
whose IEEE address is set in the driver's `request_address`; a binding
address of 2 bytes is a group, 8 bytes a device, and empty means the
coordinator. `permit_join` and `start_coordinator` return nothing and
raise `AdapterError` on failure.

Neither adapter supports inter-PAN messages: `unicast_inter_pan_request`,
`broadcast_inter_pan_request` and `set_inter_pan_channel` return `False`
(`ZBossAdapter` raises `ValueError` for a malformed address, cluster id or
a channel outside 11..26).

`soft_reset` resets the adapter. When the adapter reports its restart, the
driver runs `start_coordinator` itself: it reads the adapter's identity
into `manufacturer_name`, `model_name`, `firmware` and `ieee_address`,
configures channel, PAN ID and network key, registers the endpoints
(ZBOSS) or groups (ZiGate) from the settings, and emits
`coordinatorReady`. A ZBOSS adapter whose stored network differs from the
settings is erased and re-formed only when `NetworkSettings.write` is
true.

## What the package does not do

It does not open serial ports or GPIO pins, keep a device database,
interview or configure joined devices, run OTA upgrades, or offer a
command line or MQTT front end. It provides the frames and the adapter
drivers that such a program is built on.