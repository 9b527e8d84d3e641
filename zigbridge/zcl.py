"""Zigbee Cluster Library frame helpers and constants."""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import Iterable

FC_CLUSTER_SPECIFIC = 0x01
FC_MANUFACTURER_SPECIFIC = 0x04
FC_SERVER_TO_CLIENT = 0x08
FC_DISABLE_DEFAULT_RESPONSE = 0x10

CMD_READ_ATTRIBUTES = 0x00
CMD_READ_ATTRIBUTES_RESPONSE = 0x01
CMD_WRITE_ATTRIBUTES = 0x02
CMD_WRITE_ATTRIBUTES_RESPONSE = 0x04
CMD_CONFIGURE_REPORTING = 0x06
CMD_CONFIGURE_REPORTING_RESPONSE = 0x07
CMD_REPORT_ATTRIBUTES = 0x0A
CMD_DEFAULT_RESPONSE = 0x0B

POWER_SOURCE_UNKNOWN = 0x00
POWER_SOURCE_MAINS = 0x01
POWER_SOURCE_BATTERY = 0x03
POWER_SOURCE_DC = 0x04

STATUS_SUCCESS = 0x00
STATUS_UNSUPPORTED_ATTRIBUTE = 0x86
STATUS_INSUFFICIENT_SPACE = 0x89
STATUS_DUPLICATE_EXISTS = 0x8A
STATUS_NOT_FOUND = 0x8B
STATUS_NO_IMAGE_AVAILABLE = 0x98

CLUSTER_BASIC = 0x0000
CLUSTER_POWER_CONFIGURATION = 0x0001
CLUSTER_TEMPERATURE_CONFIGURATION = 0x0002
CLUSTER_IDENTIFY = 0x0003
CLUSTER_GROUPS = 0x0004
CLUSTER_SCENES = 0x0005
CLUSTER_ON_OFF = 0x0006
CLUSTER_SWITCH_CONFIGURATION = 0x0007
CLUSTER_LEVEL_CONTROL = 0x0008
CLUSTER_TIME = 0x000A
CLUSTER_ANALOG_INPUT = 0x000C
CLUSTER_ANALOG_OUTPUT = 0x000D
CLUSTER_BINARY_OUTPUT = 0x0010
CLUSTER_MULTISTATE_INPUT = 0x0012
CLUSTER_MULTISTATE_VALUE = 0x0014
CLUSTER_OTA_UPGRADE = 0x0019
CLUSTER_POWER_PROFILE = 0x001A
CLUSTER_POLL_CONTROL = 0x0020
CLUSTER_GREEN_POWER = 0x0021
CLUSTER_DOOR_LOCK = 0x0101
CLUSTER_WINDOW_COVERING = 0x0102
CLUSTER_THERMOSTAT = 0x0201
CLUSTER_FAN_CONTROL = 0x0202
CLUSTER_THERMOSTAT_UI_CONFIGURATION = 0x0204
CLUSTER_COLOR_CONTROL = 0x0300
CLUSTER_ILLUMINANCE_MEASUREMENT = 0x0400
CLUSTER_ILLUMINANCE_LEVEL_SENSING = 0x0401
CLUSTER_TEMPERATURE_MEASUREMENT = 0x0402
CLUSTER_PRESSURE_MEASUREMENT = 0x0403
CLUSTER_HUMIDITY_MEASUREMENT = 0x0405
CLUSTER_OCCUPANCY_SENSING = 0x0406
CLUSTER_MOISTURE_MEASUREMENT = 0x0408
CLUSTER_PH_MEASUREMENT = 0x0409
CLUSTER_CO2_CONCENTRATION = 0x040D
CLUSTER_PM25_CONCENTRATION = 0x042A
CLUSTER_IAS_ZONE = 0x0500
CLUSTER_IAS_WD = 0x0502
CLUSTER_SMART_ENERGY_METERING = 0x0702
CLUSTER_ELECTRICAL_MEASUREMENT = 0x0B04
CLUSTER_TOUCHLINK = 0x1000

CLUSTER_BYUN = 0x040A
CLUSTER_PERENIO = 0xFC7B
CLUSTER_LUMI = 0xFCC0

CLUSTER_TUYA_DATA = 0xEF00
CLUSTER_TUYA_SWITCH_MODE = 0xE001
CLUSTER_TUYA_IR_DATA = 0xED00
CLUSTER_TUYA_IR_CONTROL = 0xE004

TUYA_TYPE_RAW = 0x00
TUYA_TYPE_BOOL = 0x01
TUYA_TYPE_VALUE = 0x02
TUYA_TYPE_ENUM = 0x04

MANUFACTURER_CODE_SILABS = 0x1049
MANUFACTURER_CODE_LUMI = 0x115F


class DataType(IntEnum):
    """ZCL attribute data type identifiers."""

    NO_DATA = 0x00
    BOOLEAN = 0x10
    BITMAP_8 = 0x18
    BITMAP_16 = 0x19
    BITMAP_24 = 0x1A
    BITMAP_32 = 0x1B
    BITMAP_40 = 0x1C
    BITMAP_48 = 0x1D
    BITMAP_56 = 0x1E
    BITMAP_64 = 0x1F
    UNSIGNED_8 = 0x20
    UNSIGNED_16 = 0x21
    UNSIGNED_24 = 0x22
    UNSIGNED_32 = 0x23
    UNSIGNED_40 = 0x24
    UNSIGNED_48 = 0x25
    UNSIGNED_56 = 0x26
    UNSIGNED_64 = 0x27
    SIGNED_8 = 0x28
    SIGNED_16 = 0x29
    SIGNED_24 = 0x2A
    SIGNED_32 = 0x2B
    SIGNED_40 = 0x2C
    SIGNED_48 = 0x2D
    SIGNED_56 = 0x2E
    SIGNED_64 = 0x2F
    ENUM_8 = 0x30
    ENUM_16 = 0x31
    SINGLE_PRECISION = 0x39
    DOUBLE_PRECISION = 0x3A
    OCTET_STRING = 0x41
    CHARACTER_STRING = 0x42
    ARRAY = 0x48
    STRUCTURE = 0x4C
    UTC_TIME = 0xE2
    IEEE_ADDRESS = 0xF0


_FIXED_SIZES: dict[int, int] = {
    **dict.fromkeys(
        (DataType.BOOLEAN, DataType.BITMAP_8, DataType.UNSIGNED_8, DataType.SIGNED_8, DataType.ENUM_8), 1
    ),
    **dict.fromkeys((DataType.BITMAP_16, DataType.UNSIGNED_16, DataType.SIGNED_16, DataType.ENUM_16), 2),
    **dict.fromkeys((DataType.BITMAP_24, DataType.UNSIGNED_24, DataType.SIGNED_24), 3),
    **dict.fromkeys(
        (DataType.BITMAP_32, DataType.UNSIGNED_32, DataType.SIGNED_32, DataType.SINGLE_PRECISION), 4
    ),
    **dict.fromkeys((DataType.BITMAP_40, DataType.UNSIGNED_40, DataType.SIGNED_40), 5),
    **dict.fromkeys((DataType.BITMAP_48, DataType.UNSIGNED_48, DataType.SIGNED_48), 6),
    **dict.fromkeys((DataType.BITMAP_56, DataType.UNSIGNED_56, DataType.SIGNED_56), 7),
    **dict.fromkeys(
        (
            DataType.BITMAP_64,
            DataType.UNSIGNED_64,
            DataType.SIGNED_64,
            DataType.DOUBLE_PRECISION,
            DataType.IEEE_ADDRESS,
        ),
        8,
    ),
}


def zcl_header(frame_control: int, transaction_id: int, command_id: int, manufacturer_code: int = 0) -> bytes:
    """Build a ZCL frame header, adding the manufacturer code when it is non-zero."""
    if manufacturer_code:
        return bytes([frame_control | FC_MANUFACTURER_SPECIFIC]) + struct.pack(
            "<HBB", manufacturer_code, transaction_id, command_id
        )
    return bytes([frame_control, transaction_id, command_id])


def read_attributes_request(transaction_id: int, manufacturer_code: int, attributes: Iterable[int]) -> bytes:
    """Build a Read Attributes command for the given attribute ids."""
    header = zcl_header(FC_DISABLE_DEFAULT_RESPONSE, transaction_id, CMD_READ_ATTRIBUTES, manufacturer_code)
    return header + b"".join(struct.pack("<H", attribute_id) for attribute_id in attributes)


def write_attribute_request(
    transaction_id: int, manufacturer_code: int, attribute_id: int, data_type: int, data: bytes
) -> bytes:
    """Build a Write Attributes command for a single attribute."""
    header = zcl_header(FC_DISABLE_DEFAULT_RESPONSE, transaction_id, CMD_WRITE_ATTRIBUTES, manufacturer_code)
    return header + struct.pack("<HB", attribute_id, data_type) + bytes(data)


def zcl_data_size(data_type: int) -> int:
    """Return the fixed size of a data type in bytes, or 0 if it has none."""
    return _FIXED_SIZES.get(data_type, 0)


def zcl_value_size(data_type: int, data: bytes, offset: int) -> tuple[int, int]:
    """Return the value size at ``offset`` and the offset where the value starts.

    String types carry a length byte, which is consumed; arrays and
    structures take the rest of the data.
    """
    if data_type in (DataType.OCTET_STRING, DataType.CHARACTER_STRING):
        if not 0 <= offset < len(data):
            raise ValueError(f"offset {offset} outside data of length {len(data)}")
        return data[offset], offset + 1
    if data_type in (DataType.ARRAY, DataType.STRUCTURE):
        if offset < 0:
            raise ValueError(f"negative offset {offset}")
        return (len(data) - offset) & 0xFF, offset
    return zcl_data_size(data_type), offset