import struct

import pytest

from zigbridge.common import AdapterError, AdapterListener, NetworkSettings, Transport
from zigbridge.zigate import ZiGateAdapter, checksum, decode_frames, encode_frame

EVENTS = (
    "coordinatorReady",
    "deviceJoined",
    "deviceLeft",
    "zdoMessageReceived",
    "zclMessageReceived",
    "requestFinished",
)

IEEE = bytes(range(1, 9))
VERSION_REPLY = b"\x00\x01\x03\x1d"


def frame(command, payload):
    header = struct.pack(">HH", command, len(payload))
    return encode_frame(header + bytes([checksum(header, payload)]) + payload)


def parse_sent(raw):
    packets, _rest = decode_frames(raw)
    packet = packets[0]
    command, length = struct.unpack_from(">HH", packet)
    return command, packet[5 : 5 + length]


class FakeZiGate:
    def __init__(self, replies=None, status=0, sequence=7):
        self.replies = {
            0x0010: VERSION_REPLY,
            0x0009: struct.pack(">H8sHQB", 0x0000, IEEE, 0x1A62, 0, 11),
        }
        self.replies.update(replies or {})
        self.status = status
        self.sequence = sequence
        self.received = []

    def commands(self):
        return [command for command, _ in self.received]

    def __call__(self, raw):
        command, payload = parse_sent(raw)
        self.received.append((command, payload))
        if command in (0x0011, 0x0012):
            return None
        out = frame(0x8000, struct.pack(">BBH", self.status, self.sequence, command))
        if not payload:
            out += frame(command | 0x8000, self.replies.get(command, b"") + b"\xaa")
        return out


def make_adapter(responder=None, settings=None, timeout=0.5):
    transport = Transport(responder)
    listener = AdapterListener()
    recorded = {name: [] for name in EVENTS}
    for name in EVENTS:
        listener.subscribe(name, lambda *args, _name=name: recorded[_name].append(args))
    adapter = ZiGateAdapter(transport, settings or NetworkSettings(), listener)
    adapter.request_timeout = timeout
    return adapter, transport, recorded


def test_encode_frame_escapes_low_bytes():
    assert encode_frame(b"\x00\x10\xff") == b"\x01\x02\x10\x10\xff\x03"


@pytest.mark.parametrize(
    "data",
    [b"\x80\x00\x00\x05\x11", b"\x01\x02\x03\x04\x05\x06", bytes(range(0x20)), b"\xff" * 12],
)
def test_encode_decode_round_trip(data):
    assert decode_frames(encode_frame(data)) == ([data], b"")


def test_encoded_frame_has_markers_only_at_ends():
    encoded = encode_frame(bytes(range(16)) * 2)
    assert encoded[0] == 0x01 and encoded[-1] == 0x03
    assert 0x01 not in encoded[1:-1]
    assert 0x03 not in encoded[1:-1]


def test_decode_keeps_incomplete_frame():
    first = encode_frame(b"\x80\x00\x00\x04\x77")
    second = encode_frame(b"\x80\x02\x00\x01\x99")
    packets, rest = decode_frames(first + second[:-1])
    assert packets == [b"\x80\x00\x00\x04\x77"]
    assert rest == second[:-1]


def test_decode_multiple_frames():
    a, b = b"\x80\x00\x00\x04\x77", b"\x80\x02\x00\x01\x99"
    assert decode_frames(encode_frame(a) + encode_frame(b)) == ([a, b], b"")


def test_decode_requires_start_marker():
    data = b"\x55" + encode_frame(b"\x80\x00\x00\x04\x77")
    assert decode_frames(data) == ([], data)


@pytest.mark.parametrize("payload", [b"", b"\x01", b"\x12\x34\x56", bytes(range(40))])
def test_checksum_cancels_itself(payload):
    header = struct.pack(">HH", 0x0530, len(payload))
    value = checksum(header, payload)
    assert checksum(header, payload + bytes([value])) == 0


def test_unicast_request_layout_and_completion():
    device = FakeZiGate(sequence=7)
    adapter, transport, events = make_adapter(device)
    zcl = b"\x10\x05\x00\x01\x00"

    assert adapter.unicast_request(9, 0x1234, 0x01, 0x02, 0x0006, zcl) is True

    command, payload = device.received[-1]
    assert command == 0x0530
    expected = struct.pack(">BHBBHHBBB", 0x02, 0x1234, 0x01, 0x02, 0x0006, 0x0104, 0x02, 0x1E, len(zcl))
    assert payload == expected + zcl + b"\x00"

    adapter.receive(frame(0x8011, struct.pack(">BHBHB", 0x00, 0x1234, 0x02, 0x0006, 7)))
    assert events["requestFinished"] == [(9, 0)]

    adapter.receive(frame(0x8011, struct.pack(">BHBHB", 0x00, 0x1234, 0x02, 0x0006, 7)))
    assert events["requestFinished"] == [(9, 0)]


def test_multicast_uses_group_mode():
    device = FakeZiGate()
    adapter, _, _ = make_adapter(device)
    assert adapter.multicast_request(1, 0x4321, 0x01, 0xFF, 0x0006, b"\x01\x02\x03")
    _command, payload = device.received[-1]
    assert payload[0] == 0x01
    assert payload[1:3] == b"\x43\x21"


def test_request_with_error_status_fails():
    adapter, _, _ = make_adapter(FakeZiGate(status=0x80))
    assert adapter.unicast_request(1, 0x1234, 1, 1, 6, b"\x00\x01\x00") is False
    assert adapter.reply_status == 0x80


def test_request_without_answer_times_out():
    adapter, transport, _ = make_adapter(None, timeout=0.05)
    assert adapter.lqi_request(1, 0x1234, 0) is False
    assert len(transport.sent) == 1


def test_inter_pan_not_supported():
    adapter, transport, _ = make_adapter(FakeZiGate())
    assert adapter.unicast_inter_pan_request(1, IEEE, 0x1000, b"\x00") is False
    assert adapter.broadcast_inter_pan_request(1, 0x1000, b"\x00") is False
    assert adapter.set_inter_pan_channel(15) is False
    adapter.reset_inter_pan_channel()
    assert transport.sent == []


def test_zdo_request():
    device = FakeZiGate()
    adapter, _, _ = make_adapter(device)
    assert adapter.zdo_request(1, 0x1234, 0x0033) is False
    assert device.received == []
    assert adapter.zdo_request(1, 0x1234, 0x0004, b"\x05") is True
    assert device.received[-1] == (0x0043, b"\x12\x34\x05\x00")


def test_bind_to_group():
    device = FakeZiGate()
    adapter, _, _ = make_adapter(device)
    adapter.request_address = IEEE
    assert adapter.bind_request(1, 0x1234, 0x01, 0x0006, b"\x34\x12", 0xFF)
    command, payload = device.received[-1]
    assert command == 0x0030
    assert payload == IEEE + b"\x01\x00\x06\x01" + b"\x12\x34" + b"\xff\x00"


def test_unbind_from_coordinator_uses_own_address():
    device = FakeZiGate()
    adapter, _, _ = make_adapter(device)
    adapter.ieee_address = bytes(range(11, 19))
    adapter.request_address = IEEE
    assert adapter.bind_request(1, 0x1234, 0x02, 0x0008, unbind=True)
    command, payload = device.received[-1]
    assert command == 0x0031
    assert payload == IEEE + b"\x02\x00\x08\x03" + bytes(range(11, 19)) + b"\x01\x00"


def test_bind_rejects_bad_address():
    adapter, _, _ = make_adapter(FakeZiGate())
    with pytest.raises(ValueError):
        adapter.bind_request(1, 0x1234, 1, 6, b"\x01\x02\x03")


def test_leave_and_lqi_layout():
    device = FakeZiGate()
    adapter, _, _ = make_adapter(device)
    adapter.request_address = IEEE
    assert adapter.leave_request(1, 0x1234)
    assert device.received[-1] == (0x0047, b"\x12\x34" + IEEE + b"\x00\x00\x00")
    assert adapter.lqi_request(2, 0x1234, 3)
    assert device.received[-1] == (0x004E, b"\x12\x34\x03\x00")


def test_permit_join():
    device = FakeZiGate()
    adapter, _, _ = make_adapter(device, NetworkSettings(permit_join_address=0x5678))
    adapter.permit_join(True)
    assert device.received[-1] == (0x0049, b"\x56\x78\xf0\x00")
    adapter.permit_join(False)
    assert device.received[-1] == (0x0049, b"\xff\xfc\x00\x00")


def test_permit_join_failure_raises():
    adapter, _, _ = make_adapter(FakeZiGate(status=1))
    with pytest.raises(AdapterError):
        adapter.permit_join(True)


def test_soft_reset_does_not_wait():
    adapter, transport, _ = make_adapter(None, timeout=5)
    adapter.soft_reset()
    assert len(transport.sent) == 1
    assert parse_sent(transport.sent[0]) == (0x0011, b"")


def test_start_coordinator():
    device = FakeZiGate()
    settings = NetworkSettings(channel=15, multicast=[0x1001])
    adapter, _, events = make_adapter(device, settings)

    adapter.start_coordinator(False)

    assert device.commands() == [0x0002, 0x0010, 0x0009, 0x0021, 0x0022, 0x0023, 0x0024, 0x0060]
    assert adapter.firmware == "3.1d"
    assert adapter.manufacturer_name == "NXP"
    assert adapter.ieee_address == IEEE
    assert dict(device.received)[0x0021] == struct.pack(">I", 1 << 15) + b"\x00"
    assert dict(device.received)[0x0022] == b"\x02" + settings.network_key + b"\x00"
    assert events["coordinatorReady"] == [()]


def test_start_coordinator_clear_sets_extended_pan_id():
    device = FakeZiGate()
    adapter, _, events = make_adapter(device)
    adapter.start_coordinator(True)
    assert device.commands() == [0x0002, 0x0010, 0x0009, 0x0020, 0x0021, 0x0022, 0x0023, 0x0024, 0x0009]
    assert dict(device.received)[0x0020] == IEEE + b"\x00"
    assert len(events["coordinatorReady"]) == 1


def test_start_coordinator_rejects_old_firmware():
    device = FakeZiGate(replies={0x0010: b"\x00\x01\x03\x1a"})
    adapter, _, events = make_adapter(device)
    with pytest.raises(AdapterError):
        adapter.start_coordinator(False)
    assert events["coordinatorReady"] == []


def test_restart_message_starts_coordinator():
    device = FakeZiGate()
    adapter, _, events = make_adapter(device)
    adapter.receive(frame(0x8007, b"\x00"))
    assert 0x0020 in device.commands()
    assert events["coordinatorReady"] == [()]


def _indication(profile_id, cluster_id, body, source_mode=0x02, destination_mode=0x02):
    return (
        struct.pack(">BHHBB", 0x00, profile_id, cluster_id, 0x03, 0x01)
        + bytes([source_mode])
        + b"\x12\x34"
        + bytes([destination_mode])
        + b"\x00\x00"
        + body
    )


def test_zcl_data_indication():
    adapter, _, events = make_adapter(None)
    body = b"\x18\x05\x0a\x00\x00\x10\x01" + b"\x9c"
    adapter.receive(frame(0x8002, _indication(0x0104, 0x0006, body)))
    assert events["zclMessageReceived"] == [(0x1234, 0x03, 0x0006, 0x9C, body)]


def test_zdo_data_indication_finishes_request():
    device = FakeZiGate(sequence=0x21)
    adapter, _, events = make_adapter(device)
    assert adapter.zdo_request(5, 0x1234, 0x0005)

    adapter.receive(frame(0x8002, _indication(0x0000, 0x8005, b"\x21" + b"\x00\x12\x34\x01\x01")))

    assert events["requestFinished"] == [(5, 0)]
    assert events["zdoMessageReceived"] == [(0x1234, 0x8005, b"\x00\x12\x34\x01\x01")]


def test_data_indication_with_unsupported_address_mode_ignored():
    adapter, _, events = make_adapter(None)
    adapter.receive(frame(0x8002, _indication(0x0104, 0x0006, b"\x18\x01\x0a\x55", source_mode=0x03)))
    assert events["zclMessageReceived"] == []


def test_device_announce_and_leave():
    adapter, _, events = make_adapter(None)
    adapter.receive(frame(0x004D, b"\x56\x78" + IEEE + b"\x8e"))
    adapter.receive(frame(0x8048, IEEE + b"\x00"))
    assert events["deviceJoined"] == [(IEEE, 0x5678)]
    assert events["deviceLeft"] == [(IEEE,)]


def test_checksum_mismatch_is_dropped():
    payload = IEEE + b"\x00"
    header = struct.pack(">HH", 0x8048, len(payload))
    bad = encode_frame(header + bytes([checksum(header, payload) ^ 0xFF]) + payload)
    adapter, _, events = make_adapter(None)
    adapter.receive(bad)
    assert events["deviceLeft"] == []


def test_split_and_garbage_input():
    adapter, _, events = make_adapter(None)
    data = b"\x77\x88" + frame(0x8048, IEEE + b"\x00")
    adapter.receive(data[:6])
    assert events["deviceLeft"] == []
    adapter.receive(data[6:])
    assert events["deviceLeft"] == [(IEEE,)]