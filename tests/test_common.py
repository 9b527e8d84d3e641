import pytest

from zigbridge.common import (
    AdapterListener,
    EndpointDescriptor,
    NetworkSettings,
    Transport,
)


def test_channel_mask_for_highest_channel():
    assert NetworkSettings(channel=26).channel_mask() == 0x04000000


def test_channel_mask_has_single_bit():
    for channel in range(11, 27):
        mask = NetworkSettings(channel=channel).channel_mask()
        assert bin(mask).count("1") == 1
        assert mask.bit_length() - 1 == channel


@pytest.mark.parametrize("channel", [10, 27, 0])
def test_invalid_channel_rejected(channel):
    with pytest.raises(ValueError):
        NetworkSettings(channel=channel)


def test_invalid_network_key_rejected():
    with pytest.raises(ValueError):
        NetworkSettings(network_key=b"\x01" * 15)


def test_invalid_pan_id_rejected():
    with pytest.raises(ValueError):
        NetworkSettings(pan_id=0x10000)


def test_settings_endpoints_are_independent():
    first, second = NetworkSettings(), NetworkSettings()
    first.endpoints[0x01].in_clusters.append(0x0006)
    assert second.endpoints[0x01].in_clusters == []


def test_endpoint_descriptor_lists_are_independent():
    a, b = EndpointDescriptor(), EndpointDescriptor()
    a.out_clusters.append(0x0019)
    assert b.out_clusters == []


def test_listener_calls_callbacks_in_order():
    listener = AdapterListener()
    calls = []
    listener.subscribe("device_joined", lambda ieee, nwk: calls.append(("a", ieee, nwk)))
    listener.subscribe("device_joined", lambda ieee, nwk: calls.append(("b", ieee, nwk)))
    listener.emit("device_joined", b"\x00" * 8, 0x1234)
    assert calls == [("a", b"\x00" * 8, 0x1234), ("b", b"\x00" * 8, 0x1234)]


def test_listener_ignores_other_events():
    listener = AdapterListener()
    calls = []
    listener.subscribe("device_left", calls.append)
    listener.emit("coordinator_ready")
    assert calls == []


def test_transport_records_writes_and_returns_replies():
    transport = Transport(responder=lambda data: data[::-1])
    transport.write(b"\x01\x02")
    assert transport.sent == [b"\x01\x02"]
    assert transport.read(0.1) == b"\x02\x01"


def test_transport_read_times_out_with_empty_bytes():
    transport = Transport()
    assert transport.read(0.01) == b""


def test_transport_inject_is_read_in_order():
    transport = Transport()
    transport.inject(b"a")
    transport.inject(b"b")
    assert [transport.read(0.1), transport.read(0.1)] == [b"a", b"b"]