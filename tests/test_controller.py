"""Tests for UndnemoController read path, poll cycles and error delivery."""

import time

import pytest

from fakes.fake_device import FakeDevice
from undnemo_lib import protocol
from undnemo_lib.controller import UndnemoController
from undnemo_lib.errors import NotConnected, PollFailed, TransportError
from undnemo_lib.models import EngineState


def wait_idle(controller: UndnemoController, timeout: float = 5.0) -> None:
    deadline = time.time() + timeout
    while controller.is_polling and time.time() < deadline:
        time.sleep(0.01)
    assert not controller.is_polling


def first_poll(controller: UndnemoController):
    """Trigger the first cycle and return the snapshot read after it merged."""
    controller.get_snapshot()
    assert controller.wait_for_poll(timeout=5.0)
    wait_idle(controller)
    return controller.get_snapshot()


def fields(snapshot, group):
    return [
        snapshot.statistics[protocol.group_key(group, field)]
        for field in (
            protocol.FIELD_ENABLE_STATE,
            protocol.FIELD_DEVICE_NAME,
            protocol.FIELD_CHANNEL_NAME,
            protocol.FIELD_DISPLAY_NAME,
        )
    ]


def test_read_before_connect() -> None:
    controller = UndnemoController()

    with pytest.raises(NotConnected):
        controller.get_snapshot()
    with pytest.raises(NotConnected):
        controller.apply_control(protocol.STAT_VOLUME, 5)


def test_connect_twice_fails() -> None:
    controller = UndnemoController()
    controller.connect(host="fake", sock=FakeDevice())

    with pytest.raises(TransportError):
        controller.connect(host="fake", sock=FakeDevice())

    controller.disconnect()


def test_first_read_returns_scalars_without_waiting() -> None:
    fake = FakeDevice()
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)

    snapshot = controller.get_snapshot()

    assert snapshot.complete is False
    assert snapshot.state is EngineState.AWAITING_POLL
    assert snapshot.statistics[protocol.STAT_SOFTWARE_VERSION] == "1.0.7"
    assert snapshot.statistics[protocol.STAT_VOLUME] == "5"
    assert snapshot.statistics[protocol.STAT_BUTTON_BRIGHTNESS] == "7"
    assert snapshot.statistics[protocol.STAT_DISPLAY_BRIGHTNESS] == "8"
    assert snapshot.statistics[protocol.STAT_SPEAKER_MUTE] == "0"
    assert len(snapshot.statistics) == 6

    assert controller.wait_for_poll(timeout=5.0)
    assert controller.state is EngineState.READY
    controller.disconnect()


def test_unfiltered_poll_scenario() -> None:
    fake = FakeDevice(active_channel=3)
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)

    snapshot = first_poll(controller)

    assert snapshot.complete is True
    assert len(snapshot.statistics) == 262
    assert fields(snapshot, "Channel 01") == ["1", "MXA910-A", "Automix Out", "Automix Out"]
    assert fields(snapshot, "Channel 16") == ["0", "", "", "No Channel Assigned"]
    assert fields(snapshot, protocol.ACTIVE_GROUP) == ["1", "MXA910-C", "Automix Out", "Automix Out"]
    assert snapshot.statistics[protocol.STAT_ACTIVE_CHANNEL_INDEX] == "3"
    assert snapshot.active_record.device_name == "MXA910-C"
    assert sorted(fake.channel_requests()[:64]) == list(range(1, 65))
    controller.disconnect()


def test_filtered_poll_only_requests_filter() -> None:
    fake = FakeDevice(active_channel=3)
    controller = UndnemoController(channel_filter="1,2,3,@")
    controller.connect(host="fake", sock=fake)

    assert controller.channel_filter == (1, 2, 3)
    snapshot = first_poll(controller)

    assert sorted(fake.channel_requests()[:3]) == [1, 2, 3]
    assert set(fake.channel_requests()) == {1, 2, 3}
    assert len(snapshot.statistics) == 18
    assert snapshot.control(protocol.STAT_ACTIVE_CHANNEL_INDEX).options == ("1", "2", "3")
    controller.disconnect()


def test_filtered_poll_includes_active_outside_filter() -> None:
    fake = FakeDevice(active_channel=16)
    controller = UndnemoController(channel_filter=(1, 2, 3))
    controller.connect(host="fake", sock=fake)

    snapshot = first_poll(controller)

    assert set(fake.channel_requests()) == {1, 2, 3, 16}
    assert fields(snapshot, protocol.ACTIVE_GROUP)[3] == "No Channel Assigned"
    assert not any(k.startswith("Channel 16") for k in snapshot.statistics)
    controller.disconnect()


def test_read_during_poll_does_not_start_another() -> None:
    fake = FakeDevice(response_delay_s=0.005)
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)

    controller.get_snapshot()
    second = controller.get_snapshot()

    assert second.complete is False
    assert fake.count("VERSION") == 1

    assert controller.wait_for_poll(timeout=10.0)
    wait_idle(controller)
    assert len(fake.channel_requests()) == 64
    controller.disconnect()


def test_poll_errors_delivered_at_most_once() -> None:
    fake = FakeDevice()
    fake.silent_channels.add(5)
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)

    controller.get_snapshot()
    assert controller.wait_for_poll(timeout=5.0)
    wait_idle(controller)

    with pytest.raises(PollFailed) as exc_info:
        controller.get_snapshot()
    assert "Failed to fetch channel 5 info" in str(exc_info.value)

    snapshot = controller.get_snapshot()
    assert snapshot.complete is True
    # The failed channel is missing, the rest merged
    assert 5 not in snapshot.records
    assert len(snapshot.records) == 63
    controller.disconnect()


def test_nack_on_channel_info_is_reported() -> None:
    fake = FakeDevice()
    fake.nack_channels.add(7)
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)

    controller.get_snapshot()
    assert controller.wait_for_poll(timeout=5.0)
    wait_idle(controller)

    with pytest.raises(PollFailed, match="channel 7"):
        controller.get_snapshot()
    controller.disconnect()


def test_scalar_nack_keeps_previous_value() -> None:
    fake = FakeDevice()
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)
    first_poll(controller)
    wait_idle(controller)

    fake.volume = 9
    fake.nack_commands.add("VOLUME")
    controller.apply_control(protocol.STAT_DISPLAY_BRIGHTNESS, 2)
    snapshot = controller.get_snapshot()

    assert snapshot.statistics[protocol.STAT_VOLUME] == "5"
    assert snapshot.statistics[protocol.STAT_DISPLAY_BRIGHTNESS] == "2"
    controller.disconnect()


def test_invalid_active_index_defaults_to_none() -> None:
    fake = FakeDevice()
    fake.malformed_commands.add("ACT_CH_IDX")
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)

    snapshot = controller.get_snapshot()

    assert snapshot.statistics[protocol.STAT_ACTIVE_CHANNEL_INDEX] == "0"
    assert snapshot.control(protocol.STAT_ACTIVE_CHANNEL_INDEX).value == protocol.NONE_OPTION
    assert controller.wait_for_poll(timeout=5.0)
    controller.disconnect()


def test_scalar_refresh_without_answer_raises() -> None:
    fake = FakeDevice()
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)
    fake.close()

    with pytest.raises(TransportError):
        controller.get_snapshot()

    controller.disconnect()


def test_disconnect_clears_state() -> None:
    fake = FakeDevice()
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)
    first_poll(controller)

    controller.disconnect()

    assert not controller.is_connected()
    assert controller.state is EngineState.IDLE
    assert controller.host is None
    with pytest.raises(NotConnected):
        controller.get_snapshot()

    controller.connect(host="fake", sock=FakeDevice())
    snapshot = controller.get_snapshot()
    assert snapshot.complete is False
    assert len(snapshot.statistics) == 6
    controller.disconnect()


def test_disconnect_during_poll_discards_cycle() -> None:
    fake = FakeDevice(response_delay_s=0.01)
    controller = UndnemoController()
    controller.connect(host="fake", sock=fake)

    controller.get_snapshot()
    controller.disconnect()

    assert not controller.is_polling
    assert controller.state is EngineState.IDLE
    assert not controller.wait_for_poll(timeout=0.2)
