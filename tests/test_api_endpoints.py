"""Tests for FastAPI REST endpoints using FakeDevice (no hardware).

Tests verify:
- Connection lifecycle (connect, disconnect)
- Snapshot reads (scalars first, channel groups after the poll)
- Controls (patch in place, validation, NACK)
- Channel table and CSV export
- Error mapping (InvalidControlValue→400, CommandFailed→502,
  NotConnected/PollFailed→503)
"""

import time

import pytest
from fastapi.testclient import TestClient

from api import main as api_module
from fakes.fake_device import FakeDevice
from undnemo_lib.transport import Transport


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset global singletons before each test."""
    api_module._controller = None
    api_module._store = None
    api_module._recorder = None
    yield
    # Cleanup after test
    if api_module._recorder and api_module._recorder.is_running():
        api_module._recorder.stop()
    if api_module._controller and api_module._controller.is_connected():
        api_module._controller.disconnect()
    api_module._controller = None
    api_module._store = None
    api_module._recorder = None


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(api_module.app)


@pytest.fixture
def fake_device():
    """FakeDevice with channel 3 active."""
    return FakeDevice(software_version="1.0.7", active_channel=3)


@pytest.fixture
def monkeypatch_transport(monkeypatch, fake_device):
    """Monkeypatch Transport.open to use FakeDevice."""
    def mock_open(host: str, port: int = 49494, timeout_s: float = 2.0):
        """Return Transport wrapping FakeDevice."""
        return Transport(fake_device, host=host)

    monkeypatch.setattr(Transport, "open", mock_open)


def wait_idle(timeout: float = 5.0) -> None:
    controller = api_module._controller
    deadline = time.time() + timeout
    while controller.is_polling and time.time() < deadline:
        time.sleep(0.01)
    assert not controller.is_polling


def wait_for_channels(client) -> dict:
    """Read once, wait for the poll to merge, return the next snapshot.

    The second read starts another cycle; it is waited for too so request
    logs stay quiet afterwards.
    """
    client.get("/snapshot")
    assert api_module._controller.wait_for_poll(timeout=5.0)
    wait_idle()
    response = client.get("/snapshot")
    assert response.status_code == 200
    wait_idle()
    return response.json()


# =============================================================================
# Health & Status
# =============================================================================

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "unDNEMO API"
    assert data["status"] == "online"


def test_status_disconnected(client):
    response = client.get("/status")
    assert response.status_code == 200
    data = response.json()
    assert data["connected"] is False
    assert data["online"] is None
    assert data["recording"] is False
    assert data["state"] == "disconnected"
    assert data["rows"] == 0


# =============================================================================
# Connection Lifecycle
# =============================================================================

def test_connect_success(client, monkeypatch_transport):
    response = client.post("/connect?host=10.0.0.5")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "connected"
    assert data["host"] == "10.0.0.5"
    assert data["port"] == 49494
    assert data["channel_filter"] is None
    assert data["recording"] is False

    status = client.get("/status").json()
    assert status["connected"] is True
    assert status["online"] is None
    assert status["host"] == "10.0.0.5"
    assert status["state"] == "idle"


def test_connect_with_filter(client, monkeypatch_transport):
    response = client.post("/connect?host=10.0.0.5&channel_filter=1,2,3,@")
    assert response.status_code == 200
    assert response.json()["channel_filter"] == [1, 2, 3]


def test_connect_twice_fails(client, monkeypatch_transport):
    client.post("/connect?host=10.0.0.5")
    response = client.post("/connect?host=10.0.0.5")
    assert response.status_code == 400
    assert "Already connected" in response.json()["detail"]


def test_connect_without_host(client, monkeypatch_transport):
    response = client.post("/connect?host=")
    assert response.status_code == 400


def test_disconnect(client, monkeypatch_transport, fake_device):
    client.post("/connect?host=10.0.0.5")
    response = client.post("/disconnect")
    assert response.status_code == 200
    assert response.json()["status"] == "disconnected"
    assert api_module._controller is None
    assert not fake_device.is_open


def test_connect_with_recorder(client, monkeypatch_transport):
    response = client.post("/connect?host=10.0.0.5&auto_record=true")
    assert response.status_code == 200
    assert response.json()["recording"] is True
    assert client.get("/status").json()["recording"] is True

    client.post("/disconnect")
    assert api_module._recorder is None


# =============================================================================
# Snapshot
# =============================================================================

def test_snapshot_not_connected(client):
    response = client.get("/snapshot")
    assert response.status_code == 503


def test_snapshot_first_read_scalars_only(client, monkeypatch_transport):
    client.post("/connect?host=10.0.0.5")

    response = client.get("/snapshot")
    assert response.status_code == 200
    data = response.json()
    assert data["complete"] is False
    assert data["state"] == "awaiting_poll"
    assert data["statistics"]["SoftwareVersionInfo"] == "1.0.7"
    assert len(data["statistics"]) == 6
    assert api_module._controller.wait_for_poll(timeout=5.0)


def test_snapshot_after_poll(client, monkeypatch_transport):
    client.post("/connect?host=10.0.0.5")

    data = wait_for_channels(client)

    assert data["complete"] is True
    assert len(data["statistics"]) == 262
    assert data["statistics"]["ActiveChannel#DeviceName"] == "MXA910-C"
    assert data["statistics"]["Channel 01#DeviceName"] == "MXA910-A"
    dropdown = [c for c in data["controls"] if c["name"] == "ActiveChannel#ChannelIndex"][0]
    assert dropdown["type"] == "dropdown"
    assert dropdown["value"] == "3"
    assert len(dropdown["options"]) == 64


def test_poll_failed_maps_to_503_once(client, monkeypatch_transport, fake_device):
    fake_device.silent_channels.add(9)
    client.post("/connect?host=10.0.0.5")

    client.get("/snapshot")
    assert api_module._controller.wait_for_poll(timeout=5.0)
    wait_idle()

    response = client.get("/snapshot")
    assert response.status_code == 503
    assert "channel 9" in response.json()["detail"]

    assert client.get("/snapshot").status_code == 200


# =============================================================================
# Controls
# =============================================================================

def test_control_volume(client, monkeypatch_transport, fake_device):
    client.post("/connect?host=10.0.0.5")
    wait_for_channels(client)

    response = client.post("/control", json={"property": "Volume", "value": 8})
    assert response.status_code == 200
    assert response.json()["statistics"]["Volume"] == "8"
    assert fake_device.volume == 8


def test_control_active_channel(client, monkeypatch_transport, fake_device):
    client.post("/connect?host=10.0.0.5")
    wait_for_channels(client)
    fake_device.clear_log()

    response = client.post("/control", json={"property": "ActiveChannel#ChannelIndex", "value": "5"})
    assert response.status_code == 200
    stats = response.json()["statistics"]
    assert stats["ActiveChannel#DeviceName"] == "MXA910-E"
    assert stats["Channel 03#DeviceName"] == "MXA910-C"
    assert fake_device.channel_requests() == []


def test_control_out_of_range_400(client, monkeypatch_transport, fake_device):
    client.post("/connect?host=10.0.0.5")
    wait_for_channels(client)
    fake_device.clear_log()

    response = client.post("/control", json={"property": "Volume", "value": 11})
    assert response.status_code == 400
    assert fake_device.requests == []


def test_control_unknown_property_400(client, monkeypatch_transport):
    client.post("/connect?host=10.0.0.5")
    wait_for_channels(client)

    response = client.post("/control", json={"property": "Gain", "value": 1})
    assert response.status_code == 400
    assert "Gain" in response.json()["detail"]


def test_control_nack_502(client, monkeypatch_transport, fake_device):
    client.post("/connect?host=10.0.0.5")
    wait_for_channels(client)
    fake_device.nack_commands.add("SBB")

    response = client.post("/control", json={"property": "ButtonBrightness", "value": 3})
    assert response.status_code == 502
    assert "SBB" in response.json()["detail"]


def test_control_leaves_poll_errors_for_next_snapshot(client, monkeypatch_transport, fake_device):
    fake_device.silent_channels.add(9)
    client.post("/connect?host=10.0.0.5")
    client.get("/snapshot")
    assert api_module._controller.wait_for_poll(timeout=5.0)
    wait_idle()

    response = client.post("/control", json={"property": "Volume", "value": 8})
    assert response.status_code == 200
    assert response.json()["statistics"]["Volume"] == "8"
    assert fake_device.volume == 8

    response = client.get("/snapshot")
    assert response.status_code == 503
    assert "channel 9" in response.json()["detail"]


def test_control_not_connected(client):
    response = client.post("/control", json={"property": "Volume", "value": 5})
    assert response.status_code == 503


# =============================================================================
# Channel Table & Export
# =============================================================================

def test_channels_empty_when_disconnected(client):
    response = client.get("/channels")
    assert response.status_code == 200
    assert response.json()["rows"] == []


def test_channels_after_poll(client, monkeypatch_transport):
    client.post("/connect?host=10.0.0.5&channel_filter=1,2,3")
    wait_for_channels(client)

    data = client.get("/channels").json()
    assert [row["channel_index"] for row in data["rows"]] == [1, 2, 3]
    assert data["rows"][2]["group"] == "ActiveChannel"
    assert data["stats"]["active_index"] == 3

    assert client.get("/status").json()["rows"] == 3


def test_export_csv_without_data(client, monkeypatch_transport):
    client.post("/connect?host=10.0.0.5")
    response = client.get("/export/csv")
    assert response.status_code == 404


def test_export_csv(client, monkeypatch_transport):
    client.post("/connect?host=10.0.0.5")
    wait_for_channels(client)

    response = client.get("/export/csv")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0].startswith("timestamp,channel_index,group")
    assert len(lines) == 65


# =============================================================================
# Online Status
# =============================================================================

def test_status_online_after_answer(client, monkeypatch_transport):
    client.post("/connect?host=10.0.0.5")
    wait_for_channels(client)

    assert client.get("/status").json()["online"] is True


def test_status_offline_when_device_stops_answering(client, monkeypatch_transport, fake_device):
    fake_device.silent_channels.update({1, 2})
    client.post("/connect?host=10.0.0.5&channel_filter=1,2")
    client.get("/snapshot")
    assert api_module._controller.wait_for_poll(timeout=5.0)
    wait_idle()

    status = client.get("/status").json()
    assert status["connected"] is True
    assert status["online"] is False
