"""Tests for CastDevice in beocast/device.py — connection supervision and property writes."""

import asyncio
import logging

import pytest

from beocast.device import CastDevice, ConnectionState
from beocast.errors import CastConnectionError, CommandError, InvalidStateError
from beocast.transports.base import AppSession, Volume
from fakes import FakeAdapter, unreachable

DEFAULT = AppSession("CC1AD845", "Default Media Receiver", transport_id="web-1")
YOUTUBE = AppSession("233637DE", "YouTube", transport_id="web-2")
BACKDROP = AppSession("E8C28D3C", "Backdrop", is_idle_screen=True)

EMPTY_STATUS = {"volume": {"level": 1.0, "muted": False, "stepInterval": 0.05}, "applications": []}


def status(*apps, level=1.0, muted=False, step=0.05):
    return {
        "volume": {"level": level, "muted": muted, "stepInterval": step},
        "applications": [
            {"appId": a.app_id, "displayName": a.display_name,
             "isIdleScreen": a.is_idle_screen, "transportId": a.transport_id}
            for a in apps
        ],
    }


async def settle(device):
    """Wait for every background task the device spawned."""
    while device._tasks:
        await asyncio.gather(*list(device._tasks), return_exceptions=True)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def make_device(adapter, service, transport_factory):
    def _make(**kwargs):
        return CastDevice(adapter, service, transport_factory, **kwargs)
    return _make


@pytest.fixture
async def device(make_device):
    device = make_device()
    await device.connect()
    return device


# --- Initial connection ---


class TestConnect:
    async def test_registers_after_state_pull(self, make_device, adapter, transports):
        device = make_device()
        seen_at_pull = []
        transports[0].hooks["list_sessions"] = lambda t: seen_at_pull.append(list(adapter.added))

        await device.connect()

        assert seen_at_pull == [[]]
        assert adapter.added == [device]
        assert device.registered
        assert device.state is ConnectionState.CONNECTED
        assert transports[0].address == "192.168.1.40"

    async def test_identity_from_service(self, device):
        assert device.id == "Kitchen-abc123._googlecast._tcp.local."
        assert device.title == "Kitchen"
        assert device.description == "Chromecast Audio"

    async def test_unreachable_never_registers(self, make_device, adapter, transports):
        device = make_device()
        unreachable(transports[0])
        with pytest.raises(CastConnectionError):
            await device.connect()
        assert adapter.added == []
        assert adapter.removed == []
        assert transports[0].close_count == 1
        assert device.state is ConnectionState.FAULTED

    async def test_failed_state_pull_never_registers(self, make_device, adapter, transports):
        device = make_device()
        transports[0].failures["get_volume"] = CommandError("timeout")
        with pytest.raises(CastConnectionError):
            await device.connect()
        assert adapter.added == []
        assert transports[0].close_count == 1
        assert transports[0].handlers("closed") == ()

    async def test_close_during_initialisation_fails_connect(self, make_device, adapter, transports):
        device = make_device()
        transports[0].hooks["get_volume"] = lambda t: t.emit("closed")
        with pytest.raises(CastConnectionError):
            await device.connect()
        assert adapter.added == []
        assert device._tasks == set()

    async def test_initial_state_mirrored(self, make_device, transports):
        device = make_device()
        transports[0].volume = Volume(0.3, True, 0.05)
        transports[0].sessions = [DEFAULT]
        await device.connect()
        assert device.properties.values() == {
            "volume": 30, "muted": True, "on": True,
            "app": "Default Media Receiver", "playing": True,
        }

    async def test_no_notifications_before_registration(self, make_device, adapter, transports):
        device = make_device()
        transports[0].volume = Volume(0.3, True, 0.05)
        transports[0].sessions = [DEFAULT]
        await device.connect()
        assert adapter.changes == []
        assert device.describe()["properties"]["volume"]["value"] == 30


# --- Status pushes ---


class TestStatus:
    async def test_echo_of_current_state_is_silent(self, device, adapter):
        await device.handle_status(EMPTY_STATUS)
        await device.handle_status(EMPTY_STATUS)
        assert adapter.changes == []

    async def test_app_start_asserts_on_and_app(self, device, adapter):
        await device.handle_status(status(DEFAULT))
        assert ("on", True) in adapter.changes
        assert ("app", "Default Media Receiver") in adapter.changes
        assert device.media.active
        assert device.properties["playing"] is True

    async def test_empty_applications_after_app(self, device, adapter):
        await device.handle_status(status(DEFAULT))
        channel = device.media.session.channel
        adapter.changes.clear()

        await device.handle_status({"applications": []})

        assert device.properties["on"] is False
        assert device.properties["app"] == ""
        assert device.properties["playing"] is False
        assert not device.media.active
        assert channel.closed
        assert sorted(adapter.changes) == [("app", ""), ("on", False), ("playing", False)]

    async def test_missing_applications_counts_as_none(self, device):
        await device.handle_status(status(DEFAULT))
        await device.handle_status({"volume": {"level": 1.0, "muted": False}})
        assert device.properties["on"] is False

    async def test_idle_screen_is_not_an_app(self, device, adapter):
        await device.handle_status(status(BACKDROP))
        assert device.properties["on"] is False
        assert adapter.changes == []

    async def test_same_app_joins_once(self, device, transports):
        for _ in range(4):
            await device.handle_status(status(DEFAULT))
        assert len(transports[0].called("join")) == 1

    async def test_failed_join_not_retried_on_every_push(self, device, transports):
        transports[0].failures["join"] = CommandError("no media channel")
        for level in (0.2, 0.3, 0.4, 0.5):
            await device.handle_status(status(DEFAULT, level=level))
        assert len(transports[0].called("join")) == 1
        assert device.properties["volume"] == 50

    async def test_app_switch_rejoins(self, device, transports, adapter):
        await device.handle_status(status(DEFAULT))
        first = device.media.session.channel
        await device.handle_status(status(YOUTUBE))
        assert first.closed
        assert device.media.session.app_id == YOUTUBE.app_id
        assert device.properties["app"] == "YouTube"
        assert len(transports[0].called("join")) == 2

    async def test_volume_push(self, device, adapter):
        await device.handle_status(status(level=0.42, muted=True))
        assert device.properties["volume"] == 42
        assert device.properties["muted"] is True
        assert adapter.changes == [("volume", 42), ("muted", True)]

    async def test_bad_field_skipped_rest_applied(self, device, caplog):
        with caplog.at_level(logging.WARNING):
            await device.handle_status({"volume": {"level": "loud", "muted": True}})
        assert device.properties["volume"] == 100
        assert device.properties["muted"] is True
        assert any("ignoring status field" in r.message for r in caplog.records)

    async def test_status_signal_is_handled(self, device, transports):
        transports[0].emit("status", status(DEFAULT))
        await settle(device)
        assert device.properties["on"] is True


# --- Local writes ---


class TestVolumeWrite:
    async def test_level_snapped_to_step(self, device, transports):
        assert await device.set_property("volume", 55) == 55
        assert transports[0].called("set_volume") == [("set_volume", 0.55, None)]
        assert device.properties["volume"] == 55

    async def test_step_from_latest_push(self, device, transports):
        await device.handle_status(status(step=0.1))
        await device.set_property("volume", 43)
        assert transports[0].called("set_volume") == [("set_volume", 0.4, None)]

    async def test_off_grid_value_cached_as_sent(self, device, transports):
        assert await device.set_property("volume", 43) == 45
        assert transports[0].called("set_volume") == [("set_volume", 0.45, None)]
        assert device.properties["volume"] == 45

    async def test_push_during_off_grid_write(self, device, transports, adapter):
        transports[0].hooks["set_volume"] = (
            lambda transport: device.properties.apply_remote("volume", 45))
        assert await device.set_property("volume", 43) == 45
        assert device.properties["volume"] == 45
        assert adapter.changes == [("volume", 45)]

    async def test_failure_reverts(self, device, transports, adapter):
        transports[0].failures["set_volume"] = CommandError("rejected")
        with pytest.raises(CommandError):
            await device.set_property("volume", 55)
        assert device.properties["volume"] == 100
        assert adapter.changes == []

    async def test_muted(self, device, transports):
        await device.set_property("muted", True)
        assert transports[0].called("set_volume") == [("set_volume", None, True)]


class TestOnWrite:
    async def test_on_probes_then_launches(self, device, transports):
        await device.set_property("on", True)
        assert [c[0] for c in transports[0].calls[-2:]] == ["get_app_availability", "launch"]
        assert transports[0].called("launch") == [("launch", "CC1AD845")]

    async def test_unavailable_app_reverts(self, device, transports):
        transports[0].availability["CC1AD845"] = False
        with pytest.raises(CommandError):
            await device.set_property("on", True)
        assert transports[0].called("launch") == []
        assert device.properties["on"] is False

    async def test_probe_every_time_by_default(self, device, transports):
        await device.set_property("on", True)
        device.properties.apply_remote("on", False)
        await device.set_property("on", True)
        assert len(transports[0].called("get_app_availability")) == 2

    async def test_probe_cached_with_ttl(self, make_device, transports):
        device = make_device(availability_ttl=60)
        await device.connect()
        await device.set_property("on", True)
        device.properties.apply_remote("on", False)
        await device.set_property("on", True)
        assert len(transports[0].called("get_app_availability")) == 1
        assert len(transports[0].called("launch")) == 2

    async def test_off_stops_running_app(self, device, transports):
        transports[0].sessions = [BACKDROP, DEFAULT]
        await device.handle_status(status(DEFAULT))
        await device.set_property("on", False)
        assert transports[0].called("stop") == [("stop", "CC1AD845")]

    async def test_off_with_nothing_running(self, device, transports):
        transports[0].sessions = [BACKDROP]
        device.properties.apply_remote("on", True)
        await device.set_property("on", False)
        assert transports[0].called("stop") == []
        assert device.properties["on"] is False

    async def test_stop_action(self, device, transports):
        transports[0].sessions = [DEFAULT]
        await device.handle_status(status(DEFAULT))
        await device.stop()
        assert transports[0].called("stop") == [("stop", "CC1AD845")]

    async def test_stop_failure_reverts_on(self, device, transports):
        transports[0].sessions = [DEFAULT]
        await device.handle_status(status(DEFAULT))
        transports[0].failures["stop"] = CommandError("rejected")
        with pytest.raises(CommandError):
            await device.stop()
        assert device.properties["on"] is True


class TestPlayingWrite:
    async def test_no_media_rejected_and_reverted(self, device, transports):
        with pytest.raises(InvalidStateError, match="no active media"):
            await device.set_property("playing", True)
        assert device.properties["playing"] is False
        assert transports[0].channels == []

    async def test_pause_forwarded(self, device, transports):
        await device.handle_status(status(DEFAULT))
        await device.set_property("playing", False)
        assert ("pause",) in transports[0].channels[0].calls

    async def test_app_is_read_only(self, device):
        with pytest.raises(InvalidStateError):
            await device.set_property("app", "Spotify")


class TestNotConnected:
    async def test_write_before_connect_rejected(self, make_device, transports):
        device = make_device()
        with pytest.raises(InvalidStateError):
            await device.set_property("volume", 10)
        assert transports[0].calls == []
        assert device.properties["volume"] == 100


# --- Recovery ---


class TestRecovery:
    async def test_closed_reconnects_same_session(self, device, transports, adapter):
        transports[0].emit("closed")
        await settle(device)
        assert len(transports) == 1
        assert len(transports[0].called("connect")) == 2
        assert device.state is ConnectionState.CONNECTED
        assert adapter.removed == []
        assert adapter.added == [device]

    async def test_closed_handlers_not_duplicated(self, device, transports):
        transports[0].emit("closed")
        await settle(device)
        assert len(transports[0].handlers("closed")) == 1

    async def test_closed_then_new_session(self, device, transports, adapter):
        transports[0].failures["connect"] = CastConnectionError("refused")
        transports[0].emit("closed")
        await settle(device)
        assert len(transports) == 2
        assert device.transport is transports[1]
        assert transports[0].close_count >= 1
        assert transports[0].handlers("closed") == ()
        assert device.state is ConnectionState.CONNECTED
        assert adapter.removed == []

    async def test_closed_escalates_to_removal(self, device, transports, adapter, transport_factory):
        transports[0].failures["connect"] = CastConnectionError("refused")
        transport_factory.plan.append(unreachable)
        transports[0].emit("closed")
        await settle(device)
        assert adapter.removed == [device]
        assert adapter.pairing_reopened == 1
        assert not device.registered
        assert device.state is ConnectionState.FAULTED

    async def test_repeated_closed_removes_once(self, device, transports, adapter, transport_factory):
        transports[0].failures["connect"] = CastConnectionError("refused")
        transport_factory.plan.append(unreachable)
        transports[0].emit("closed")
        transports[0].emit("closed")
        await settle(device)
        assert adapter.removed == [device]
        assert adapter.pairing_reopened == 1

    async def test_error_replaces_session(self, device, transports, adapter):
        transports[0].emit("error", OSError("reset"))
        await settle(device)
        assert len(transports) == 2
        assert len(transports[0].called("connect")) == 1
        assert transports[0].close_count == 1
        assert device.transport is transports[1]
        assert device.state is ConnectionState.CONNECTED
        assert adapter.removed == []

    async def test_error_then_failed_reconnect_removes(self, device, transports, adapter,
                                                        transport_factory):
        transport_factory.plan.append(unreachable)
        transports[0].emit("error", OSError("reset"))
        await settle(device)
        assert len(transports[1].called("connect")) == 1
        assert adapter.removed == [device]
        assert adapter.pairing_reopened == 1

    async def test_recovery_releases_media(self, device, transports):
        await device.handle_status(status(DEFAULT))
        channel = device.media.session.channel
        transports[0].emit("error", OSError("reset"))
        await settle(device)
        assert channel.closed
        assert channel.handlers("status") == ()

    async def test_old_transport_events_ignored(self, device, transports, adapter):
        transports[0].emit("error", OSError("reset"))
        await settle(device)
        transports[0].emit("closed")
        await settle(device)
        assert len(transports) == 2
        assert adapter.removed == []


class TestLifecycle:
    async def test_close_tears_down(self, device, transports):
        await device.handle_status(status(DEFAULT))
        channel = device.media.session.channel
        await device.close()
        assert channel.closed
        assert transports[0].close_count == 1
        assert device.state is ConnectionState.DISCONNECTED

    async def test_signals_after_close_ignored(self, device, transports, adapter):
        await device.close()
        transports[0].emit("closed")
        assert device._tasks == set()
        assert adapter.removed == []

    async def test_mark_seen_refreshes_address(self, device, service):
        device.set_reachable(False)
        moved = type(service)(service.fullname, ("192.168.1.41",), service.txt, service.port)
        assert device.mark_seen(moved) is True
        assert device.address == "192.168.1.41"
        assert device.reachable

    async def test_describe(self, device):
        described = device.describe()
        assert described["id"] == device.id
        assert described["state"] == "connected"
        assert described["properties"]["on"]["value"] is False
