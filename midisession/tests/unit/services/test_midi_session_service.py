"""
Tests for MidiSessionService.

Two services sharing a FakeRealtimeHub behave like two participants on one
broker: every broadcast reaches every joined channel, the sender's included.
"""

# pylint: disable=redefined-outer-name,protected-access
# Justification: pytest fixtures redefine names, protected access needed for testing internals

import pytest

from midisession.error_types import ErrorMessages
from midisession.exceptions import DeviceUnavailableError
from midisession.infrastructure.realtime_channel import ChannelStatus, PresenceEvent
from midisession.realtime.activity_log import ActivityMessages
from midisession.realtime.connection_state_machine import ConnectionState
from midisession.services import MidiSessionService
from midisession.tests.fixtures.unit.midi_fakes import FakeMidiAccess
from midisession.tests.fixtures.unit.realtime_fakes import FakeRealtimeTransport, settle

SESSION_KEY = "k3y8q2m1z0"
NOTE_ON = [0x90, 0x40, 0x7F]


def messages(service: MidiSessionService) -> list[str]:
    return [record.message for record in service.activity]


@pytest.fixture
async def make_service(app_config, manual_sleeper):
    """Build services and stop every one of them after the test."""
    created: list[MidiSessionService] = []

    def factory(transport, participant_id, **kwargs):
        service = MidiSessionService(
            SESSION_KEY,
            transport=transport,
            config=app_config,
            participant_id=participant_id,
            sleep=manual_sleeper,
            **kwargs,
        )
        created.append(service)
        return service

    yield factory

    for service in created:
        await service.stop()


class TestConstruction:
    def test_invalid_session_key(self, fake_transport, app_config):
        """Test keys that cannot form a channel topic are rejected."""
        with pytest.raises(ValueError):
            MidiSessionService("bad key.*", transport=fake_transport, config=app_config)

    def test_participant_id_is_generated(self, fake_transport, app_config):
        service = MidiSessionService(SESSION_KEY, transport=fake_transport, config=app_config)

        assert service.participant_id.startswith("user_")
        assert service.connection_state is ConnectionState.DISCONNECTED


class TestCleanRelay:
    """Test MIDI flowing from one participant to another."""

    @pytest.mark.asyncio
    async def test_note_is_played_once_on_the_other_participant(self, realtime_hub, make_service):
        """Test X's keyboard note plays exactly once on Y and never loops back to X."""
        access_x = FakeMidiAccess(inputs=["Keyboard In"], outputs=["Synth Out"])
        access_y = FakeMidiAccess(inputs=["Keyboard In"], outputs=["Synth Out"])
        x = make_service(FakeRealtimeTransport(hub=realtime_hub), "user_x", midi_access=access_x)
        y = make_service(FakeRealtimeTransport(hub=realtime_hub), "user_y", midi_access=access_y)

        assert await x.initialize_midi()
        assert await y.initialize_midi()
        assert x.select_input_device("Keyboard In")
        assert x.select_output_device("Synth Out")
        assert y.select_output_device("Synth Out")
        await x.start()
        await y.start()
        await settle()
        assert x.is_connected and y.is_connected

        access_x.opened_inputs[0].emit(bytes(NOTE_ON))
        await settle()

        assert access_y.opened_outputs[0].sent == [bytes(NOTE_ON)]
        assert access_x.opened_outputs[0].sent == []
        assert messages(y).count("MIDI received: [90 40 7f]") == 1
        assert messages(x).count("MIDI sent: [90 40 7f]") == 1
        assert not any(message.startswith("MIDI received") for message in messages(x))

    @pytest.mark.asyncio
    async def test_receiver_without_output_logs_not_played(self, realtime_hub, make_service):
        x = make_service(FakeRealtimeTransport(hub=realtime_hub), "user_x")
        y = make_service(FakeRealtimeTransport(hub=realtime_hub), "user_y")
        await x.start()
        await y.start()
        await settle()

        assert x.submit_local_midi_event(NOTE_ON)
        await settle()

        assert ActivityMessages.MIDI_RECEIVED_NOT_PLAYED.format(data="[90 40 7f]") in messages(y)

    @pytest.mark.asyncio
    async def test_local_events_dropped_while_disconnected(self, fake_transport, make_service):
        """Test nothing is queued for later delivery while not connected."""
        service = make_service(fake_transport, "user_x")

        assert service.submit_local_midi_event(NOTE_ON) is False

        await service.start()
        await settle()
        assert fake_transport.latest.sent == []


class TestConnectionState:
    """Test the state the session exposes to a front end."""

    @pytest.mark.asyncio
    async def test_state_listener_and_reconnect_flags(self, fake_transport, manual_sleeper, make_service):
        """Test a dropped channel is reported as reconnecting and recovers."""
        service = make_service(fake_transport, "user_x")
        seen = []
        service.add_state_listener(seen.append)
        await service.start()
        await settle()

        fake_transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        assert service.is_reconnecting
        assert not service.is_connected

        await settle()
        await manual_sleeper.fire(1.0)

        assert service.is_connected
        assert not service.is_reconnecting
        assert seen == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert ActivityMessages.RECONNECTED in messages(service)

    @pytest.mark.asyncio
    async def test_restart_from_failed(self, app_config, make_service):
        """Test Failed is left only through restart, with a fresh attempt count."""
        app_config.reconnect.max_attempts = 0
        transport = FakeRealtimeTransport(outcomes=[ChannelStatus.CHANNEL_ERROR])
        service = make_service(transport, "user_x")
        await service.start()
        await settle()
        assert service.is_failed
        assert ErrorMessages.RECONNECT_EXHAUSTED in messages(service)

        await service.start()
        await settle()
        assert service.is_failed

        await service.restart()
        await settle()
        assert service.is_connected

    @pytest.mark.asyncio
    async def test_transport_unavailable(self, make_service):
        """Test a transport that cannot subscribe leaves the session disconnected."""
        service = make_service(FakeRealtimeTransport(unavailable=True), "user_x")

        await service.start()
        await settle()

        assert service.connection_state is ConnectionState.DISCONNECTED
        assert ErrorMessages.TRANSPORT_UNAVAILABLE in messages(service)

    @pytest.mark.asyncio
    async def test_participant_count_follows_sync(self, fake_transport, make_service):
        service = make_service(fake_transport, "user_x")
        await service.start()
        await settle()

        fake_transport.latest.deliver_presence(
            PresenceEvent.SYNC, {"user_x": [{"joinedAt": "t0"}], "user_y": [{"joinedAt": "t1"}]}
        )
        fake_transport.latest.deliver_presence(PresenceEvent.LEAVE, {"key": "user_y"})

        assert service.participant_count == 2
        assert messages(service)[-2:] == [
            ActivityMessages.PARTICIPANT_COUNT.format(count=2),
            ActivityMessages.PARTICIPANT_LEFT,
        ]


class TestMidiDevices:
    """Test MIDI capability handling and device selection."""

    @pytest.mark.asyncio
    async def test_initialize_lists_devices(self, fake_transport, fake_midi_access, make_service):
        service = make_service(fake_transport, "user_x", midi_access=fake_midi_access)

        assert await service.initialize_midi()
        assert await service.initialize_midi()
        await settle()

        assert [device.name for device in service.inputs] == ["Keyboard In"]
        assert [device.name for device in service.outputs] == ["Synth Out"]
        assert service.midi_available
        assert fake_midi_access.watching
        assert messages(service).count(ActivityMessages.MIDI_INITIALIZED.format(inputs=1, outputs=1)) == 1

    @pytest.mark.asyncio
    async def test_missing_capability_degrades(self, realtime_hub, make_service):
        """Test the session keeps relaying when MIDI is unavailable."""
        x = make_service(FakeRealtimeTransport(hub=realtime_hub), "user_x")
        y = make_service(FakeRealtimeTransport(hub=realtime_hub), "user_y")

        assert await y.initialize_midi() is False
        assert await y.initialize_midi() is False
        assert messages(y).count(ErrorMessages.DEVICE_UNAVAILABLE) == 1
        assert not y.midi_available

        await x.start()
        await y.start()
        await settle()
        x.submit_local_midi_event(NOTE_ON)
        await settle()

        assert ActivityMessages.MIDI_RECEIVED_NOT_PLAYED.format(data="[90 40 7f]") in messages(y)

    @pytest.mark.asyncio
    async def test_device_change_without_capability_is_reported_not_raised(self, fake_transport, make_service):
        """Test a device refresh with no MIDI capability leaves empty device lists."""
        service = make_service(fake_transport, "user_x")

        service._on_devices_changed()

        assert service.inputs == ()
        assert service.outputs == ()

    @pytest.mark.asyncio
    async def test_factory_failure_degrades(self, fake_transport, make_service):
        def denied():
            raise DeviceUnavailableError("Access denied")

        service = make_service(fake_transport, "user_x", midi_access_factory=denied)

        assert await service.initialize_midi() is False
        assert ErrorMessages.DEVICE_UNAVAILABLE in messages(service)

    @pytest.mark.asyncio
    async def test_configured_devices_selected_on_initialize(self, app_config, fake_transport, fake_midi_access, make_service):
        app_config.midi.input_device = "Keyboard In"
        app_config.midi.output_device = "Synth Out"
        service = make_service(fake_transport, "user_x", midi_access=fake_midi_access)

        await service.initialize_midi()

        assert service.selected_input.name == "Keyboard In"
        assert service.selected_output.name == "Synth Out"

    @pytest.mark.asyncio
    async def test_select_unknown_device(self, fake_transport, fake_midi_access, make_service):
        service = make_service(fake_transport, "user_x", midi_access=fake_midi_access)
        await service.initialize_midi()

        assert service.select_output_device("Nope") is False
        assert service.select_input_device("Nope") is False
        assert messages(service)[-1] == f"{ErrorMessages.DEVICE_UNAVAILABLE}: Nope"

    @pytest.mark.asyncio
    async def test_switching_input_detaches_previous(self, fake_transport, make_service):
        """Test only the newest input's messages are relayed."""
        access = FakeMidiAccess(inputs=["Keyboard In", "Pads In"])
        service = make_service(fake_transport, "user_x", midi_access=access)
        await service.initialize_midi()
        await service.start()
        await settle()

        service.select_input_device("Keyboard In")
        service.select_input_device("Pads In")
        first, second = access.opened_inputs
        first.emit(bytes(NOTE_ON))
        second.emit(b"\x99\x24\x64")
        await settle()

        assert first.closed
        assert [payload["payload"] for _, payload in fake_transport.latest.sent] == [[0x99, 0x24, 0x64]]

    @pytest.mark.asyncio
    async def test_clear_output(self, fake_transport, fake_midi_access, make_service):
        service = make_service(fake_transport, "user_x", midi_access=fake_midi_access)
        await service.initialize_midi()
        service.select_output_device("Synth Out")

        assert service.select_output_device(None)

        assert service.selected_output is None
        assert service.relay.output is None
        assert fake_midi_access.opened_outputs[0].closed
        assert messages(service)[-1] == ActivityMessages.OUTPUT_CLEARED

    @pytest.mark.asyncio
    async def test_unplugged_devices_are_deselected(self, fake_transport, fake_midi_access, make_service):
        """Test a hot-unplugged device is closed and reported."""
        service = make_service(fake_transport, "user_x", midi_access=fake_midi_access)
        await service.initialize_midi()
        service.select_input_device("Keyboard In")
        service.select_output_device("Synth Out")

        fake_midi_access.unplug("Synth Out")
        fake_midi_access.unplug("Keyboard In")

        assert service.selected_output is None
        assert service.selected_input is None
        assert service.outputs == ()
        assert ActivityMessages.OUTPUT_DISCONNECTED.format(name="Synth Out") in messages(service)
        assert messages(service)[-1] == ActivityMessages.INPUT_DISCONNECTED.format(name="Keyboard In")


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, fake_transport, fake_midi_access, manual_sleeper, make_service):
        """Test stop leaves the channel, closes ports and cancels every timer."""
        service = make_service(fake_transport, "user_x", midi_access=fake_midi_access)
        await service.initialize_midi()
        service.select_input_device("Keyboard In")
        service.select_output_device("Synth Out")
        await service.start()
        await settle()
        channel = fake_transport.latest

        await service.stop()
        await settle()

        assert service.connection_state is ConnectionState.DISCONNECTED
        assert channel.unsubscribed
        assert fake_midi_access.closed
        assert fake_midi_access.opened_inputs[0].closed
        assert fake_midi_access.opened_outputs[0].closed
        assert not fake_midi_access.watching
        assert manual_sleeper.pending == []
        assert service.get_stats()["connection"]["active_tasks"] == 0
