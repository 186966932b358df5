"""
Tests for the connection resilience manager.

Timers run on a ManualSleeper, so every reconnect and heartbeat wait is
fired explicitly by the test and the backoff schedule can be asserted
exactly.
"""

# pylint: disable=redefined-outer-name,protected-access
# Justification: pytest fixtures redefine names, protected access needed for testing internals

import pytest

from midisession.error_types import ErrorMessages
from midisession.exceptions import TransportUnavailableError
from midisession.infrastructure.realtime_channel import ChannelState, ChannelStatus, PresenceEvent
from midisession.realtime.activity_log import ActivityLog, ActivityMessages
from midisession.realtime.connection_manager import ConnectionEvent, ConnectionResilienceManager, topic_for_session
from midisession.realtime.connection_state_machine import ConnectionState, ReconnectPolicy
from midisession.tests.fixtures.unit.realtime_fakes import FakeRealtimeTransport, settle

HEARTBEAT = 5.0


class Recorder:
    """Collects everything the manager hands to its collaborators."""

    def __init__(self):
        self.broadcasts: list = []
        self.presence: list = []
        self.states: list[ConnectionState] = []

    def on_broadcast(self, payload):
        self.broadcasts.append(payload)

    def on_presence(self, event, payload):
        self.presence.append((event, payload))

    def on_state_change(self, state):
        self.states.append(state)


def messages(activity: ActivityLog) -> list[str]:
    return [record.message for record in activity]


@pytest.fixture
def recorder():
    """Provide a recorder for manager callbacks."""
    return Recorder()


def build_manager(transport, activity, sleeper, recorder) -> ConnectionResilienceManager:
    return ConnectionResilienceManager(
        transport,
        "abc123",
        "user_local",
        activity,
        on_broadcast=recorder.on_broadcast,
        on_presence=recorder.on_presence,
        sleep=sleeper,
        on_state_change=recorder.on_state_change,
    )


@pytest.fixture
async def manager(fake_transport, activity_log, manual_sleeper, recorder):
    """Provide a manager over the default fake transport, stopped after the test."""
    mgr = build_manager(fake_transport, activity_log, manual_sleeper, recorder)
    yield mgr
    await mgr.stop()


async def connect(mgr: ConnectionResilienceManager) -> None:
    mgr.start()
    await settle()
    assert mgr.state is ConnectionState.CONNECTED


class TestTopic:
    """Test channel naming."""

    def test_topic_is_derived_from_session_key(self):
        """Test every participant of a session uses the same topic."""
        assert topic_for_session("abc123") == "midi-session-abc123"


class TestInitialConnect:
    """Test Disconnected → Connecting → Connected."""

    @pytest.mark.asyncio
    async def test_starts_disconnected(self, manager, recorder):
        """Test manager reports Disconnected before start."""
        assert manager.state is ConnectionState.DISCONNECTED
        assert recorder.states == [ConnectionState.DISCONNECTED]
        assert not manager.heartbeat_active
        assert not manager.reconnect_pending

    @pytest.mark.asyncio
    async def test_start_connects(self, manager, fake_transport, activity_log, manual_sleeper, recorder):
        """Test start subscribes, arms the heartbeat and logs the connection."""
        await connect(manager)

        assert fake_transport.latest.topic == "midi-session-abc123"
        assert fake_transport.latest.presence_key == "user_local"
        assert recorder.states == [ConnectionState.DISCONNECTED, ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert manager.heartbeat_active
        assert manual_sleeper.pending == [HEARTBEAT]
        assert messages(activity_log) == [ActivityMessages.CONNECTED]

    @pytest.mark.asyncio
    async def test_connect_tracks_presence(self, manager, fake_transport):
        """Test reaching Connected announces this participant with join metadata."""
        await connect(manager)

        tracked = fake_transport.latest.tracked
        assert len(tracked) == 1
        assert tracked[0]["participantId"] == "user_local"
        assert tracked[0]["joinedAt"].endswith("Z")

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, manager, fake_transport):
        """Test a second start does not open another channel."""
        await connect(manager)
        manager.start()
        await settle()

        assert len(fake_transport.channels) == 1

    @pytest.mark.asyncio
    async def test_timeout_while_connecting_schedules_reconnect(self, activity_log, manual_sleeper, recorder):
        """Test a subscription timeout moves Connecting → Reconnecting."""
        transport = FakeRealtimeTransport(outcomes=[ChannelStatus.TIMED_OUT])
        mgr = build_manager(transport, activity_log, manual_sleeper, recorder)

        mgr.start()
        await settle()

        assert mgr.state is ConnectionState.RECONNECTING
        assert manual_sleeper.pending == [1.0]
        assert f"{ErrorMessages.TIMED_OUT}. Reconnecting in 1000 ms (attempt 1/5)" in messages(activity_log)

        await manual_sleeper.fire(1.0)

        assert mgr.state is ConnectionState.CONNECTED
        assert messages(activity_log)[-1] == ActivityMessages.CONNECTED
        await mgr.stop()

    @pytest.mark.asyncio
    async def test_transport_unavailable_returns_to_disconnected(self, activity_log, manual_sleeper, recorder):
        """Test a missing transport is reported once and never retried."""
        transport = FakeRealtimeTransport(unavailable=True)
        mgr = build_manager(transport, activity_log, manual_sleeper, recorder)

        mgr.start()
        await settle()

        assert mgr.state is ConnectionState.DISCONNECTED
        assert messages(activity_log) == [ErrorMessages.TRANSPORT_UNAVAILABLE]
        assert manual_sleeper.pending == []
        assert not mgr.reconnect_pending

    @pytest.mark.asyncio
    async def test_subscribe_timeout_exception_is_reported_as_timeout(self, activity_log, manual_sleeper, recorder):
        """Test a TimeoutError raised by subscribe() is handled like a timed_out status."""
        transport = FakeRealtimeTransport(subscribe_error=TimeoutError("no reply from server"))
        mgr = build_manager(transport, activity_log, manual_sleeper, recorder)

        mgr.start()
        await settle()

        assert mgr.state is ConnectionState.RECONNECTING
        assert mgr.get_stats()["last_error"] == "no reply from server"
        assert messages(activity_log) == [f"{ErrorMessages.TIMED_OUT}. Reconnecting in 1000 ms (attempt 1/5)"]
        await mgr.stop()

    @pytest.mark.asyncio
    async def test_subscribe_raising_transport_unavailable_is_not_retried(self, activity_log, manual_sleeper, recorder):
        """Test a TransportUnavailableError from subscribe() returns to Disconnected without a timer."""
        transport = FakeRealtimeTransport(subscribe_error=TransportUnavailableError("No servers available"))
        mgr = build_manager(transport, activity_log, manual_sleeper, recorder)

        mgr.start()
        await settle()

        assert mgr.state is ConnectionState.DISCONNECTED
        assert messages(activity_log) == [ErrorMessages.TRANSPORT_UNAVAILABLE]
        assert manual_sleeper.pending == []

    @pytest.mark.asyncio
    async def test_unexpected_subscribe_error_schedules_reconnect(self, activity_log, manual_sleeper, recorder):
        """Test any other exception from subscribe() starts the reconnect sequence."""
        transport = FakeRealtimeTransport(subscribe_error=RuntimeError("client closed"))
        mgr = build_manager(transport, activity_log, manual_sleeper, recorder)

        mgr.start()
        await settle()

        assert mgr.state is ConnectionState.RECONNECTING
        assert manual_sleeper.pending == [1.0]
        await mgr.stop()


class TestReconnectBackoff:
    """Test the bounded exponential backoff sequence."""

    @pytest.mark.asyncio
    async def test_backoff_delays_are_exact_and_end_in_failed(self, activity_log, manual_sleeper, recorder):
        """Test delays are 1000, 2000, 4000, 8000, 16000 ms and no 6th attempt is scheduled."""
        transport = FakeRealtimeTransport(outcomes=[ChannelStatus.SUBSCRIBED], default_outcome=ChannelStatus.CHANNEL_ERROR)
        mgr = build_manager(transport, activity_log, manual_sleeper, recorder)
        await connect(mgr)

        transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()
        assert mgr.state is ConnectionState.RECONNECTING

        for delay in (1.0, 2.0, 4.0, 8.0):
            await manual_sleeper.fire(delay)
            assert mgr.state is ConnectionState.RECONNECTING
            assert manual_sleeper.pending == [delay * 2]

        await manual_sleeper.fire(16.0)

        assert mgr.state is ConnectionState.FAILED
        assert [call for call in manual_sleeper.calls if call != HEARTBEAT] == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert manual_sleeper.pending == []
        assert mgr.policy.attempts_used == 5
        assert len(transport.channels) == 6
        assert messages(activity_log)[-1] == ErrorMessages.RECONNECT_EXHAUSTED
        await mgr.stop()

    @pytest.mark.asyncio
    async def test_drop_lines_report_each_attempt(self, activity_log, manual_sleeper, recorder):
        """Test every scheduled attempt gets one activity line with its delay."""
        transport = FakeRealtimeTransport(outcomes=[ChannelStatus.SUBSCRIBED], default_outcome=ChannelStatus.CHANNEL_ERROR)
        mgr = build_manager(transport, activity_log, manual_sleeper, recorder)
        await connect(mgr)

        transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()
        await manual_sleeper.fire(1.0)

        drop_lines = [message for message in messages(activity_log) if "Reconnecting in" in message]
        assert drop_lines == [
            "Connection lost. Reconnecting in 1000 ms (attempt 1/5)",
            "Connection lost. Reconnecting in 2000 ms (attempt 2/5)",
        ]
        await mgr.stop()

    @pytest.mark.asyncio
    async def test_failed_is_terminal_until_restart(self, activity_log, manual_sleeper, recorder):
        """Test Failed ignores further signals and only restart() leaves it."""
        transport = FakeRealtimeTransport(outcomes=[ChannelStatus.SUBSCRIBED], default_outcome=ChannelStatus.CHANNEL_ERROR)
        mgr = build_manager(transport, activity_log, manual_sleeper, recorder)
        await connect(mgr)
        transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()
        for delay in (1.0, 2.0, 4.0, 8.0, 16.0):
            await manual_sleeper.fire(delay)
        assert mgr.state is ConnectionState.FAILED

        mgr.dispatch(ConnectionEvent.CHANNEL_ERROR)
        mgr.dispatch(ConnectionEvent.RECONNECT_DUE)
        mgr.start()
        await settle()

        assert mgr.state is ConnectionState.FAILED
        assert not mgr.heartbeat_active
        assert not mgr.reconnect_pending
        assert len(transport.channels) == 6

        transport.default_outcome = ChannelStatus.SUBSCRIBED
        await mgr.restart()
        await settle()

        assert mgr.state is ConnectionState.CONNECTED
        assert mgr.policy.attempts_used == 0
        await mgr.stop()

    @pytest.mark.asyncio
    async def test_zero_attempts_fails_immediately(self, activity_log, manual_sleeper, recorder):
        """Test a policy with no attempts goes straight to Failed on loss."""
        transport = FakeRealtimeTransport()
        mgr = ConnectionResilienceManager(
            transport,
            "abc123",
            "user_local",
            activity_log,
            on_broadcast=recorder.on_broadcast,
            on_presence=recorder.on_presence,
            policy=ReconnectPolicy(max_attempts=0),
            sleep=manual_sleeper,
        )
        await connect(mgr)

        transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()

        assert mgr.state is ConnectionState.FAILED
        assert manual_sleeper.pending == []


class TestRecovery:
    """Test loss detection and recovery."""

    @pytest.mark.asyncio
    async def test_disconnect_and_recover(self, manager, fake_transport, activity_log, manual_sleeper):
        """Test channel_error while connected recovers after 1000 ms with one drop and one recovery line."""
        await connect(manager)

        fake_transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()
        assert manager.state is ConnectionState.RECONNECTING
        assert manual_sleeper.pending == [1.0]

        await manual_sleeper.fire(1.0)

        assert manager.state is ConnectionState.CONNECTED
        assert manager.policy.attempts_used == 0
        log = messages(activity_log)
        assert len([m for m in log if m.startswith("Connection lost. Reconnecting in 1000 ms")]) == 1
        assert log.count(ActivityMessages.RECONNECTED) == 1
        assert log[-1] == ActivityMessages.RECONNECTED

    @pytest.mark.asyncio
    async def test_attempts_reset_after_reaching_connected(self, activity_log, manual_sleeper, recorder):
        """Test a later disconnection starts a fresh cycle from 1000 ms."""
        transport = FakeRealtimeTransport(
            outcomes=[
                ChannelStatus.SUBSCRIBED,
                ChannelStatus.CHANNEL_ERROR,
                ChannelStatus.CHANNEL_ERROR,
                ChannelStatus.SUBSCRIBED,
            ]
        )
        mgr = build_manager(transport, activity_log, manual_sleeper, recorder)
        await connect(mgr)

        transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()
        await manual_sleeper.fire(1.0)
        await manual_sleeper.fire(2.0)
        assert mgr.policy.attempts_used == 2
        await manual_sleeper.fire(4.0)

        assert mgr.state is ConnectionState.CONNECTED
        assert mgr.policy.attempts_used == 0

        transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()

        assert manual_sleeper.pending == [1.0]
        assert messages(activity_log)[-1] == "Connection lost. Reconnecting in 1000 ms (attempt 1/5)"
        await mgr.stop()

    @pytest.mark.asyncio
    async def test_reconnect_replaces_channel(self, manager, fake_transport, manual_sleeper):
        """Test a reconnect unsubscribes the old channel before opening a new one."""
        await connect(manager)
        first = fake_transport.latest

        first.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()
        await manual_sleeper.fire(1.0)

        assert first.unsubscribed
        assert fake_transport.latest is not first
        assert manager.channel is fake_transport.latest

    @pytest.mark.asyncio
    async def test_events_from_replaced_channel_are_ignored(self, manager, fake_transport, manual_sleeper, recorder):
        """Test late callbacks from a torn-down channel cannot drive the state machine."""
        await connect(manager)
        first = fake_transport.latest
        first.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()
        await manual_sleeper.fire(1.0)
        assert manager.state is ConnectionState.CONNECTED

        first.emit_status(ChannelStatus.CHANNEL_ERROR)
        first.deliver_broadcast("midi-message", {"senderId": "user_other"})
        await settle()

        assert manager.state is ConnectionState.CONNECTED
        assert recorder.broadcasts == []

    @pytest.mark.asyncio
    async def test_overlapping_loss_signals_schedule_one_timer(self, manager, fake_transport, activity_log, manual_sleeper):
        """Test error and heartbeat signals arriving together start only one reconnect sequence."""
        await connect(manager)

        fake_transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        manager.dispatch(ConnectionEvent.CHANNEL_ERROR)
        manager.dispatch(ConnectionEvent.HEARTBEAT_FAILED)
        await settle()

        assert manual_sleeper.pending == [1.0]
        assert len([m for m in messages(activity_log) if "Reconnecting in" in m]) == 1


class TestHeartbeat:
    """Test the periodic liveness check."""

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_running_while_joined(self, manager, manual_sleeper):
        """Test a joined channel passes the check and the heartbeat re-arms."""
        await connect(manager)

        await manual_sleeper.fire(HEARTBEAT)

        assert manager.state is ConnectionState.CONNECTED
        assert manual_sleeper.pending == [HEARTBEAT]
        assert manual_sleeper.calls.count(HEARTBEAT) == 2

    @pytest.mark.asyncio
    async def test_heartbeat_detects_silent_disconnect(self, manager, fake_transport, activity_log, manual_sleeper):
        """Test a channel out of the joined state triggers Connected → Reconnecting."""
        await connect(manager)
        fake_transport.latest.state = ChannelState.ERRORED

        await manual_sleeper.fire(HEARTBEAT)

        assert manager.state is ConnectionState.RECONNECTING
        assert not manager.heartbeat_active
        assert manual_sleeper.pending == [1.0]
        assert messages(activity_log)[-1] == (
            f"{ErrorMessages.HEARTBEAT_LIVENESS_FAILURE}. Reconnecting in 1000 ms (attempt 1/5)"
        )

    @pytest.mark.asyncio
    async def test_heartbeat_disabled_outside_connected(self, manager, fake_transport, manual_sleeper):
        """Test leaving Connected cancels the heartbeat timer."""
        await connect(manager)

        fake_transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()

        assert not manager.heartbeat_active
        assert HEARTBEAT not in manual_sleeper.pending


class TestTeardown:
    """Test explicit teardown."""

    @pytest.mark.asyncio
    async def test_stop_while_connected(self, manager, fake_transport, manual_sleeper, recorder):
        """Test stop unsubscribes and cancels the heartbeat."""
        await connect(manager)
        channel = fake_transport.latest

        await manager.stop()

        assert manager.state is ConnectionState.DISCONNECTED
        assert channel.unsubscribed
        assert manual_sleeper.pending == []
        assert not manager.heartbeat_active
        assert recorder.states[-1] is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(self, manager, fake_transport, manual_sleeper):
        """Test no reconnect timer fires after teardown."""
        await connect(manager)
        fake_transport.latest.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()
        assert manager.reconnect_pending

        await manager.stop()
        await settle()

        assert manager.state is ConnectionState.DISCONNECTED
        assert not manager.reconnect_pending
        assert manual_sleeper.pending == []
        assert len(fake_transport.channels) == 1

    @pytest.mark.asyncio
    async def test_stop_when_never_started(self, manager):
        """Test stop on a fresh manager is harmless."""
        await manager.stop()

        assert manager.state is ConnectionState.DISCONNECTED


class TestBroadcastAndRouting:
    """Test outbound broadcast and inbound routing."""

    @pytest.mark.asyncio
    async def test_broadcast_dropped_when_not_connected(self, manager):
        """Test nothing is queued while disconnected."""
        assert manager.broadcast({"senderId": "user_local"}) is False

    @pytest.mark.asyncio
    async def test_broadcast_sends_in_order(self, manager, fake_transport):
        """Test queued payloads reach the channel in submission order."""
        await connect(manager)

        for index in range(3):
            assert manager.broadcast({"n": index}) is True
        await settle()

        assert fake_transport.latest.sent == [("midi-message", {"n": 0}), ("midi-message", {"n": 1}), ("midi-message", {"n": 2})]

    @pytest.mark.asyncio
    async def test_inbound_traffic_is_routed(self, manager, fake_transport, recorder):
        """Test broadcasts and presence signals reach their handlers."""
        await connect(manager)
        channel = fake_transport.latest

        channel.deliver_broadcast("midi-message", {"senderId": "user_other"})
        channel.deliver_presence(PresenceEvent.SYNC, {"user_local": [{}]})

        assert recorder.broadcasts == [{"senderId": "user_other"}]
        assert recorder.presence == [(PresenceEvent.SYNC, {"user_local": [{}]})]

    @pytest.mark.asyncio
    async def test_dropped_channel_stops_routing_while_reconnecting(self, manager, fake_transport, recorder):
        """Test traffic still arriving on a lost channel is not played while a reconnect is pending."""
        await connect(manager)
        dropped = fake_transport.latest
        dropped.emit_status(ChannelStatus.CHANNEL_ERROR)
        await settle()
        assert manager.state is ConnectionState.RECONNECTING

        dropped.deliver_broadcast("midi-message", {"senderId": "user_other"})
        dropped.deliver_presence(PresenceEvent.LEAVE, {"user_other": [{}]})

        assert recorder.broadcasts == []
        assert recorder.presence == []
        assert manager.reconnect_pending

    @pytest.mark.asyncio
    async def test_get_stats(self, manager):
        """Test stats expose state and reconnect counters."""
        await connect(manager)

        stats = manager.get_stats()

        assert stats["current_state"] == "connected"
        assert stats["topic"] == "midi-session-abc123"
        assert stats["attempts_used"] == 0
        assert stats["total_connections"] == 1
        assert stats["heartbeat_active"] is True
        assert stats["channel_state"] == "joined"
