"""
MIDI session service.

Composes the relay layer into the one stateful object a front end drives:
connection state, participant count, the activity feed, device selection
and the local MIDI entry point. Every failure is turned into an activity
record or a connection state here; nothing is raised to the caller of the
public operations.
"""

import asyncio
from collections.abc import Callable, Iterable
from typing import Any

from ..app.task_registry import TaskRegistry
from ..config import AppConfig, get_config
from ..error_types import ErrorMessages
from ..exceptions import DeviceUnavailableError, MidiSessionError
from ..infrastructure.realtime_channel import RealtimeTransport
from ..logging.enhanced_logging_config import bind_session_context, clear_session_context, get_logger
from ..midi.devices import MidiAccess, MidiDevice, MidiInputPort, MidiOutputPort
from ..realtime.activity_log import ActivityLog, ActivityMessages
from ..realtime.connection_manager import ConnectionResilienceManager, SleepFunc
from ..realtime.connection_state_machine import ConnectionState, ReconnectPolicy
from ..realtime.presence_tracker import PresenceTracker
from ..realtime.relay_protocol import MidiRelayProtocol
from ..utils.identifiers import generate_participant_id, is_valid_session_key

logger = get_logger(__name__)

StateListener = Callable[[ConnectionState], None]
MidiAccessFactory = Callable[[], MidiAccess]


class MidiSessionService:
    """
    One participant's view of a MIDI session.

    The participant id is generated once and reused across reconnects so
    presence never counts this process twice.
    """

    def __init__(
        self,
        session_key: str,
        *,
        transport: RealtimeTransport,
        midi_access: MidiAccess | None = None,
        midi_access_factory: MidiAccessFactory | None = None,
        config: AppConfig | None = None,
        participant_id: str | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Initialize the session service.

        Args:
            session_key: Key shared by every participant of the session
            transport: Realtime transport used for the session channel
            midi_access: Already acquired MIDI capability
            midi_access_factory: Acquires the MIDI capability on initialize_midi()
            config: Application configuration (defaults to get_config())
            participant_id: Participant id to use instead of a generated one
            sleep: Coroutine function used for reconnect and heartbeat waits

        Raises:
            ValueError: If the session key is empty or contains characters
                that cannot form a channel topic
        """
        if not is_valid_session_key(session_key):
            raise ValueError(f"Invalid session key: {session_key!r}")

        self._config = config or get_config()
        self.session_key = session_key
        self.participant_id = participant_id or generate_participant_id()
        self.activity = ActivityLog()
        self._state_listeners: list[StateListener] = []
        self._connection_state = ConnectionState.DISCONNECTED

        self.presence = PresenceTracker(self.activity)
        self.connection = ConnectionResilienceManager(
            transport,
            session_key,
            self.participant_id,
            self.activity,
            on_broadcast=self._on_broadcast,
            on_presence=self.presence.handle,
            policy=ReconnectPolicy.from_config(self._config.reconnect),
            heartbeat_interval_ms=self._config.heartbeat.interval_ms,
            broadcast_event=self._config.transport.broadcast_event,
            sleep=sleep,
            on_state_change=self._on_state_change,
        )
        self.relay = MidiRelayProtocol(self.participant_id, self.connection, self.activity)

        self._midi_access = midi_access
        self._midi_access_factory = midi_access_factory
        self._midi_initialized = False
        self._device_unavailable_reported = False
        self._inputs: list[MidiDevice] = []
        self._outputs: list[MidiDevice] = []
        self._input_port: MidiInputPort | None = None
        self._output_port: MidiOutputPort | None = None
        self._tasks = TaskRegistry()

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def is_connected(self) -> bool:
        return self._connection_state is ConnectionState.CONNECTED

    @property
    def is_reconnecting(self) -> bool:
        state = self._connection_state
        if state is ConnectionState.RECONNECTING:
            return True
        return state is ConnectionState.CONNECTING and self.connection.policy.attempts_used > 0

    @property
    def is_failed(self) -> bool:
        return self._connection_state is ConnectionState.FAILED

    @property
    def participant_count(self) -> int:
        return self.presence.participant_count

    @property
    def inputs(self) -> tuple[MidiDevice, ...]:
        return tuple(self._inputs)

    @property
    def outputs(self) -> tuple[MidiDevice, ...]:
        return tuple(self._outputs)

    @property
    def selected_input(self) -> MidiDevice | None:
        return self._input_port.device if self._input_port is not None else None

    @property
    def selected_output(self) -> MidiDevice | None:
        return self._output_port.device if self._output_port is not None else None

    @property
    def midi_available(self) -> bool:
        return self._midi_access is not None and self._midi_initialized

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    async def start(self) -> None:
        """Join the session channel."""
        bind_session_context(self.session_key, self.participant_id)
        logger.info("Starting MIDI session", topic=self.connection.topic)
        try:
            self.connection.start()
        except MidiSessionError as e:
            logger.error("Session start failed", error=e.message)
            self.activity.add(e.user_friendly)

    async def stop(self) -> None:
        """Leave the session, cancel every timer and release MIDI ports."""
        logger.info("Stopping MIDI session", topic=self.connection.topic)
        await self.connection.stop()
        self._close_input()
        self._close_output()
        await self._tasks.shutdown_all()
        if self._midi_access is not None:
            self._midi_access.close()
        self._midi_initialized = False
        self.presence.reset()
        clear_session_context()

    async def restart(self) -> None:
        """Reconnect from any state, including Failed, with a fresh set of reconnect attempts."""
        logger.info("Restarting MIDI session", topic=self.connection.topic)
        self.presence.reset()
        await self.connection.restart()

    async def initialize_midi(self) -> bool:
        """
        Acquire the local MIDI capability and enumerate devices.

        Safe to call more than once. When the capability is missing the
        session keeps running without local device I/O.

        Returns:
            bool: True if MIDI is available
        """
        if self._midi_initialized:
            return True

        if self._midi_access is None and self._midi_access_factory is not None:
            try:
                self._midi_access = self._midi_access_factory()
            except DeviceUnavailableError as e:
                self._report_device_unavailable(e.message)
                return False

        if self._midi_access is None:
            self._report_device_unavailable("No MIDI capability configured")
            return False

        try:
            self._refresh_devices()
        except DeviceUnavailableError as e:
            self._report_device_unavailable(e.message)
            return False

        self._midi_initialized = True
        self._midi_access.add_state_listener(self._on_devices_changed)
        self._tasks.register_task(self._midi_access.watch(), "midi-hotplug", "hotplug")
        self.activity.add(ActivityMessages.MIDI_INITIALIZED.format(inputs=len(self._inputs), outputs=len(self._outputs)))

        midi_config = self._config.midi
        if midi_config.input_device:
            self.select_input_device(midi_config.input_device)
        if midi_config.output_device:
            self.select_output_device(midi_config.output_device)
        return True

    def submit_local_midi_event(self, data: Iterable[int]) -> bool:
        """
        Relay bytes produced by the local input device.

        Returns:
            bool: True if the event was handed to the channel
        """
        try:
            return self.relay.submit_local(data) is not None
        except MidiSessionError as e:
            logger.warning("Local MIDI event not relayed", error=e.message)
            return False

    def select_output_device(self, device_id: str | None) -> bool:
        """
        Select the device inbound MIDI is played on, or clear it with None.

        Returns:
            bool: True if the selection took effect
        """
        if device_id is None:
            if self._output_port is not None:
                self._close_output()
                self.activity.add(ActivityMessages.OUTPUT_CLEARED)
            return True

        device = self._find_device(self._outputs, device_id)
        if device is None or self._midi_access is None:
            self.activity.add(f"{ErrorMessages.DEVICE_UNAVAILABLE}: {device_id}")
            return False

        try:
            port = self._midi_access.open_output(device.id)
        except DeviceUnavailableError as e:
            self.activity.add(f"{ErrorMessages.DEVICE_UNAVAILABLE}: {e.user_friendly}")
            return False

        self._close_output()
        self._output_port = port
        self.relay.output = port
        self.activity.add(ActivityMessages.OUTPUT_SELECTED.format(name=device.name))
        return True

    def select_input_device(self, device_id: str | None) -> bool:
        """
        Select the device whose messages are relayed, or clear it with None.

        Switching inputs detaches the previous device's callback.

        Returns:
            bool: True if the selection took effect
        """
        if device_id is None:
            self._close_input()
            return True

        device = self._find_device(self._inputs, device_id)
        if device is None or self._midi_access is None:
            self.activity.add(f"{ErrorMessages.DEVICE_UNAVAILABLE}: {device_id}")
            return False

        self._close_input()
        try:
            self._input_port = self._midi_access.open_input(device.id, self._on_local_midi)
        except DeviceUnavailableError as e:
            self.activity.add(f"{ErrorMessages.DEVICE_UNAVAILABLE}: {e.user_friendly}")
            return False

        self.activity.add(ActivityMessages.INPUT_CONNECTED.format(name=device.name))
        return True

    def get_stats(self) -> dict[str, Any]:
        """
        Get session statistics.

        Returns:
            Dictionary with connection, presence and relay metrics
        """
        return {
            "session_key": self.session_key,
            "participant_id": self.participant_id,
            "connection": self.connection.get_stats(),
            "participant_count": self.participant_count,
            "relay": self.relay.get_stats(),
            "selected_input": self.selected_input.name if self.selected_input else None,
            "selected_output": self.selected_output.name if self.selected_output else None,
            "activity_records": len(self.activity),
        }

    def _on_state_change(self, state: ConnectionState) -> None:
        self._connection_state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error("State listener failed", error=str(e), exc_info=True)

    def _on_broadcast(self, payload: Any) -> None:
        self.relay.handle_inbound(payload)

    def _on_local_midi(self, data: bytes) -> None:
        self.submit_local_midi_event(data)

    def _on_devices_changed(self) -> None:
        try:
            self._refresh_devices()
        except DeviceUnavailableError as e:
            logger.warning("Device refresh failed", error=e.message)
            self._inputs, self._outputs = [], []

        if self._input_port is not None and self._find_device(self._inputs, self._input_port.device.id) is None:
            name = self._input_port.device.name
            self._close_input()
            self.activity.add(ActivityMessages.INPUT_DISCONNECTED.format(name=name))

        if self._output_port is not None and self._find_device(self._outputs, self._output_port.device.id) is None:
            name = self._output_port.device.name
            self._close_output()
            self.activity.add(ActivityMessages.OUTPUT_DISCONNECTED.format(name=name))

    def _refresh_devices(self) -> None:
        if self._midi_access is None:
            raise DeviceUnavailableError("No MIDI capability configured")
        self._inputs = self._midi_access.list_inputs()
        self._outputs = self._midi_access.list_outputs()

    def _report_device_unavailable(self, reason: str) -> None:
        logger.warning("MIDI capability unavailable", reason=reason)
        if self._device_unavailable_reported:
            return
        self._device_unavailable_reported = True
        self.activity.add(ErrorMessages.DEVICE_UNAVAILABLE)

    def _close_input(self) -> None:
        port, self._input_port = self._input_port, None
        if port is not None:
            port.close()

    def _close_output(self) -> None:
        port, self._output_port = self._output_port, None
        self.relay.output = None
        if port is not None:
            port.close()

    @staticmethod
    def _find_device(devices: Iterable[MidiDevice], device_id: str) -> MidiDevice | None:
        for device in devices:
            if device.id == device_id or device.name == device_id:
                return device
        return None
