"""
Local MIDI capability.

The relay needs four things from the platform MIDI layer: enumerate input
and output devices, receive raw bytes from an input through a callback,
send raw bytes to an output, and learn about hot-plug changes. MidiAccess
describes that surface; MidoMidiAccess implements it on mido.

mido delivers input messages on a backend thread, so every callback is
marshalled onto the event loop that opened the port.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import mido

from ..config.models import MidiConfig
from ..exceptions import DeviceUnavailableError, UnplayableMidiError
from ..logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

MessageCallback = Callable[[bytes], None]
DevicesChangedCallback = Callable[[], None]


@dataclass(frozen=True)
class MidiDevice:
    """An input or output device handle with a stable id and display name."""

    id: str
    name: str


class MidiInputPort(Protocol):
    device: MidiDevice

    def close(self) -> None: ...


class MidiOutputPort(Protocol):
    device: MidiDevice

    def send(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class MidiAccess(Protocol):
    """Platform MIDI capability used by the session."""

    def list_inputs(self) -> list[MidiDevice]: ...

    def list_outputs(self) -> list[MidiDevice]: ...

    def open_input(self, device_id: str, callback: MessageCallback) -> MidiInputPort: ...

    def open_output(self, device_id: str) -> MidiOutputPort: ...

    def add_state_listener(self, listener: DevicesChangedCallback) -> None: ...

    async def watch(self) -> None:
        """Run until cancelled, notifying state listeners on device changes."""
        ...

    def close(self) -> None: ...


class _MidoPort:
    """An open mido port that tells its owner when it is closed."""

    kind = "port"

    def __init__(self, device: MidiDevice, port: Any, on_close: Callable[["_MidoPort"], None] | None = None):
        self.device = device
        self._port = port
        self._on_close = on_close
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close(self)
        try:
            self._port.close()
        except Exception as e:
            logger.warning("Error closing MIDI port", kind=self.kind, device=self.device.name, error=str(e))


class MidoInputPort(_MidoPort):
    """Open mido input whose messages are forwarded as raw bytes."""

    kind = "input"


class MidoOutputPort(_MidoPort):
    """Open mido output that accepts raw MIDI bytes."""

    kind = "output"

    def send(self, data: bytes) -> None:
        """
        Send one raw MIDI message.

        Raises:
            DeviceUnavailableError: If the port has gone away
            UnplayableMidiError: If mido cannot parse the bytes as one complete message
        """
        try:
            message = mido.Message.from_bytes(list(data))
        except ValueError as e:
            raise UnplayableMidiError(
                f"Cannot play {bytes(data).hex(' ')} on {self.device.name}: {e}",
                data=bytes(data),
            ) from e

        try:
            self._port.send(message)
        except Exception as e:
            raise DeviceUnavailableError(
                f"Cannot send to {self.device.name}: {e}",
                device_id=self.device.id,
                user_friendly=f"MIDI output {self.device.name} unavailable",
            ) from e


class MidoMidiAccess:
    """
    MidiAccess backed by mido.

    Port names double as device ids; mido resolves ports by name only.
    """

    def __init__(self, config: MidiConfig, loop: asyncio.AbstractEventLoop | None = None):
        self.config = config
        self._loop = loop
        self._listeners: list[DevicesChangedCallback] = []
        self._known: tuple[frozenset[str], frozenset[str]] = (frozenset(), frozenset())
        self._open_ports: list[_MidoPort] = []

    def list_inputs(self) -> list[MidiDevice]:
        return [MidiDevice(id=name, name=name) for name in self._input_names()]

    def list_outputs(self) -> list[MidiDevice]:
        return [MidiDevice(id=name, name=name) for name in self._output_names()]

    def open_input(self, device_id: str, callback: MessageCallback) -> MidoInputPort:
        """
        Open an input and forward each message's bytes to `callback` on the event loop.

        Raises:
            DeviceUnavailableError: If the port cannot be opened
        """
        loop = self._loop or asyncio.get_running_loop()

        def on_message(message: Any) -> None:
            loop.call_soon_threadsafe(callback, bytes(message.bytes()))

        try:
            port = mido.open_input(device_id, callback=on_message)
        except Exception as e:
            raise DeviceUnavailableError(
                f"Cannot open MIDI input {device_id}: {e}",
                device_id=device_id,
            ) from e

        logger.info("Opened MIDI input", device=device_id)
        opened = MidoInputPort(MidiDevice(id=device_id, name=device_id), port, self._forget)
        self._open_ports.append(opened)
        return opened

    def open_output(self, device_id: str) -> MidoOutputPort:
        """
        Open an output port.

        Raises:
            DeviceUnavailableError: If the port cannot be opened
        """
        try:
            port = mido.open_output(device_id)
        except Exception as e:
            raise DeviceUnavailableError(
                f"Cannot open MIDI output {device_id}: {e}",
                device_id=device_id,
            ) from e

        logger.info("Opened MIDI output", device=device_id)
        opened = MidoOutputPort(MidiDevice(id=device_id, name=device_id), port, self._forget)
        self._open_ports.append(opened)
        return opened

    def add_state_listener(self, listener: DevicesChangedCallback) -> None:
        self._listeners.append(listener)

    def poll_once(self) -> bool:
        """
        Re-read the port lists and notify listeners if they changed.

        Returns:
            bool: True if the device set changed
        """
        try:
            current = (frozenset(self._input_names()), frozenset(self._output_names()))
        except DeviceUnavailableError:
            current = (frozenset(), frozenset())
        if current == self._known:
            return False

        self._known = current
        logger.info("MIDI devices changed", inputs=sorted(current[0]), outputs=sorted(current[1]))
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error("MIDI state listener failed", error=str(e), exc_info=True)
        return True

    async def watch(self) -> None:
        interval = self.config.hotplug_poll_interval
        while True:
            await asyncio.sleep(interval)
            self.poll_once()

    def close(self) -> None:
        for port in list(self._open_ports):
            port.close()
        self._listeners.clear()

    def _forget(self, port: _MidoPort) -> None:
        if port in self._open_ports:
            self._open_ports.remove(port)

    def _input_names(self) -> list[str]:
        try:
            return list(dict.fromkeys(mido.get_input_names()))
        except Exception as e:
            raise DeviceUnavailableError(f"Cannot enumerate MIDI inputs: {e}") from e

    def _output_names(self) -> list[str]:
        try:
            return list(dict.fromkeys(mido.get_output_names()))
        except Exception as e:
            raise DeviceUnavailableError(f"Cannot enumerate MIDI outputs: {e}") from e

    def _prime(self) -> None:
        self._known = (frozenset(self._input_names()), frozenset(self._output_names()))


def request_midi_access(config: MidiConfig, loop: asyncio.AbstractEventLoop | None = None) -> MidoMidiAccess:
    """
    Acquire the platform MIDI capability.

    Args:
        config: MIDI configuration; `backend` selects a mido backend module
        loop: Loop that input callbacks are delivered on (defaults to the running loop)

    Returns:
        MidoMidiAccess with its device lists primed

    Raises:
        DeviceUnavailableError: If the backend cannot be loaded or devices cannot be enumerated
    """
    if config.backend:
        try:
            mido.set_backend(config.backend, load=True)
        except Exception as e:
            raise DeviceUnavailableError(f"Cannot load MIDI backend {config.backend}: {e}") from e

    access = MidoMidiAccess(config, loop)
    access._prime()
    logger.info("MIDI access granted", backend=config.backend or "default")
    return access
