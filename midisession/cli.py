"""Command line entry point for joining and inspecting MIDI sessions."""

import argparse
import asyncio
import sys
from collections.abc import Sequence
from functools import partial
from typing import Any

from .config import AppConfig, get_config
from .exceptions import DeviceUnavailableError
from .infrastructure.nats_channel import NATSRealtimeTransport
from .logging.enhanced_logging_config import get_logger, setup_enhanced_logging
from .midi.devices import request_midi_access
from .realtime.activity_log import ActivityRecord
from .realtime.connection_state_machine import ConnectionState
from .services.midi_session_service import MidiSessionService
from .utils.identifiers import generate_session_key, is_valid_session_key

logger = get_logger(__name__)


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="midisession", description="Relay MIDI between participants of a session.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    join = subparsers.add_parser("join", help="Join a session, creating a new session key if none is given.")
    join.add_argument("session_key", nargs="?", default=None, help="Session key shared by the participants.")
    join.add_argument("--input", dest="input_device", default=None, help="MIDI input port to relay from.")
    join.add_argument("--output", dest="output_device", default=None, help="MIDI output port to play received events on.")
    join.add_argument("--url", dest="url", default=None, help="Pub/sub server URL (overrides MIDISESSION_TRANSPORT_URL).")

    subparsers.add_parser("devices", help="List MIDI input and output ports.")
    subparsers.add_parser("new-key", help="Print a fresh session key.")
    return parser.parse_args(argv)


def print_activity(record: ActivityRecord) -> None:
    print(f"[{record.timestamp}] {record.message}", flush=True)


def format_status(stats: dict[str, Any]) -> str:
    """One-line connection summary built from ConnectionResilienceManager.get_stats()."""
    line = (
        f"Status: {stats['current_state']} "
        f"(attempts {stats['attempts_used']}/{stats['max_attempts']}, "
        f"connections {stats['total_connections']}, drops {stats['total_disconnections']})"
    )
    if stats.get("last_error"):
        line += f" last error: {stats['last_error']}"
    return line


async def run_session(service: MidiSessionService, input_device: str | None, output_device: str | None) -> None:
    """Run a session until the task is cancelled (Ctrl+C), then leave cleanly."""
    await service.initialize_midi()
    if input_device:
        service.select_input_device(input_device)
    if output_device:
        service.select_output_device(output_device)

    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()


def _join(args: argparse.Namespace, config: AppConfig) -> int:
    session_key = args.session_key or generate_session_key()
    if not is_valid_session_key(session_key):
        print(f"Invalid session key: {session_key}", file=sys.stderr)
        return 2

    transport_config = config.transport
    if args.url is not None:
        transport_config = transport_config.model_copy(update={"url": args.url})

    service = MidiSessionService(
        session_key,
        transport=NATSRealtimeTransport(transport_config, config.heartbeat),
        midi_access_factory=partial(request_midi_access, config.midi),
        config=config,
    )
    service.activity.add_listener(print_activity)

    def on_state_change(state: ConnectionState) -> None:
        print(format_status(service.connection.get_stats()), flush=True)
        if state is ConnectionState.FAILED:
            print("Connection failed. Press Ctrl+C and run the command again to restart.", flush=True)

    service.add_state_listener(on_state_change)

    print(f"Session key: {session_key}", flush=True)
    print(f"Participant: {service.participant_id}", flush=True)

    try:
        asyncio.run(run_session(service, args.input_device, args.output_device))
    except KeyboardInterrupt:
        logger.info("Session interrupted", session_key=session_key)
    return 0


def _devices(config: AppConfig) -> int:
    try:
        access = request_midi_access(config.midi)
        inputs = access.list_inputs()
        outputs = access.list_outputs()
    except DeviceUnavailableError as exc:
        print(f"MIDI unavailable: {exc.message}", file=sys.stderr)
        return 1

    print("Inputs:")
    for device in inputs:
        print(f"  {device.name}")
    print("Outputs:")
    for device in outputs:
        print(f"  {device.name}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_arguments(argv)

    if args.command == "new-key":
        print(generate_session_key())
        return 0

    config = get_config()
    setup_enhanced_logging(config.to_logging_dict())

    if args.command == "devices":
        return _devices(config)
    return _join(args, config)


if __name__ == "__main__":
    raise SystemExit(main())
