"""
Unit-tier fixtures with in-memory fakes for the transport, timers and MIDI devices.
"""

import pytest

from midisession.config.models import AppConfig
from midisession.realtime.activity_log import ActivityLog

from .midi_fakes import FakeMidiAccess
from .realtime_fakes import FakeRealtimeHub, FakeRealtimeTransport, ManualSleeper


@pytest.fixture
def activity_log() -> ActivityLog:
    """Provide an empty activity feed."""
    return ActivityLog()


@pytest.fixture
def manual_sleeper() -> ManualSleeper:
    """Provide a sleep replacement whose waits are fired by the test."""
    return ManualSleeper()


@pytest.fixture
def fake_transport() -> FakeRealtimeTransport:
    """Provide a transport whose channels subscribe successfully by default."""
    return FakeRealtimeTransport()


@pytest.fixture
def realtime_hub() -> FakeRealtimeHub:
    """Provide a shared medium for multi-participant tests."""
    return FakeRealtimeHub()


@pytest.fixture
def fake_midi_access() -> FakeMidiAccess:
    """Provide a MIDI capability with one input and one output."""
    return FakeMidiAccess(inputs=["Keyboard In"], outputs=["Synth Out"])


@pytest.fixture
def app_config() -> AppConfig:
    """Provide default configuration with file logging disabled."""
    config = AppConfig()
    config.logging.disable_logging = True
    return config
