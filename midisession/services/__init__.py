"""
Services package for the MIDI session relay.

This package contains the session service that composes the relay layer
into the object a front end observes and drives.
"""

from .midi_session_service import MidiSessionService

__all__ = ["MidiSessionService"]
