"""Utility helpers for the MIDI session relay."""
