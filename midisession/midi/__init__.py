"""Local MIDI capability: device enumeration, input callbacks and output ports."""
