"""
Real-time MIDI session relay.

Participants sharing a session key exchange MIDI events over a pub/sub
channel; this package holds the connection resilience layer, the relay
protocol, presence tracking, and the session service that composes them.
"""

__version__ = "0.1.0"
