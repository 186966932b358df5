"""Session connection and relay layer: envelope codec, presence, relay protocol and connection resilience."""
