"""Allow running the relay with ``python -m midisession``."""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
