"""
Session key and participant id generation.

Both are opaque random tokens drawn from a lowercase base-36 alphabet so
they are safe in URLs and in pub/sub subject names.
"""

import re
import secrets
import string

_ALPHABET = string.digits + string.ascii_lowercase
_SESSION_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

SESSION_KEY_LENGTH = 26
PARTICIPANT_ID_PREFIX = "user_"
PARTICIPANT_ID_LENGTH = 13


def _random_token(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_session_key() -> str:
    """Return a fresh random session key to share with other participants."""
    return _random_token(SESSION_KEY_LENGTH)


def generate_participant_id() -> str:
    """Return a participant id; generated once per process and reused across reconnects."""
    return PARTICIPANT_ID_PREFIX + _random_token(PARTICIPANT_ID_LENGTH)


def is_valid_session_key(session_key: str) -> bool:
    """Session keys become a subject token, so dots, spaces and wildcards are rejected."""
    return bool(_SESSION_KEY_PATTERN.match(session_key))
