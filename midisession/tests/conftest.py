"""
Test configuration and fixtures for the MIDI session relay test suite.
"""

import os
import random
from collections.abc import Generator
from typing import Any

import pytest

os.environ.setdefault("MIDISESSION_LOGGING_ENVIRONMENT", "unit_test")
os.environ.setdefault("MIDISESSION_LOGGING_DISABLE_LOGGING", "true")

# Imports must come after environment variables so config picks them up
from midisession.config import reset_config  # noqa: E402
from midisession.logging.enhanced_logging_config import clear_session_context, get_logger  # noqa: E402

logger = get_logger(__name__)

# Register fixture plugins
pytest_plugins = [
    "midisession.tests.fixtures.unit",
]


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset config singleton before and after each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def clean_logging_context() -> Generator[None, None, None]:
    """Keep session context bound by one test out of the next."""
    clear_session_context()
    yield
    clear_session_context()


@pytest.fixture(autouse=True)
def deterministic_random_seed() -> Generator[None, None, None]:
    """Set deterministic random seed for reproducible tests."""
    random.seed(42)
    yield


@pytest.fixture
def test_logger() -> Any:
    """Provide a logger for tests."""
    return get_logger(__name__)


def pytest_collection_modifyitems(config: Any, items: list[Any]) -> None:
    """Auto-mark tests in unit/ with @pytest.mark.unit."""
    for item in items:
        file_path = str(item.fspath)
        if "/unit/" in file_path or "\\unit\\" in file_path:
            item.add_marker(pytest.mark.unit)
