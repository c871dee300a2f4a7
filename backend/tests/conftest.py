"""
Pytest configuration and fixtures for testing.

Provides common fixtures shared by unit and integration tests.
"""

import os
import uuid
from pathlib import Path

import pytest


def pytest_configure(config):
    """
    Pytest hook that runs before test collection.

    This is the earliest point we can modify the environment.
    We load .env.test here to ensure it's available before any
    dedup modules are imported.
    """
    from dotenv import load_dotenv

    os.environ.setdefault("TESTING", "true")

    test_env_path = Path(__file__).parent.parent / ".env.test"
    if test_env_path.exists():
        load_dotenv(test_env_path, override=True)
        print(f"Loaded test environment from {test_env_path}")


@pytest.fixture
def reviewer_id() -> uuid.UUID:
    """ID of the reviewer performing actions."""
    return uuid.uuid4()
