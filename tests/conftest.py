"""Test configuration."""

import os
from pathlib import Path
from typing import List

import pytest
from pytest import Config

from filedrop.core.logging import configure_logging

os.environ.setdefault("TESTING", "true")

fixture = pytest.fixture

pytest_plugins: List[str] = [
    "tests.fixtures.pipeline",
    "tests.fixtures.api",
]


@fixture(scope="session")
def project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent


def pytest_configure(config: Config) -> None:
    """Configure pytest.

    Args:
        config: Pytest configuration object
    """
    configure_logging(testing=True, level="debug")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
