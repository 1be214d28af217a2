"""Pytest configuration and fixtures."""

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for graph_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from delaysync.config import Config  # noqa: E402
from delaysync.graph_client import GraphClient  # noqa: E402
from graph_mock import MockDirectoryState, MockGraphSession, create_mock_credential  # noqa: E402

# Reference time shared by tests that evaluate enrollment age
NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


def hours_ago(hours: float) -> str:
    """Graph-formatted timestamp ``hours`` before NOW."""
    return (NOW - timedelta(hours=hours)).strftime("%Y-%m-%dT%H:%M:%SZ")


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def config() -> Config:
    return Config(source_group_prefix="Autopilot - ")


@pytest.fixture
def directory() -> MockDirectoryState:
    return MockDirectoryState()


@pytest.fixture
def session(directory: MockDirectoryState) -> MockGraphSession:
    return MockGraphSession(directory)


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff waits recorded instead of slept."""
    return []


@pytest.fixture
def graph_client(config: Config, session: MockGraphSession, sleeps: list[float]) -> GraphClient:
    return GraphClient(create_mock_credential(), config, session, sleep=sleeps.append)
