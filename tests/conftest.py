"""Pytest configuration and fixtures."""

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provisioner.config import Config  # noqa: E402
from provisioner.security import clear_registered_secrets  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Minimal valid configuration rooted in a temporary directory."""
    return Config(
        project="acme",
        domain="netbird.acme.example",
        root_dir=tmp_path,
        server_ready_timeout_seconds=10,
        poll_interval_seconds=1,
    )


@pytest.fixture(autouse=True)
def _reset_registered_secrets() -> Iterator[None]:
    clear_registered_secrets()
    yield
    clear_registered_secrets()
