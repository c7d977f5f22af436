"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import FakeClock  # noqa: E402

from provisioner.config import Config, TimeoutConfig  # noqa: E402


@pytest.fixture
def specs_dir(tmp_path: Path) -> Path:
    """Empty manifest directory."""
    path = tmp_path / "specs"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path: Path, specs_dir: Path) -> Config:
    """Configuration with short wait budgets, for use with a FakeClock."""
    return Config(
        region="us-east-1",
        specs_dir=specs_dir,
        state_file=tmp_path / "state.json",
        timeouts=TimeoutConfig(create=60, update=60, delete=60),
        poll_min_timeout_seconds=1,
        poll_max_interval_seconds=2,
    )


@pytest.fixture
def clock() -> FakeClock:
    """Clock that only advances when the poller sleeps."""
    return FakeClock()
