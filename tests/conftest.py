"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from furvino_ingest.storage.staging import UploadStaging


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def staging(tmp_path, clock):
    """Staging area rooted in a temporary directory with default part sizes."""
    return UploadStaging(tmp_path / "stack", clock=clock)


@pytest.fixture
def small_staging(tmp_path, clock):
    """Staging area with byte-sized parts for fast route tests."""
    return UploadStaging(
        tmp_path / "stack",
        default_part_size=4,
        min_part_size=1,
        max_part_size=1024,
        clock=clock,
    )


@pytest.fixture
def mock_http():
    """Build an httpx.AsyncClient whose requests are answered by ``handler``."""
    def factory(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory
