"""Tests for the consistency waiter."""

from unittest.mock import AsyncMock

import httpx
import pytest

from furvino_ingest.core.exceptions import ConsistencyTimeoutError, MissingHeaderError, StackHTTPError
from furvino_ingest.stack.client import StorageClient
from furvino_ingest.stack.consistency import ConsistencyWaiter, next_poll


def test_next_poll_retries_until_bound():
    """Test the pure poll decision."""
    decision = next_poll(attempt=1, max_attempts=3, interval_ms=1000)
    assert decision.retry
    assert decision.delay_seconds == 1.0

    assert next_poll(attempt=2, max_attempts=3, interval_ms=250).delay_seconds == 0.25
    assert not next_poll(attempt=3, max_attempts=3, interval_ms=1000).retry


@pytest.fixture
def storage_client():
    client = AsyncMock()
    client.get_node_id_by_path = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_wait_returns_once_node_is_visible(storage_client):
    """Test that not-found answers are polled through."""
    storage_client.get_node_id_by_path.side_effect = [None, None, 41]
    sleep = AsyncMock()
    waiter = ConsistencyWaiter(storage_client, interval_ms=500, max_attempts=10, sleep=sleep)

    assert await waiter.wait_for_node("/files/furvino/a.bin") == 41
    assert storage_client.get_node_id_by_path.await_count == 3
    assert sleep.await_count == 2
    sleep.assert_awaited_with(0.5)


@pytest.mark.asyncio
async def test_wait_gives_up_after_max_attempts(storage_client):
    """Test that a node that never appears fails after the configured bound."""
    storage_client.get_node_id_by_path.return_value = None
    sleep = AsyncMock()
    waiter = ConsistencyWaiter(storage_client, interval_ms=1000, max_attempts=5, sleep=sleep)

    with pytest.raises(ConsistencyTimeoutError) as exc_info:
        await waiter.wait_for_node("/files/furvino/missing.bin")

    assert exc_info.value.attempts == 5
    assert exc_info.value.path == "/files/furvino/missing.bin"
    assert storage_client.get_node_id_by_path.await_count == 5
    assert sleep.await_count == 4


@pytest.mark.asyncio
async def test_wait_tolerates_transient_errors(storage_client):
    storage_client.get_node_id_by_path.side_effect = [StackHTTPError("lookup", 503, "busy"), 7]
    waiter = ConsistencyWaiter(storage_client, max_attempts=3, sleep=AsyncMock())

    assert await waiter.wait_for_node("/files/furvino/a.bin") == 7


@pytest.mark.asyncio
async def test_wait_propagates_fatal_errors(storage_client):
    """Test that a fatal backend error is not treated as "not yet"."""
    storage_client.get_node_id_by_path.side_effect = StackHTTPError("lookup", 403, "forbidden")
    waiter = ConsistencyWaiter(storage_client, max_attempts=3, sleep=AsyncMock())

    with pytest.raises(StackHTTPError):
        await waiter.wait_for_node("/files/furvino/a.bin")
    assert storage_client.get_node_id_by_path.await_count == 1


@pytest.mark.asyncio
async def test_wait_for_expected_id(storage_client):
    """Test that a stale node id keeps the waiter polling."""
    storage_client.get_node_id_by_path.side_effect = [3, 3, 8]
    waiter = ConsistencyWaiter(storage_client, max_attempts=5, sleep=AsyncMock())

    assert await waiter.wait_for_node("/files/furvino/a.bin", expected_id=8) == 8


@pytest.mark.asyncio
async def test_wait_accepts_node_id_zero(storage_client):
    storage_client.get_node_id_by_path.return_value = 0
    waiter = ConsistencyWaiter(storage_client, max_attempts=3, sleep=AsyncMock())

    assert await waiter.wait_for_node("/files/furvino/a.bin") == 0
    assert storage_client.get_node_id_by_path.await_count == 1


@pytest.mark.asyncio
async def test_wait_fails_fast_on_lookup_without_id(mock_http):
    """Test that a lookup answered without x-id stops polling immediately."""
    lookups = []

    def handler(request):
        if request.url.path == "/authenticate":
            return httpx.Response(200, headers={"x-sessiontoken": "token"})
        lookups.append(request)
        return httpx.Response(204)

    client = StorageClient("https://stack.test", "uploader", "secret", http_client=mock_http(handler))
    sleep = AsyncMock()
    waiter = ConsistencyWaiter(client, max_attempts=5, sleep=sleep)

    with pytest.raises(MissingHeaderError):
        await waiter.wait_for_node("/files/furvino/a.bin")

    assert len(lookups) == 1
    sleep.assert_not_awaited()
