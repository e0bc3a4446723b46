"""Tests for the upload session API routes."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from furvino_ingest.api.dependencies import get_consistency_waiter, get_staging, get_storage_client
from furvino_ingest.core.config import Settings
from furvino_ingest.core.exceptions import ConsistencyTimeoutError, StackHTTPError
from furvino_ingest.main import create_app


@pytest.fixture
def app(small_staging):
    app = create_app(Settings(_env_file=None))
    app.dependency_overrides[get_staging] = lambda: small_staging
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


def init_upload(client, **overrides):
    payload = {"targetFolder": "novels/abc/files/windows", "filename": "Game Setup.exe"}
    payload.update(overrides)
    response = client.post("/uploads/init", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def put_part(client, upload_id, part, body):
    return client.put(
        f"/uploads/{upload_id}/part",
        params={"part": part},
        content=body,
        headers={"Content-Type": "application/octet-stream"},
    )


def test_init_upload(client):
    """Test that init answers with camelCase fields and the authoritative part size."""
    data = init_upload(client, totalSize=10, partSize=2048)

    assert set(data) == {"uploadId", "partSize", "filename", "targetFolder", "stackPath"}
    assert data["partSize"] == 1024
    assert data["filename"] == "Game_Setup.exe"
    assert data["targetFolder"] == "novels/abc/files/windows"
    assert data["stackPath"] == "/files/furvino/novels/abc/files/windows/Game_Setup.exe"


def test_init_upload_rejects_traversal(client):
    response = client.post("/uploads/init", json={"targetFolder": "../../etc", "filename": "passwd"})

    assert response.status_code == 400
    assert "targetFolder" in response.json()["detail"]


def test_init_upload_requires_filename(client):
    assert client.post("/uploads/init", json={"targetFolder": "a"}).status_code == 422
    assert client.post("/uploads/init", json={"targetFolder": "a", "filename": "   "}).status_code == 400


def test_out_of_order_parts_then_complete(client, small_staging):
    """Test parts arriving out of order are assembled in numeric order."""
    upload = init_upload(client, totalSize=14)
    upload_id = upload["uploadId"]

    for part, body in [(2, b"efgh"), (4, b"mn"), (1, b"abcd"), (3, b"ijkl")]:
        response = put_part(client, upload_id, part, body)
        assert response.status_code == 200
        assert response.json()["sizeBytes"] == len(body)

    status = client.get(f"/uploads/{upload_id}/status")
    assert status.status_code == 200
    assert status.json()["parts"] == [1, 2, 3, 4]
    assert status.json()["meta"]["partSize"] == 4
    assert status.json()["meta"]["stackPath"] == upload["stackPath"]

    response = client.post(f"/uploads/{upload_id}/complete", json={"totalParts": 4})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["stackPath"] == upload["stackPath"]
    assert body["sizeBytes"] == 14
    assert body.get("shareUrl") is None
    final_path = Path(small_staging.base_path) / "novels/abc/files/windows/Game_Setup.exe"
    assert final_path.read_bytes() == b"abcdefghijklmn"


def test_resent_part_replaces_previous(client, small_staging):
    upload_id = init_upload(client)["uploadId"]

    put_part(client, upload_id, 1, b"XXXX")
    put_part(client, upload_id, 1, b"abcd")
    put_part(client, upload_id, 2, b"ef")
    response = client.post(f"/uploads/{upload_id}/complete")

    assert response.status_code == 200
    assert response.json()["sizeBytes"] == 6


@pytest.mark.parametrize("part", [0, -3])
def test_invalid_part_number(client, part):
    upload_id = init_upload(client)["uploadId"]
    assert put_part(client, upload_id, part, b"x").status_code == 400


def test_unknown_upload(client):
    """Test that unknown sessions answer 404 on every route."""
    assert put_part(client, "does-not-exist", 1, b"x").status_code == 404
    assert client.get("/uploads/does-not-exist/status").status_code == 404
    assert client.post("/uploads/does-not-exist/complete", json={}).status_code == 404


def test_complete_with_missing_part(client):
    """Test that a gap in the part numbers is reported, not skipped."""
    upload_id = init_upload(client)["uploadId"]
    put_part(client, upload_id, 1, b"abcd")
    put_part(client, upload_id, 3, b"ijkl")

    response = client.post(f"/uploads/{upload_id}/complete", json={})

    assert response.status_code == 409
    assert "missing parts [2]" in response.json()["detail"]


def test_complete_with_part_count_mismatch(client):
    upload_id = init_upload(client)["uploadId"]
    put_part(client, upload_id, 1, b"abcd")

    response = client.post(f"/uploads/{upload_id}/complete", json={"totalParts": 2})

    assert response.status_code == 409


def test_complete_twice_returns_same_result(client):
    upload_id = init_upload(client)["uploadId"]
    put_part(client, upload_id, 1, b"abcd")

    first = client.post(f"/uploads/{upload_id}/complete", json={"totalParts": 1})
    second = client.post(f"/uploads/{upload_id}/complete", json={"totalParts": 1})

    assert first.status_code == second.status_code == 200
    assert first.json()["stackPath"] == second.json()["stackPath"]


@pytest.fixture
def backend():
    """Mocked backend collaborators for share-on-complete."""
    storage_client = AsyncMock()
    storage_client.share_node.return_value = "https://stack.test/s/tok"
    waiter = AsyncMock()
    waiter.wait_for_node.return_value = 55
    return storage_client, waiter


def make_client(settings, staging, backend):
    storage_client, waiter = backend
    app = create_app(settings)
    app.dependency_overrides[get_staging] = lambda: staging
    app.dependency_overrides[get_storage_client] = lambda: storage_client
    app.dependency_overrides[get_consistency_waiter] = lambda: waiter
    return TestClient(app)


@pytest.fixture
def sharing_client(small_staging, backend):
    """Client for an app created with share-on-complete enabled."""
    return make_client(Settings(_env_file=None, SHARE_ON_COMPLETE=True), small_staging, backend)


def test_complete_publishes_share_url(sharing_client, backend):
    """Test that completion waits for the backend and returns a share URL."""
    storage_client, waiter = backend
    upload = init_upload(sharing_client)
    put_part(sharing_client, upload["uploadId"], 1, b"abcd")

    response = sharing_client.post(f"/uploads/{upload['uploadId']}/complete", json={})

    assert response.status_code == 200
    assert response.json()["shareUrl"] == "https://stack.test/s/tok"
    waiter.wait_for_node.assert_awaited_once_with(upload["stackPath"])
    storage_client.share_node.assert_awaited_once_with(55)


def test_complete_follows_app_settings(small_staging, backend):
    """Test that each app honours the settings it was created with."""
    storage_client, waiter = backend
    plain_client = make_client(Settings(_env_file=None, SHARE_ON_COMPLETE=False), small_staging, backend)
    upload_id = init_upload(plain_client)["uploadId"]
    put_part(plain_client, upload_id, 1, b"abcd")

    response = plain_client.post(f"/uploads/{upload_id}/complete", json={})

    assert response.status_code == 200
    assert response.json().get("shareUrl") is None
    waiter.wait_for_node.assert_not_awaited()
    storage_client.share_node.assert_not_awaited()


def test_complete_consistency_timeout(sharing_client, backend):
    _, waiter = backend
    waiter.wait_for_node.side_effect = ConsistencyTimeoutError("/files/furvino/x", 300)
    upload_id = init_upload(sharing_client)["uploadId"]
    put_part(sharing_client, upload_id, 1, b"abcd")

    response = sharing_client.post(f"/uploads/{upload_id}/complete", json={})

    assert response.status_code == 504
    assert "try again" in response.json()["detail"]


def test_complete_backend_failure(sharing_client, backend):
    storage_client, _ = backend
    storage_client.share_node.side_effect = StackHTTPError("STACK create share", 500, "boom")
    upload_id = init_upload(sharing_client)["uploadId"]
    put_part(sharing_client, upload_id, 1, b"abcd")

    response = sharing_client.post(f"/uploads/{upload_id}/complete", json={})

    assert response.status_code == 502
