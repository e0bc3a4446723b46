"""Tests for the ingest exception hierarchy."""

import pytest

from furvino_ingest.core.exceptions import (
    ConsistencyTimeoutError,
    IngestError,
    MissingHeaderError,
    NodeNotVisibleError,
    ShareHardeningError,
    StackAuthError,
    StackError,
    StackHTTPError,
    StackTransportError,
    TwoFactorRequiredError,
    UploadCancelledError,
    UploadFailedError,
    UploadRequestError,
)


def test_exception_hierarchy():
    """Test that every error derives from IngestError."""
    assert issubclass(StackError, IngestError)
    assert issubclass(TwoFactorRequiredError, StackAuthError)
    assert issubclass(ShareHardeningError, StackError)
    assert issubclass(ConsistencyTimeoutError, StackError)
    assert not issubclass(UploadCancelledError, UploadFailedError)


@pytest.mark.parametrize(
    "status_code,retryable",
    [
        (500, True),
        (502, True),
        (503, True),
        (507, True),
        (408, True),
        (429, True),
        (400, False),
        (403, False),
        (404, False),
        (409, False),
    ],
)
def test_stack_http_error_retryable(status_code, retryable):
    assert StackHTTPError("STACK op", status_code).retryable is retryable


def test_stack_http_error_message():
    """Test that the message carries the operation, status and body."""
    error = StackHTTPError("STACK create directory 'abc'", 500, "x" * 1000)

    assert error.status_code == 500
    assert len(error.body) == 1000
    assert str(error).startswith("STACK create directory 'abc' failed (500): ")
    assert len(str(error)) < 600


def test_retryable_flags():
    assert StackTransportError("reset").retryable
    assert NodeNotVisibleError("not listed").retryable
    assert not StackAuthError("denied").retryable
    assert not MissingHeaderError("STACK upload", "x-id").retryable


def test_missing_header_error_message():
    error = MissingHeaderError("STACK create share", "x-urltoken")

    assert error.header == "x-urltoken"
    assert str(error) == "STACK create share: missing x-urltoken header"


def test_consistency_timeout_message():
    error = ConsistencyTimeoutError("/files/furvino/a.bin", 300)

    assert error.attempts == 300
    assert "300 checks" in str(error)
    assert "/files/furvino/a.bin" in str(error)


@pytest.mark.parametrize("status_code,retryable", [(None, True), (503, True), (429, True), (400, False), (404, False)])
def test_upload_request_error_retryable(status_code, retryable):
    assert UploadRequestError("Part 1", status_code, "body").retryable is retryable


def test_upload_failed_error_fields():
    error = UploadFailedError("Part 3 failed", part_number=3, attempts=4)

    assert error.part_number == 3
    assert error.attempts == 4
