"""Exception hierarchy for the ingest pipeline."""


class IngestError(Exception):
    """Base exception for the ingest pipeline."""
    pass


# Staging ---------------------------------------------------------------------


class InvalidTargetFolderError(IngestError):
    """Raised when a target folder would escape the storage root."""
    pass


class InvalidPartNumberError(IngestError):
    """Raised when a part number is not a positive integer."""
    pass


class UploadNotFoundError(IngestError):
    """Raised when an upload session does not exist or has expired."""
    pass


class IncompleteUploadError(IngestError):
    """Raised when finalize finds missing parts or a part count mismatch."""
    pass


class UploadAlreadyFinalizingError(IngestError):
    """Raised when another finalize call holds the session."""
    pass


# Remote storage backend ------------------------------------------------------


class StackError(IngestError):
    """Base exception for remote storage backend failures."""

    retryable = False


class StackHTTPError(StackError):
    """Non-2xx response from the storage backend."""

    RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

    def __init__(self, operation: str, status_code: int, body: str = ""):
        self.operation = operation
        self.status_code = status_code
        self.body = body
        message = f"{operation} failed ({status_code})"
        if body:
            message = f"{message}: {body[:500]}"
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code in self.RETRYABLE_STATUS_CODES or self.status_code >= 500


class StackTransportError(StackError):
    """Network failure while talking to the storage backend."""

    retryable = True


class StackAuthError(StackError):
    """Raised when the backend rejects credentials."""
    pass


class TwoFactorRequiredError(StackAuthError):
    """Raised when the backend demands two-factor authentication."""
    pass


class MissingHeaderError(StackError):
    """Raised when a response lacks a header that carries a created id or token."""

    def __init__(self, operation: str, header: str):
        self.operation = operation
        self.header = header
        super().__init__(f"{operation}: missing {header} header")


class NodeNotVisibleError(StackError):
    """Raised when a node the backend just accepted is not listed yet."""

    retryable = True


class ShareHardeningError(StackError):
    """Raised when a new share cannot be made password-free and read-only."""
    pass


class ConsistencyTimeoutError(StackError):
    """Raised when an uploaded object does not become visible in time."""

    def __init__(self, path: str, attempts: int):
        self.path = path
        self.attempts = attempts
        super().__init__(
            f"File not yet available in storage after {attempts} checks: {path}. "
            "Please try again in a moment."
        )


# Client-side scheduler -------------------------------------------------------


class InvalidUploadOptionsError(IngestError):
    """Raised when concurrency or part size is out of bounds."""
    pass


class UploadRequestError(IngestError):
    """Failed request against the upload-session endpoints."""

    RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

    def __init__(self, operation: str, status_code: int | None = None, body: str = ""):
        self.operation = operation
        self.status_code = status_code
        self.body = body
        if status_code is None:
            message = f"{operation} failed: {body}"
        else:
            message = f"{operation} failed {status_code}: {body[:500]}"
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        # No status code means the request never got an answer
        if self.status_code is None:
            return True
        return self.status_code in self.RETRYABLE_STATUS_CODES or self.status_code >= 500


class UploadFailedError(IngestError):
    """Raised when a part exhausts its retries or fails fatally."""

    def __init__(self, message: str, part_number: int | None = None, attempts: int = 0):
        self.part_number = part_number
        self.attempts = attempts
        super().__init__(message)


class UploadCancelledError(IngestError):
    """Raised when an upload is cancelled by the caller."""
    pass
