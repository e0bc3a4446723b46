"""HTTP client for the STACK remote storage backend.

One method call is one logical backend operation. The client holds no
concurrency of its own; it caches the session token and re-authenticates once
when the backend answers 401.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, BinaryIO, Optional, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from furvino_ingest.core.exceptions import (
    NodeNotVisibleError,
    ShareHardeningError,
    StackAuthError,
    StackError,
    StackHTTPError,
    StackTransportError,
    TwoFactorRequiredError,
)
from furvino_ingest.sources import ByteSource, as_byte_source
from furvino_ingest.stack import protocol
from furvino_ingest.stack.protocol import PUBLIC_READ, SharePermissions, StackNode

logger = logging.getLogger(__name__)

UploadContent = Union[bytes, BinaryIO, AsyncIterable[bytes]]

_STREAM_CHUNK = 1024 * 1024


def is_retryable(exc: BaseException) -> bool:
    """True for backend failures worth retrying (5xx, throttling, network)."""
    return isinstance(exc, StackError) and exc.retryable


@dataclass(frozen=True)
class CreatedShare:
    share_id: int
    url_token: str


@dataclass(frozen=True)
class PublicShare:
    """A distribution share; ``degraded`` marks one whose hardening failed."""

    share_id: int
    url_token: str
    degraded: bool = False


class StorageClient:
    """Client for STACK node, upload and share operations."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        share_base_url: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        request_timeout: float = 30,
        upload_timeout: float = 600,
        strict_share_hardening: bool = True,
        directory_retry_attempts: int = 3,
        directory_retry_wait: float = 0.5,
        list_limit: int = 100,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self._share_base_url = share_base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._owns_client = http_client is None
        self.request_timeout = request_timeout
        self.upload_timeout = upload_timeout
        self.strict_share_hardening = strict_share_hardening
        self.directory_retry_attempts = directory_retry_attempts
        self.directory_retry_wait = directory_retry_wait
        self.list_limit = list_limit
        self._session_token: Optional[str] = None

    @classmethod
    def from_settings(cls, settings, http_client: Optional[httpx.AsyncClient] = None) -> "StorageClient":
        return cls(
            base_url=settings.STACK_API_URL,
            username=settings.STACK_USERNAME,
            password=settings.STACK_PASSWORD,
            share_base_url=settings.share_base_url,
            http_client=http_client,
            request_timeout=settings.STACK_REQUEST_TIMEOUT,
            upload_timeout=settings.STACK_UPLOAD_TIMEOUT,
            strict_share_hardening=settings.STRICT_SHARE_HARDENING,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "StorageClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # Transport -------------------------------------------------------------

    async def _send(self, method: str, path: str, operation: str, headers: dict, **kwargs) -> httpx.Response:
        kwargs.setdefault("timeout", self.request_timeout)
        try:
            return await self._client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise StackTransportError(f"{operation}: {e}") from e

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        headers: Optional[dict] = None,
        replayable: bool = True,
        **kwargs,
    ) -> httpx.Response:
        """Send an authenticated request, re-authenticating once on 401."""
        request_headers = dict(headers or {})
        request_headers[protocol.SESSION_TOKEN] = await self.session_token()
        response = await self._send(method, path, operation, request_headers, **kwargs)

        if response.status_code == 401 and replayable:
            logger.info("STACK session expired, re-authenticating", extra={"operation": operation})
            self._session_token = None
            request_headers[protocol.SESSION_TOKEN] = await self.session_token()
            response = await self._send(method, path, operation, request_headers, **kwargs)
        return response

    # Authentication --------------------------------------------------------

    async def authenticate(self, username: Optional[str] = None, password: Optional[str] = None) -> str:
        """Open a backend session and return its token.

        Raises:
            TwoFactorRequiredError: If the account needs a second factor
            StackAuthError: If the credentials are rejected
            MissingHeaderError: If the response carries no session token
        """
        operation = "STACK auth"
        response = await self._send(
            "POST",
            "/authenticate",
            operation,
            {"Content-Type": "application/json"},
            json={"username": username or self.username, "password": password or self.password},
        )
        if response.status_code in (401, 403):
            raise StackAuthError(f"{operation} rejected credentials ({response.status_code})")
        protocol.raise_for_status(response, operation)
        if response.headers.get(protocol.TWO_FACTOR_REQUIRED, "").lower() == "true":
            raise TwoFactorRequiredError(f"{operation}: 2FA required")
        token = protocol.require_header(response, protocol.SESSION_TOKEN, operation)
        self._session_token = token
        return token

    async def session_token(self) -> str:
        if self._session_token is None:
            await self.authenticate()
        return self._session_token

    # Directories -----------------------------------------------------------

    async def get_files_root(self) -> int:
        response = await self._request("GET", "/me", "STACK /me")
        protocol.raise_for_status(response, "STACK /me")
        return int(response.json()["filesNodeID"])

    async def list_children(self, parent_id: int) -> list[StackNode]:
        """List a directory; a directory that is not visible yet lists as empty."""
        response = await self._request(
            "GET", "/node", "STACK list nodes", params={"parentID": parent_id, "limit": self.list_limit}
        )
        if response.status_code == protocol.NOT_FOUND:
            return []
        protocol.raise_for_status(response, "STACK list nodes")
        return protocol.parse_nodes(response)

    async def find_child(self, parent_id: int, name: str, dir: bool) -> Optional[StackNode]:
        for node in await self.list_children(parent_id):
            if node.name == name and node.dir == dir:
                return node
        return None

    async def create_directory(self, parent_id: int, name: str) -> int:
        """Create a directory, resolving the existing id on 409."""
        operation = f"STACK create directory {name!r}"
        response = await self._request(
            "POST",
            "/node",
            operation,
            headers={"Content-Type": "application/json"},
            json={"parentID": parent_id, "name": name},
        )
        if response.status_code == protocol.CONFLICT:
            existing_id = protocol.optional_int_header(response, protocol.NODE_ID)
            if existing_id is None:
                existing = await self.find_child(parent_id, name, dir=True)
                if existing is None:
                    raise NodeNotVisibleError(f"{operation}: exists but is not listed yet")
                existing_id = existing.id
            logger.debug(
                "Directory already exists",
                extra={"parent_id": parent_id, "directory": name, "node_id": existing_id},
            )
            return existing_id

        protocol.raise_for_status(response, operation)
        node_id = protocol.optional_int_header(response, protocol.NODE_ID)
        if node_id is None:
            node_id = int(response.json()["id"])
        return node_id

    async def ensure_directory(self, parent_id: int, name: str) -> int:
        """Return the id of ``name`` under ``parent_id``, creating it if absent.

        Concurrent creators converge on the same id through the backend's
        409 answer; transient failures are retried with backoff.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.directory_retry_attempts),
            wait=wait_exponential(multiplier=self.directory_retry_wait, max=10),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        ):
            with attempt:
                existing = await self.find_child(parent_id, name, dir=True)
                if existing is not None:
                    return existing.id
                return await self.create_directory(parent_id, name)

    async def ensure_directory_path(self, path_parts: list[str]) -> int:
        """Walk (and create) ``path_parts`` below the files root."""
        node_id = await self.get_files_root()
        for name in path_parts:
            try:
                node_id = await self.ensure_directory(node_id, name)
            except StackError as e:
                raise StackError(
                    f"Failed to find/create directory {name!r} in path [{'/'.join(path_parts)}]: {e}"
                ) from e
        return node_id

    async def get_node_id_by_path(self, path: str) -> Optional[int]:
        """Look up a node by its absolute path; None only when STACK answers 404."""
        operation = "STACK get node by path"
        response = await self._request("GET", "/node-id", operation, params={"path": path})
        if response.status_code == protocol.NOT_FOUND:
            return None
        protocol.raise_for_status(response, operation)
        return protocol.require_int_header(response, protocol.NODE_ID, operation)

    async def delete_node(self, node_id: int) -> None:
        response = await self._request("DELETE", f"/node/{node_id}", "STACK delete node")
        if response.status_code == protocol.NOT_FOUND:
            return
        protocol.raise_for_status(response, "STACK delete node")

    # Uploads ---------------------------------------------------------------

    async def upload_file(
        self,
        parent_id: int,
        filename: str,
        content: UploadContent,
        size: Optional[int] = None,
        overwrite: bool = False,
    ) -> int:
        """Single-shot upload for small files; returns the new node id.

        File objects and async iterables are streamed; ``size`` is required
        for async iterables.
        """
        operation = f"STACK upload {filename!r}"
        body, size, replayable = _prepare_body(content, size)
        response = await self._request(
            "POST",
            "/upload",
            operation,
            headers={
                protocol.FILE_BYTE_SIZE: str(size),
                protocol.PARENT_ID: str(parent_id),
                protocol.FILENAME: protocol.encode_filename(filename),
                protocol.OVERWRITE: "true" if overwrite else "false",
                "Content-Type": "application/octet-stream",
            },
            replayable=replayable,
            content=body,
            timeout=self.upload_timeout,
        )
        protocol.raise_for_status(response, operation)
        node_id = protocol.require_int_header(response, protocol.NODE_ID, operation)
        logger.info(
            "Uploaded file to STACK",
            extra={"parent_id": parent_id, "upload_filename": filename, "node_id": node_id, "size_bytes": size},
        )
        return node_id

    async def upload_large_file_with_session(
        self,
        path_parts: list[str],
        filename: str,
        chunk_reader: Union[ByteSource, bytes, BinaryIO],
        total_size: Optional[int] = None,
        chunk_size: int = 8 * 1024 * 1024,
        overwrite: bool = True,
    ) -> int:
        """Upload through a backend upload session, one chunk after another.

        Session completion does not report the node id, so it is resolved by
        listing the parent directory afterwards.
        """
        source = as_byte_source(chunk_reader)
        total_size = source.size if total_size is None else total_size
        chunk_size = protocol.align_chunk_size(chunk_size)
        parent_id = await self.ensure_directory_path(path_parts)

        operation = f"STACK upload session {filename!r}"
        start = await self._request(
            "POST",
            "/upload/session/start",
            f"{operation} start",
            headers={
                protocol.FILE_BYTE_SIZE: str(total_size),
                protocol.CHUNK_BYTE_SIZE: str(chunk_size),
                protocol.PARENT_ID: str(parent_id),
                protocol.FILENAME: protocol.encode_filename(filename),
                protocol.OVERWRITE: "true" if overwrite else "false",
            },
        )
        protocol.raise_for_status(start, f"{operation} start")
        session_id = protocol.require_header(start, protocol.UPLOAD_SESSION_ID, f"{operation} start")

        total_chunks = -(-total_size // chunk_size)
        for index in range(total_chunks):
            offset = index * chunk_size
            chunk = await source.read_range(offset, min(chunk_size, total_size - offset))
            response = await self._request(
                "POST",
                "/upload/session/append",
                f"{operation} append",
                headers={
                    protocol.UPLOAD_SESSION_ID: session_id,
                    protocol.START_OFFSET: str(offset),
                    "Content-Type": "application/octet-stream",
                },
                content=chunk,
                timeout=self.upload_timeout,
            )
            protocol.raise_for_status(response, f"{operation} append chunk {index + 1}/{total_chunks}")
            logger.debug(
                f"Appended chunk {index + 1}/{total_chunks}",
                extra={"session_id": session_id, "offset": offset},
            )

        finish = await self._request(
            "POST",
            "/upload/session/finish",
            f"{operation} finish",
            headers={protocol.UPLOAD_SESSION_ID: session_id},
        )
        protocol.raise_for_status(finish, f"{operation} finish")

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.directory_retry_attempts),
            wait=wait_exponential(multiplier=self.directory_retry_wait, max=10),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        ):
            with attempt:
                node = await self.find_child(parent_id, filename, dir=False)
                if node is None:
                    raise NodeNotVisibleError(f"{operation}: {filename!r} not listed after finish")
        logger.info(
            "Uploaded file through STACK upload session",
            extra={"node_id": node.id, "size_bytes": total_size, "chunks": total_chunks},
        )
        return node.id

    # Shares ----------------------------------------------------------------

    async def create_share(
        self,
        node_id: int,
        permissions: SharePermissions,
        password: str = "",
        expires_at: Optional[int] = None,
    ) -> CreatedShare:
        operation = "STACK create share"
        payload = {
            "nodeId": node_id,
            "type": "Public",
            "password": password,
            "permissions": permissions.to_json(),
        }
        if expires_at is not None:
            payload["expiresAt"] = expires_at
        response = await self._request(
            "POST", "/node-shares", operation, headers={"Content-Type": "application/json"}, json=payload
        )
        protocol.raise_for_status(response, operation)
        return CreatedShare(
            share_id=protocol.require_int_header(response, protocol.SHARE_ID, operation),
            url_token=protocol.require_header(response, protocol.URL_TOKEN, operation),
        )

    async def update_share(self, share_id: int, permissions: SharePermissions, password: str = "") -> None:
        operation = "STACK update share"
        response = await self._request(
            "PUT",
            f"/node-shares/{share_id}",
            operation,
            headers={"Content-Type": "application/json"},
            json={"password": password, "permissions": permissions.to_json()},
        )
        protocol.raise_for_status(response, operation)

    async def delete_share(self, share_id: int) -> None:
        """Delete a share; one that is already gone counts as deleted."""
        response = await self._request("DELETE", f"/node-shares/{share_id}", "STACK delete share")
        if response.status_code == protocol.NOT_FOUND:
            return
        protocol.raise_for_status(response, "STACK delete share")

    async def list_shares(self, node_id: int) -> list[dict]:
        response = await self._request(
            "GET", "/node-shares", "STACK list shares", params={"nodeID": node_id, "type": "Public"}
        )
        if response.status_code == protocol.NOT_FOUND:
            return []
        protocol.raise_for_status(response, "STACK list shares")
        return response.json().get("shares") or []

    async def get_share(self, share_id: int) -> dict:
        response = await self._request("GET", f"/node-shares/{share_id}", "STACK get share")
        protocol.raise_for_status(response, "STACK get share")
        return response.json()

    async def authorize_share(self, url_token: str) -> str:
        """Exchange a share's public url token for its bearer share token."""
        operation = "STACK authorize share"
        response = await self._send(
            "POST", f"/share/{url_token}", operation, {"Content-Type": "application/json"}, json={}
        )
        protocol.raise_for_status(response, operation)
        return protocol.require_header(response, protocol.SHARE_TOKEN, operation)

    async def create_public_share(self, node_id: int) -> PublicShare:
        """Create a password-free, read-only share for a node.

        The share is created read-only with an empty password and then updated
        explicitly, since the backend may apply account defaults on creation.
        When that update fails, strict mode deletes the share and raises;
        lenient mode returns it flagged as degraded.
        """
        share = await self.create_share(node_id, PUBLIC_READ, password="")
        try:
            await self.update_share(share.share_id, PUBLIC_READ, password="")
        except StackError as e:
            if self.strict_share_hardening:
                try:
                    await self.delete_share(share.share_id)
                except StackError:
                    logger.warning(
                        "Failed to delete share after hardening failure",
                        extra={"share_id": share.share_id, "node_id": node_id},
                        exc_info=True,
                    )
                raise ShareHardeningError(
                    f"Share {share.share_id} for node {node_id} could not be made password-free and read-only: {e}"
                ) from e
            logger.warning(
                "Share hardening failed, returning degraded share",
                extra={"share_id": share.share_id, "node_id": node_id, "error": str(e)},
            )
            return PublicShare(share.share_id, share.url_token, degraded=True)
        return PublicShare(share.share_id, share.url_token)

    async def find_reusable_share(self, node_id: int) -> Optional[str]:
        """Return the url token of an existing password-free public share.

        Password-protected shares found on the way are deleted.
        """
        for existing in await self.list_shares(node_id):
            url_token = existing.get("urlToken")
            share_id = existing.get("id")
            if not url_token or share_id is None:
                continue
            info = await self.get_share(int(share_id))
            if info.get("hasPassword") is False:
                return str(url_token)
            logger.info("Deleting password-protected share", extra={"share_id": share_id, "node_id": node_id})
            await self.delete_share(int(share_id))
        return None

    async def share_node(self, node_id: int) -> str:
        """Return a public URL for a node, reusing a suitable share if present."""
        url_token = await self.find_reusable_share(node_id)
        if url_token is None:
            url_token = (await self.create_public_share(node_id)).url_token
        return self.share_url(url_token)

    @property
    def share_base_url(self) -> str:
        if self._share_base_url:
            return self._share_base_url
        parsed = httpx.URL(self.base_url)
        if parsed.host:
            return f"{parsed.scheme}://{parsed.netloc.decode('ascii')}/s"
        return "/s"

    def share_url(self, url_token: str) -> str:
        return f"{self.share_base_url}/{url_token}"


def _prepare_body(content: UploadContent, size: Optional[int]):
    """Return (body, size, replayable) for an upload request."""
    if isinstance(content, (bytes, bytearray, memoryview)):
        data = bytes(content)
        return data, len(data), True
    if hasattr(content, "read"):
        if size is None:
            size = as_byte_source(content).size
        return _iter_file(content), size, False
    if hasattr(content, "__aiter__"):
        if size is None:
            raise ValueError("size is required when uploading from an async iterable")
        return content, size, False
    raise TypeError(f"Unsupported upload content: {type(content).__name__}")


async def _iter_file(fileobj: BinaryIO) -> AsyncIterator[bytes]:
    while chunk := fileobj.read(_STREAM_CHUNK):
        yield chunk
