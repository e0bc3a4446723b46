"""Upload straight into STACK with an upload-only share token.

Used by clients that received share credentials from the application server
and push bytes to the storage backend without routing them through it.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from furvino_ingest.client.progress import ProgressCallback, ProgressEvent
from furvino_ingest.core.exceptions import StackTransportError
from furvino_ingest.sources import as_byte_source
from furvino_ingest.stack import protocol
from furvino_ingest.storage.paths import split_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShareUploadConfig:
    """Credentials handed to a client for direct uploads."""

    share_url_token: str
    share_token: str
    parent_node_id: int
    stack_api_url: str
    expires_at: int = 0


class ShareUploader:
    """Creates directories and uploads files inside an upload-only share."""

    def __init__(
        self,
        config: ShareUploadConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 600,
    ):
        self.config = config
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def needs_renewal(self, margin_seconds: int = 300, now: Optional[float] = None) -> bool:
        """True once the share token is within ``margin_seconds`` of expiring."""
        if not self.config.expires_at:
            return False
        current = time.time() if now is None else now
        return current >= self.config.expires_at - margin_seconds

    @property
    def _share_url(self) -> str:
        return f"{self.config.stack_api_url.rstrip('/')}/share/{self.config.share_url_token}"

    async def _post(self, path: str, operation: str, headers: dict, **kwargs) -> httpx.Response:
        request_headers = {protocol.SHARE_TOKEN: self.config.share_token, **headers}
        try:
            return await self._client.post(f"{self._share_url}{path}", headers=request_headers, **kwargs)
        except httpx.TransportError as e:
            raise StackTransportError(f"{operation}: {e}") from e

    async def _find_directory(self, name: str, parent_id: int) -> Optional[int]:
        try:
            response = await self._client.get(
                f"{self._share_url}/nodes",
                params={"parentID": parent_id, "limit": 100},
                headers={protocol.SHARE_TOKEN: self.config.share_token},
            )
        except httpx.TransportError as e:
            raise StackTransportError(f"STACK share list nodes: {e}") from e
        # Upload-only shares may not be allowed to list; fall through to create
        if not response.is_success:
            return None
        for node in protocol.parse_nodes(response):
            if node.dir and node.name == name:
                return node.id
        return None

    async def ensure_directories(self, target_path: str) -> int:
        """Create ``target_path`` inside the share and return the last node id."""
        parent_id = self.config.parent_node_id
        for name in split_path(target_path):
            existing = await self._find_directory(name, parent_id)
            if existing is not None:
                parent_id = existing
                continue

            operation = f"STACK share create directory {name!r}"
            response = await self._post(
                "/directories",
                operation,
                {"Content-Type": "application/json"},
                json={"parentID": parent_id, "name": name},
            )
            # 409: created concurrently or earlier; the id is still in x-id
            if response.status_code != protocol.CONFLICT:
                protocol.raise_for_status(response, operation)
            parent_id = protocol.require_int_header(response, protocol.NODE_ID, operation)
        return parent_id

    async def upload(
        self,
        content,
        filename: str,
        target_path: Optional[str] = None,
        chunk_size: int = 8 * 1024 * 1024,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Upload ``content`` through a share upload session; returns the node id."""
        source = as_byte_source(content)
        parent_id = await self.ensure_directories(target_path) if target_path else self.config.parent_node_id
        chunk_size = protocol.align_chunk_size(chunk_size)
        total_size = source.size

        operation = f"STACK share upload {filename!r}"
        start = await self._post(
            "/upload/session/start",
            f"{operation} start",
            {
                protocol.FILE_BYTE_SIZE: str(total_size),
                protocol.CHUNK_BYTE_SIZE: str(chunk_size),
                protocol.PARENT_ID: str(parent_id),
                protocol.FILENAME: protocol.encode_filename(filename),
                protocol.OVERWRITE: "true",
            },
        )
        protocol.raise_for_status(start, f"{operation} start")
        session_id = protocol.require_header(start, protocol.UPLOAD_SESSION_ID, f"{operation} start")

        total_chunks = -(-total_size // chunk_size)
        for index in range(total_chunks):
            offset = index * chunk_size
            length = min(chunk_size, total_size - offset)
            chunk = await source.read_range(offset, length)
            response = await self._post(
                "/upload/session/append",
                f"{operation} append",
                {
                    protocol.UPLOAD_SESSION_ID: session_id,
                    protocol.START_OFFSET: str(offset),
                    "Content-Type": "application/octet-stream",
                },
                content=chunk,
            )
            protocol.raise_for_status(response, f"Failed to upload chunk {index + 1}/{total_chunks}")
            if on_progress:
                on_progress(ProgressEvent(offset + length, total_size, index + 1, total_chunks))

        finish = await self._post(
            "/upload/session/finish", f"{operation} finish", {protocol.UPLOAD_SESSION_ID: session_id}
        )
        protocol.raise_for_status(finish, f"{operation} finish")
        node_id = protocol.require_int_header(finish, protocol.FINISHED_NODE_ID, f"{operation} finish")

        logger.info(
            "Uploaded file through share",
            extra={"node_id": node_id, "size_bytes": total_size, "chunks": total_chunks},
        )
        return node_id
