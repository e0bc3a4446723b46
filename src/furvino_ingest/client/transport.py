"""Transport between the chunk scheduler and the upload-session endpoints."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx

from furvino_ingest.core.exceptions import UploadRequestError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    upload_id: str
    part_size: int
    filename: str
    target_folder: str
    stack_path: str


@dataclass(frozen=True)
class SessionStatus:
    part_size: int
    parts: list[int] = field(default_factory=list)
    stack_path: Optional[str] = None


@dataclass(frozen=True)
class CompletedUpload:
    stack_path: str
    share_url: Optional[str] = None


class PartTransport(ABC):
    """Operations the scheduler needs from an upload-session server."""

    @abstractmethod
    async def init(
        self, target_folder: str, filename: str, total_size: int, part_size: Optional[int] = None
    ) -> SessionInfo:
        """Open an upload session."""

    @abstractmethod
    async def upload_part(self, upload_id: str, part_number: int, data: bytes) -> None:
        """Send one part; re-sending a part number replaces it."""

    @abstractmethod
    async def status(self, upload_id: str) -> SessionStatus:
        """Report the parts received so far."""

    @abstractmethod
    async def complete(self, upload_id: str, total_parts: int) -> CompletedUpload:
        """Ask the server to assemble the parts."""

    async def aclose(self) -> None:
        return None


class HttpPartTransport(PartTransport):
    """PartTransport over the ``/uploads`` HTTP surface."""

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        headers: Optional[dict] = None,
        timeout: float = 300,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise UploadRequestError(operation, None, str(e)) from e
        if not response.is_success:
            raise UploadRequestError(operation, response.status_code, response.text)
        return response

    async def init(
        self, target_folder: str, filename: str, total_size: int, part_size: Optional[int] = None
    ) -> SessionInfo:
        payload = {"targetFolder": target_folder, "filename": filename, "totalSize": total_size}
        if part_size:
            payload["partSize"] = part_size
        data = (await self._call("POST", "/uploads/init", "Upload init", json=payload)).json()
        return SessionInfo(
            upload_id=data["uploadId"],
            part_size=int(data["partSize"]),
            filename=data["filename"],
            target_folder=data["targetFolder"],
            stack_path=data["stackPath"],
        )

    async def upload_part(self, upload_id: str, part_number: int, data: bytes) -> None:
        await self._call(
            "PUT",
            f"/uploads/{upload_id}/part",
            f"Part {part_number}",
            params={"part": part_number},
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )

    async def status(self, upload_id: str) -> SessionStatus:
        data = (await self._call("GET", f"/uploads/{upload_id}/status", "Upload status")).json()
        meta = data.get("meta") or {}
        return SessionStatus(
            part_size=int(meta["partSize"]),
            parts=sorted(int(p) for p in data.get("parts") or []),
            stack_path=meta.get("stackPath"),
        )

    async def complete(self, upload_id: str, total_parts: int) -> CompletedUpload:
        data = (
            await self._call(
                "POST", f"/uploads/{upload_id}/complete", "Upload complete", json={"totalParts": total_parts}
            )
        ).json()
        return CompletedUpload(stack_path=data["stackPath"], share_url=data.get("shareUrl"))
