"""Filesystem-backed staging for multi-part uploads.

Each upload session owns a directory under ``<root>/<prefix>/.parts/<id>``
holding ``meta.json`` and one ``part-<N>`` file per received part. Parts may
arrive in any order and may be re-sent; every write replaces the previous
content for that part number. ``finalize`` concatenates the parts in ascending
numeric order into the permanent location and removes the staging directory.
"""

import asyncio
import json
import logging
import math
import os
import re
import shutil
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterable, Callable, Iterable, Optional, Union

from furvino_ingest.core.exceptions import (
    IncompleteUploadError,
    InvalidPartNumberError,
    UploadAlreadyFinalizingError,
    UploadNotFoundError,
)
from furvino_ingest.storage.paths import normalize_target_folder, sanitize_filename

logger = logging.getLogger(__name__)

PartBody = Union[bytes, Iterable[bytes], AsyncIterable[bytes]]

_PART_FILE = re.compile(r"^part-(\d+)$")
_UPLOAD_ID = re.compile(r"^[A-Za-z0-9-]{1,64}$")
_COPY_BUFFER = 1024 * 1024
_FINALIZING_MARKER = ".finalizing"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UploadMeta:
    """Metadata persisted for an in-progress upload session."""

    id: str
    filename: str
    sanitized_filename: str
    target_folder: str
    part_size: int
    created_at: datetime
    total_size: Optional[int] = None

    def to_json(self) -> str:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return json.dumps(data, indent=2)

    @classmethod
    def from_json(cls, raw: str) -> "UploadMeta":
        data = json.loads(raw)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)

    @property
    def expected_parts(self) -> Optional[int]:
        """Part count implied by total_size, when the client announced one."""
        if not self.total_size:
            return None
        return math.ceil(self.total_size / self.part_size)


@dataclass
class InitUploadResult:
    upload_id: str
    part_size: int
    filename: str
    target_folder: str
    stack_path: str


@dataclass
class FinalizeResult:
    """Outcome of assembling an upload into the permanent storage root."""

    upload_id: str
    stack_path: str
    final_path: str
    size_bytes: int
    total_parts: int
    completed_at: datetime

    def to_json(self) -> str:
        data = asdict(self)
        data["completed_at"] = self.completed_at.isoformat()
        return json.dumps(data, indent=2)

    @classmethod
    def from_json(cls, raw: str) -> "FinalizeResult":
        data = json.loads(raw)
        data["completed_at"] = datetime.fromisoformat(data["completed_at"])
        return cls(**data)


def _write_chunks(f, chunks) -> int:
    written = 0
    for chunk in chunks:
        f.write(chunk)
        written += len(chunk)
    return written


class UploadStaging:
    """Staging area for chunked uploads under a mounted storage root."""

    def __init__(
        self,
        root: Union[str, Path],
        prefix: str = "furvino",
        files_root: str = "files",
        default_part_size: int = 8 * 1024 * 1024,
        min_part_size: int = 1024 * 1024,
        max_part_size: int = 128 * 1024 * 1024,
        session_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.root = Path(root)
        self.prefix = prefix.strip("/")
        self.files_root = files_root.strip("/")
        self.default_part_size = default_part_size
        self.min_part_size = min_part_size
        self.max_part_size = max_part_size
        self.session_ttl = session_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "UploadStaging":
        return cls(
            root=settings.STORAGE_ROOT,
            prefix=settings.STACK_PREFIX,
            files_root=settings.STACK_FILES_ROOT,
            default_part_size=settings.default_part_size_bytes,
            min_part_size=settings.min_part_size_bytes,
            max_part_size=settings.max_part_size_bytes,
            session_ttl=timedelta(seconds=settings.session_ttl_seconds),
        )

    # Layout ----------------------------------------------------------------

    @property
    def base_path(self) -> Path:
        return self.root / self.prefix

    @property
    def parts_root(self) -> Path:
        return self.base_path / ".parts"

    @property
    def completed_root(self) -> Path:
        return self.base_path / ".completed"

    def _session_dir(self, upload_id: str) -> Path:
        if not _UPLOAD_ID.match(upload_id):
            raise UploadNotFoundError(f"Upload {upload_id!r} not found")
        return self.parts_root / upload_id

    def _part_path(self, upload_id: str, part_number: int) -> Path:
        return self._session_dir(upload_id) / f"part-{part_number}"

    def _completed_record(self, upload_id: str) -> Path:
        return self.completed_root / f"{upload_id}.json"

    def stack_path_for(self, target_folder: str, filename: str) -> str:
        """Absolute backend path (``/files/<prefix>/<folder>/<name>``) of a final file."""
        segments = [self.files_root, self.prefix, target_folder, filename]
        return "/" + "/".join(segment for segment in segments if segment)

    def final_path_for(self, target_folder: str, filename: str) -> Path:
        folder = self.base_path / target_folder if target_folder else self.base_path
        return folder / filename

    def resolve_part_size(self, requested: Optional[int]) -> int:
        """Clamp a client-suggested part size into the allowed range."""
        if not requested or requested <= 0:
            return self.default_part_size
        return max(self.min_part_size, min(requested, self.max_part_size))

    # Sessions --------------------------------------------------------------

    def init_upload(
        self,
        target_folder: str,
        filename: str,
        total_size: Optional[int] = None,
        part_size: Optional[int] = None,
    ) -> InitUploadResult:
        """Create a staging directory and persist the session metadata.

        Raises:
            InvalidTargetFolderError: If target_folder escapes the storage root
        """
        safe_folder = normalize_target_folder(target_folder)
        safe_filename = sanitize_filename(filename)
        resolved_part_size = self.resolve_part_size(part_size)
        upload_id = str(uuid.uuid4())

        meta = UploadMeta(
            id=upload_id,
            filename=filename,
            sanitized_filename=safe_filename,
            target_folder=safe_folder,
            part_size=resolved_part_size,
            total_size=total_size,
            created_at=self._clock(),
        )

        session_dir = self._session_dir(upload_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        (session_dir / "meta.json").write_text(meta.to_json(), encoding="utf-8")

        logger.info(
            "Upload session initialized",
            extra={
                "upload_id": upload_id,
                "target_folder": safe_folder,
                "upload_filename": safe_filename,
                "part_size": resolved_part_size,
                "total_size": total_size,
            },
        )

        return InitUploadResult(
            upload_id=upload_id,
            part_size=resolved_part_size,
            filename=safe_filename,
            target_folder=safe_folder,
            stack_path=self.stack_path_for(safe_folder, safe_filename),
        )

    def get_meta(self, upload_id: str) -> UploadMeta:
        """Load session metadata.

        Raises:
            UploadNotFoundError: If the session is unknown, cleaned up, or expired
        """
        meta_path = self._session_dir(upload_id) / "meta.json"
        try:
            meta = UploadMeta.from_json(meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise UploadNotFoundError(f"Upload {upload_id} not found") from None
        if self._is_expired(meta.created_at):
            raise UploadNotFoundError(f"Upload {upload_id} has expired")
        return meta

    def _is_expired(self, created_at: datetime) -> bool:
        return self._clock() - created_at > self.session_ttl

    def list_received_parts(self, upload_id: str) -> list[int]:
        """Return the part numbers received so far, ascending."""
        session_dir = self._session_dir(upload_id)
        if not session_dir.is_dir():
            return []
        parts = []
        for entry in session_dir.iterdir():
            match = _PART_FILE.match(entry.name)
            if match:
                parts.append(int(match.group(1)))
        parts.sort()
        return parts

    async def write_part(self, upload_id: str, part_number: int, body: PartBody) -> int:
        """Stream one part to disk, replacing any earlier copy of it.

        The bytes go to a temporary file that is renamed over ``part-<N>`` once
        complete, so a broken transfer never looks like a received part.

        Returns:
            Number of bytes written
        """
        if not isinstance(part_number, int) or isinstance(part_number, bool) or part_number <= 0:
            raise InvalidPartNumberError(f"Invalid part number: {part_number!r}")

        self.get_meta(upload_id)

        part_path = self._part_path(upload_id, part_number)
        tmp_path = part_path.with_name(f"{part_path.name}.{uuid.uuid4().hex}.tmp")
        written = 0
        try:
            with open(tmp_path, "wb") as f:
                if isinstance(body, (bytes, bytearray, memoryview)):
                    await asyncio.to_thread(f.write, body)
                    written = len(body)
                elif hasattr(body, "__aiter__"):
                    async for chunk in body:
                        await asyncio.to_thread(f.write, chunk)
                        written += len(chunk)
                else:
                    written = await asyncio.to_thread(_write_chunks, f, body)
            os.replace(tmp_path, part_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug(
            "Stored upload part",
            extra={"upload_id": upload_id, "part_number": part_number, "size_bytes": written},
        )
        return written

    # Assembly --------------------------------------------------------------

    def get_completed(self, upload_id: str) -> Optional[FinalizeResult]:
        """Return the completion record of an already finalized session."""
        record = self._completed_record(upload_id)
        try:
            return FinalizeResult.from_json(record.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    async def finalize(self, upload_id: str, expected_total_parts: Optional[int] = None) -> FinalizeResult:
        """Verify completeness, assemble the parts, and clear the staging area.

        Calling finalize again for a session that already completed returns the
        recorded result. A concurrent second call fails fast instead of
        assembling twice.

        Raises:
            UploadNotFoundError: If the session does not exist
            IncompleteUploadError: If parts are missing or the count mismatches
            UploadAlreadyFinalizingError: If another finalize is running
        """
        session_dir = self._session_dir(upload_id)
        completed = self.get_completed(upload_id)
        if completed is not None:
            logger.info("Upload already finalized", extra={"upload_id": upload_id})
            return completed

        meta = self.get_meta(upload_id)

        marker = session_dir / _FINALIZING_MARKER
        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise UploadAlreadyFinalizingError(f"Upload {upload_id} is already being finalized") from None
        os.close(fd)

        try:
            parts = self._verify_parts(meta, expected_total_parts)
            final_path = self.final_path_for(meta.target_folder, meta.sanitized_filename)

            logger.info(
                f"Assembling {len(parts)} parts",
                extra={"upload_id": upload_id, "final_path": str(final_path)},
            )
            size_bytes = await asyncio.to_thread(
                self._assemble, upload_id, parts, final_path, meta.total_size
            )

            result = FinalizeResult(
                upload_id=upload_id,
                stack_path=self.stack_path_for(meta.target_folder, meta.sanitized_filename),
                final_path=str(final_path),
                size_bytes=size_bytes,
                total_parts=len(parts),
                completed_at=self._clock(),
            )
            self.completed_root.mkdir(parents=True, exist_ok=True)
            self._completed_record(upload_id).write_text(result.to_json(), encoding="utf-8")
        except BaseException:
            marker.unlink(missing_ok=True)
            raise

        shutil.rmtree(session_dir, ignore_errors=True)
        if session_dir.exists():
            logger.warning("Failed to remove staging directory", extra={"upload_id": upload_id})

        logger.info(
            "Upload assembled",
            extra={
                "upload_id": upload_id,
                "stack_path": result.stack_path,
                "size_bytes": size_bytes,
                "total_parts": len(parts),
            },
        )
        return result

    def _verify_parts(self, meta: UploadMeta, expected_total_parts: Optional[int]) -> list[int]:
        parts = self.list_received_parts(meta.id)
        if not parts:
            raise IncompleteUploadError("No parts uploaded")
        if expected_total_parts is not None and len(parts) != expected_total_parts:
            raise IncompleteUploadError(
                f"Incomplete upload: received {len(parts)} of {expected_total_parts} parts"
            )
        missing = sorted(set(range(1, parts[-1] + 1)) - set(parts))
        if missing:
            raise IncompleteUploadError(f"Incomplete upload: missing parts {missing}")
        return parts

    def _assemble(
        self, upload_id: str, parts: list[int], final_path: Path, expected_size: Optional[int] = None
    ) -> int:
        """Concatenate the parts next to ``final_path`` and rename into place.

        A size mismatch is detected before the rename, so an existing file at
        ``final_path`` is left untouched.
        """
        final_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = final_path.with_name(f".{final_path.name}.{upload_id}.assembling")
        size = 0
        try:
            with open(tmp_path, "wb") as out:
                for part_number in parts:
                    with open(self._part_path(upload_id, part_number), "rb") as part:
                        shutil.copyfileobj(part, out, _COPY_BUFFER)
                size = out.tell()
            if expected_size is not None and size != expected_size:
                raise IncompleteUploadError(
                    f"Incomplete upload: assembled {size} bytes, expected {expected_size}"
                )
            os.replace(tmp_path, final_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return size

    # Housekeeping ----------------------------------------------------------

    def purge_expired(self) -> list[str]:
        """Delete staging directories and completion records past the TTL."""
        purged: list[str] = []
        if self.parts_root.is_dir():
            for session_dir in self.parts_root.iterdir():
                if not session_dir.is_dir():
                    continue
                meta_path = session_dir / "meta.json"
                try:
                    created_at = UploadMeta.from_json(meta_path.read_text(encoding="utf-8")).created_at
                except (FileNotFoundError, ValueError, KeyError, TypeError):
                    created_at = datetime.fromtimestamp(session_dir.stat().st_mtime, tz=timezone.utc)
                if self._is_expired(created_at):
                    shutil.rmtree(session_dir, ignore_errors=True)
                    purged.append(session_dir.name)

        if self.completed_root.is_dir():
            for record in self.completed_root.glob("*.json"):
                modified = datetime.fromtimestamp(record.stat().st_mtime, tz=timezone.utc)
                if self._is_expired(modified):
                    record.unlink(missing_ok=True)

        if purged:
            logger.info(f"Purged {len(purged)} expired upload sessions", extra={"upload_ids": purged})
        return purged
