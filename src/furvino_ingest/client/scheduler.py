"""Parallel chunked upload scheduler.

Splits a byte source into fixed-size parts and uploads them through a
PartTransport with at most ``concurrency`` parts in flight. Each part is
retried with exponential backoff and jitter; once a part exhausts its retries
no new parts are started, parts already in flight are allowed to finish, and
the upload fails with the first fatal error.
"""

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

from furvino_ingest.client.progress import (
    ProgressCallback,
    ProgressEvent,
    StatsCallback,
    ThroughputMeter,
    ThroughputSample,
)
from furvino_ingest.client.transport import PartTransport
from furvino_ingest.core.exceptions import (
    InvalidUploadOptionsError,
    UploadCancelledError,
    UploadFailedError,
)
from furvino_ingest.sources import ByteSource, as_byte_source

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8
MAX_CONCURRENCY = 64


@dataclass(frozen=True)
class RetryPolicy:
    """Per-part retry budget: ``retries`` extra attempts after the first."""

    retries: int = 3
    backoff_ms: int = 500
    backoff_factor: float = 2.0
    jitter_ms: int = 100


@dataclass(frozen=True)
class UploadResult:
    upload_id: str
    stack_path: str
    total_parts: int
    total_bytes: int
    share_url: Optional[str] = None


def _is_retryable(exc: BaseException) -> bool:
    # Cancellation is never retried; errors without a retryable flag (e.g.
    # timeouts raised by a custom transport) are treated as transient
    if not isinstance(exc, Exception):
        return False
    return getattr(exc, "retryable", True)


class _UploadState:
    def __init__(self, total_bytes: int, total_parts: int):
        self.total_bytes = total_bytes
        self.total_parts = total_parts
        self.uploaded_bytes = 0
        self.uploaded_parts = 0
        self.in_flight = 0
        self.failure: Optional[UploadFailedError] = None

    def progress(self) -> ProgressEvent:
        return ProgressEvent(self.uploaded_bytes, self.total_bytes, self.uploaded_parts, self.total_parts)


class ChunkScheduler:
    """Drives concurrent part uploads for one file at a time."""

    def __init__(
        self,
        transport: PartTransport,
        concurrency: int = DEFAULT_CONCURRENCY,
        part_size: Optional[int] = None,
        retry: RetryPolicy = RetryPolicy(),
        on_progress: Optional[ProgressCallback] = None,
        on_stats: Optional[StatsCallback] = None,
        stats_interval: float = 0.5,
        max_concurrency: int = MAX_CONCURRENCY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not isinstance(concurrency, int) or not 1 <= concurrency <= max_concurrency:
            raise InvalidUploadOptionsError(f"concurrency must be between 1 and {max_concurrency}, got {concurrency}")
        if part_size is not None and part_size <= 0:
            raise InvalidUploadOptionsError(f"part_size must be positive, got {part_size}")
        if retry.retries < 0:
            raise InvalidUploadOptionsError("retries cannot be negative")

        self.transport = transport
        self.concurrency = concurrency
        self.part_size = part_size
        self.retry = retry
        self.on_progress = on_progress
        self.on_stats = on_stats
        self.stats_interval = stats_interval
        self._sleep = sleep

    async def upload(
        self,
        source,
        target_folder: str,
        filename: str,
        cancel_event: Optional[asyncio.Event] = None,
        upload_id: Optional[str] = None,
    ) -> UploadResult:
        """Upload a whole file and finalize it on the server.

        Passing ``upload_id`` resumes an earlier session: parts the server
        already holds are skipped.

        Raises:
            UploadFailedError: If a part fails fatally or exhausts its retries
            UploadCancelledError: If ``cancel_event`` is set before completion
        """
        byte_source = as_byte_source(source)
        _raise_if_cancelled(cancel_event)

        received: Iterable[int] = ()
        if upload_id:
            status = await self.transport.status(upload_id)
            part_size = status.part_size
            received = status.parts
            logger.info(
                "Resuming upload",
                extra={"upload_id": upload_id, "received_parts": len(status.parts)},
            )
        else:
            session = await self.transport.init(target_folder, filename, byte_source.size, self.part_size)
            upload_id = session.upload_id
            part_size = session.part_size

        total_parts = max(1, math.ceil(byte_source.size / part_size))
        await self.upload_parts(upload_id, byte_source, part_size, total_parts, received, cancel_event)

        _raise_if_cancelled(cancel_event)
        completed = await self.transport.complete(upload_id, total_parts)
        logger.info(
            "Upload completed",
            extra={"upload_id": upload_id, "stack_path": completed.stack_path, "total_parts": total_parts},
        )
        return UploadResult(
            upload_id=upload_id,
            stack_path=completed.stack_path,
            total_parts=total_parts,
            total_bytes=byte_source.size,
            share_url=completed.share_url,
        )

    async def upload_parts(
        self,
        upload_id: str,
        source: ByteSource,
        part_size: int,
        total_parts: int,
        skip: Iterable[int] = (),
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Upload parts 1..total_parts, except those in ``skip``."""
        skipped = set(skip)
        queue = deque(n for n in range(1, total_parts + 1) if n not in skipped)
        state = _UploadState(source.size, total_parts)
        for part_number in skipped:
            if 1 <= part_number <= total_parts:
                state.uploaded_bytes += _part_length(part_number, part_size, source.size)
                state.uploaded_parts += 1

        meter = ThroughputMeter()
        workers = [
            asyncio.create_task(self._worker(upload_id, source, part_size, queue, state, meter))
            for _ in range(min(self.concurrency, len(queue)))
        ]
        stats_task = asyncio.create_task(self._report_stats(state, meter)) if self.on_stats else None
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event else None

        try:
            waiting = set(workers) | ({cancel_task} if cancel_task else set())
            while not all(worker.done() for worker in workers):
                _, waiting = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if cancel_event is not None and cancel_event.is_set():
                    await _cancel_all(workers)
                    logger.info("Upload cancelled", extra={"upload_id": upload_id})
                    raise UploadCancelledError(f"Upload {upload_id} was cancelled")
            for worker in workers:
                worker.result()
        except asyncio.CancelledError:
            await _cancel_all(workers)
            raise
        finally:
            for task in (stats_task, cancel_task):
                if task is not None:
                    task.cancel()

        if state.failure is not None:
            logger.error(
                "Upload aborted",
                extra={"upload_id": upload_id, "part_number": state.failure.part_number, "error": str(state.failure)},
            )
            raise state.failure

    async def _worker(
        self,
        upload_id: str,
        source: ByteSource,
        part_size: int,
        queue: deque,
        state: _UploadState,
        meter: ThroughputMeter,
    ) -> None:
        while queue and state.failure is None:
            part_number = queue.popleft()
            state.in_flight += 1
            try:
                length = await self._upload_part(upload_id, source, part_size, part_number)
            except UploadFailedError as e:
                if state.failure is None:
                    state.failure = e
                return
            finally:
                state.in_flight -= 1

            state.uploaded_bytes += length
            state.uploaded_parts += 1
            meter.update(state.uploaded_bytes)
            if self.on_progress:
                self.on_progress(state.progress())

    async def _upload_part(self, upload_id: str, source: ByteSource, part_size: int, part_number: int) -> int:
        offset = (part_number - 1) * part_size
        policy = self.retry
        attempts = 0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.retries + 1),
            wait=wait_exponential(multiplier=policy.backoff_ms / 1000, exp_base=policy.backoff_factor)
            + wait_random(0, policy.jitter_ms / 1000),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            data = await source.read_range(offset, _part_length(part_number, part_size, source.size))
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    if attempts > 1:
                        logger.warning(
                            f"Retrying part {part_number}",
                            extra={"upload_id": upload_id, "part_number": part_number, "attempt": attempts},
                        )
                    await self.transport.upload_part(upload_id, part_number, data)
        except Exception as e:
            raise UploadFailedError(
                f"Part {part_number} failed after {attempts} attempt(s): {e}",
                part_number=part_number,
                attempts=attempts,
            ) from e
        return len(data)

    async def _report_stats(self, state: _UploadState, meter: ThroughputMeter) -> None:
        while True:
            self.on_stats(
                ThroughputSample(
                    allowed=self.concurrency,
                    in_flight=state.in_flight,
                    uploaded_bytes=state.uploaded_bytes,
                    total_bytes=state.total_bytes,
                    mbps=meter.mbps(state.uploaded_bytes),
                )
            )
            await asyncio.sleep(self.stats_interval)


def _part_length(part_number: int, part_size: int, total_size: int) -> int:
    offset = (part_number - 1) * part_size
    return max(0, min(part_size, total_size - offset))


def _raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise UploadCancelledError("Upload was cancelled")


async def _cancel_all(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
