"""Progress events and throughput sampling for uploads."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

MIB = 1024 * 1024


@dataclass(frozen=True)
class ProgressEvent:
    uploaded_bytes: int
    total_bytes: int
    uploaded_parts: int
    total_parts: int

    @property
    def percent(self) -> float:
        if not self.total_bytes:
            return 100.0
        return round(self.uploaded_bytes / self.total_bytes * 100, 1)


@dataclass(frozen=True)
class ThroughputSample:
    """Scheduler snapshot for UI consumption."""

    allowed: int
    in_flight: int
    uploaded_bytes: int
    total_bytes: int
    mbps: float


ProgressCallback = Callable[[ProgressEvent], None]
StatsCallback = Callable[[ThroughputSample], None]


class ThroughputMeter:
    """Average upload speed in MiB/s, smoothed with an exponential moving average."""

    def __init__(self, alpha: float = 0.3, clock: Callable[[], float] = time.monotonic):
        self.alpha = alpha
        self._clock = clock
        self._started = clock()
        self._ema: Optional[float] = None

    def instantaneous(self, uploaded_bytes: int) -> float:
        elapsed = max(self._clock() - self._started, 1e-3)
        return uploaded_bytes / elapsed / MIB

    def update(self, uploaded_bytes: int) -> float:
        current = self.instantaneous(uploaded_bytes)
        if self._ema is None:
            self._ema = current
        else:
            self._ema = self._ema * (1 - self.alpha) + current * self.alpha
        return self._ema

    def mbps(self, uploaded_bytes: int) -> float:
        return self._ema if self._ema is not None else self.instantaneous(uploaded_bytes)
