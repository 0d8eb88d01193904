from __future__ import annotations

import time
from typing import Callable, Optional

EPSILON = 1e-6


class TransferStats:
    """Counters for a single transfer. Owned by exactly one session."""

    __slots__ = (
        "_clock",
        "start_time",
        "end_time",
        "bytes_transferred",
        "blocks_sent",
        "blocks_received",
        "retransmissions",
    )

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.bytes_transferred = 0
        self.blocks_sent = 0
        self.blocks_received = 0
        self.retransmissions = 0

    def __str__(self) -> str:
        return f"<{self.__class__.__name__} {self.report()}>"

    def start(self) -> None:
        self.start_time = self._clock()

    def stop(self) -> None:
        if self.start_time is None:
            self.start()
        self.end_time = self._clock()

    @property
    def duration(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return max(0.0, self.end_time - self.start_time)

    @property
    def throughput(self) -> Optional[float]:
        """Bytes per second, or None when nothing was timed or moved."""
        duration = self.duration
        if duration <= 0 or self.bytes_transferred == 0:
            return None
        return self.bytes_transferred / max(duration, EPSILON)

    def report(self) -> str:
        throughput = self.throughput
        if throughput is None:
            rate = "throughput: n/a"
        else:
            rate = f"throughput: {throughput:.2f} bytes/second"
        return (
            f"{self.bytes_transferred} bytes, "
            f"{self.blocks_sent} blocks sent, "
            f"{self.blocks_received} blocks received, "
            f"{self.retransmissions} retransmissions, "
            f"duration: {self.duration:.2f} seconds, {rate}"
        )
