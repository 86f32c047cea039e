"""
Delay and loss statistics for netup.
Summarizes the recorder's recent history and logs it periodically.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..core.clock import Clock, format_timestamp_ms, now_ms
from ..recorder.recorder import ProbeStatus, Recorder, classify
from ..recorder.store import TrackedRecord


@dataclass
class LatencySummary:
    """Rolling statistics over a window of probes. Delays are in ms."""
    sent: int
    delivered: int
    lost: int
    pending: int
    loss_ratio: float
    min_delay: Optional[float] = None
    mean_delay: Optional[float] = None
    median_delay: Optional[float] = None
    p95_delay: Optional[float] = None
    max_delay: Optional[float] = None
    jitter: Optional[float] = None

    def describe(self) -> str:
        text = (
            f"sent={self.sent} delivered={self.delivered} lost={self.lost} "
            f"pending={self.pending} loss={self.loss_ratio:.2%}"
        )
        if self.mean_delay is not None:
            text += (
                f" delay min/mean/p95/max={self.min_delay:.1f}/{self.mean_delay:.1f}/"
                f"{self.p95_delay:.1f}/{self.max_delay:.1f}ms jitter={self.jitter:.2f}ms"
            )
        return text


def summarize(records: Sequence[TrackedRecord], now: int, max_delay: int) -> LatencySummary:
    """Classify every record at ``now`` and compute delay statistics."""
    statuses = [classify(record, now, max_delay) for record in records]
    delivered = [r for r, s in zip(records, statuses) if s is ProbeStatus.DELIVERED]
    lost = statuses.count(ProbeStatus.LOST)
    pending = statuses.count(ProbeStatus.PENDING)

    settled = len(delivered) + lost
    summary = LatencySummary(
        sent=len(records),
        delivered=len(delivered),
        lost=lost,
        pending=pending,
        loss_ratio=lost / settled if settled else 0.0,
    )
    if not delivered:
        return summary

    delays = np.array([r.delay for r in delivered], dtype=np.float64)
    summary.min_delay = float(delays.min())
    summary.mean_delay = float(delays.mean())
    summary.median_delay = float(np.median(delays))
    summary.p95_delay = float(np.percentile(delays, 95))
    summary.max_delay = float(delays.max())
    # Mean absolute change between consecutive delays
    summary.jitter = float(np.abs(np.diff(delays)).mean()) if len(delays) > 1 else 0.0
    return summary


def find_silences(records: Sequence[TrackedRecord], max_silence: int) -> List[Tuple[int, int]]:
    """
    Periods longer than max_silence ms with no echo arriving.

    Returns (start, end) receive-time pairs bounding each gap.
    """
    received = np.sort(np.array(
        [r.received_time for r in records if r.received_time is not None],
        dtype=np.int64,
    ))
    if len(received) < 2:
        return []
    gaps = np.flatnonzero(np.diff(received) > max_silence)
    return [(int(received[i]), int(received[i + 1])) for i in gaps]


class Monitor:
    """Periodically logs a LatencySummary of the recorder's recent history."""

    def __init__(self,
                 recorder: Recorder,
                 lookback_ms: int = 300000,
                 max_silence_ms: int = 50,
                 interval: float = 5.0,
                 clock: Clock = now_ms):
        self.recorder = recorder
        self.lookback_ms = lookback_ms
        self.max_silence_ms = max_silence_ms
        self.interval = interval
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_silence_end: Optional[int] = None

    def start(self) -> None:
        """Start the periodic summary."""
        if self._thread is not None and self._thread.is_alive():
            self.logger.warning("Monitor already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="netup-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the periodic summary."""
        self._stop_event.set()

        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.report()

    def report(self, now: Optional[int] = None) -> LatencySummary:
        """Log the summary of the lookback window and any new silences."""
        now = self.clock() if now is None else now
        records = self.recorder.window(self.lookback_ms, now)
        summary = summarize(records, now, self.recorder.max_delay_ms)
        self.logger.info(f"Last {self.lookback_ms // 1000}s: {summary.describe()}")

        for start, end in find_silences(records, self.max_silence_ms):
            if self._last_silence_end is not None and end <= self._last_silence_end:
                continue
            self.logger.warning(
                f"Silence of {end - start}ms from {format_timestamp_ms(start)} "
                f"to {format_timestamp_ms(end)}"
            )
            self._last_silence_end = end
        return summary
