"""
Event recorder for netup.
Drains probe events into the ordered store, exports settled history to
CSV and classifies probes as delivered, pending or lost.
"""

import logging
import threading
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from ..core.clock import Clock, now_ms
from ..core.events import EventChannel, NetupEvent, ReceivedEvent, SentEvent
from ..core.exceptions import StoreOrderError
from .store import OrderedStore, TrackedRecord


class ProbeStatus(Enum):
    """Outcome of a probe as seen at a given moment."""
    DELIVERED = 'delivered'
    PENDING = 'pending'
    LOST = 'lost'


def classify(record: TrackedRecord, now: int, max_delay: int) -> ProbeStatus:
    """
    Classify a probe at time ``now``.

    A probe is lost when its echo took longer than max_delay, or when no
    echo has arrived and more than max_delay has passed since sending.
    """
    if record.received_time is not None:
        if record.received_time - record.sent_time > max_delay:
            return ProbeStatus.LOST
        return ProbeStatus.DELIVERED
    if now - record.sent_time > max_delay:
        return ProbeStatus.LOST
    return ProbeStatus.PENDING


class Recorder:
    """Feeds an OrderedStore from an EventChannel."""

    def __init__(self,
                 events: EventChannel,
                 store: Optional[OrderedStore] = None,
                 export_path: Optional[Path] = None,
                 export_interval: float = 1.0,
                 max_delay_ms: int = 500,
                 retain_ms: int = 600000,
                 clock: Clock = now_ms):
        self.events = events
        self.store = store if store is not None else OrderedStore()
        self.export_path = Path(export_path) if export_path else None
        self.export_interval = export_interval
        self.max_delay_ms = max_delay_ms
        self.retain_ms = retain_ms
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.lock = threading.Lock()
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.exported = 0
        self.failure: Optional[BaseException] = None

    def start(self) -> None:
        """Start draining events in a background thread."""
        if self._running.is_set():
            self.logger.warning("Recorder already running")
            return

        self._running.set()
        self._thread = threading.Thread(target=self._run, name="netup-recorder", daemon=True)
        self._thread.start()

        self.logger.info("Recorder started")

    def stop(self) -> None:
        """Stop the recorder, draining and exporting what is left."""
        self._running.clear()

        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

        if self.failure is None:
            self.poll()
        self.export(flush_all=True)
        self.logger.info("Recorder stopped")

    def _run(self) -> None:
        """Main recorder loop."""
        try:
            self._loop()
        except StoreOrderError as e:
            self.failure = e
            self._running.clear()
            self.logger.critical(f"Probe history out of order: {e}")
            raise

    def _loop(self) -> None:
        next_export = self.clock() + int(self.export_interval * 1000)
        while self._running.is_set():
            event = self.events.get(timeout=0.1)
            if event is not None:
                self.handle(event)
                self.poll()

            now = self.clock()
            if now >= next_export:
                self.export(now)
                self.compact(now)
                next_export = now + int(self.export_interval * 1000)

    def handle(self, event: NetupEvent) -> None:
        """Apply a single event to the store."""
        with self.lock:
            if isinstance(event, SentEvent):
                self.store.insert_sent(TrackedRecord(event.index, event.sent_time))
            elif isinstance(event, ReceivedEvent):
                self.store.mark_received(event.index, event.received_time)
            else:
                raise TypeError(f"Unknown event type: {type(event).__name__}")

    def poll(self) -> int:
        """Apply every queued event. Returns how many were handled."""
        events = self.events.drain()
        for event in events:
            self.handle(event)
        return len(events)

    def export(self, now: Optional[int] = None, flush_all: bool = False) -> int:
        """
        Append settled records to the export file.

        A record is settled once more than max_delay has passed since it was sent,
        so its outcome can no longer change. flush_all exports everything.
        """
        if self.export_path is None:
            return 0

        until = None
        if not flush_all:
            now = self.clock() if now is None else now
            until = now - self.max_delay_ms - 1

        try:
            self.export_path.parent.mkdir(parents=True, exist_ok=True)
            with self.lock, open(self.export_path, 'a', newline='') as sink:
                count = self.store.export_new(sink, write_header_if_empty=True, until=until)
        except OSError as e:
            self.logger.error(f"Failed to export history to {self.export_path}: {e}")
            return 0

        self.exported += count
        if count:
            self.logger.debug(f"Exported {count} records to {self.export_path}")
        return count

    def compact(self, now: Optional[int] = None) -> int:
        """Drop exported records older than the retention window."""
        if self.export_path is None:
            return 0
        now = self.clock() if now is None else now
        with self.lock:
            return self.store.compact(now - self.retain_ms)

    def window(self, lookback_ms: int, now: Optional[int] = None) -> Tuple[TrackedRecord, ...]:
        """Copies of the records sent within the last lookback_ms."""
        now = self.clock() if now is None else now
        with self.lock:
            return tuple(replace(record) for record in self.store.window(now, lookback_ms))

    def lost(self, now: Optional[int] = None,
             lookback_ms: Optional[int] = None) -> List[TrackedRecord]:
        """Records classified as lost at ``now``."""
        now = self.clock() if now is None else now
        if lookback_ms is None:
            with self.lock:
                records = tuple(replace(record) for record in self.store)
        else:
            records = self.window(lookback_ms, now)
        return [r for r in records
                if classify(r, now, self.max_delay_ms) is ProbeStatus.LOST]

    def get_status(self) -> dict:
        """Get current status of the recorder."""
        with self.lock:
            stored = len(self.store)
            watermark = self.store.watermark
        return {
            'running': self._running.is_set(),
            'stored': stored,
            'exported': self.exported,
            'watermark': watermark,
            'export_path': str(self.export_path) if self.export_path else None,
        }
