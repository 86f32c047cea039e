"""
Events emitted by the probe client.

The client is the only producer. Consumers (recorder, monitor, tests)
drain the channel at their own pace; publishing never blocks.
"""

import queue
from dataclasses import dataclass
from typing import List, Optional, Union


@dataclass(frozen=True)
class SentEvent:
    """A probe left the client"""
    index: int
    sent_time: int


@dataclass(frozen=True)
class ReceivedEvent:
    """A verified echo came back to the client"""
    index: int
    received_time: int
    sent_time: int

    @property
    def delay(self) -> int:
        """Round-trip delay in milliseconds."""
        return self.received_time - self.sent_time


NetupEvent = Union[SentEvent, ReceivedEvent]


class EventChannel:
    """Unbounded thread-safe queue of NetupEvents."""

    def __init__(self):
        self._queue: "queue.SimpleQueue[NetupEvent]" = queue.SimpleQueue()

    def publish(self, event: NetupEvent) -> None:
        self._queue.put_nowait(event)

    def get(self, timeout: Optional[float] = None) -> Optional[NetupEvent]:
        """Wait for the next event; None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self, limit: Optional[int] = None) -> List[NetupEvent]:
        """Return every queued event (up to limit) without blocking."""
        events = []
        while limit is None or len(events) < limit:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return events

    def empty(self) -> bool:
        return self._queue.empty()

    def __len__(self) -> int:
        return self._queue.qsize()
