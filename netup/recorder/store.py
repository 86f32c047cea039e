"""
Ordered history of probes for netup.

Records are kept sorted by send time. The client stamps probes at
strictly increasing clock ticks from a single loop, so appending is
enough to keep the order and keys are unique.
"""

import bisect
import csv
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, TextIO, Tuple

from ..core.exceptions import StoreOrderError

EXPORT_HEADER = ('index', 'sent_time', 'received_time')


@dataclass
class TrackedRecord:
    """History entry for one probe."""
    index: int
    sent_time: int
    received_time: Optional[int] = None

    @property
    def received(self) -> bool:
        return self.received_time is not None

    @property
    def delay(self) -> Optional[int]:
        """Round-trip delay in milliseconds, None until the echo arrives."""
        if self.received_time is None:
            return None
        return self.received_time - self.sent_time

    def to_row(self) -> Tuple[int, int, str]:
        received = '' if self.received_time is None else self.received_time
        return self.index, self.sent_time, received


class FindMode(Enum):
    """Lookup modes for OrderedStore.find."""
    EXACT = 'exact'
    FLOOR = 'floor'
    CEILING = 'ceiling'


class OrderedStore:
    """Probe records ordered by send time with point, range and export support."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._records: List[TrackedRecord] = []
        self._keys: List[int] = []
        self._by_index: Dict[int, TrackedRecord] = {}
        self._watermark: Optional[int] = None
        self._last_key: Optional[int] = None

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[TrackedRecord]:
        return iter(self._records)

    def __getitem__(self, position: int) -> TrackedRecord:
        return self._records[position]

    @property
    def watermark(self) -> Optional[int]:
        """Send time of the last exported record, None before any export."""
        return self._watermark

    @property
    def last_sent_time(self) -> Optional[int]:
        return self._last_key

    def insert_sent(self, record: TrackedRecord) -> None:
        """Append a record. Its send time must exceed every stored key."""
        if self._last_key is not None and record.sent_time <= self._last_key:
            raise StoreOrderError(
                f"Record {record.index} sent at {record.sent_time} does not follow "
                f"last key {self._last_key}"
            )
        self._records.append(record)
        self._keys.append(record.sent_time)
        self._by_index[record.index] = record
        self._last_key = record.sent_time

    def mark_received(self, index: int, received_time: int) -> bool:
        """
        Fill in the receive time of a record.

        Unknown indices and records that already have a receive time are
        left alone; only the first echo of a probe counts.
        """
        record = self._by_index.get(index)
        if record is None:
            self.logger.debug(f"No record for received index {index}")
            return False
        if record.received_time is not None:
            self.logger.debug(f"Ignoring duplicate echo for index {index}")
            return False
        record.received_time = received_time
        return True

    def find(self, target_time: int, mode: FindMode) -> Optional[int]:
        """
        Locate a position by send time.

        EXACT   - position of the record sent at target_time, or None.
        FLOOR   - position of the last record sent at or before target_time,
                  or None when every record is later (or the store is empty).
        CEILING - position of the first record sent after target_time,
                  len(self) when there is none.
        """
        if mode is FindMode.EXACT:
            position = bisect.bisect_left(self._keys, target_time)
            if position < len(self._keys) and self._keys[position] == target_time:
                return position
            return None
        if mode is FindMode.FLOOR:
            position = bisect.bisect_right(self._keys, target_time) - 1
            return position if position >= 0 else None
        if mode is FindMode.CEILING:
            return bisect.bisect_right(self._keys, target_time)
        raise ValueError(f"Unknown find mode: {mode}")

    def range(self, lower_time: int, upper_time: int) -> Tuple[TrackedRecord, ...]:
        """Records sent within [lower_time, upper_time], oldest first."""
        start = bisect.bisect_left(self._keys, lower_time)
        end = self.find(upper_time, FindMode.CEILING)
        return tuple(self._records[start:end])

    def window(self, now: int, lookback: int) -> Tuple[TrackedRecord, ...]:
        """Records sent less than lookback ms before now."""
        return self.range(now - lookback + 1, now)

    def export_new(self, sink: TextIO, write_header_if_empty: bool = True,
                   until: Optional[int] = None) -> int:
        """
        Write records newer than the watermark to sink as CSV rows.

        Only records sent at or before ``until`` are written when it is
        given. The header is written when write_header_if_empty is set and
        the sink is still at position 0. Returns the number of rows.
        """
        start = 0
        if self._watermark is not None:
            start = self.find(self._watermark, FindMode.CEILING)
        end = len(self._records)
        if until is not None:
            end = self.find(until, FindMode.CEILING)
        if start >= end:
            return 0

        writer = csv.writer(sink)
        if write_header_if_empty and _is_empty(sink):
            writer.writerow(EXPORT_HEADER)
        for record in self._records[start:end]:
            writer.writerow(record.to_row())
        sink.flush()

        self._watermark = self._keys[end - 1]
        self.logger.debug(f"Exported {end - start} records up to {self._watermark}")
        return end - start

    def compact(self, keep_after: int) -> int:
        """Drop exported records sent before keep_after. Returns how many went."""
        if self._watermark is None:
            return 0
        limit = min(keep_after, self._watermark + 1)
        end = bisect.bisect_left(self._keys, limit)
        if end == 0:
            return 0
        for record in self._records[:end]:
            if self._by_index.get(record.index) is record:
                del self._by_index[record.index]
        del self._records[:end]
        del self._keys[:end]
        return end

    def reset(self) -> None:
        """Forget every record and the export watermark."""
        self._records.clear()
        self._keys.clear()
        self._by_index.clear()
        self._watermark = None
        self._last_key = None


def _is_empty(sink: TextIO) -> bool:
    try:
        return sink.tell() == 0
    except (OSError, AttributeError):
        return False
