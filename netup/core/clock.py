"""
Clock helpers for netup.

All timestamps exchanged on the wire and kept in the store are integer
milliseconds since the Unix epoch.
"""

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    """Get the current wall-clock time in milliseconds since epoch."""
    return time.time_ns() // 1_000_000


def format_timestamp_ms(epoch_ms: int) -> str:
    """Format a millisecond timestamp as ``DD/MM/YY HH:MM:SS.mmm`` (UTC)."""
    stamp = datetime.fromtimestamp(epoch_ms // 1000, tz=timezone.utc)
    return stamp.strftime("%d/%m/%y %H:%M:%S.") + f"{epoch_ms % 1000:03d}"
