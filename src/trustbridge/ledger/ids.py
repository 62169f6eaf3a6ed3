"""Record id generation.

Ids are a prefix, a nanosecond wall-clock value clamped so it never
goes backwards, and a per-generator sequence number. The sequence
makes back-to-back issuance within one clock tick collision-free.
"""

from __future__ import annotations

import threading
import time
from typing import Callable


class IdGenerator:
    """Produces ids like ``msg_1760901234567890123_000001``."""

    def __init__(self, clock_ns: Callable[[], int] = time.time_ns) -> None:
        self._clock_ns = clock_ns
        self._last_ts = 0
        self._seq = 0
        self._lock = threading.Lock()

    def next_id(self, prefix: str) -> str:
        with self._lock:
            ts = max(self._clock_ns(), self._last_ts)
            self._last_ts = ts
            self._seq += 1
            return f"{prefix}_{ts}_{self._seq:06d}"
