"""Accumulates encoded frames into transport-sized chunks."""

import logging
import time
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class FrameAggregator:
    """Buffers encoded frames until a count or time trigger fires.

    With both thresholds unset the aggregator only releases audio on an
    explicit flush, so a whole recording goes out as a single chunk.
    """

    def __init__(
        self,
        max_chunks: Optional[int] = 5,
        max_interval_s: Optional[float] = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the aggregator.

        Args:
            max_chunks: Release after this many buffered frames (None = no limit).
            max_interval_s: Release once the oldest buffered frame is this old
                (None = no limit).
            clock: Monotonic time source in seconds.
        """
        if max_chunks is not None and max_chunks < 1:
            raise ValueError("max_chunks must be at least 1")
        if max_interval_s is not None and max_interval_s <= 0:
            raise ValueError("max_interval_s must be positive")

        self.max_chunks = max_chunks
        self.max_interval_s = max_interval_s
        self._clock = clock

        self._buffer: List[bytes] = []
        self._first_added_at: Optional[float] = None

        logger.info(
            f"Initialized frame aggregator (Max chunks: {max_chunks}, "
            f"Max interval: {max_interval_s}s)"
        )

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def pending_chunks(self) -> int:
        return len(self._buffer)

    @property
    def pending_bytes(self) -> int:
        return sum(len(chunk) for chunk in self._buffer)

    def _interval_elapsed(self) -> bool:
        if self.max_interval_s is None or self._first_added_at is None:
            return False
        return self._clock() - self._first_added_at >= self.max_interval_s

    def _take(self) -> Optional[bytes]:
        if not self._buffer:
            return None
        data = b"".join(self._buffer)
        logger.debug(f"Releasing {len(self._buffer)} frames ({len(data)} bytes)")
        self._buffer.clear()
        self._first_added_at = None
        return data

    def add(self, chunk: bytes) -> Optional[bytes]:
        """Buffer an encoded frame.

        Returns:
            The concatenated buffer if a trigger fired, otherwise None.
        """
        if not chunk:
            return self.poll()

        if not self._buffer:
            self._first_added_at = self._clock()
        self._buffer.append(chunk)

        if self.max_chunks is not None and len(self._buffer) >= self.max_chunks:
            return self._take()
        return self.poll()

    def poll(self) -> Optional[bytes]:
        """Release the buffer if the time trigger has fired."""
        if self._interval_elapsed():
            return self._take()
        return None

    def flush(self) -> Optional[bytes]:
        """Release everything buffered, regardless of triggers."""
        return self._take()
