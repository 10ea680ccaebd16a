"""
Cursor fan-out to independent consumers (charts, digital timeline, GPS).

Publishes are coalesced into at most one delivery per frame (30 Hz by
default). A delivery closer than one bucket to the last broadcast value is
suppressed, so sub-resolution pointer jitter never reaches consumers.
"""
import asyncio
import math
from typing import Callable, Optional

import structlog

from shiftline.services.resolution import BUCKET_MINUTE_MS

logger = structlog.get_logger("sync")

CursorConsumer = Callable[[int], None]


class SyncBroadcaster:
    """Throttled cursor broadcaster with explicit subscriptions."""

    def __init__(self, max_rate_hz: float = 30.0, bucket_ms: int = BUCKET_MINUTE_MS):
        self.frame_s = 1.0 / max_rate_hz
        self.bucket_ms = bucket_ms
        self.delivered = 0
        self.suppressed = 0
        self._consumers: list[CursorConsumer] = []
        self._pending: Optional[int] = None
        self._last_broadcast: Optional[int] = None
        self._frame_handle: Optional[asyncio.TimerHandle] = None

    @property
    def last_broadcast_ms(self) -> Optional[int]:
        return self._last_broadcast

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def subscribe(self, consumer: CursorConsumer) -> Callable[[], None]:
        """Register a consumer; returns its unsubscribe callable."""
        self._consumers.append(consumer)

        def unsubscribe() -> None:
            if consumer in self._consumers:
                self._consumers.remove(consumer)

        return unsubscribe

    def publish(self, cursor_ms: float) -> None:
        """
        Queue a cursor value for the next frame.

        Only the latest value queued within a frame is delivered. Without a
        running event loop the value is delivered immediately.
        """
        if not isinstance(cursor_ms, (int, float)) or not math.isfinite(cursor_ms):
            return
        self._pending = int(cursor_ms)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._frame_handle is None:
            self._frame_handle = loop.call_later(self.frame_s, self.flush)

    def flush(self) -> bool:
        """Deliver the pending value now. Returns True if consumers were called."""
        if self._frame_handle is not None:
            self._frame_handle.cancel()
            self._frame_handle = None

        value, self._pending = self._pending, None
        if value is None:
            return False
        if self._last_broadcast is not None and abs(value - self._last_broadcast) < self.bucket_ms:
            self.suppressed += 1
            return False

        self._last_broadcast = value
        self.delivered += 1
        for consumer in list(self._consumers):
            try:
                consumer(value)
            except Exception:
                logger.exception("Cursor consumer failed", cursor_ms=value)
        return True

    def set_bucket_ms(self, bucket_ms: int) -> None:
        self.bucket_ms = bucket_ms

    def reset(self) -> None:
        """Drop any pending value and forget the last broadcast."""
        if self._frame_handle is not None:
            self._frame_handle.cancel()
            self._frame_handle = None
        self._pending = None
        self._last_broadcast = None
