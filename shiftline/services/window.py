"""
Selection Window Controller

Owns the selection window and the cursor for one timeline domain and
applies pointer gestures to them.

Gesture state machine:
    IDLE → (pointer down near a handle / inside window) → DRAGGING → (release) → IDLE
    IDLE → (pointer down outside the window) → NEW_SELECTION → (release) → IDLE

Controller phase:
    INITIALIZING → (first load applied) → INTERACTIVE
    Commits are suppressed while INITIALIZING so restoring a saved window
    does not trigger a reload of its own.

Two-tier updates:
    - preview: every drag step, synchronous, never reloads
    - commit:  on release or after a debounce of inactivity, triggers reload

Key Invariants:
    - domain.start_ms <= selection.start_ms <= selection.end_ms <= domain.end_ms
    - selection width >= min range whenever the domain is that wide
    - selection.start_ms <= cursor <= selection.end_ms after every mutation
    - non-finite input never replaces the last valid window
"""
import asyncio
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import structlog

from shiftline.config import Settings, get_settings
from shiftline.services.resolution import BUCKET_MINUTE_MS
from shiftline.services.timeline import TimelineDomain

logger = structlog.get_logger("window")

WindowHandler = Callable[["SelectionWindow"], None]
CursorHandler = Callable[[int], None]


class DragMode(str, Enum):
    """Which part of the window a drag moves."""
    NONE = "none"
    LEFT = "left"    # left handle, right edge fixed
    RIGHT = "right"  # right handle, left edge fixed
    MOVE = "move"    # whole window, width fixed


class GestureState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    NEW_SELECTION = "new_selection"


class ControllerPhase(str, Enum):
    INITIALIZING = "initializing"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class SelectionWindow:
    """Selected sub-range of the timeline, epoch ms."""
    start_ms: int
    end_ms: int

    @property
    def width_ms(self) -> int:
        return self.end_ms - self.start_ms

    def contains(self, ts_ms: float) -> bool:
        return self.start_ms <= ts_ms <= self.end_ms

    def clamp(self, ts_ms: float) -> float:
        return max(self.start_ms, min(self.end_ms, ts_ms))


def _finite(*values) -> bool:
    try:
        return all(math.isfinite(v) for v in values)
    except TypeError:
        return False


def add_subscriber(handlers: list, handler: Callable) -> Callable[[], None]:
    handlers.append(handler)

    def unsubscribe() -> None:
        if handler in handlers:
            handlers.remove(handler)

    return unsubscribe


def _emit(handlers: list, value, event: str) -> None:
    for handler in list(handlers):
        try:
            handler(value)
        except Exception:
            logger.exception("Window subscriber failed", event=event)


class WindowController:
    """Selection window + cursor with preview/commit semantics."""

    def __init__(
        self,
        domain: TimelineDomain,
        settings: Optional[Settings] = None,
        bucket_ms: int = BUCKET_MINUTE_MS,
    ):
        settings = settings or get_settings()
        self.min_range_ms = settings.min_range_ms
        self.default_window_ms = settings.default_window_ms
        self.handle_tolerance_ms = settings.handle_tolerance_ms
        self.commit_debounce_s = settings.commit_debounce_s
        self.bucket_ms = bucket_ms

        self.domain = domain
        self.phase = ControllerPhase.INITIALIZING
        self.selection = SelectionWindow(domain.start_ms, domain.end_ms)
        self.cursor_ms: int = domain.start_ms
        self.drag_mode = DragMode.NONE
        self.gesture = GestureState.IDLE

        self._drag_anchor_ms: float = 0.0
        self._drag_origin: Optional[SelectionWindow] = None
        self._last_committed: Optional[SelectionWindow] = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._gesture_committed = False

        self._preview_handlers: list[WindowHandler] = []
        self._commit_handlers: list[WindowHandler] = []
        self._cursor_handlers: list[CursorHandler] = []

    # ============ Subscriptions ============

    def on_preview(self, handler: WindowHandler) -> Callable[[], None]:
        return add_subscriber(self._preview_handlers, handler)

    def on_commit(self, handler: WindowHandler) -> Callable[[], None]:
        return add_subscriber(self._commit_handlers, handler)

    def on_cursor_change(self, handler: CursorHandler) -> Callable[[], None]:
        return add_subscriber(self._cursor_handlers, handler)

    # ============ Geometry ============

    @property
    def effective_min_range_ms(self) -> int:
        """Minimum width, capped at the domain width for narrow domains."""
        return min(self.min_range_ms, self.domain.width_ms)

    def _fit(self, start_ms: float, end_ms: float) -> SelectionWindow:
        """Order, clamp into the domain, then widen to the minimum range."""
        lo, hi = sorted((start_ms, end_ms))
        lo = int(round(self.domain.clamp(lo)))
        hi = int(round(self.domain.clamp(hi)))
        min_range = self.effective_min_range_ms
        if hi - lo < min_range:
            hi = lo + min_range
            if hi > self.domain.end_ms:
                hi = self.domain.end_ms
                lo = hi - min_range
        return SelectionWindow(lo, hi)

    def _place(self, center_ms: float, width_ms: int) -> SelectionWindow:
        """Window of the given width centred on center_ms, shifted to stay in the domain."""
        width = min(width_ms, self.domain.width_ms)
        start = int(round(center_ms - width / 2))
        start = max(self.domain.start_ms, min(self.domain.end_ms - width, start))
        return SelectionWindow(start, start + width)

    def _apply(self, window: SelectionWindow, preview: bool = True) -> SelectionWindow:
        self.selection = window
        if preview:
            _emit(self._preview_handlers, window, "preview")
        self._clamp_cursor()
        return window

    def _clamp_cursor(self) -> None:
        clamped = int(self.selection.clamp(self.cursor_ms))
        if clamped != self.cursor_ms:
            self.cursor_ms = clamped
            _emit(self._cursor_handlers, clamped, "cursor")

    # ============ Window operations ============

    def set_window(self, start_ms: float, end_ms: float) -> SelectionWindow:
        """
        Set the selection directly (preview only; call commit() to reload).

        Non-finite bounds are rejected and the current window is kept.
        """
        if not _finite(start_ms, end_ms):
            logger.warning("Rejected non-finite window", start_ms=start_ms, end_ms=end_ms)
            return self.selection
        return self._apply(self._fit(start_ms, end_ms))

    def restore_window(self, start_ms: float, end_ms: float) -> SelectionWindow:
        """Apply a saved window without preview or commit."""
        if not _finite(start_ms, end_ms):
            logger.warning("Rejected non-finite saved window", start_ms=start_ms, end_ms=end_ms)
            return self.selection
        return self._apply(self._fit(start_ms, end_ms), preview=False)

    def reset(self, domain: Optional[TimelineDomain] = None) -> SelectionWindow:
        """Back to the full domain, initializing phase, idle gesture."""
        self._cancel_debounce()
        if domain is not None:
            self.domain = domain
        self.phase = ControllerPhase.INITIALIZING
        self.drag_mode = DragMode.NONE
        self.gesture = GestureState.IDLE
        self._drag_origin = None
        self._last_committed = None
        self.selection = SelectionWindow(self.domain.start_ms, self.domain.end_ms)
        self.cursor_ms = self.domain.start_ms
        return self.selection

    def mark_interactive(self) -> None:
        """Leave the initializing phase; the current window counts as committed."""
        self.phase = ControllerPhase.INTERACTIVE
        self._last_committed = self.selection

    def forget_commit(self) -> None:
        """Drop the last committed window so committing it again emits (retry after a failed load)."""
        self._last_committed = None

    def set_bucket_ms(self, bucket_ms: int) -> None:
        self.bucket_ms = bucket_ms

    # ============ Gestures ============

    def begin_drag(self, pointer_ms: float) -> DragMode:
        """
        Hit-test the pointer against the window and start a gesture.

        Near a handle (within the tolerance) drags that handle, inside the
        window moves it, anywhere else starts a new default-width window
        centred on the pointer which the rest of the gesture then moves.
        """
        if not _finite(pointer_ms):
            return self.drag_mode
        self._cancel_debounce()

        sel = self.selection
        left_dist = abs(pointer_ms - sel.start_ms)
        right_dist = abs(pointer_ms - sel.end_ms)

        if min(left_dist, right_dist) <= self.handle_tolerance_ms:
            self.drag_mode = DragMode.LEFT if left_dist <= right_dist else DragMode.RIGHT
            self.gesture = GestureState.DRAGGING
        elif sel.start_ms < pointer_ms < sel.end_ms:
            self.drag_mode = DragMode.MOVE
            self.gesture = GestureState.DRAGGING
        else:
            self.drag_mode = DragMode.MOVE
            self.gesture = GestureState.NEW_SELECTION
            self._apply(self._place(pointer_ms, self.default_window_ms))

        self._drag_anchor_ms = pointer_ms
        self._drag_origin = self.selection
        self._gesture_committed = False
        logger.debug("Drag started", mode=self.drag_mode.value, gesture=self.gesture.value)
        return self.drag_mode

    def update_drag(self, pointer_ms: float) -> SelectionWindow:
        """Preview step of the current gesture; schedules a debounced commit."""
        if self.drag_mode == DragMode.NONE or self._drag_origin is None:
            return self.selection
        if not _finite(pointer_ms):
            logger.warning("Rejected non-finite drag position", pointer_ms=pointer_ms)
            return self.selection

        origin = self._drag_origin
        domain = self.domain
        min_range = self.effective_min_range_ms

        if self.drag_mode == DragMode.LEFT:
            right = origin.end_ms
            left = min(domain.clamp(pointer_ms), right - min_range)
            window = SelectionWindow(int(round(max(domain.start_ms, left))), right)
        elif self.drag_mode == DragMode.RIGHT:
            left = origin.start_ms
            right = max(domain.clamp(pointer_ms), left + min_range)
            window = SelectionWindow(left, int(round(min(domain.end_ms, right))))
        else:
            width = origin.width_ms
            start = origin.start_ms + (pointer_ms - self._drag_anchor_ms)
            start = max(domain.start_ms, min(domain.end_ms - width, start))
            start = int(round(start))
            window = SelectionWindow(start, start + width)

        self._apply(window)
        self._schedule_commit()
        return window

    def end_drag(self, pointer_ms: Optional[float] = None) -> bool:
        """
        Finish the gesture and commit.

        Returns True if the gesture committed, on release or earlier by debounce.
        """
        if self.drag_mode == DragMode.NONE:
            return False
        if pointer_ms is not None:
            self.update_drag(pointer_ms)
        self.drag_mode = DragMode.NONE
        self.gesture = GestureState.IDLE
        self._drag_origin = None
        committed = self.commit() or self._gesture_committed
        self._gesture_committed = False
        return committed

    # ============ Commit ============

    def commit(self, force: bool = False) -> bool:
        """
        Emit the current window to commit subscribers.

        Suppressed while initializing, and when the window equals the last
        committed one unless force is set.
        """
        self._cancel_debounce()
        if self.phase == ControllerPhase.INITIALIZING:
            logger.debug("Commit suppressed while initializing")
            return False
        if not force and self.selection == self._last_committed:
            return False
        self._last_committed = self.selection
        logger.info("Window committed", start_ms=self.selection.start_ms, end_ms=self.selection.end_ms)
        _emit(self._commit_handlers, self.selection, "commit")
        return True

    @property
    def has_pending_commit(self) -> bool:
        return self._debounce_handle is not None

    def _schedule_commit(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop, no debounce: release or an explicit commit() applies it
            return
        self._cancel_debounce()
        self._debounce_handle = loop.call_later(self.commit_debounce_s, self._debounced_commit)

    def _debounced_commit(self) -> None:
        self._debounce_handle = None
        if self.commit() and self.drag_mode != DragMode.NONE:
            self._gesture_committed = True

    def _cancel_debounce(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    # ============ Cursor ============

    def seek(self, timestamp_ms: float) -> int:
        """
        Place the cursor, snapped to the nearest bucket and clamped into
        the current selection.
        """
        if not _finite(timestamp_ms):
            logger.warning("Rejected non-finite cursor", timestamp_ms=timestamp_ms)
            return self.cursor_ms
        snapped = round(timestamp_ms / self.bucket_ms) * self.bucket_ms
        cursor = int(self.selection.clamp(snapped))
        if cursor != self.cursor_ms:
            self.cursor_ms = cursor
            _emit(self._cursor_handlers, cursor, "cursor")
        return self.cursor_ms
