"""
Window Controller Tests

Tests to verify:
1. set_window keeps the selection inside the domain and at least the minimum range
2. Drag hit-testing picks the left/right handle, a move, or a new selection
3. Drag previews never commit; release and the debounce do
4. Commits are suppressed while initializing
5. The cursor snaps to the bucket and always stays inside the selection

Run with: pytest tests/test_window.py -v
"""
import asyncio
import random

import pytest

from shiftline.config import Settings
from shiftline.services.timeline import TimelineDomain
from shiftline.services.window import (
    ControllerPhase,
    DragMode,
    GestureState,
    SelectionWindow,
    WindowController,
)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
# 2025-01-15T06:00:00Z to 18:00:00Z
START = 1736920800000
END = START + 12 * HOUR_MS


@pytest.fixture
def domain():
    return TimelineDomain(base_day_epoch_ms=START - 6 * HOUR_MS, start_ms=START, end_ms=END)


@pytest.fixture
def controller(domain, settings):
    return WindowController(domain, settings)


@pytest.fixture
def interactive(controller):
    """Controller past its first load, selection 08:00-10:00."""
    controller.mark_interactive()
    controller.set_window(START + 2 * HOUR_MS, START + 4 * HOUR_MS)
    controller.commit()
    return controller


# ============================================
# Test: set_window
# ============================================

class TestSetWindow:
    """Direct window placement."""

    def test_initial_state(self, controller):
        assert controller.selection == SelectionWindow(START, END)
        assert controller.cursor_ms == START
        assert controller.phase == ControllerPhase.INITIALIZING
        assert controller.drag_mode == DragMode.NONE

    def test_order_normalized(self, controller):
        window = controller.set_window(START + 4 * HOUR_MS, START + 2 * HOUR_MS)
        assert window == SelectionWindow(START + 2 * HOUR_MS, START + 4 * HOUR_MS)

    def test_clamped_into_domain(self, controller):
        window = controller.set_window(START - 5 * HOUR_MS, END + 5 * HOUR_MS)
        assert window == SelectionWindow(START, END)

    def test_minimum_range_extends_end(self, controller):
        window = controller.set_window(START + HOUR_MS, START + HOUR_MS + 10 * MINUTE_MS)
        assert window == SelectionWindow(START + HOUR_MS, START + 2 * HOUR_MS)

    def test_minimum_range_at_domain_end(self, controller):
        """Near the end the start moves back instead."""
        window = controller.set_window(END - 10 * MINUTE_MS, END)
        assert window == SelectionWindow(END - HOUR_MS, END)

    def test_non_finite_rejected(self, controller):
        before = controller.set_window(START + HOUR_MS, START + 3 * HOUR_MS)
        assert controller.set_window(float("nan"), START + 5 * HOUR_MS) == before
        assert controller.set_window(START, float("inf")) == before
        assert controller.selection == before

    def test_narrow_domain(self, settings):
        """A domain narrower than the minimum range yields the whole domain."""
        narrow = TimelineDomain(base_day_epoch_ms=0, start_ms=0, end_ms=30 * MINUTE_MS)
        controller = WindowController(narrow, settings)
        assert controller.set_window(0, 1000) == SelectionWindow(0, 30 * MINUTE_MS)

    def test_window_invariants(self, controller):
        """Random inputs always give a valid window."""
        rng = random.Random(3)
        for _ in range(500):
            a = rng.uniform(START - 6 * HOUR_MS, END + 6 * HOUR_MS)
            b = rng.uniform(START - 6 * HOUR_MS, END + 6 * HOUR_MS)
            window = controller.set_window(a, b)
            assert START <= window.start_ms <= window.end_ms <= END
            assert window.width_ms >= HOUR_MS
            assert window.start_ms <= controller.cursor_ms <= window.end_ms

    def test_cursor_clamped_after_mutation(self, controller):
        seen = []
        controller.on_cursor_change(seen.append)
        controller.set_window(START + 2 * HOUR_MS, START + 4 * HOUR_MS)
        assert controller.cursor_ms == START + 2 * HOUR_MS
        assert seen == [START + 2 * HOUR_MS]

    def test_preview_emitted_not_commit(self, interactive):
        previews, commits = [], []
        interactive.on_preview(previews.append)
        interactive.on_commit(commits.append)
        interactive.set_window(START, START + 6 * HOUR_MS)
        assert previews == [SelectionWindow(START, START + 6 * HOUR_MS)]
        assert commits == []

    def test_restore_window_is_silent(self, controller):
        previews, commits = [], []
        controller.on_preview(previews.append)
        controller.on_commit(commits.append)
        window = controller.restore_window(START + HOUR_MS, START + 3 * HOUR_MS)
        assert controller.selection == window
        assert previews == [] and commits == []

    def test_reset(self, interactive, settings):
        other = TimelineDomain(base_day_epoch_ms=0, start_ms=0, end_ms=12 * HOUR_MS)
        interactive.reset(other)
        assert interactive.selection == SelectionWindow(0, 12 * HOUR_MS)
        assert interactive.cursor_ms == 0
        assert interactive.phase == ControllerPhase.INITIALIZING


# ============================================
# Test: Commit
# ============================================

class TestCommit:
    """Commit gating."""

    def test_suppressed_while_initializing(self, controller):
        commits = []
        controller.on_commit(commits.append)
        controller.set_window(START + HOUR_MS, START + 3 * HOUR_MS)
        assert controller.commit() is False
        assert commits == []

    def test_commit_after_interactive(self, controller):
        commits = []
        controller.on_commit(commits.append)
        controller.mark_interactive()
        controller.set_window(START + HOUR_MS, START + 3 * HOUR_MS)
        assert controller.commit() is True
        assert commits == [SelectionWindow(START + HOUR_MS, START + 3 * HOUR_MS)]

    def test_unchanged_window_not_recommitted(self, interactive):
        commits = []
        interactive.on_commit(commits.append)
        assert interactive.commit() is False
        assert interactive.commit(force=True) is True
        assert len(commits) == 1

    def test_forget_commit_allows_same_window_again(self, interactive):
        """A window whose load failed can be committed again."""
        commits = []
        interactive.on_commit(commits.append)
        interactive.forget_commit()
        assert interactive.commit() is True
        assert commits == [SelectionWindow(START + 2 * HOUR_MS, START + 4 * HOUR_MS)]
        assert interactive.commit() is False

    def test_unsubscribe(self, interactive):
        commits = []
        unsubscribe = interactive.on_commit(commits.append)
        unsubscribe()
        interactive.set_window(START, START + 5 * HOUR_MS)
        interactive.commit()
        assert commits == []

    def test_failing_subscriber_does_not_block_others(self, interactive):
        commits = []

        def broken(window):
            raise RuntimeError("boom")

        interactive.on_commit(broken)
        interactive.on_commit(commits.append)
        interactive.set_window(START, START + 5 * HOUR_MS)
        assert interactive.commit() is True
        assert len(commits) == 1


# ============================================
# Test: Drag Gestures
# ============================================

class TestDrag:
    """Pointer gestures on the range selector (selection 08:00-10:00)."""

    def test_hit_left_handle(self, interactive):
        assert interactive.begin_drag(START + 2 * HOUR_MS + 10 * MINUTE_MS) == DragMode.LEFT
        assert interactive.gesture == GestureState.DRAGGING

    def test_hit_right_handle(self, interactive):
        assert interactive.begin_drag(START + 4 * HOUR_MS + 14 * MINUTE_MS) == DragMode.RIGHT

    def test_hit_inside(self, interactive):
        assert interactive.begin_drag(START + 3 * HOUR_MS) == DragMode.MOVE
        assert interactive.gesture == GestureState.DRAGGING

    def test_outside_starts_new_selection(self, interactive):
        """A click away from the window creates a 1h window centred on it."""
        interactive.begin_drag(START + 8 * HOUR_MS)
        assert interactive.gesture == GestureState.NEW_SELECTION
        assert interactive.drag_mode == DragMode.MOVE
        assert interactive.selection == SelectionWindow(
            START + 7 * HOUR_MS + 30 * MINUTE_MS,
            START + 8 * HOUR_MS + 30 * MINUTE_MS,
        )

    def test_new_selection_clamped_to_domain(self, interactive):
        interactive.begin_drag(END - 10 * MINUTE_MS)
        assert interactive.selection == SelectionWindow(END - HOUR_MS, END)

    def test_left_drag_respects_minimum_range(self, interactive):
        interactive.begin_drag(START + 2 * HOUR_MS)
        window = interactive.update_drag(START + 6 * HOUR_MS)
        assert window == SelectionWindow(START + 3 * HOUR_MS, START + 4 * HOUR_MS)

    def test_left_drag_clamped_to_domain(self, interactive):
        interactive.begin_drag(START + 2 * HOUR_MS)
        window = interactive.update_drag(START - 3 * HOUR_MS)
        assert window == SelectionWindow(START, START + 4 * HOUR_MS)

    def test_right_drag(self, interactive):
        interactive.begin_drag(START + 4 * HOUR_MS)
        assert interactive.update_drag(START + 6 * HOUR_MS) == SelectionWindow(START + 2 * HOUR_MS, START + 6 * HOUR_MS)
        assert interactive.update_drag(START) == SelectionWindow(START + 2 * HOUR_MS, START + 3 * HOUR_MS)
        assert interactive.update_drag(END + HOUR_MS) == SelectionWindow(START + 2 * HOUR_MS, END)

    def test_move_drag_translates(self, interactive):
        interactive.begin_drag(START + 3 * HOUR_MS)
        window = interactive.update_drag(START + 4 * HOUR_MS)
        assert window == SelectionWindow(START + 3 * HOUR_MS, START + 5 * HOUR_MS)

    def test_move_drag_never_leaves_domain(self, interactive):
        interactive.begin_drag(START + 3 * HOUR_MS)
        assert interactive.update_drag(END + 10 * HOUR_MS) == SelectionWindow(END - 2 * HOUR_MS, END)
        assert interactive.update_drag(START - 10 * HOUR_MS) == SelectionWindow(START, START + 2 * HOUR_MS)

    def test_update_without_drag_is_noop(self, interactive):
        previews = []
        interactive.on_preview(previews.append)
        before = interactive.selection
        assert interactive.update_drag(START + 6 * HOUR_MS) == before
        assert previews == []

    def test_non_finite_drag_ignored(self, interactive):
        interactive.begin_drag(START + 3 * HOUR_MS)
        before = interactive.selection
        assert interactive.update_drag(float("nan")) == before

    def test_preview_then_commit_on_release(self, interactive):
        """Drag steps only preview; release commits once."""
        previews, commits = [], []
        interactive.on_preview(previews.append)
        interactive.on_commit(commits.append)

        interactive.begin_drag(START + 3 * HOUR_MS)
        for minutes in (10, 20, 30, 40):
            interactive.update_drag(START + 3 * HOUR_MS + minutes * MINUTE_MS)
        assert len(previews) == 4
        assert commits == []

        assert interactive.end_drag() is True
        assert commits == [SelectionWindow(START + 2 * HOUR_MS + 40 * MINUTE_MS, START + 4 * HOUR_MS + 40 * MINUTE_MS)]
        assert interactive.drag_mode == DragMode.NONE
        assert interactive.gesture == GestureState.IDLE

    def test_end_drag_with_pointer(self, interactive):
        interactive.begin_drag(START + 4 * HOUR_MS)
        interactive.end_drag(START + 5 * HOUR_MS)
        assert interactive.selection == SelectionWindow(START + 2 * HOUR_MS, START + 5 * HOUR_MS)

    def test_end_without_drag(self, interactive):
        assert interactive.end_drag() is False

    def test_cursor_follows_window(self, interactive):
        interactive.seek(START + 2 * HOUR_MS + 30 * MINUTE_MS)
        interactive.begin_drag(START + 2 * HOUR_MS)
        interactive.update_drag(START + 3 * HOUR_MS)
        assert interactive.cursor_ms == START + 3 * HOUR_MS


# ============================================
# Test: Debounced Commit
# ============================================

class TestDebounce:
    """Commit after a pause in the gesture."""

    @pytest.mark.asyncio
    async def test_debounced_commit_fires_once(self, domain):
        controller = WindowController(domain, Settings(commit_debounce_s=0.05))
        controller.set_window(START + 2 * HOUR_MS, START + 4 * HOUR_MS)
        controller.mark_interactive()
        commits = []
        controller.on_commit(commits.append)

        controller.begin_drag(START + 3 * HOUR_MS)
        for minutes in (5, 10, 15):
            controller.update_drag(START + 3 * HOUR_MS + minutes * MINUTE_MS)
        assert controller.has_pending_commit
        assert commits == []

        await asyncio.sleep(0.2)
        assert len(commits) == 1
        assert not controller.has_pending_commit

    @pytest.mark.asyncio
    async def test_release_cancels_debounce(self, domain):
        controller = WindowController(domain, Settings(commit_debounce_s=0.05))
        controller.set_window(START + 2 * HOUR_MS, START + 4 * HOUR_MS)
        controller.mark_interactive()
        commits = []
        controller.on_commit(commits.append)

        controller.begin_drag(START + 3 * HOUR_MS)
        controller.update_drag(START + 4 * HOUR_MS)
        controller.end_drag()
        await asyncio.sleep(0.2)
        assert len(commits) == 1

    @pytest.mark.asyncio
    async def test_release_reports_debounced_commit(self, domain):
        """A pause mid-gesture commits; release still reports the gesture as committed."""
        controller = WindowController(domain, Settings(commit_debounce_s=0.05))
        controller.set_window(START + 2 * HOUR_MS, START + 4 * HOUR_MS)
        controller.mark_interactive()
        commits = []
        controller.on_commit(commits.append)

        controller.begin_drag(START + 3 * HOUR_MS)
        controller.update_drag(START + 3 * HOUR_MS + 30 * MINUTE_MS)
        await asyncio.sleep(0.2)
        assert len(commits) == 1

        assert controller.end_drag() is True
        assert len(commits) == 1

        # The next gesture starts fresh
        controller.begin_drag(START + 3 * HOUR_MS)
        assert controller.end_drag() is False


# ============================================
# Test: Cursor
# ============================================

class TestSeek:
    """Direct cursor placement."""

    def test_snaps_to_minute(self, controller):
        assert controller.seek(START + 2 * HOUR_MS + 29_000) == START + 2 * HOUR_MS
        assert controller.seek(START + 2 * HOUR_MS + 31_000) == START + 2 * HOUR_MS + MINUTE_MS

    def test_snaps_to_second(self, controller):
        controller.set_bucket_ms(1000)
        assert controller.seek(START + 1499) == START + 1000

    def test_clamped_into_selection(self, interactive):
        assert interactive.seek(START) == START + 2 * HOUR_MS
        assert interactive.seek(END) == START + 4 * HOUR_MS

    def test_non_finite_ignored(self, interactive):
        before = interactive.cursor_ms
        assert interactive.seek(float("nan")) == before

    def test_emits_only_on_change(self, interactive):
        seen = []
        interactive.on_cursor_change(seen.append)
        interactive.seek(START + 3 * HOUR_MS)
        interactive.seek(START + 3 * HOUR_MS + 10_000)
        assert seen == [START + 3 * HOUR_MS]
