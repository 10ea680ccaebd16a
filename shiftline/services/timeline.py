"""
Shift timeline resolution.

Turns a (date, shift descriptor) pair into an absolute, monotonic timeline.

Shift descriptors come in two forms:
    - human:     "6 AM to 6 PM", "6:30 PM to 6 AM"
    - canonical: "HH:MM:SStoHH:MM:SS" (what the telemetry API expects)

A shift whose end is at or before its start crosses midnight. Its end is
kept above 24h internally so arithmetic stays monotonic, and the date the
user picked is treated as the day the shift ENDS: the timeline base day is
the calendar day before it.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import structlog

logger = structlog.get_logger("timeline")

DAY_SECONDS = 24 * 3600
DAY_MS = DAY_SECONDS * 1000

DEFAULT_SHIFT = "06:00:00to18:00:00"

_CANONICAL_SHIFT_RE = re.compile(r"^(\d{2}):(\d{2}):(\d{2})to(\d{2}):(\d{2}):(\d{2})$", re.IGNORECASE)
_HUMAN_SHIFT_RE = re.compile(
    r"(\d{1,2})(?::(\d{2}))?\s*(AM|PM)\s+to\s+(\d{1,2})(?::(\d{2}))?\s*(AM|PM)",
    re.IGNORECASE,
)
_HMS_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?(?:\.\d+)?\s*$")


class DateStyle(str, Enum):
    """How the caller wrote the selected date."""
    ISO = "iso"            # YYYY-MM-DD
    DASHED_DMY = "dmy"     # DD-MM-YYYY
    SLASHED_DMY = "dmy/"   # DD/MM/YYYY


_DATE_PATTERNS = (
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), DateStyle.ISO, (0, 1, 2)),
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), DateStyle.DASHED_DMY, (2, 1, 0)),
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), DateStyle.SLASHED_DMY, (2, 1, 0)),
)


@dataclass(frozen=True)
class ShiftDefinition:
    """Shift bounds in seconds of the timeline base day."""
    start_seconds: int
    end_seconds: int
    crosses_midnight: bool

    @property
    def duration_seconds(self) -> int:
        return self.end_seconds - self.start_seconds

    @property
    def end_seconds_of_day(self) -> int:
        """End of shift as a wall-clock seconds-of-day value (0..86399)."""
        return self.end_seconds % DAY_SECONDS

    @property
    def canonical(self) -> str:
        return f"{format_seconds_hms(self.start_seconds)}to{format_seconds_hms(self.end_seconds)}"


@dataclass(frozen=True)
class TimelineDomain:
    """Absolute bounds of a shift, in epoch milliseconds."""
    base_day_epoch_ms: int
    start_ms: int
    end_ms: int

    @property
    def width_ms(self) -> int:
        return self.end_ms - self.start_ms

    def contains(self, ts_ms: float) -> bool:
        return self.start_ms <= ts_ms <= self.end_ms

    def clamp(self, ts_ms: float) -> float:
        return max(self.start_ms, min(self.end_ms, ts_ms))


# ============ Parsing helpers ============

def format_seconds_hms(seconds: float) -> str:
    """Format seconds (any day offset) as a wall-clock HH:MM:SS."""
    mod = int(seconds) % DAY_SECONDS
    return f"{mod // 3600:02d}:{(mod % 3600) // 60:02d}:{mod % 60:02d}"


def parse_hms(text) -> Optional[int]:
    """
    Parse "HH:MM:SS" (or "HH:MM") into seconds of day.

    Returns None for anything that is not a valid wall-clock time.
    """
    if text is None:
        return None
    match = _HMS_RE.match(str(text))
    if not match:
        return None
    hh = int(match.group(1))
    mm = int(match.group(2))
    ss = int(match.group(3) or 0)
    if hh > 23 or mm > 59 or ss > 59:
        return None
    return hh * 3600 + mm * 60 + ss


def _to_24h(hour: int, period: str) -> int:
    period = period.upper()
    if period == "PM" and hour != 12:
        return hour + 12
    if period == "AM" and hour == 12:
        return 0
    return hour


def _shift_bounds(descriptor) -> Optional[tuple[int, int]]:
    """Raw (start, end) seconds-of-day from a descriptor, or None."""
    text = str(descriptor or "").strip()

    match = _CANONICAL_SHIFT_RE.match(text)
    if match:
        sh, sm, ss, eh, em, es = (int(g) for g in match.groups())
        if max(sh, eh) > 23 or max(sm, em, ss, es) > 59:
            return None
        return sh * 3600 + sm * 60 + ss, eh * 3600 + em * 60 + es

    match = _HUMAN_SHIFT_RE.search(text)
    if match:
        start_h, start_m, start_p, end_h, end_m, end_p = match.groups()
        sh, eh = int(start_h), int(end_h)
        sm, em = int(start_m or 0), int(end_m or 0)
        if not (1 <= sh <= 12 and 1 <= eh <= 12) or max(sm, em) > 59:
            return None
        return _to_24h(sh, start_p) * 3600 + sm * 60, _to_24h(eh, end_p) * 3600 + em * 60

    return None


def parse_shift(descriptor) -> ShiftDefinition:
    """
    Parse a shift descriptor into a ShiftDefinition.

    Unparseable descriptors fall back to the default 06:00-18:00 shift.
    Never raises.
    """
    bounds = _shift_bounds(descriptor)
    if bounds is None:
        logger.warning("Unparseable shift descriptor, using default", shift=descriptor, default=DEFAULT_SHIFT)
        bounds = _shift_bounds(DEFAULT_SHIFT)

    start, end = bounds
    if end <= start:
        end += DAY_SECONDS  # crosses midnight
    return ShiftDefinition(
        start_seconds=start,
        end_seconds=end,
        crosses_midnight=end > DAY_SECONDS,
    )


def format_shift_for_api(descriptor) -> str:
    """Canonical HH:MM:SStoHH:MM:SS form of any accepted shift descriptor."""
    return parse_shift(descriptor).canonical


def parse_date(text) -> tuple[Optional[date], DateStyle]:
    """
    Parse the selected date.

    Accepts YYYY-MM-DD, DD-MM-YYYY and DD/MM/YYYY. Returns (None, ISO) when
    the text matches none of them or names an impossible day.
    """
    s = str(text or "").strip()
    for pattern, style, order in _DATE_PATTERNS:
        match = pattern.match(s)
        if not match:
            continue
        parts = match.groups()
        year, month, day = (int(parts[i]) for i in order)
        try:
            return date(year, month, day), style
        except ValueError:
            return None, style
    return None, DateStyle.ISO


def format_date(day: date, style: DateStyle) -> str:
    """Format a date the same way the caller originally wrote it."""
    if style == DateStyle.DASHED_DMY:
        return day.strftime("%d-%m-%Y")
    if style == DateStyle.SLASHED_DMY:
        return day.strftime("%d/%m/%Y")
    return day.isoformat()


def utc_midnight_ms(day: date) -> int:
    """Epoch ms of midnight UTC on the given calendar day."""
    return int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp() * 1000)


# ============ Timeline ============

@dataclass(frozen=True)
class Timeline:
    """Resolved timeline for one (date, shift) selection."""
    selected_date: date
    date_style: DateStyle
    shift: ShiftDefinition
    domain: TimelineDomain

    @property
    def base_day(self) -> date:
        if self.shift.crosses_midnight:
            return self.selected_date - timedelta(days=1)
        return self.selected_date

    def hms_to_ms(self, hms) -> Optional[int]:
        """
        Convert a wall-clock reading into an absolute timeline timestamp.

        On an overnight shift, early-morning readings (at or before the
        shift's wall-clock end) belong to the day after the base day, so
        "02:00:00" lands after "23:59:00" instead of before the shift start.
        """
        seconds = parse_hms(hms)
        if seconds is None:
            return None
        if self.shift.crosses_midnight and seconds <= self.shift.end_seconds_of_day:
            seconds += DAY_SECONDS
        return self.domain.base_day_epoch_ms + seconds * 1000

    def ms_to_hms(self, ts_ms: float) -> str:
        """UTC HH:MM:SS of an absolute timestamp."""
        return format_seconds_hms(int(ts_ms // 1000))

    def base_day_param(self) -> str:
        """Timeline base day in the caller's original date style."""
        return format_date(self.base_day, self.date_style)

    def window_from_hms(self, start_hms: str, end_hms: str) -> tuple[int, int]:
        """
        Validate a manually entered HH:MM:SS range against the shift.

        Returns absolute (start_ms, end_ms). Raises ValueError with a
        user-facing message when the range is malformed or outside the shift.
        """
        start = parse_hms(start_hms)
        end = parse_hms(end_hms)
        if start is None or end is None or len(str(start_hms).strip()) != 8 or len(str(end_hms).strip()) != 8:
            raise ValueError("Please enter valid time in HH:MM:SS format")

        shift = self.shift
        shift_start = format_seconds_hms(shift.start_seconds)
        shift_end = format_seconds_hms(shift.end_seconds)

        if shift.crosses_midnight:
            tail_end = shift.end_seconds_of_day
            start_first = shift.start_seconds <= start < DAY_SECONDS
            start_second = 0 <= start <= tail_end
            end_first = shift.start_seconds < end <= DAY_SECONDS
            end_second = 0 <= end <= tail_end
            valid = (
                (start_first and end_first and start < end)
                or (start_second and end_second and start < end)
                or (start_first and end_second)
            )
            if not valid:
                raise ValueError(
                    f"Selected time must be within shift range: {shift_start} to {shift_end} (overnight shift)"
                )
        else:
            if start >= end:
                raise ValueError("Start time must be before end time")
            if start < shift.start_seconds or start >= shift.end_seconds:
                raise ValueError(f"Start time must be within shift range: {shift_start} to {shift_end}")
            if end <= shift.start_seconds or end > shift.end_seconds:
                raise ValueError(f"End time must be within shift range: {shift_start} to {shift_end}")

        return self.hms_to_ms(start_hms), self.hms_to_ms(end_hms)


def resolve_timeline(date_text, shift_descriptor, today: Optional[date] = None) -> Timeline:
    """
    Resolve a (date, shift) selection into a Timeline.

    An unparseable date falls back to today (UTC); this is a degraded
    default, never an error.
    """
    shift = parse_shift(shift_descriptor)
    selected, style = parse_date(date_text)
    if selected is None:
        selected = today or datetime.now(timezone.utc).date()
        logger.warning("Unparseable date, using today", date=date_text, fallback=selected.isoformat())

    base_day = selected - timedelta(days=1) if shift.crosses_midnight else selected
    base_ms = utc_midnight_ms(base_day)
    domain = TimelineDomain(
        base_day_epoch_ms=base_ms,
        start_ms=base_ms + shift.start_seconds * 1000,
        end_ms=base_ms + shift.end_seconds * 1000,
    )
    return Timeline(selected_date=selected, date_style=style, shift=shift, domain=domain)
