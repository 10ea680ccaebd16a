"""
GPS track building and nearest-fix lookup for the time cursor.
"""
from bisect import bisect_left
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from shiftline.schemas import GpsSample
from shiftline.services.timeline import Timeline


@dataclass(frozen=True, slots=True)
class GpsFix:
    """A GPS position on the absolute timeline."""
    timestamp_ms: int
    lat: float
    lng: float


def is_valid_coordinate(lat: Optional[float], lng: Optional[float]) -> bool:
    """Latitude/longitude present and within WGS84 bounds."""
    if lat is None or lng is None:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def build_track(samples: Iterable[GpsSample], timeline: Timeline) -> list[GpsFix]:
    """
    Place raw GPS samples on the timeline, sorted ascending.

    Samples with unparseable time or out-of-range coordinates are dropped.
    """
    track = []
    for sample in samples:
        ts = timeline.hms_to_ms(sample.time)
        if ts is None or not is_valid_coordinate(sample.lat, sample.lng):
            continue
        track.append(GpsFix(timestamp_ms=ts, lat=sample.lat, lng=sample.lng))
    track.sort(key=lambda fix: fix.timestamp_ms)
    return track


def nearest_index(timestamps: Sequence[float], target: float) -> Optional[int]:
    """
    Index of the timestamp closest to target in an ascending sequence.

    Ties go to the earlier index. Targets outside the range resolve to the
    nearest endpoint. None for an empty sequence.
    """
    if not timestamps:
        return None
    idx = bisect_left(timestamps, target)
    if idx == 0:
        return 0
    if idx >= len(timestamps):
        return len(timestamps) - 1
    before = timestamps[idx - 1]
    after = timestamps[idx]
    return idx - 1 if abs(target - before) <= abs(after - target) else idx


class GpsInterpolator:
    """Nearest-sample lookup over a pre-sorted GPS track."""

    def __init__(self, track: Sequence[GpsFix] = ()):
        self.track: list[GpsFix] = list(track)
        self._timestamps = [fix.timestamp_ms for fix in self.track]

    def __len__(self) -> int:
        return len(self.track)

    def position_at(self, cursor_ms: float) -> Optional[GpsFix]:
        """Fix nearest to cursor_ms, or None when the track is empty."""
        idx = nearest_index(self._timestamps, cursor_ms)
        return None if idx is None else self.track[idx]
