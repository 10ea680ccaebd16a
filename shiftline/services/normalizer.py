"""
Series normalization.

Converts raw per-channel readings into canonical series on the resolved
timeline:
    - wall-clock times placed with Timeline.hms_to_ms
    - values transformed as v * resolution + offset
    - points with a missing or non-finite avg dropped (gaps stay gaps)
    - timestamps floored to the load's bucket, first reading per bucket wins
    - output sorted ascending

Channels the source marks display=false are excluded entirely.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

import structlog

from shiftline.config import Settings, get_settings
from shiftline.schemas import ChannelKind, ChannelPayload, RawPoint, Sampling, TelemetryPayload, TimestampEntry
from shiftline.services.geo import GpsFix, build_track, nearest_index
from shiftline.services.resolution import BUCKET_SECOND_MS, detect_bucket_ms
from shiftline.services.timeline import Timeline

logger = structlog.get_logger("normalizer")

DEFAULT_ANALOG_COLOR = "#2563eb"
DEFAULT_DIGITAL_COLOR = "#999999"


@dataclass(frozen=True, slots=True)
class NormalizedPoint:
    timestamp_ms: int
    avg: float
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass(frozen=True)
class YAxisRange:
    min: float
    max: float


@dataclass(frozen=True)
class SeriesStats:
    """Summary shown next to a chart."""
    avg: Optional[float]
    min: Optional[float]
    max: Optional[float]
    current: Optional[float]


@dataclass
class Series:
    """Ordered, deduplicated, ascending points of one channel."""
    channel_id: str
    name: str
    kind: ChannelKind
    unit: str
    color: str
    y_axis_range: YAxisRange
    points: list[NormalizedPoint] = field(default_factory=list)
    min_color: Optional[str] = None
    max_color: Optional[str] = None

    @property
    def timestamps(self) -> list[int]:
        return [p.timestamp_ms for p in self.points]

    @property
    def stats(self) -> SeriesStats:
        if not self.points:
            return SeriesStats(avg=None, min=None, max=None, current=None)
        avgs = [p.avg for p in self.points]
        mins = [p.min for p in self.points if p.min is not None] or avgs
        maxs = [p.max for p in self.points if p.max is not None] or avgs
        return SeriesStats(
            avg=sum(avgs) / len(avgs),
            min=min(mins),
            max=max(maxs),
            current=avgs[-1],
        )


@dataclass
class NormalizedLoad:
    """Everything one load contributes to the dashboard."""
    bucket_ms: int
    axis: list[int] = field(default_factory=list)
    series: dict[str, Series] = field(default_factory=dict)
    gps: list[GpsFix] = field(default_factory=list)


# ============ Value / time helpers ============

def transform(value: Optional[float], resolution: float = 1.0, offset: float = 0.0) -> Optional[float]:
    """Apply v * resolution + offset; None for missing or non-finite results."""
    if value is None:
        return None
    try:
        result = float(value) * resolution + offset
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def align_to_bucket(ts_ms: float, bucket_ms: int) -> int:
    return int(math.floor(ts_ms / bucket_ms) * bucket_ms)


def parse_source_timestamp(value: Union[float, str, None]) -> Optional[int]:
    """
    Absolute source timestamp to epoch ms.

    Accepts epoch seconds or milliseconds and ISO-8601 strings (naive
    strings are taken as UTC). None when unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            try:
                dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
        value = number
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    if number < 1e12:  # epoch seconds
        number *= 1000
    return int(number)


def resolve_timestamp(
    time_text: str,
    source_timestamp,
    timeline: Timeline,
    tolerance_ms: int,
) -> Optional[int]:
    """
    Absolute timestamp of one reading.

    The source stamp is used when it agrees with the timeline-derived value
    to within tolerance_ms; beyond that the source ignored shift semantics
    and the derived value wins.
    """
    derived = timeline.hms_to_ms(time_text)
    source = parse_source_timestamp(source_timestamp)
    if derived is None:
        return source
    if source is None or abs(source - derived) > tolerance_ms:
        return derived
    return source


# ============ Series building ============

def normalize_point(
    point: RawPoint,
    channel: ChannelPayload,
    timeline: Timeline,
    bucket_ms: int,
    tolerance_ms: int,
) -> Optional[NormalizedPoint]:
    """Normalize one reading, or None if it must be dropped."""
    ts = resolve_timestamp(point.time, point.timestamp, timeline, tolerance_ms)
    if ts is None:
        return None

    raw_avg = point.avg if point.avg is not None else point.value
    avg = transform(raw_avg, channel.resolution, channel.offset)
    if avg is None:
        return None

    if channel.kind == ChannelKind.DIGITAL:
        lo = hi = None
    else:
        lo = transform(point.min if point.min is not None else raw_avg, channel.resolution, channel.offset)
        hi = transform(point.max if point.max is not None else raw_avg, channel.resolution, channel.offset)

    return NormalizedPoint(timestamp_ms=align_to_bucket(ts, bucket_ms), avg=avg, min=lo, max=hi)


def _default_range(points: list[NormalizedPoint]) -> YAxisRange:
    if not points:
        return YAxisRange(min=0.0, max=0.0)
    lows = [p.min if p.min is not None else p.avg for p in points]
    highs = [p.max if p.max is not None else p.avg for p in points]
    return YAxisRange(min=min(lows), max=max(highs))


def normalize_channel(
    channel: ChannelPayload,
    timeline: Timeline,
    bucket_ms: int,
    settings: Optional[Settings] = None,
) -> Optional[Series]:
    """
    Build the canonical Series for one channel.

    Returns None when the channel is flagged non-displayable.
    """
    if not channel.display:
        return None
    settings = settings or get_settings()

    seen: dict[int, NormalizedPoint] = {}
    dropped = 0
    for raw in channel.points:
        point = normalize_point(raw, channel, timeline, bucket_ms, settings.source_timestamp_tolerance_ms)
        if point is None:
            dropped += 1
            continue
        # First reading in a bucket wins
        seen.setdefault(point.timestamp_ms, point)

    points = sorted(seen.values(), key=lambda p: p.timestamp_ms)
    if dropped:
        logger.debug("Dropped unusable readings", channel_id=channel.id, dropped=dropped)

    if channel.y_axis_range is not None:
        y_range = YAxisRange(min=channel.y_axis_range.min, max=channel.y_axis_range.max)
    else:
        y_range = _default_range(points)

    default_color = DEFAULT_DIGITAL_COLOR if channel.kind == ChannelKind.DIGITAL else DEFAULT_ANALOG_COLOR
    return Series(
        channel_id=channel.id,
        name=channel.name or channel.id,
        kind=channel.kind,
        unit=channel.unit,
        color=channel.color or default_color,
        min_color=channel.min_color,
        max_color=channel.max_color,
        y_axis_range=y_range,
        points=points,
    )


def build_axis(
    entries: Iterable[TimestampEntry],
    timeline: Timeline,
    bucket_ms: Optional[int] = None,
    tolerance_ms: Optional[int] = None,
) -> list[int]:
    """
    Shared time axis of a load: sorted, unique timestamps.

    Aligned to bucket_ms when given.
    """
    if tolerance_ms is None:
        tolerance_ms = get_settings().source_timestamp_tolerance_ms
    axis = set()
    for entry in entries:
        ts = resolve_timestamp(entry.time, entry.timestamp, timeline, tolerance_ms)
        if ts is None:
            continue
        axis.add(align_to_bucket(ts, bucket_ms) if bucket_ms else ts)
    return sorted(axis)


def _select_channels(channels: list[ChannelPayload], bucket_ms: int) -> list[ChannelPayload]:
    """
    One payload per (kind, id), preferring the variant sampled like the load.

    When a channel arrives both per-second and per-minute, the per-second
    variant is used for per-second loads and the per-minute one otherwise.
    """
    preferred = Sampling.SECOND if bucket_ms == BUCKET_SECOND_MS else Sampling.MINUTE
    chosen: dict[tuple[ChannelKind, str], ChannelPayload] = {}
    for channel in channels:
        key = (channel.kind, channel.id)
        current = chosen.get(key)
        if current is None or (current.sampling != preferred and channel.sampling == preferred):
            chosen[key] = channel
    return list(chosen.values())


def normalize_payload(
    payload: TelemetryPayload,
    timeline: Timeline,
    settings: Optional[Settings] = None,
) -> NormalizedLoad:
    """
    Detect the bucket and normalize every displayable channel and the GPS track.

    Series are keyed by channel id. If two kinds share an id, the first
    channel in payload order keeps it and the other is dropped with a warning.
    """
    settings = settings or get_settings()
    tolerance = settings.source_timestamp_tolerance_ms

    raw_axis = build_axis(payload.timestamps, timeline, tolerance_ms=tolerance)
    bucket_ms = detect_bucket_ms(raw_axis, payload.channels, settings.resolution_scan_limit)

    series: dict[str, Series] = {}
    excluded = 0
    for channel in _select_channels(payload.channels, bucket_ms):
        normalized = normalize_channel(channel, timeline, bucket_ms, settings)
        if normalized is None:
            excluded += 1
            continue
        existing = series.get(normalized.channel_id)
        if existing is not None:
            logger.warning(
                "Channel id shared across kinds, keeping first",
                channel_id=normalized.channel_id,
                kept=existing.kind.value,
                dropped=normalized.kind.value,
            )
            excluded += 1
            continue
        series[normalized.channel_id] = normalized

    logger.info(
        "Normalized load",
        bucket_ms=bucket_ms,
        channels=len(series),
        excluded=excluded,
        gps_samples=len(payload.gps),
    )
    return NormalizedLoad(
        bucket_ms=bucket_ms,
        axis=sorted({align_to_bucket(ts, bucket_ms) for ts in raw_axis}),
        series=series,
        gps=build_track(payload.gps, timeline),
    )


# ============ Windowed access ============

def slice_series(series: Series, start_ms: float, end_ms: float) -> list[NormalizedPoint]:
    """Points of a series inside [start_ms, end_ms]."""
    lo, hi = min(start_ms, end_ms), max(start_ms, end_ms)
    return [p for p in series.points if lo <= p.timestamp_ms <= hi]


def value_at(series: Series, ts_ms: float) -> Optional[NormalizedPoint]:
    """Point nearest to ts_ms (crosshair readout), or None for an empty series."""
    idx = nearest_index(series.timestamps, ts_ms)
    return None if idx is None else series.points[idx]
