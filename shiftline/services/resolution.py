"""
Sampling resolution detection.

Decides whether a load should be bucketed per second or per minute.
"""
from typing import Iterable, Sequence

import structlog

from shiftline.schemas import ChannelPayload, Sampling

logger = structlog.get_logger("resolution")

BUCKET_SECOND_MS = 1000
BUCKET_MINUTE_MS = 60 * 1000

# How much of a per-minute series is inspected for stray seconds
_SECONDS_CHECK_CHANNELS = 5
_SECONDS_CHECK_POINTS = 200


def smallest_positive_delta(timestamps: Sequence[float], scan_limit: int = 2000) -> float | None:
    """Smallest positive gap between consecutive sorted timestamps, or None."""
    ordered = sorted(timestamps)[:scan_limit]
    smallest = None
    for prev, cur in zip(ordered, ordered[1:]):
        delta = cur - prev
        if delta > 0 and (smallest is None or delta < smallest):
            smallest = delta
            if smallest <= BUCKET_SECOND_MS:
                break  # cannot get finer than one second
    return smallest


def has_second_components(channel: ChannelPayload) -> bool:
    """True if any of the first point times carries non-zero seconds."""
    for point in channel.points[:_SECONDS_CHECK_POINTS]:
        parts = str(point.time or "").split(":")
        if len(parts) < 3:
            continue
        try:
            if int(float(parts[2])) != 0:
                return True
        except ValueError:
            continue
    return False


def detect_bucket_ms(
    timestamps: Sequence[float],
    channels: Iterable[ChannelPayload] = (),
    scan_limit: int = 2000,
) -> int:
    """
    Return the bucket size (ms) for a load.

    Per-second when any of:
      - a channel is explicitly per-second and carries points
      - a per-minute channel has point times with non-zero seconds
      - the smallest positive timestamp delta is under a minute
    Otherwise per-minute.
    """
    channels = list(channels)

    if any(ch.sampling == Sampling.SECOND and ch.points for ch in channels):
        return BUCKET_SECOND_MS

    per_minute = [ch for ch in channels if ch.sampling == Sampling.MINUTE][:_SECONDS_CHECK_CHANNELS]
    if any(has_second_components(ch) for ch in per_minute):
        logger.info("Per-minute series carries seconds, treating load as per-second")
        return BUCKET_SECOND_MS

    delta = smallest_positive_delta(timestamps, scan_limit)
    if delta is not None and delta < BUCKET_MINUTE_MS:
        return BUCKET_SECOND_MS

    return BUCKET_MINUTE_MS
