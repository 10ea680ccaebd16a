"""
Adapter from the upstream telemetry JSON to the engine's typed payload.

This is the only place that knows the upstream field names. Everything
downstream works on TelemetryPayload.
"""
from typing import Any

import structlog
from pydantic import ValidationError

from shiftline.schemas import (
    ChannelKind,
    ChannelPayload,
    GpsSample,
    Sampling,
    TelemetryPayload,
    TimestampEntry,
)

logger = structlog.get_logger("payload")

# Upstream key -> (kind, nominal sampling)
CHANNEL_KEYS: dict[str, tuple[ChannelKind, Sampling]] = {
    "analogPerSecond": (ChannelKind.ANALOG, Sampling.SECOND),
    "analogPerMinute": (ChannelKind.ANALOG, Sampling.MINUTE),
    "digitalPerSecond": (ChannelKind.DIGITAL, Sampling.SECOND),
    "digitalPerMinute": (ChannelKind.DIGITAL, Sampling.MINUTE),
}

GPS_KEY = "gpsPerSecond"
TIMESTAMPS_KEY = "timestamps"


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _adapt_channel(raw: Any, kind: ChannelKind, sampling: Sampling) -> ChannelPayload | None:
    if not isinstance(raw, dict) or raw.get("id") is None:
        return None
    try:
        return ChannelPayload.model_validate({
            **raw,
            "points": [p for p in _as_list(raw.get("points")) if isinstance(p, dict)],
            "kind": kind,
            "sampling": sampling,
        })
    except ValidationError as exc:
        logger.warning("Dropping malformed channel", channel_id=raw.get("id"), errors=exc.error_count())
        return None


def adapt_payload(raw: Any) -> TelemetryPayload:
    """
    Map an upstream `data` object onto TelemetryPayload.

    Recognised keys: timestamps, analogPerSecond, analogPerMinute,
    digitalPerSecond, digitalPerMinute, gpsPerSecond. Unknown keys are
    ignored; malformed entries are dropped individually.
    """
    if not isinstance(raw, dict):
        return TelemetryPayload()

    timestamps = []
    for entry in _as_list(raw.get(TIMESTAMPS_KEY)):
        if isinstance(entry, dict):
            timestamps.append(TimestampEntry.model_validate(entry))
        elif isinstance(entry, (str, int, float)):
            # Bare values: "HH:MM:SS" strings or absolute stamps
            if isinstance(entry, str) and ":" in entry and len(entry) <= 8:
                timestamps.append(TimestampEntry(time=entry))
            else:
                timestamps.append(TimestampEntry(timestamp=entry))

    channels = []
    for key, (kind, sampling) in CHANNEL_KEYS.items():
        for raw_channel in _as_list(raw.get(key)):
            channel = _adapt_channel(raw_channel, kind, sampling)
            if channel is not None:
                channels.append(channel)

    gps = [GpsSample.model_validate(s) for s in _as_list(raw.get(GPS_KEY)) if isinstance(s, dict)]

    return TelemetryPayload(timestamps=timestamps, channels=channels, gps=gps)
