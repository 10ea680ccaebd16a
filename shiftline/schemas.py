"""
Pydantic schemas for the upstream telemetry payload and the dashboard API.
"""
import math
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _coerce_number(value):
    """Numbers or numeric strings to float; anything else to None."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ============ Upstream Payload ============

class ChannelKind(str, Enum):
    """Chart family a channel is drawn in."""
    ANALOG = "analog"
    DIGITAL = "digital"


class Sampling(str, Enum):
    """Nominal sampling the upstream tagged a series with."""
    SECOND = "second"
    MINUTE = "minute"


class ReportType(str, Enum):
    """Upstream report endpoint family."""
    DRILLING = "drilling"
    MAINTENANCE = "maintenance"


class RawPoint(BaseModel):
    """
    One raw reading as received.

    Analog points carry avg (or value) with optional min/max; digital points
    carry value. Unparseable numbers become None rather than failing the load.
    """
    time: str = ""
    avg: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    value: Optional[float] = None
    timestamp: Optional[Union[float, str]] = None  # absolute source timestamp, if any

    @field_validator("avg", "min", "max", "value", mode="before")
    @classmethod
    def coerce_numbers(cls, v):
        return _coerce_number(v)

    @field_validator("time", mode="before")
    @classmethod
    def coerce_time(cls, v):
        return "" if v is None else str(v)


class YAxisRangePayload(BaseModel):
    min: float
    max: float


class ChannelPayload(BaseModel):
    """Per-channel series as delivered by the telemetry service."""
    id: str
    name: Optional[str] = None
    unit: str = ""
    color: Optional[str] = None
    min_color: Optional[str] = None
    max_color: Optional[str] = None
    resolution: float = 1.0
    offset: float = 0.0
    display: bool = True
    y_axis_range: Optional[YAxisRangePayload] = Field(None, validation_alias="yAxisRange")
    points: list[RawPoint] = Field(default_factory=list)
    kind: ChannelKind = ChannelKind.ANALOG
    sampling: Sampling = Sampling.MINUTE

    class Config:
        populate_by_name = True

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    @field_validator("unit", mode="before")
    @classmethod
    def coerce_unit(cls, v):
        return "" if v is None else str(v)

    @field_validator("resolution", mode="before")
    @classmethod
    def default_resolution(cls, v):
        number = _coerce_number(v)
        return 1.0 if number is None or not math.isfinite(number) else number

    @field_validator("offset", mode="before")
    @classmethod
    def default_offset(cls, v):
        number = _coerce_number(v)
        return 0.0 if number is None or not math.isfinite(number) else number

    @field_validator("display", mode="before")
    @classmethod
    def coerce_display(cls, v):
        # Only an explicit false hides a channel
        if isinstance(v, str):
            return v.strip().lower() != "false"
        return v is not False

    @field_validator("y_axis_range", mode="before")
    @classmethod
    def drop_partial_range(cls, v):
        if not isinstance(v, dict):
            return None
        lo, hi = _coerce_number(v.get("min")), _coerce_number(v.get("max"))
        if lo is None or hi is None:
            return None
        return {"min": lo, "max": hi}


class TimestampEntry(BaseModel):
    """Entry of the load's shared time axis."""
    time: str = ""
    timestamp: Optional[Union[float, str]] = None

    @field_validator("time", mode="before")
    @classmethod
    def coerce_time(cls, v):
        return "" if v is None else str(v)


class GpsSample(BaseModel):
    """Raw GPS sample keyed by wall-clock time."""
    time: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def coerce_coords(cls, v):
        return _coerce_number(v)

    @field_validator("time", mode="before")
    @classmethod
    def coerce_time(cls, v):
        return "" if v is None else str(v)


class TelemetryPayload(BaseModel):
    """Fixed, typed input of the normalization engine."""
    timestamps: list[TimestampEntry] = Field(default_factory=list)
    channels: list[ChannelPayload] = Field(default_factory=list)
    gps: list[GpsSample] = Field(default_factory=list)

    @property
    def analog(self) -> list[ChannelPayload]:
        return [ch for ch in self.channels if ch.kind == ChannelKind.ANALOG]

    @property
    def digital(self) -> list[ChannelPayload]:
        return [ch for ch in self.channels if ch.kind == ChannelKind.DIGITAL]


# ============ Dashboard API ============

class SessionCreate(BaseModel):
    """Request to open a dashboard session."""
    device_id: str = Field(..., min_length=1, max_length=64)
    date: str = Field(..., min_length=1, max_length=20)
    shift: str = "6 AM to 6 PM"
    report_type: ReportType = ReportType.DRILLING


class ContextUpdate(BaseModel):
    """Request to change the date and/or shift of a session."""
    date: Optional[str] = Field(None, min_length=1, max_length=20)
    shift: Optional[str] = None


class WindowUpdate(BaseModel):
    """Absolute selection window update."""
    start_ms: float
    end_ms: float


class HmsRangeUpdate(BaseModel):
    """Manually typed selection range."""
    start_time: str = Field(..., description="HH:MM:SS")
    end_time: str = Field(..., description="HH:MM:SS")


class DragRequest(BaseModel):
    """One step of a pointer gesture on the range selector."""
    phase: Literal["begin", "update", "end"]
    pointer_ms: Optional[float] = None


class SeekRequest(BaseModel):
    """Direct cursor placement."""
    timestamp_ms: float


class WindowResponse(BaseModel):
    start_ms: int
    end_ms: int
    start_time: str
    end_time: str


class PointResponse(BaseModel):
    timestamp_ms: int
    avg: float
    min: Optional[float] = None
    max: Optional[float] = None


class SeriesStatsResponse(BaseModel):
    avg: Optional[float]
    min: Optional[float]
    max: Optional[float]
    current: Optional[float]


class SeriesResponse(BaseModel):
    """Normalized series for a renderer."""
    channel_id: str
    name: str
    kind: ChannelKind
    unit: str
    color: str
    min_color: Optional[str] = None
    max_color: Optional[str] = None
    y_axis_range: YAxisRangePayload
    stats: SeriesStatsResponse
    points: list[PointResponse]


class ChannelSummary(BaseModel):
    channel_id: str
    name: str
    kind: ChannelKind
    unit: str
    point_count: int


class CursorResponse(BaseModel):
    timestamp_ms: int
    time: str


class GpsPositionResponse(BaseModel):
    timestamp_ms: int
    lat: float
    lng: float


class DragResponse(BaseModel):
    drag_mode: str
    gesture: str
    window: WindowResponse
    committed: bool


class SessionResponse(BaseModel):
    """Dashboard session summary."""
    session_id: str
    device_id: str
    date: str
    shift: str
    crosses_midnight: bool
    domain: WindowResponse
    window: WindowResponse
    cursor: CursorResponse
    bucket_ms: int
    status: str
    load_version: int
    error: Optional[str] = None
    channels: list[ChannelSummary] = Field(default_factory=list)
