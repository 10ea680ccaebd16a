"""
Dashboard session: wires the timeline, window controller, cursor
broadcaster and GPS lookup around an injected telemetry fetcher.

Data flow:
    resolve_timeline → WindowController domain
    controller commit → reload task → fetcher → normalize_payload → series
    controller cursor → SyncBroadcaster → GPS lookup + external consumers

Load versioning:
    Every reload trigger takes the next load version. A result whose version
    is no longer current when it arrives is discarded unapplied, so a slow
    stale response never overwrites a fresher one. All mutation happens on
    the event loop thread; no locking.
"""
import asyncio
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Callable, Optional, Protocol

import structlog

from shiftline.config import Settings, get_settings
from shiftline.schemas import ReportType, TelemetryPayload
from shiftline.services.geo import GpsFix, GpsInterpolator
from shiftline.services.normalizer import NormalizedLoad, NormalizedPoint, Series, normalize_payload, value_at
from shiftline.services.resolution import BUCKET_MINUTE_MS
from shiftline.services.sync import SyncBroadcaster
from shiftline.services.telemetry_client import FetchRequest, TelemetryFetchError
from shiftline.services.timeline import Timeline, resolve_timeline
from shiftline.services.window import ControllerPhase, SelectionWindow, WindowController, add_subscriber

logger = structlog.get_logger("dashboard")


class LoadStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass(frozen=True)
class LoadResult:
    """Outcome of one reload."""
    version: int
    applied: bool
    status: LoadStatus
    error: Optional[str] = None


class Fetcher(Protocol):
    async def fetch(self, request: FetchRequest) -> TelemetryPayload: ...


def _notify(handlers: list, value, event: str) -> None:
    for handler in list(handlers):
        try:
            handler(value)
        except Exception:
            logger.exception("Session subscriber failed", event=event)


class DashboardSession:
    """One device/date/shift view with its window, cursor and loaded series."""

    def __init__(
        self,
        device_id: str,
        date_text: str,
        shift: str,
        fetcher: Fetcher,
        report_type: ReportType = ReportType.DRILLING,
        settings: Optional[Settings] = None,
        today: Optional[date] = None,
    ):
        self.settings = settings or get_settings()
        self.device_id = device_id
        self.report_type = report_type
        self.fetcher = fetcher
        self.date_text = date_text
        self.shift_text = shift
        self._today = today

        self.timeline: Timeline = resolve_timeline(date_text, shift, today)
        self.bucket_ms = BUCKET_MINUTE_MS
        self.controller = WindowController(self.timeline.domain, self.settings, self.bucket_ms)
        self.broadcaster = SyncBroadcaster(self.settings.broadcast_rate_hz, self.bucket_ms)

        self.load_version = 0
        self.status = LoadStatus.IDLE
        self.error: Optional[str] = None
        self.gps_position: Optional[GpsFix] = None

        self._series: dict[str, Series] = {}
        self._gps = GpsInterpolator()
        self._reload_task: Optional[asyncio.Task] = None
        self._load_handlers: list[Callable[[NormalizedLoad], None]] = []
        self._failed_handlers: list[Callable[[str], None]] = []

        self.controller.on_commit(self._handle_commit)
        self.controller.on_cursor_change(self.broadcaster.publish)
        self.broadcaster.subscribe(self._track_gps)

    # ============ Loading ============

    def build_request(self, window: SelectionWindow) -> FetchRequest:
        """Upstream parameters for a window on the current timeline."""
        return FetchRequest(
            device_id=self.device_id,
            date=self.timeline.base_day_param(),
            shift=self.timeline.shift.canonical,
            start_time=self.timeline.ms_to_hms(window.start_ms),
            end_time=self.timeline.ms_to_hms(window.end_ms),
            report_type=self.report_type,
        )

    async def start(self) -> LoadResult:
        """Initial load of the current selection (the full shift unless restored)."""
        return await self.reload(self.controller.selection)

    async def change_context(self, date_text: Optional[str] = None, shift: Optional[str] = None) -> LoadResult:
        """Switch date and/or shift: new timeline, full-domain window, fresh load."""
        if date_text is not None:
            self.date_text = date_text
        if shift is not None:
            self.shift_text = shift
        self.timeline = resolve_timeline(self.date_text, self.shift_text, self._today)
        self.controller.reset(self.timeline.domain)
        self.broadcaster.reset()
        self.gps_position = None
        logger.info(
            "Session context changed",
            device_id=self.device_id,
            date=self.date_text,
            shift=self.timeline.shift.canonical,
        )
        return await self.reload(self.controller.selection)

    async def reload(self, window: SelectionWindow) -> LoadResult:
        self.load_version += 1
        return await self._load(window, self.load_version)

    async def wait_for_load(self) -> Optional[LoadResult]:
        """Await the most recently scheduled reload, if any."""
        task = self._reload_task
        if task is None:
            return None
        result = await task
        if self._reload_task is not task:
            return await self.wait_for_load()
        return result

    def _handle_commit(self, window: SelectionWindow) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Window committed without a running loop, reload skipped")
            return
        self.load_version += 1
        self._reload_task = loop.create_task(self._load(window, self.load_version))

    async def _load(self, window: SelectionWindow, version: int) -> LoadResult:
        self.status = LoadStatus.LOADING
        request = self.build_request(window)
        timeline = self.timeline

        load: Optional[NormalizedLoad] = None
        error: Optional[str] = None
        try:
            payload = await self.fetcher.fetch(request)
            load = normalize_payload(payload, timeline, self.settings)
        except TelemetryFetchError as e:
            error = str(e)
        except Exception:
            logger.exception("Unexpected load failure", device_id=self.device_id, version=version)
            error = "Unexpected error while loading telemetry"

        if version != self.load_version:
            logger.info("Discarding stale load", version=version, current=self.load_version)
            return LoadResult(version=version, applied=False, status=self.status, error=self.error)

        if self.controller.phase == ControllerPhase.INITIALIZING:
            self.controller.mark_interactive()

        if load is None:
            self._apply_failure(error)
        else:
            self._apply_load(load)
        return LoadResult(version=version, applied=True, status=self.status, error=self.error)

    def _apply_load(self, load: NormalizedLoad) -> None:
        self._series = load.series
        self._gps = GpsInterpolator(load.gps)
        self.bucket_ms = load.bucket_ms
        self.controller.set_bucket_ms(load.bucket_ms)
        self.broadcaster.set_bucket_ms(load.bucket_ms)
        self.gps_position = self._gps.position_at(self.controller.cursor_ms)
        self.status = LoadStatus.LOADED
        self.error = None
        _notify(self._load_handlers, load, "load")

    def _apply_failure(self, error: Optional[str]) -> None:
        # Empty series plus a distinct failure signal, never placeholder data
        self._series = {}
        self._gps = GpsInterpolator()
        self.gps_position = None
        self.status = LoadStatus.FAILED
        self.error = error or "Load failed"
        self.controller.forget_commit()
        logger.warning("Telemetry load failed", device_id=self.device_id, error=self.error)
        _notify(self._failed_handlers, self.error, "load_failed")

    # ============ Exposed interface ============

    def get_normalized_series(self, channel_id: str) -> Series:
        """Series of a loaded channel. Raises KeyError for unknown channels."""
        return self._series[channel_id]

    def channels(self) -> list[Series]:
        return list(self._series.values())

    def get_current_window(self) -> SelectionWindow:
        return self.controller.selection

    def get_cursor(self) -> int:
        return self.controller.cursor_ms

    def get_gps_position_at(self, cursor_ms: Optional[float] = None) -> Optional[GpsFix]:
        if cursor_ms is None:
            cursor_ms = self.controller.cursor_ms
        return self._gps.position_at(cursor_ms)

    def value_at(self, channel_id: str, ts_ms: Optional[float] = None) -> Optional[NormalizedPoint]:
        if ts_ms is None:
            ts_ms = self.controller.cursor_ms
        return value_at(self.get_normalized_series(channel_id), ts_ms)

    def on_window_commit(self, handler: Callable[[SelectionWindow], None]) -> Callable[[], None]:
        return self.controller.on_commit(handler)

    def on_cursor_change(self, handler: Callable[[int], None]) -> Callable[[], None]:
        return self.broadcaster.subscribe(handler)

    def on_load(self, handler: Callable[[NormalizedLoad], None]) -> Callable[[], None]:
        return add_subscriber(self._load_handlers, handler)

    def on_load_failed(self, handler: Callable[[str], None]) -> Callable[[], None]:
        return add_subscriber(self._failed_handlers, handler)

    def _track_gps(self, cursor_ms: int) -> None:
        self.gps_position = self._gps.position_at(cursor_ms)

    async def close(self) -> None:
        """Stop pending work; a late result is discarded as stale."""
        self.load_version += 1
        self.controller.reset()
        self.broadcaster.reset()
        task = self._reload_task
        if task is not None and not task.done():
            task.cancel()
