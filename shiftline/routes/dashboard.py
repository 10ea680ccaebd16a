"""
Dashboard session API.

Each session holds one device/date/shift view: the resolved timeline, the
selection window and cursor, and the series of the last applied load.
Sessions live in memory only and are gone on restart.

Window mutations that commit (PUT window, PUT window/hms, drag end) await
the resulting reload so the response reflects the loaded data. Upstream
failures are not HTTP errors: the session reports status "failed".
"""
import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sse_starlette.sse import EventSourceResponse
import structlog

from shiftline.config import get_settings
from shiftline.schemas import (
    ChannelSummary,
    ContextUpdate,
    CursorResponse,
    DragRequest,
    DragResponse,
    GpsPositionResponse,
    HmsRangeUpdate,
    PointResponse,
    SeekRequest,
    SeriesResponse,
    SeriesStatsResponse,
    SessionCreate,
    SessionResponse,
    WindowResponse,
    WindowUpdate,
    YAxisRangePayload,
)
from shiftline.services.dashboard import DashboardSession
from shiftline.services.normalizer import Series, slice_series
from shiftline.services.telemetry_client import TelemetryClient
from shiftline.services.timeline import Timeline, format_date
from shiftline.services.window import SelectionWindow

logger = structlog.get_logger("routes.dashboard")
settings = get_settings()
router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])


# ============ Session store ============

class SessionStore:
    """In-memory session registry."""

    def __init__(self):
        self._sessions: dict[str, DashboardSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: DashboardSession) -> str:
        session_id = f"ses_{uuid.uuid4().hex[:12]}"
        self._sessions[session_id] = session
        return session_id

    def get(self, session_id: str) -> Optional[DashboardSession]:
        return self._sessions.get(session_id)

    async def remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.remove(session_id)


_store = SessionStore()
_telemetry_client: Optional[TelemetryClient] = None


def get_store() -> SessionStore:
    return _store


def get_telemetry_client() -> TelemetryClient:
    """Shared upstream client. Overridden in tests."""
    global _telemetry_client
    if _telemetry_client is None:
        _telemetry_client = TelemetryClient()
    return _telemetry_client


async def close_telemetry_client() -> None:
    global _telemetry_client
    if _telemetry_client is not None:
        await _telemetry_client.aclose()
        _telemetry_client = None


# ============ Response builders ============

def window_response(timeline: Timeline, window: SelectionWindow) -> WindowResponse:
    return WindowResponse(
        start_ms=window.start_ms,
        end_ms=window.end_ms,
        start_time=timeline.ms_to_hms(window.start_ms),
        end_time=timeline.ms_to_hms(window.end_ms),
    )


def session_response(session_id: str, session: DashboardSession) -> SessionResponse:
    timeline = session.timeline
    domain = timeline.domain
    return SessionResponse(
        session_id=session_id,
        device_id=session.device_id,
        date=format_date(timeline.selected_date, timeline.date_style),
        shift=timeline.shift.canonical,
        crosses_midnight=timeline.shift.crosses_midnight,
        domain=window_response(timeline, SelectionWindow(domain.start_ms, domain.end_ms)),
        window=window_response(timeline, session.get_current_window()),
        cursor=CursorResponse(
            timestamp_ms=session.get_cursor(),
            time=timeline.ms_to_hms(session.get_cursor()),
        ),
        bucket_ms=session.bucket_ms,
        status=session.status.value,
        load_version=session.load_version,
        error=session.error,
        channels=[
            ChannelSummary(
                channel_id=s.channel_id,
                name=s.name,
                kind=s.kind,
                unit=s.unit,
                point_count=len(s.points),
            )
            for s in session.channels()
        ],
    )


def series_response(series: Series, start_ms: Optional[float], end_ms: Optional[float]) -> SeriesResponse:
    points = series.points
    if start_ms is not None or end_ms is not None:
        lo = start_ms if start_ms is not None else float("-inf")
        hi = end_ms if end_ms is not None else float("inf")
        points = slice_series(series, lo, hi)
    stats = series.stats
    return SeriesResponse(
        channel_id=series.channel_id,
        name=series.name,
        kind=series.kind,
        unit=series.unit,
        color=series.color,
        min_color=series.min_color,
        max_color=series.max_color,
        y_axis_range=YAxisRangePayload(min=series.y_axis_range.min, max=series.y_axis_range.max),
        stats=SeriesStatsResponse(avg=stats.avg, min=stats.min, max=stats.max, current=stats.current),
        points=[PointResponse(timestamp_ms=p.timestamp_ms, avg=p.avg, min=p.min, max=p.max) for p in points],
    )


def require_session(session_id: str, store: SessionStore) -> DashboardSession:
    session = store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


async def _commit_and_wait(session: DashboardSession, force: bool = False) -> bool:
    committed = session.controller.commit(force=force)
    if committed:
        await session.wait_for_load()
    return committed


# ============ Endpoints ============

@router.post("", response_model=SessionResponse, status_code=201)
async def create_session(
    data: SessionCreate,
    store: SessionStore = Depends(get_store),
    fetcher=Depends(get_telemetry_client),
):
    """Open a session and load the full shift."""
    session = DashboardSession(
        device_id=data.device_id,
        date_text=data.date,
        shift=data.shift,
        fetcher=fetcher,
        report_type=data.report_type,
    )
    await session.start()
    session_id = store.add(session)
    logger.info(
        "Session created",
        session_id=session_id,
        device_id=data.device_id,
        shift=session.timeline.shift.canonical,
        status=session.status.value,
    )
    return session_response(session_id, session)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session_summary(session_id: str, store: SessionStore = Depends(get_store)):
    return session_response(session_id, require_session(session_id, store))


@router.put("/{session_id}/context", response_model=SessionResponse)
async def change_context(session_id: str, data: ContextUpdate, store: SessionStore = Depends(get_store)):
    """Switch date and/or shift; the window resets to the new shift."""
    session = require_session(session_id, store)
    await session.change_context(date_text=data.date, shift=data.shift)
    return session_response(session_id, session)


@router.get("/{session_id}/series/{channel_id}", response_model=SeriesResponse)
async def get_series(
    session_id: str,
    channel_id: str,
    start_ms: Optional[float] = Query(None),
    end_ms: Optional[float] = Query(None),
    store: SessionStore = Depends(get_store),
):
    session = require_session(session_id, store)
    try:
        series = session.get_normalized_series(channel_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Channel not found")
    return series_response(series, start_ms, end_ms)


@router.put("/{session_id}/window", response_model=SessionResponse)
async def set_window(session_id: str, data: WindowUpdate, store: SessionStore = Depends(get_store)):
    """Set and commit the selection window."""
    session = require_session(session_id, store)
    session.controller.set_window(data.start_ms, data.end_ms)
    session.broadcaster.flush()
    await _commit_and_wait(session)
    return session_response(session_id, session)


@router.put("/{session_id}/window/hms", response_model=SessionResponse)
async def set_window_hms(session_id: str, data: HmsRangeUpdate, store: SessionStore = Depends(get_store)):
    """Set the selection from a manually typed HH:MM:SS range."""
    session = require_session(session_id, store)
    try:
        start_ms, end_ms = session.timeline.window_from_hms(data.start_time, data.end_time)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    session.controller.set_window(start_ms, end_ms)
    session.broadcaster.flush()
    await _commit_and_wait(session)
    return session_response(session_id, session)


@router.post("/{session_id}/drag", response_model=DragResponse)
async def drag(session_id: str, data: DragRequest, store: SessionStore = Depends(get_store)):
    """One step of a range-selector gesture: begin, update (preview) or end (commit)."""
    session = require_session(session_id, store)
    controller = session.controller
    committed = False

    if data.phase == "begin":
        if data.pointer_ms is None:
            raise HTTPException(status_code=422, detail="pointer_ms is required to begin a drag")
        controller.begin_drag(data.pointer_ms)
    elif data.phase == "update":
        if data.pointer_ms is None:
            raise HTTPException(status_code=422, detail="pointer_ms is required to update a drag")
        controller.update_drag(data.pointer_ms)
    else:
        committed = controller.end_drag(data.pointer_ms)
        if committed:
            await session.wait_for_load()

    session.broadcaster.flush()
    return DragResponse(
        drag_mode=controller.drag_mode.value,
        gesture=controller.gesture.value,
        window=window_response(session.timeline, controller.selection),
        committed=committed,
    )


@router.put("/{session_id}/cursor", response_model=CursorResponse)
async def seek(session_id: str, data: SeekRequest, store: SessionStore = Depends(get_store)):
    """Move the cursor; it snaps to the bucket and stays inside the window."""
    session = require_session(session_id, store)
    cursor = session.controller.seek(data.timestamp_ms)
    session.broadcaster.flush()
    return CursorResponse(timestamp_ms=cursor, time=session.timeline.ms_to_hms(cursor))


@router.get("/{session_id}/gps", response_model=Optional[GpsPositionResponse])
async def get_gps_position(
    session_id: str,
    at: Optional[float] = Query(None, description="Epoch ms; defaults to the cursor"),
    store: SessionStore = Depends(get_store),
):
    """Nearest GPS fix to the cursor (or `at`); null when the load has no GPS."""
    session = require_session(session_id, store)
    fix = session.get_gps_position_at(at)
    if fix is None:
        return None
    return GpsPositionResponse(timestamp_ms=fix.timestamp_ms, lat=fix.lat, lng=fix.lng)


@router.delete("/{session_id}", status_code=204)
async def delete_session(session_id: str, store: SessionStore = Depends(get_store)):
    if not await store.remove(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


# ============ SSE ============

async def session_event_generator(request: Request, session_id: str, session: DashboardSession):
    """
    Yield SSE events for one session.

    Events: connected, cursor, commit, load, load_failed, heartbeat.
    Subscriptions are removed when the client disconnects.
    """
    queue: asyncio.Queue = asyncio.Queue()
    timeline = session.timeline

    def on_cursor(cursor_ms: int):
        gps = session.get_gps_position_at(cursor_ms)
        queue.put_nowait(("cursor", {
            "timestamp_ms": cursor_ms,
            "time": session.timeline.ms_to_hms(cursor_ms),
            "gps": None if gps is None else {"lat": gps.lat, "lng": gps.lng},
        }))

    def on_commit(window: SelectionWindow):
        queue.put_nowait(("commit", window_response(session.timeline, window).model_dump()))

    def on_load(load):
        queue.put_nowait(("load", {
            "load_version": session.load_version,
            "bucket_ms": load.bucket_ms,
            "channels": len(load.series),
        }))

    def on_failed(error: str):
        queue.put_nowait(("load_failed", {"load_version": session.load_version, "error": error}))

    unsubscribers = [
        session.on_cursor_change(on_cursor),
        session.on_window_commit(on_commit),
        session.on_load(on_load),
        session.on_load_failed(on_failed),
    ]

    yield {
        "event": "connected",
        "data": json.dumps({
            "session_id": session_id,
            "server_time": datetime.now(timezone.utc).isoformat(),
            "window": window_response(timeline, session.get_current_window()).model_dump(),
            "cursor_ms": session.get_cursor(),
        }),
    }

    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                event_type, payload = await asyncio.wait_for(queue.get(), timeout=settings.sse_keepalive_s)
                yield {"event": event_type, "data": json.dumps(payload)}
            except asyncio.TimeoutError:
                yield {
                    "event": "heartbeat",
                    "data": json.dumps({"ts_ms": int(datetime.now(timezone.utc).timestamp() * 1000)}),
                }
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()


@router.get("/{session_id}/stream")
async def stream_session(session_id: str, request: Request, store: SessionStore = Depends(get_store)):
    """SSE stream of cursor, commit and load events for a session."""
    session = require_session(session_id, store)
    return EventSourceResponse(session_event_generator(request, session_id, session))
