"""
HTTP client for the upstream telemetry service.

Fetches one load of readings for a committed window and hands the adapted
TelemetryPayload back to the dashboard session. The session never talks
HTTP itself; it only awaits a fetcher with this `fetch` signature.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from shiftline.config import Settings, get_settings
from shiftline.schemas import ReportType, TelemetryPayload
from shiftline.services.payload import adapt_payload

logger = structlog.get_logger("telemetry_client")


@dataclass(frozen=True)
class FetchRequest:
    """Parameters of one upstream load."""
    device_id: str
    date: str         # timeline base day, caller's date style
    shift: str        # HH:MM:SStoHH:MM:SS
    start_time: str   # HH:MM:SS UTC
    end_time: str     # HH:MM:SS UTC
    report_type: ReportType = ReportType.DRILLING

    def to_params(self) -> dict[str, str]:
        return {
            "devices_serial_no": self.device_id,
            "date": self.date,
            "shift": self.shift,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


class TelemetryFetchError(Exception):
    """Upstream load failed: transport, HTTP status, body or envelope."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TelemetryClient:
    """
    Async fetcher backed by httpx.

    Usage:
        client = TelemetryClient()
        payload = await client.fetch(request)
        await client.aclose()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.telemetry_base_url,
            timeout=httpx.Timeout(self.settings.telemetry_timeout_s),
            limits=httpx.Limits(max_connections=5),
            transport=transport,
        )

    def endpoint_for(self, report_type: ReportType) -> str:
        if report_type == ReportType.MAINTENANCE:
            return self.settings.telemetry_maintenance_path
        return self.settings.telemetry_drilling_path

    async def fetch(self, request: FetchRequest) -> TelemetryPayload:
        """
        Load readings for one window.

        Raises TelemetryFetchError on any failure; never returns placeholder data.
        """
        path = self.endpoint_for(request.report_type)
        params = request.to_params()

        try:
            response = await self._client.get(path, params=params)
        except httpx.ConnectError as e:
            logger.warning("Telemetry service unreachable", path=path, error=str(e))
            raise TelemetryFetchError("Telemetry service unreachable") from e
        except httpx.TimeoutException as e:
            logger.warning("Telemetry request timed out", path=path)
            raise TelemetryFetchError("Telemetry request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("Telemetry request failed", path=path, error=str(e))
            raise TelemetryFetchError(f"Telemetry request failed: {e}") from e

        if response.status_code != 200:
            logger.warning("Telemetry service returned error", status=response.status_code, path=path)
            raise TelemetryFetchError(
                f"Telemetry service returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TelemetryFetchError("Telemetry response is not valid JSON") from e

        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("message") if isinstance(body, dict) else None
            raise TelemetryFetchError(message or "Telemetry service reported failure")

        payload = adapt_payload(body.get("data"))
        logger.debug(
            "Telemetry fetched",
            device_id=request.device_id,
            start_time=request.start_time,
            end_time=request.end_time,
            channels=len(payload.channels),
        )
        return payload

    async def aclose(self) -> None:
        await self._client.aclose()
