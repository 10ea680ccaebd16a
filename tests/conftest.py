"""
Pytest configuration and fixtures for Shiftline tests.
"""
import os
import sys

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

# Set test environment before importing the app
os.environ["DEBUG"] = "true"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["TELEMETRY_BASE_URL"] = "http://telemetry.test"

from shiftline.config import Settings, get_settings
from shiftline.services.timeline import resolve_timeline

get_settings.cache_clear()


@pytest.fixture
def settings():
    """Default settings, independent of the cached instance."""
    return Settings()


@pytest.fixture
def day_timeline():
    """6 AM to 6 PM on 2025-01-15."""
    return resolve_timeline("2025-01-15", "6 AM to 6 PM")


@pytest.fixture
def overnight_timeline():
    """6 PM to 6 AM ending on 2025-01-16 (base day 2025-01-15)."""
    return resolve_timeline("2025-01-16", "6 PM to 6 AM")


@pytest.fixture
def raw_payload():
    """Upstream `data` object for the day shift, per-minute readings."""
    return {
        "timestamps": [
            {"time": "06:00:00"},
            {"time": "06:01:00"},
            {"time": "06:02:00"},
        ],
        "analogPerMinute": [
            {
                "id": 1,
                "name": "Oil Temp",
                "unit": "C",
                "color": "#ff0000",
                "resolution": 0.1,
                "offset": -40,
                "yAxisRange": {"min": 0, "max": 150},
                "points": [
                    {"time": "06:00:00", "avg": 1200, "min": 1100, "max": 1300},
                    {"time": "06:01:00", "avg": 1250},
                    {"time": "06:02:00", "avg": None},
                ],
            },
            {
                "id": 2,
                "name": "Hidden Channel",
                "display": "false",
                "points": [{"time": "06:00:00", "avg": 1}],
            },
        ],
        "digitalPerMinute": [
            {
                "id": 10,
                "name": "Pump",
                "points": [
                    {"time": "06:00:00", "value": 1},
                    {"time": "06:01:00", "value": 0},
                ],
            },
        ],
        "gpsPerSecond": [
            {"time": "06:00:00", "lat": -31.95, "lng": 115.86},
            {"time": "06:02:00", "lat": -31.96, "lng": 115.87},
        ],
    }
