"""Shared pytest fixtures for Caltrain tracker tests."""

import asyncio
import io
import struct
import zipfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from caltrain_tracker.models import (
    EndpointConfig,
    RateLimitConfig,
    RetryConfig,
)

PACIFIC = ZoneInfo("America/Los_Angeles")

# 2026-10-19 is a Monday
MONDAY = datetime(2026, 10, 19, 7, 30, tzinfo=PACIFIC)

SCHEDULE_URL = "https://schedule.example.com/gtfs.zip"
STOP_MONITORING_URL = "https://api.example.com/transit/StopMonitoring"
ALERTS_URL = "https://api.example.com/transit/servicealerts"


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    """Return a fake monotonic clock."""
    return FakeClock()


def make_endpoint(key: str, url: str, **overrides: Any) -> EndpointConfig:
    """Create an endpoint config with fast retry settings for tests."""
    values: dict[str, Any] = {
        "key": key,
        "url": url,
        "timeout_seconds": 5,
        "retry": RetryConfig(max_attempts=3, backoff_base=1.0, backoff_max=4.0),
        "rate_limit": RateLimitConfig(max_requests=10, window_seconds=1.0),
        "cache_ttl_seconds": 0,
    }
    values.update(overrides)
    return EndpointConfig(**values)


@pytest.fixture
def endpoint_factory() -> Callable[..., EndpointConfig]:
    """Return the endpoint config factory."""
    return make_endpoint


@pytest.fixture
def tracker_endpoints() -> dict[str, EndpointConfig]:
    """Endpoint configs for the three feeds used by the services."""
    return {
        "gtfs_schedule": make_endpoint("gtfs_schedule", SCHEDULE_URL),
        "stop_monitoring": make_endpoint("stop_monitoring", STOP_MONITORING_URL),
        "service_alerts": make_endpoint("service_alerts", ALERTS_URL),
    }


def build_zip(files: dict[str, str | bytes], compression: int = zipfile.ZIP_DEFLATED) -> bytes:
    """Build a ZIP archive in memory."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def zip_builder() -> Callable[..., bytes]:
    """Return the in-memory ZIP builder."""
    return build_zip


# Offsets of two-byte fields in the local and central directory headers
HEADER_FIELDS = {"flag_bits": (6, 8), "compress_type": (8, 10)}


def patch_headers(data: bytes, field: str, value: int) -> bytes:
    """Overwrite a header field of every member in both ZIP headers."""
    local_offset, central_offset = HEADER_FIELDS[field]
    patched = bytearray(data)
    for signature, offset in ((b"PK\x03\x04", local_offset), (b"PK\x01\x02", central_offset)):
        start = patched.find(signature)
        while start != -1:
            struct.pack_into("<H", patched, start + offset, value)
            start = patched.find(signature, start + 4)
    return bytes(patched)


@pytest.fixture
def header_patcher() -> Callable[..., bytes]:
    """Return the ZIP header patcher."""
    return patch_headers


@pytest.fixture
def gtfs_files() -> dict[str, str]:
    """A small Caltrain-like GTFS feed.

    Northbound trains 101 and 103 leave Mountain View (70211) at 08:02 and
    08:20; train 199 leaves at 24:10 (00:10 the next morning). Southbound
    train 102 serves 70042 -> 70242 -> 70212. Weekday service is removed on
    Thanksgiving (2026-11-26) and weekend service added instead.
    """
    return {
        "stops.txt": (
            "stop_id,stop_name,stop_lat,stop_lon\n"
            "70211,Mountain View,37.3942,-122.0764\n"
            "70212,Mountain View,37.3942,-122.0764\n"
            "70241,Palo Alto,37.4429,-122.1649\n"
            "70242,Palo Alto,37.4429,-122.1649\n"
            "70041,San Francisco,37.7765,-122.3947\n"
            "70042,San Francisco,37.7765,-122.3947\n"
        ),
        "routes.txt": (
            "route_id,route_short_name,route_long_name\n"
            "Local,Local,Local Weekday\n"
            "Weekend,Weekend,Local Weekend\n"
        ),
        "trips.txt": (
            "route_id,service_id,trip_id,trip_short_name,direction_id,trip_headsign\n"
            "Local,WKDY,T101,101,0,San Francisco\n"
            "Local,WKDY,T103,103,0,San Francisco\n"
            "Local,WKDY,T199,199,0,San Francisco\n"
            "Local,WKDY,T102,102,1,San Jose\n"
            "Weekend,WKND,T421,421,0,San Francisco\n"
        ),
        "stop_times.txt": (
            "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
            "T101,08:02:00,08:02:00,70211,1\n"
            "T101,08:10:00,08:10:00,70241,2\n"
            "T101,08:50:00,08:50:00,70041,3\n"
            "T103,08:20:00,08:20:00,70211,1\n"
            "T103,08:28:00,08:28:00,70241,2\n"
            "T103,09:10:00,09:10:00,70041,3\n"
            "T199,24:10:00,24:10:00,70211,1\n"
            "T199,24:18:00,,70241,2\n"
            "T199,25:00:00,25:00:00,70041,3\n"
            "T102,09:00:00,09:00:00,70042,1\n"
            "T102,09:40:00,09:40:00,70242,2\n"
            "T102,09:48:00,09:48:00,70212,3\n"
            "T421,10:05:00,10:05:00,70211,1\n"
            "T421,10:55:00,10:55:00,70041,2\n"
        ),
        "calendar.txt": (
            "service_id,monday,tuesday,wednesday,thursday,friday,saturday,sunday,start_date,end_date\n"
            "WKDY,1,1,1,1,1,0,0,20260101,20261231\n"
            "WKND,0,0,0,0,0,1,1,20260101,20261231\n"
        ),
        "calendar_dates.txt": (
            "service_id,date,exception_type\n"
            "WKDY,20261126,2\n"
            "WKND,20261126,1\n"
        ),
    }


@pytest.fixture
def gtfs_zip(gtfs_files: dict[str, str]) -> bytes:
    """The sample GTFS feed as a ZIP archive."""
    return build_zip(gtfs_files)


@pytest.fixture
def sample_tracker_yaml() -> str:
    """Return sample tracker.yaml content."""
    return """
defaults:
  timeout_seconds: 20
  retry:
    max_attempts: 4
    backoff_base: 0.5
    backoff_max: 8.0
  rate_limit:
    max_requests: 2
    window_seconds: 10
  cache_ttl_seconds: 45

matching:
  tolerance_seconds: 90

endpoints:
  - key: stop_monitoring
    url: https://api.example.com/transit/StopMonitoring
    params:
      agency: CT
      format: json
    auth:
      type: query
      key: api_key
      value: "${TEST_511_KEY}"

  - key: gtfs_schedule
    url: https://schedule.example.com/gtfs.zip
    timeout_seconds: 60
    cache_ttl_seconds: 0
    rate_limit:
      max_requests: 1
      window_seconds: 60
"""


@pytest.fixture
def sample_tracker_file(tmp_path: Path, sample_tracker_yaml: str) -> Path:
    """Create a temporary tracker.yaml file."""
    config_file = tmp_path / "tracker.yaml"
    config_file.write_text(sample_tracker_yaml)
    return config_file
