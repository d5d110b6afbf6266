"""Tests for live estimate matching and the realtime departure service."""

import json
from collections.abc import AsyncIterator
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import httpx
import pytest
import respx
from httpx import Response

from caltrain_tracker.fetcher import FetchClient
from caltrain_tracker.models import (
    Direction,
    EndpointConfig,
    LiveEstimate,
    ScheduledDeparture,
)
from caltrain_tracker.realtime import RealtimeService, match, normalize_direction
from caltrain_tracker.schedule import ScheduleService

PACIFIC = ZoneInfo("America/Los_Angeles")
SCHEDULE_URL = "https://schedule.example.com/gtfs.zip"
STOP_MONITORING_URL = "https://api.example.com/transit/StopMonitoring"

MONDAY_MORNING = datetime(2026, 10, 19, 7, 30, tzinfo=PACIFIC)


def at(hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2026, 10, 19, hour, minute, second, tzinfo=PACIFIC)


def departure(
    trip_id: str = "T101",
    when: datetime | None = None,
    direction: Direction = Direction.NORTH,
    route_id: str = "Local",
    stop_id: str = "70211",
) -> ScheduledDeparture:
    return ScheduledDeparture(
        trip_id=trip_id,
        route_id=route_id,
        direction=direction,
        stop_id=stop_id,
        departure_time=when or at(8, 2),
        service_date=date(2026, 10, 19),
    )


def estimate(
    when: datetime,
    direction_token: str | None = "N",
    route_id: str | None = "Local",
    stop_id: str | None = "70211",
    journey_ref: str | None = None,
) -> LiveEstimate:
    return LiveEstimate(
        journey_ref=journey_ref,
        route_id=route_id,
        direction_token=direction_token,
        predicted_time=when,
        stop_id=stop_id,
    )


class TestNormalizeDirection:
    """Tests for the direction whitelist."""

    @pytest.mark.parametrize("token", ["N", "nb", " North ", "NORTHBOUND"])
    def test_north_tokens(self, token: str) -> None:
        """Northbound spellings map to NORTH."""
        assert normalize_direction(token) is Direction.NORTH

    @pytest.mark.parametrize("token", ["S", "SB", "south", "Southbound"])
    def test_south_tokens(self, token: str) -> None:
        """Southbound spellings map to SOUTH."""
        assert normalize_direction(token) is Direction.SOUTH

    @pytest.mark.parametrize("token", ["NEWARK", "SAN JOSE", "NORTHERN", "0", "", None])
    def test_unknown_tokens_rejected(self, token: str | None) -> None:
        """Anything not on the whitelist is rejected, including prefix lookalikes."""
        assert normalize_direction(token) is None


class TestMatch:
    """Tests for match."""

    def test_one_minute_late(self) -> None:
        """An estimate a minute after the scheduled time matches with a +1 delay."""
        result = match([departure(when=at(8, 2))], [estimate(at(8, 3), "NORTHBOUND")])

        assert result[0].estimate is not None
        assert result[0].delay_minutes == 1
        assert result[0].live_time == at(8, 3)

    def test_outside_tolerance_unmatched(self) -> None:
        """Four minutes away is beyond the two-minute window."""
        result = match([departure(when=at(8, 2))], [estimate(at(8, 6))])

        assert result[0].estimate is None
        assert result[0].delay_minutes is None

    def test_tolerance_is_inclusive(self) -> None:
        """Exactly two minutes still matches."""
        result = match([departure(when=at(8, 2))], [estimate(at(8, 4))])

        assert result[0].delay_minutes == 2

    def test_prefix_lookalike_direction_rejected(self) -> None:
        """A destination-like token starting with N is not northbound."""
        result = match([departure(when=at(8, 2))], [estimate(at(8, 2), "NEWARK")])

        assert result[0].estimate is None

    def test_opposite_direction_rejected(self) -> None:
        """Southbound estimates never match northbound departures."""
        result = match([departure(when=at(8, 2))], [estimate(at(8, 2), "SB")])

        assert result[0].estimate is None

    def test_estimate_assigned_once(self) -> None:
        """One estimate near two departures goes to the closer one only."""
        first = departure("T101", at(8, 2))
        second = departure("T103", at(8, 4))
        live = estimate(at(8, 3, 30))

        result = match([first, second], [live])

        assert result[0].estimate is None
        assert result[1].estimate is live

    def test_each_departure_gets_its_nearest_available(self) -> None:
        """Globally closest pairs are assigned first."""
        first = departure("T101", at(8, 2))
        second = departure("T103", at(8, 4))
        early = estimate(at(8, 2, 30), journey_ref="101")
        late = estimate(at(8, 4, 30), journey_ref="103")

        result = match([first, second], [late, early])

        assert result[0].estimate is early
        assert result[1].estimate is late

    def test_tie_prefers_earliest_predicted_time(self) -> None:
        """Equally distant estimates resolve to the earlier prediction."""
        scheduled = departure(when=at(8, 2))
        before = estimate(at(8, 1), journey_ref="before")
        after = estimate(at(8, 3), journey_ref="after")

        forward = match([scheduled], [after, before])
        backward = match([scheduled], [before, after])

        assert forward[0].estimate is before
        assert backward[0].estimate is before

    def test_missing_route_is_wildcard(self) -> None:
        """Estimates without a line reference can match any route."""
        result = match([departure(route_id="Local")], [estimate(at(8, 2), route_id=None)])

        assert result[0].estimate is not None

    def test_route_mismatch_rejected(self) -> None:
        """A different line never matches."""
        result = match([departure(route_id="Local")], [estimate(at(8, 2), route_id="Express")])

        assert result[0].estimate is None

    def test_stop_mismatch_rejected(self) -> None:
        """Estimates for another platform are ignored."""
        result = match([departure(stop_id="70211")], [estimate(at(8, 2), stop_id="70212")])

        assert result[0].estimate is None

    def test_order_preserved_and_deterministic(self) -> None:
        """Output follows candidate order and repeats identically."""
        candidates = [departure("T103", at(8, 20)), departure("T101", at(8, 2))]
        estimates = [estimate(at(8, 3)), estimate(at(8, 21))]

        first = match(candidates, estimates)
        second = match(candidates, estimates)

        assert [m.departure.trip_id for m in first] == ["T103", "T101"]
        assert first == second
        assert [m.delay_minutes for m in first] == [1, 1]

    def test_custom_tolerance(self) -> None:
        """The window can be narrowed."""
        result = match([departure(when=at(8, 2))], [estimate(at(8, 3))], tolerance=timedelta(seconds=30))

        assert result[0].estimate is None

    def test_no_estimates(self) -> None:
        """Every departure is returned unmatched."""
        result = match([departure()], [])

        assert len(result) == 1
        assert result[0].estimate is None


def stop_monitoring_body(*visits: dict[str, Any]) -> bytes:
    return json.dumps(
        {"Siri": {"ServiceDelivery": {"StopMonitoringDelivery": {"MonitoredStopVisit": list(visits)}}}}
    ).encode()


def live_visit(expected: str, direction: str = "N", onward: list[dict[str, str]] | None = None) -> dict[str, Any]:
    journey: dict[str, Any] = {
        "LineRef": "Local",
        "DirectionRef": direction,
        "MonitoredCall": {"StopPointRef": "70211", "ExpectedDepartureTime": expected},
    }
    if onward is not None:
        journey["OnwardCalls"] = {"OnwardCall": onward}
    return {"MonitoringRef": "70211", "MonitoredVehicleJourney": journey}


class TestRealtimeService:
    """Tests for RealtimeService.get_departures."""

    @pytest.fixture
    async def fetch_client(
        self, tracker_endpoints: dict[str, EndpointConfig], clock
    ) -> AsyncIterator[FetchClient]:
        async with httpx.AsyncClient() as http:
            yield FetchClient(tracker_endpoints, http, clock=clock, sleep=clock.sleep)

    @pytest.fixture
    def service(self, fetch_client: FetchClient) -> RealtimeService:
        schedule = ScheduleService(fetch_client, timezone=PACIFIC, clock=lambda: MONDAY_MORNING)
        return RealtimeService(fetch_client, schedule)

    @respx.mock
    async def test_departures_enriched_with_live_times(self, service: RealtimeService, gtfs_zip: bytes) -> None:
        """Scheduled departures carry matched live estimates."""
        respx.get(SCHEDULE_URL).mock(return_value=Response(200, content=gtfs_zip))
        route = respx.get(STOP_MONITORING_URL).mock(
            return_value=Response(200, content=stop_monitoring_body(live_visit("2026-10-19T08:03:00-07:00")))
        )

        departures = await service.get_departures("70211", Direction.NORTH, MONDAY_MORNING, count=2)

        assert [d.departure.trip_id for d in departures] == ["T101", "T103"]
        assert departures[0].delay_minutes == 1
        assert departures[1].estimate is None
        request = route.calls[0].request
        assert request.url.params["stopcode"] == "70211"
        assert request.url.params["MaximumStopVisits"] == "6"

    @respx.mock
    async def test_realtime_failure_falls_back_to_schedule(
        self, service: RealtimeService, gtfs_zip: bytes
    ) -> None:
        """A broken live feed leaves scheduled times in place."""
        respx.get(SCHEDULE_URL).mock(return_value=Response(200, content=gtfs_zip))
        respx.get(STOP_MONITORING_URL).mock(return_value=Response(503))

        departures = await service.get_departures("70211", Direction.NORTH, MONDAY_MORNING, count=2)

        assert len(departures) == 2
        assert all(d.estimate is None for d in departures)
        assert departures[0].expected_time == at(8, 2)

    @respx.mock
    async def test_undecodable_live_feed_falls_back(self, service: RealtimeService, gtfs_zip: bytes) -> None:
        """A garbage response body is treated like no live data."""
        respx.get(SCHEDULE_URL).mock(return_value=Response(200, content=gtfs_zip))
        respx.get(STOP_MONITORING_URL).mock(return_value=Response(200, content=b"<html>oops"))

        departures = await service.get_departures("70211", Direction.NORTH, MONDAY_MORNING, count=1)

        assert departures[0].estimate is None

    @respx.mock
    async def test_no_candidates_skips_live_request(self, service: RealtimeService, gtfs_zip: bytes) -> None:
        """Stops without departures do not query the live feed."""
        respx.get(SCHEDULE_URL).mock(return_value=Response(200, content=gtfs_zip))
        route = respx.get(STOP_MONITORING_URL).mock(return_value=Response(200, content=b"{}"))

        departures = await service.get_departures("70041", Direction.NORTH, MONDAY_MORNING)

        assert departures == []
        assert route.call_count == 0

    @respx.mock
    async def test_destination_arrival_from_onward_calls(
        self, service: RealtimeService, gtfs_zip: bytes
    ) -> None:
        """Live onward calls supply the arrival time at the destination."""
        respx.get(SCHEDULE_URL).mock(return_value=Response(200, content=gtfs_zip))
        onward = [{"StopPointRef": "70041", "ExpectedArrivalTime": "2026-10-19T08:53:00-07:00"}]
        respx.get(STOP_MONITORING_URL).mock(
            return_value=Response(
                200, content=stop_monitoring_body(live_visit("2026-10-19T08:03:00-07:00", onward=onward))
            )
        )

        departures = await service.get_departures(
            "70211", Direction.NORTH, MONDAY_MORNING, count=2, destination_stop="70041"
        )

        assert departures[0].arrival_time == at(8, 53)
        assert departures[1].arrival_time == at(9, 10)
