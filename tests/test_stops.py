"""Tests for the station catalog."""

import pytest

from caltrain_tracker.models import Direction
from caltrain_tracker.stops import (
    DEFAULT_NORTHBOUND_STOP,
    DEFAULT_SOUTHBOUND_STOP,
    STATIONS,
    counterpart,
    direction_of,
    find_station,
    haversine_miles,
    nearest_station,
)


class TestCatalog:
    """Tests for the built-in station list."""

    def test_codes_unique(self) -> None:
        """Every platform code belongs to exactly one station."""
        codes = [code for station in STATIONS for code in (station.north_code, station.south_code)]
        assert len(codes) == len(set(codes))

    def test_defaults_are_known(self) -> None:
        """The default stops exist and face the right way."""
        assert direction_of(DEFAULT_NORTHBOUND_STOP) is Direction.NORTH
        assert direction_of(DEFAULT_SOUTHBOUND_STOP) is Direction.SOUTH


class TestLookup:
    """Tests for station lookup helpers."""

    @pytest.mark.parametrize("query", ["70241", "70242", "Palo Alto", "  palo alto "])
    def test_find_station(self, query: str) -> None:
        """Stations are found by either platform code or name."""
        station = find_station(query)
        assert station is not None
        assert station.name == "Palo Alto"

    def test_unknown_station(self) -> None:
        """Unknown queries give None."""
        assert find_station("Oakland") is None
        assert direction_of("99999") is None

    def test_counterpart(self) -> None:
        """The opposite platform of the same station."""
        assert counterpart("70211", Direction.SOUTH) == "70212"
        assert counterpart("70212", Direction.NORTH) == "70211"
        assert counterpart("99999", Direction.NORTH) is None


class TestDistance:
    """Tests for distance helpers."""

    def test_zero_distance(self) -> None:
        """A point is zero miles from itself."""
        assert haversine_miles(37.39, -122.07, 37.39, -122.07) == 0

    def test_known_distance(self) -> None:
        """Mountain View to San Francisco is about 32 miles as the crow flies."""
        miles = haversine_miles(37.3942, -122.0764, 37.7765, -122.3947)
        assert miles == pytest.approx(31.5, abs=1.5)

    def test_nearest_station(self) -> None:
        """The closest station to a point near Castro Street is Mountain View."""
        station, miles = nearest_station(37.3935, -122.0790)
        assert station.name == "Mountain View"
        assert miles < 0.5
