"""Built-in catalog of Caltrain stations and their platform stop codes."""

import math
from dataclasses import dataclass

from caltrain_tracker.models import Direction

EARTH_RADIUS_MILES = 3959.0


@dataclass(frozen=True)
class Station:
    """A station with one platform stop code per travel direction."""

    name: str
    north_code: str
    south_code: str
    latitude: float
    longitude: float

    def code_for(self, direction: Direction) -> str:
        return self.north_code if direction is Direction.NORTH else self.south_code


# South to north
STATIONS: tuple[Station, ...] = (
    Station("Gilroy", "777403", "777404", 37.0035, -121.5682),
    Station("San Martin", "777402", "777405", 37.0855, -121.6106),
    Station("Morgan Hill", "777401", "777400", 37.1295, -121.6503),
    Station("Blossom Hill", "70007", "70008", 37.2524, -121.7983),
    Station("Capitol", "70005", "70006", 37.2894, -121.8421),
    Station("Tamien", "70003", "70004", 37.3119, -121.8841),
    Station("San Jose Diridon", "70261", "70262", 37.3297, -121.9026),
    Station("Santa Clara", "70271", "70272", 37.3530, -121.9364),
    Station("Lawrence", "70281", "70282", 37.3705, -121.9972),
    Station("Sunnyvale", "70291", "70292", 37.3784, -122.0309),
    Station("Mountain View", "70211", "70212", 37.3942, -122.0764),
    Station("San Antonio", "70221", "70222", 37.4074, -122.1070),
    Station("California Ave", "70231", "70232", 37.4294, -122.1426),
    Station("Palo Alto", "70241", "70242", 37.4429, -122.1649),
    Station("Menlo Park", "70251", "70252", 37.4546, -122.1824),
    Station("Redwood City", "70311", "70312", 37.4854, -122.2317),
    Station("San Carlos", "70321", "70322", 37.5071, -122.2604),
    Station("Belmont", "70331", "70332", 37.5206, -122.2756),
    Station("Hillsdale", "70341", "70342", 37.5378, -122.2977),
    Station("San Mateo", "70351", "70352", 37.5683, -122.3238),
    Station("Burlingame", "70361", "70362", 37.5797, -122.3449),
    Station("Millbrae", "70371", "70372", 37.5996, -122.3868),
    Station("San Bruno", "70381", "70382", 37.6308, -122.4112),
    Station("South San Francisco", "70011", "70012", 37.6566, -122.4056),
    Station("Bayshore", "70031", "70032", 37.7097, -122.4016),
    Station("22nd Street", "70021", "70022", 37.7571, -122.3924),
    Station("San Francisco", "70041", "70042", 37.7765, -122.3947),
)

_BY_CODE: dict[str, Station] = {}
for _station in STATIONS:
    _BY_CODE[_station.north_code] = _station
    _BY_CODE[_station.south_code] = _station

DEFAULT_NORTHBOUND_STOP = "70211"  # Mountain View
DEFAULT_SOUTHBOUND_STOP = "70022"  # 22nd Street


def station_for_code(stop_code: str) -> Station | None:
    """Station serving a platform stop code."""
    return _BY_CODE.get(stop_code)


def find_station(query: str) -> Station | None:
    """Look up a station by stop code or case-insensitive name."""
    station = station_for_code(query.strip())
    if station is not None:
        return station
    wanted = query.strip().casefold()
    for station in STATIONS:
        if station.name.casefold() == wanted:
            return station
    return None


def direction_of(stop_code: str) -> Direction | None:
    """Direction served by a platform stop code."""
    station = station_for_code(stop_code)
    if station is None:
        return None
    return Direction.NORTH if station.north_code == stop_code else Direction.SOUTH


def counterpart(stop_code: str, direction: Direction) -> str | None:
    """The same station's platform code for ``direction``."""
    station = station_for_code(stop_code)
    return station.code_for(direction) if station else None


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in miles."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(math.sqrt(a))


def nearest_station(latitude: float, longitude: float) -> tuple[Station, float]:
    """Closest station to a position, with its distance in miles."""
    return min(
        ((station, haversine_miles(latitude, longitude, station.latitude, station.longitude))
         for station in STATIONS),
        key=lambda pair: pair[1],
    )
