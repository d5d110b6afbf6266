"""GTFS static schedule parsing and the immutable StaticSchedule snapshot."""

import csv
import io
import re
from collections import defaultdict
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from types import MappingProxyType
from zoneinfo import ZoneInfo

from caltrain_tracker.errors import EmptySchedule, ParseError
from caltrain_tracker.logging import get_logger
from caltrain_tracker.models import Direction, ScheduledDeparture

logger = get_logger(__name__)

REQUIRED_FILES = ("stops.txt", "trips.txt", "stop_times.txt")
CALENDAR_FILES = ("calendar.txt", "calendar_dates.txt")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

REQUIRED_COLUMNS: dict[str, tuple[str, ...]] = {
    "stops.txt": ("stop_id",),
    "routes.txt": ("route_id",),
    "trips.txt": ("route_id", "service_id", "trip_id"),
    "stop_times.txt": ("trip_id", "stop_id", "stop_sequence"),
    "calendar.txt": ("service_id", *WEEKDAYS, "start_date", "end_date"),
    "calendar_dates.txt": ("service_id", "date", "exception_type"),
}

# GTFS direction_id values as published by Caltrain
DEFAULT_DIRECTION_IDS: Mapping[str, Direction] = MappingProxyType({
    "0": Direction.NORTH,
    "1": Direction.SOUTH,
})

_TIME_PATTERN = re.compile(r"^(\d{1,3}):([0-5]\d):([0-5]\d)$")


def parse_gtfs_time(value: str) -> timedelta:
    """Parse a GTFS ``H:MM:SS`` time into an offset from the service day's start.

    Hours may be 24 or more for trips running past midnight.

    Raises:
        ValueError: If the value is not a valid GTFS time.
    """
    match = _TIME_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid GTFS time: {value!r}")
    hours, minutes, seconds = (int(part) for part in match.groups())
    return timedelta(hours=hours, minutes=minutes, seconds=seconds)


def parse_gtfs_date(value: str) -> date:
    """Parse a GTFS ``YYYYMMDD`` date."""
    return datetime.strptime(value.strip(), "%Y%m%d").date()


@dataclass(frozen=True)
class Stop:
    stop_id: str
    name: str
    latitude: float | None = None
    longitude: float | None = None
    parent_station: str | None = None


@dataclass(frozen=True)
class Route:
    route_id: str
    short_name: str | None = None
    long_name: str | None = None


@dataclass(frozen=True)
class Trip:
    trip_id: str
    route_id: str
    service_id: str
    direction: Direction | None = None
    short_name: str | None = None
    headsign: str | None = None


@dataclass(frozen=True)
class StopTime:
    """A trip's visit to a stop, as offsets from the start of its service day."""

    trip_id: str
    stop_id: str
    stop_sequence: int
    arrival: timedelta
    departure: timedelta


@dataclass(frozen=True)
class ServiceCalendar:
    """A weekly service pattern valid over an inclusive date range."""

    service_id: str
    weekdays: tuple[bool, ...]
    start_date: date
    end_date: date

    def runs_on(self, service_date: date) -> bool:
        return (
            self.start_date <= service_date <= self.end_date
            and self.weekdays[service_date.weekday()]
        )


@dataclass
class ParseStats:
    """Rows read and skipped per schedule file."""

    rows_read: dict[str, int] = field(default_factory=dict)
    rows_skipped: dict[str, int] = field(default_factory=dict)

    @property
    def total_skipped(self) -> int:
        return sum(self.rows_skipped.values())

    def count(self, file_name: str, skipped: bool = False) -> None:
        self.rows_read[file_name] = self.rows_read.get(file_name, 0) + 1
        if skipped:
            self.rows_skipped[file_name] = self.rows_skipped.get(file_name, 0) + 1


@dataclass(frozen=True)
class StaticSchedule:
    """An immutable, fully parsed static schedule.

    A schedule is never modified after construction; a refresh builds a new
    instance and replaces the reference to the old one.
    """

    stops: Mapping[str, Stop]
    routes: Mapping[str, Route]
    trips: Mapping[str, Trip]
    stop_times_by_stop: Mapping[str, tuple[StopTime, ...]]
    stop_times_by_trip: Mapping[str, tuple[StopTime, ...]]
    calendars: Mapping[str, ServiceCalendar]
    added_services: Mapping[date, frozenset[str]]
    removed_services: Mapping[date, frozenset[str]]
    timezone: ZoneInfo
    stats: ParseStats
    loaded_at: datetime
    digest: str | None = None

    @property
    def trip_count(self) -> int:
        return len(self.stop_times_by_trip)

    def active_service_ids(self, service_date: date) -> frozenset[str]:
        """Services running on a date: weekly calendars, then date exceptions."""
        active = {
            service_id
            for service_id, calendar in self.calendars.items()
            if calendar.runs_on(service_date)
        }
        active |= self.added_services.get(service_date, frozenset())
        active -= self.removed_services.get(service_date, frozenset())
        return frozenset(active)

    def instant(self, service_date: date, offset: timedelta) -> datetime:
        """Convert a service-day offset into a timezone-aware instant.

        Offsets are measured from noon minus twelve hours, which is midnight
        except on days with a DST transition. The arithmetic runs in UTC so
        ``25:30:00`` lands at 01:30 the next calendar day.
        """
        noon = datetime.combine(service_date, time(12), tzinfo=self.timezone)
        start = noon.astimezone(UTC) - timedelta(hours=12)
        return (start + offset).astimezone(self.timezone)

    def stop_name(self, stop_id: str) -> str | None:
        stop = self.stops.get(stop_id)
        return stop.name if stop else None

    def destination(self, trip_id: str) -> str | None:
        """Name of a trip's final stop (falls back to its headsign)."""
        stop_times = self.stop_times_by_trip.get(trip_id)
        if stop_times:
            name = self.stop_name(stop_times[-1].stop_id)
            if name:
                return name
        trip = self.trips.get(trip_id)
        return trip.headsign if trip else None

    def departures(
        self,
        stop_id: str,
        service_date: date,
        direction: Direction | None = None,
        route_id: str | None = None,
    ) -> list[ScheduledDeparture]:
        """Scheduled departures from a stop on one service date, in time order.

        The final stop of a trip is not a departure and is excluded.
        """
        active = self.active_service_ids(service_date)
        if not active:
            return []

        results: list[ScheduledDeparture] = []
        for stop_time in self.stop_times_by_stop.get(stop_id, ()):
            trip = self.trips[stop_time.trip_id]
            # Trips without a known direction cannot be matched or displayed
            if trip.direction is None or trip.service_id not in active:
                continue
            if direction is not None and trip.direction != direction:
                continue
            if route_id is not None and trip.route_id != route_id:
                continue
            if self.stop_times_by_trip[trip.trip_id][-1] is stop_time:
                continue
            results.append(
                ScheduledDeparture(
                    trip_id=trip.trip_id,
                    route_id=trip.route_id,
                    direction=trip.direction,
                    stop_id=stop_id,
                    departure_time=self.instant(service_date, stop_time.departure),
                    service_date=service_date,
                    trip_short_name=trip.short_name,
                    destination=self.destination(trip.trip_id),
                )
            )

        results.sort(key=lambda departure: (departure.departure_time, departure.trip_id))
        return results

    def stop_time(self, trip_id: str, stop_id: str) -> StopTime | None:
        for stop_time in self.stop_times_by_trip.get(trip_id, ()):
            if stop_time.stop_id == stop_id:
                return stop_time
        return None


def _rows(files: Mapping[str, bytes], file_name: str) -> Iterator[dict[str, str]]:
    """Yield stripped CSV rows of a schedule file, validating its header.

    Raises:
        ParseError: If the file cannot be decoded, is not well-formed CSV or
            lacks a required column.
    """
    try:
        text = files[file_name].decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError(f"{file_name} is not valid UTF-8: {e}") from e

    reader = csv.DictReader(io.StringIO(text))
    try:
        fieldnames = [name.strip() for name in reader.fieldnames or []]
    except csv.Error as e:
        raise ParseError(f"{file_name}: {e}") from e
    missing = [column for column in REQUIRED_COLUMNS.get(file_name, ()) if column not in fieldnames]
    if missing:
        raise ParseError(f"{file_name} is missing required columns: {', '.join(missing)}")
    reader.fieldnames = fieldnames

    try:
        for row in reader:
            yield {key: (value or "").strip() for key, value in row.items() if key is not None}
    except csv.Error as e:
        raise ParseError(f"{file_name} line {reader.line_num}: {e}") from e


def _parse_stops(files: Mapping[str, bytes], stats: ParseStats) -> dict[str, Stop]:
    stops: dict[str, Stop] = {}
    for row in _rows(files, "stops.txt"):
        stop_id = row["stop_id"]
        if not stop_id:
            stats.count("stops.txt", skipped=True)
            continue
        try:
            latitude = float(row["stop_lat"]) if row.get("stop_lat") else None
            longitude = float(row["stop_lon"]) if row.get("stop_lon") else None
        except ValueError:
            stats.count("stops.txt", skipped=True)
            continue
        stops[stop_id] = Stop(
            stop_id=stop_id,
            name=row.get("stop_name") or stop_id,
            latitude=latitude,
            longitude=longitude,
            parent_station=row.get("parent_station") or None,
        )
        stats.count("stops.txt")
    return stops


def _parse_routes(files: Mapping[str, bytes], stats: ParseStats) -> dict[str, Route]:
    routes: dict[str, Route] = {}
    if "routes.txt" not in files:
        return routes
    for row in _rows(files, "routes.txt"):
        if not row["route_id"]:
            stats.count("routes.txt", skipped=True)
            continue
        routes[row["route_id"]] = Route(
            route_id=row["route_id"],
            short_name=row.get("route_short_name") or None,
            long_name=row.get("route_long_name") or None,
        )
        stats.count("routes.txt")
    return routes


def _parse_trips(
    files: Mapping[str, bytes],
    stats: ParseStats,
    direction_ids: Mapping[str, Direction],
) -> dict[str, Trip]:
    trips: dict[str, Trip] = {}
    for row in _rows(files, "trips.txt"):
        if not (row["trip_id"] and row["route_id"] and row["service_id"]):
            stats.count("trips.txt", skipped=True)
            continue
        trips[row["trip_id"]] = Trip(
            trip_id=row["trip_id"],
            route_id=row["route_id"],
            service_id=row["service_id"],
            direction=direction_ids.get(row.get("direction_id", "")),
            short_name=row.get("trip_short_name") or None,
            headsign=row.get("trip_headsign") or None,
        )
        stats.count("trips.txt")
    return trips


def _parse_stop_times(
    files: Mapping[str, bytes],
    stats: ParseStats,
    trips: Mapping[str, Trip],
) -> list[StopTime]:
    stop_times: list[StopTime] = []
    for row in _rows(files, "stop_times.txt"):
        arrival_text = row.get("arrival_time", "")
        departure_text = row.get("departure_time", "") or arrival_text
        arrival_text = arrival_text or departure_text
        try:
            if row["trip_id"] not in trips or not row["stop_id"]:
                raise ValueError("unknown trip or missing stop")
            stop_time = StopTime(
                trip_id=row["trip_id"],
                stop_id=row["stop_id"],
                stop_sequence=int(row["stop_sequence"]),
                arrival=parse_gtfs_time(arrival_text),
                departure=parse_gtfs_time(departure_text),
            )
        except ValueError:
            stats.count("stop_times.txt", skipped=True)
            continue
        stop_times.append(stop_time)
        stats.count("stop_times.txt")
    return stop_times


def _parse_calendars(files: Mapping[str, bytes], stats: ParseStats) -> dict[str, ServiceCalendar]:
    calendars: dict[str, ServiceCalendar] = {}
    if "calendar.txt" not in files:
        return calendars
    for row in _rows(files, "calendar.txt"):
        try:
            if not row["service_id"]:
                raise ValueError("missing service_id")
            weekdays = tuple(row[day] == "1" for day in WEEKDAYS)
            calendar = ServiceCalendar(
                service_id=row["service_id"],
                weekdays=weekdays,
                start_date=parse_gtfs_date(row["start_date"]),
                end_date=parse_gtfs_date(row["end_date"]),
            )
        except ValueError:
            stats.count("calendar.txt", skipped=True)
            continue
        calendars[calendar.service_id] = calendar
        stats.count("calendar.txt")
    return calendars


def _parse_calendar_dates(
    files: Mapping[str, bytes],
    stats: ParseStats,
) -> tuple[dict[date, frozenset[str]], dict[date, frozenset[str]]]:
    added: defaultdict[date, set[str]] = defaultdict(set)
    removed: defaultdict[date, set[str]] = defaultdict(set)
    if "calendar_dates.txt" in files:
        for row in _rows(files, "calendar_dates.txt"):
            try:
                service_date = parse_gtfs_date(row["date"])
            except ValueError:
                stats.count("calendar_dates.txt", skipped=True)
                continue
            match row["exception_type"]:
                case "1":
                    added[service_date].add(row["service_id"])
                case "2":
                    removed[service_date].add(row["service_id"])
                case _:
                    stats.count("calendar_dates.txt", skipped=True)
                    continue
            stats.count("calendar_dates.txt")
    return (
        {day: frozenset(ids) for day, ids in added.items()},
        {day: frozenset(ids) for day, ids in removed.items()},
    )


def build_schedule(
    files: Mapping[str, bytes],
    timezone: ZoneInfo,
    direction_ids: Mapping[str, Direction] = DEFAULT_DIRECTION_IDS,
    loaded_at: datetime | None = None,
    digest: str | None = None,
) -> StaticSchedule:
    """Parse extracted GTFS files into a StaticSchedule.

    Malformed rows are skipped and counted in ``StaticSchedule.stats``.

    Args:
        files: Mapping of file name to raw CSV bytes.
        timezone: Timezone the schedule's times are expressed in.
        direction_ids: Mapping of GTFS ``direction_id`` values to directions.
        loaded_at: When the schedule was obtained (defaults to now).
        digest: Optional content digest of the source archive.

    Raises:
        ParseError: If a required file or column is missing, or a file is not
            decodable CSV.
        EmptySchedule: If no trip has any valid stop times.
    """
    missing = [name for name in REQUIRED_FILES if name not in files]
    if missing:
        raise ParseError(f"Schedule is missing required files: {', '.join(missing)}")
    if not any(name in files for name in CALENDAR_FILES):
        raise ParseError("Schedule has neither calendar.txt nor calendar_dates.txt")

    stats = ParseStats()
    stops = _parse_stops(files, stats)
    routes = _parse_routes(files, stats)
    trips = _parse_trips(files, stats, direction_ids)
    stop_times = _parse_stop_times(files, stats, trips)
    calendars = _parse_calendars(files, stats)
    added, removed = _parse_calendar_dates(files, stats)

    by_trip: defaultdict[str, list[StopTime]] = defaultdict(list)
    by_stop: defaultdict[str, list[StopTime]] = defaultdict(list)
    for stop_time in stop_times:
        by_trip[stop_time.trip_id].append(stop_time)
        by_stop[stop_time.stop_id].append(stop_time)

    if not by_trip:
        raise EmptySchedule("Schedule contains no trips with valid stop times")

    for trip_stop_times in by_trip.values():
        trip_stop_times.sort(key=lambda stop_time: stop_time.stop_sequence)
    for stop_stop_times in by_stop.values():
        stop_stop_times.sort(key=lambda stop_time: stop_time.departure)

    schedule = StaticSchedule(
        stops=MappingProxyType(stops),
        routes=MappingProxyType(routes),
        trips=MappingProxyType({trip_id: trips[trip_id] for trip_id in by_trip}),
        stop_times_by_stop=MappingProxyType({k: tuple(v) for k, v in by_stop.items()}),
        stop_times_by_trip=MappingProxyType({k: tuple(v) for k, v in by_trip.items()}),
        calendars=MappingProxyType(calendars),
        added_services=MappingProxyType(added),
        removed_services=MappingProxyType(removed),
        timezone=timezone,
        stats=stats,
        loaded_at=loaded_at or datetime.now(UTC),
        digest=digest,
    )

    logger.info(
        "schedule_parsed",
        stops=len(stops),
        trips=schedule.trip_count,
        stop_times=len(stop_times),
        skipped_rows=stats.total_skipped,
    )
    return schedule
