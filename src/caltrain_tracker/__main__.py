"""Command-line entry point for the Caltrain tracker."""

import argparse
import asyncio
import contextlib
import signal
import sys
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from functools import cached_property
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

import httpx
from prometheus_client import start_http_server

from caltrain_tracker.alerts import fetch_service_alerts
from caltrain_tracker.config import Settings, flatten_endpoints, load_config_file
from caltrain_tracker.errors import TrackerError
from caltrain_tracker.fetcher import FetchClient, create_http_client
from caltrain_tracker.history import HistoryStore
from caltrain_tracker.logging import bind_command, configure_logging, get_logger
from caltrain_tracker.models import Direction, MatchedDeparture, TripRecord
from caltrain_tracker.realtime import RealtimeService
from caltrain_tracker.schedule import ScheduleService
from caltrain_tracker.scheduler import RefreshScheduler, schedule_refresh_job
from caltrain_tracker.stops import (
    DEFAULT_NORTHBOUND_STOP,
    DEFAULT_SOUTHBOUND_STOP,
    STATIONS,
    find_station,
    nearest_station,
)

logger = get_logger(__name__)


@dataclass
class Tracker:
    """The wired-up services for one process."""

    settings: Settings
    http_client: httpx.AsyncClient
    fetch_client: FetchClient
    schedule: ScheduleService
    realtime: RealtimeService

    @cached_property
    def history(self) -> HistoryStore:
        """The trip history, opened on first use so other commands never read its file."""
        return HistoryStore(self.settings.history_path, self.settings.history_capacity)

    @property
    def timezone(self) -> ZoneInfo:
        return self.schedule.timezone

    def now(self) -> datetime:
        return datetime.now(self.timezone)


@contextlib.asynccontextmanager
async def open_tracker(settings: Settings) -> AsyncIterator[Tracker]:
    """Build every service from settings and close the HTTP client on exit."""
    file_config = load_config_file(settings.config_path)
    endpoints = flatten_endpoints(file_config)
    tolerance = timedelta(seconds=file_config.matching.tolerance_seconds)
    timezone = ZoneInfo(settings.feed_timezone)

    http_client = create_http_client()
    try:
        fetch_client = FetchClient(endpoints, http_client)
        schedule = ScheduleService(
            fetch_client,
            timezone=timezone,
            max_age=timedelta(hours=settings.schedule_refresh_hours),
            tolerance=tolerance,
        )
        realtime = RealtimeService(fetch_client, schedule, tolerance=tolerance)
        yield Tracker(
            settings=settings,
            http_client=http_client,
            fetch_client=fetch_client,
            schedule=schedule,
            realtime=realtime,
        )
    finally:
        await http_client.aclose()


def parse_time_of_day(value: str) -> time:
    """Parse ``HH:MM`` for argparse."""
    try:
        return datetime.strptime(value, "%H:%M").time()
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected HH:MM, got {value!r}") from None


def latest_occurrence(now: datetime, time_of_day: time) -> datetime:
    """The most recent instant at or before ``now`` showing ``time_of_day`` on the wall clock."""
    candidate = datetime.combine(now.date(), time_of_day, tzinfo=now.tzinfo)
    if candidate > now:
        candidate = datetime.combine(now.date() - timedelta(days=1), time_of_day, tzinfo=now.tzinfo)
    return candidate


def resolve_stop(query: str | None, direction: Direction) -> str:
    """Platform stop code for a station name or code in the given direction."""
    if query is None:
        return DEFAULT_NORTHBOUND_STOP if direction is Direction.NORTH else DEFAULT_SOUTHBOUND_STOP
    station = find_station(query)
    if station is None:
        raise SystemExit(f"Unknown station: {query}")
    return station.code_for(direction)


def format_departure(departure: MatchedDeparture, now: datetime) -> str:
    """One display line for a departure."""
    scheduled = departure.departure
    parts = [scheduled.departure_time.strftime("%H:%M")]
    if scheduled.trip_short_name:
        parts.append(f"Train {scheduled.trip_short_name}")
    if scheduled.destination:
        parts.append(f"to {scheduled.destination}")

    delay = departure.delay_minutes
    if delay is None:
        parts.append("(scheduled)")
    elif delay == 0:
        parts.append("on time")
    else:
        parts.append(f"{delay:+d} min")

    parts.append(f"in {departure.minutes_until(now)} min")
    if departure.arrival_time is not None:
        parts.append(f"arrives {departure.arrival_time.strftime('%H:%M')}")
    return "  ".join(parts)


async def cmd_departures(tracker: Tracker, args: argparse.Namespace) -> int:
    direction = Direction(args.direction)
    stop_id = resolve_stop(args.origin, direction)
    destination = resolve_stop(args.destination, direction) if args.destination else None
    now = tracker.now()

    departures = await tracker.realtime.get_departures(
        stop_id,
        direction,
        now,
        after=args.after,
        count=args.count,
        destination_stop=destination,
    )
    if not departures:
        print("No upcoming departures.")
        return 0
    for departure in departures:
        print(format_departure(departure, now))
    return 0


async def cmd_alerts(tracker: Tracker, args: argparse.Namespace) -> int:
    alerts = await fetch_service_alerts(tracker.fetch_client)
    if not alerts:
        print("No active service alerts.")
    for alert in alerts:
        print(f"[{alert.severity or 'INFO'}] {alert.summary}")
        if alert.description:
            print(f"    {alert.description}")
    return 0


async def cmd_history(tracker: Tracker, args: argparse.Namespace) -> int:
    records = tracker.history.read_all()
    if args.clear:
        await tracker.history.clear()
        print(f"Cleared {len(records)} records.")
        return 0
    for record in records[-args.limit :]:
        delay = "" if record.delay_minutes is None else f"  {record.delay_minutes:+d} min"
        destination = f" -> {record.to_stop}" if record.to_stop else ""
        print(
            f"{record.scheduled_time:%Y-%m-%d %H:%M}  {record.direction.label}  "
            f"{record.from_stop}{destination}  {record.route_id}{delay}"
        )
    return 0


async def cmd_record(tracker: Tracker, args: argparse.Namespace) -> int:
    direction = Direction(args.direction)
    now = tracker.now()
    trip = TripRecord(
        recorded_at=now,
        route_id=args.route,
        from_stop=resolve_stop(args.origin, direction),
        to_stop=resolve_stop(args.destination, direction) if args.destination else None,
        direction=direction,
        scheduled_time=latest_occurrence(now, args.scheduled),
        delay_minutes=args.delay,
        trip_id=args.trip_id,
    )
    await tracker.history.record(trip)
    print(f"Recorded trip {trip.id} ({len(tracker.history)} in history).")
    return 0


async def cmd_stations(tracker: Tracker, args: argparse.Namespace) -> int:
    if args.near is not None:
        station, miles = nearest_station(*args.near)
        print(f"{station.name}  N:{station.north_code}  S:{station.south_code}  {miles:.1f} mi")
        return 0
    for station in STATIONS:
        print(f"{station.name:<22} N:{station.north_code:<7} S:{station.south_code}")
    return 0


async def cmd_run(tracker: Tracker, args: argparse.Namespace) -> int:
    """Keep the schedule fresh in the background until SIGINT/SIGTERM."""
    settings = tracker.settings
    if settings.metrics_port is not None:
        start_http_server(settings.metrics_port)
        logger.info("metrics_server_started", port=settings.metrics_port)

    scheduler = RefreshScheduler([
        schedule_refresh_job(tracker.schedule, timedelta(hours=settings.schedule_refresh_hours)),
    ])

    shutdown_event = asyncio.Event()

    def handle_shutdown(signum: int, _frame: object) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        await scheduler.start()
        await shutdown_event.wait()
    finally:
        logger.info("shutting_down")
        await scheduler.stop(wait=True)
        logger.info("shutdown_complete")
    return 0


COMMANDS = {
    "departures": cmd_departures,
    "alerts": cmd_alerts,
    "history": cmd_history,
    "record": cmd_record,
    "stations": cmd_stations,
    "run": cmd_run,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="caltrain-tracker",
        description="Caltrain departures with live estimates, alerts and trip history.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    departures = subparsers.add_parser("departures", help="Show the next departures from a station")
    departures.add_argument("--from", dest="origin", help="Station name or stop code")
    departures.add_argument("--to", dest="destination", help="Destination for arrival times")
    departures.add_argument("--direction", choices=[d.value for d in Direction], default="north")
    departures.add_argument("--after", type=parse_time_of_day, help="List departures from HH:MM")
    departures.add_argument("--count", type=int, default=3)

    subparsers.add_parser("alerts", help="Show current service alerts")

    history = subparsers.add_parser("history", help="Show recorded trips")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--clear", action="store_true", help="Delete all recorded trips")

    record = subparsers.add_parser("record", help="Record a trip you took")
    record.add_argument("--from", dest="origin", help="Station name or stop code")
    record.add_argument("--to", dest="destination", help="Station name or stop code")
    record.add_argument("--direction", choices=[d.value for d in Direction], default="north")
    record.add_argument("--scheduled", type=parse_time_of_day, required=True, help="Scheduled HH:MM")
    record.add_argument("--route", default="Local")
    record.add_argument("--delay", type=int, help="Observed delay in minutes")
    record.add_argument("--trip-id")

    stations = subparsers.add_parser("stations", help="List stations")
    stations.add_argument("--near", type=float, nargs=2, metavar=("LAT", "LON"))

    subparsers.add_parser("run", help="Refresh the schedule in the background")
    return parser


async def run(args: argparse.Namespace, settings: Settings) -> int:
    """Run one command against a freshly wired tracker."""
    async with open_tracker(settings) as tracker:
        return await COMMANDS[args.command](tracker, args)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the Caltrain tracker."""
    args = build_parser().parse_args(argv)
    settings = Settings()
    configure_logging(settings.log_level, settings.log_format)
    bind_command(args.command)

    try:
        return asyncio.run(run(args, settings))
    except TrackerError as e:
        logger.error("command_failed", error_type=type(e).__name__, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
