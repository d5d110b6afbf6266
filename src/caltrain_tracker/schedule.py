"""Static schedule service: download, validate, parse and query the GTFS schedule."""

import asyncio
import hashlib
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from caltrain_tracker.archive import (
    DEFAULT_MAX_COMPRESSION_RATIO,
    DEFAULT_MAX_MEMBER_BYTES,
    extract_archive,
)
from caltrain_tracker.errors import ScheduleError, TrackerError
from caltrain_tracker.fetcher import FetchClient
from caltrain_tracker.gtfs import DEFAULT_DIRECTION_IDS, StaticSchedule, build_schedule
from caltrain_tracker.logging import get_logger
from caltrain_tracker.metrics import record_schedule_refresh, record_skipped_rows
from caltrain_tracker.models import Direction, ScheduledDeparture

logger = get_logger(__name__)

DEFAULT_TIMEZONE = ZoneInfo("America/Los_Angeles")
DEFAULT_MAX_AGE = timedelta(hours=24)
DEFAULT_TOLERANCE = timedelta(minutes=2)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ScheduleService:
    """Owns the current StaticSchedule and answers departure queries against it.

    Reads never wait on a refresh: they see the previous schedule until the
    new one has been fully validated and parsed, at which point the reference
    is replaced in a single assignment. At most one refresh runs at a time;
    callers arriving while one is in flight share its outcome.

    Args:
        fetch_client: FetchClient used to download the archive.
        endpoint_key: Endpoint key of the schedule archive.
        timezone: Timezone the schedule's times are expressed in.
        max_age: Age after which ``ensure_loaded`` downloads the schedule again.
        direction_ids: Mapping of GTFS ``direction_id`` values to directions.
        tolerance: Window used to identify a trip from a departure time.
        clock: Returns the current time (injectable for tests).
    """

    def __init__(
        self,
        fetch_client: FetchClient,
        endpoint_key: str = "gtfs_schedule",
        timezone: ZoneInfo = DEFAULT_TIMEZONE,
        max_age: timedelta = DEFAULT_MAX_AGE,
        direction_ids: Mapping[str, Direction] = DEFAULT_DIRECTION_IDS,
        tolerance: timedelta = DEFAULT_TOLERANCE,
        clock: Callable[[], datetime] = _utcnow,
        max_member_bytes: int = DEFAULT_MAX_MEMBER_BYTES,
        max_compression_ratio: float = DEFAULT_MAX_COMPRESSION_RATIO,
    ) -> None:
        self._fetch_client = fetch_client
        self.endpoint_key = endpoint_key
        self.timezone = timezone
        self.max_age = max_age
        self.direction_ids = direction_ids
        self.tolerance = tolerance
        self._clock = clock
        self._max_member_bytes = max_member_bytes
        self._max_compression_ratio = max_compression_ratio

        self._schedule: StaticSchedule | None = None
        self._refresh_task: asyncio.Task[StaticSchedule] | None = None

    @property
    def schedule(self) -> StaticSchedule | None:
        """The current schedule, or None before the first successful refresh."""
        return self._schedule

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None

    def require_schedule(self) -> StaticSchedule:
        """Return the current schedule.

        Raises:
            ScheduleError: If no schedule has been loaded yet.
        """
        schedule = self._schedule
        if schedule is None:
            raise ScheduleError("No static schedule has been loaded")
        return schedule

    async def refresh(self) -> StaticSchedule:
        """Download, validate and parse the schedule, then swap it in.

        Concurrent callers join the refresh already in flight. On failure the
        previous schedule stays in place and the error is raised to every
        joined caller. Cancelling a caller does not cancel the shared refresh.

        Raises:
            CorruptArchive: The archive failed integrity validation.
            ParseError: The archive content could not be parsed.
            EmptySchedule: Parsing produced no usable trips.
            NetworkError: The download failed.
            RateLimited: The download could not get a rate-limit slot.
        """
        task = self._refresh_task
        if task is None:
            task = asyncio.create_task(self._refresh())
            task.add_done_callback(self._on_refresh_done)
            self._refresh_task = task
        else:
            logger.debug("schedule_refresh_joined")
        return await asyncio.shield(task)

    def _on_refresh_done(self, task: asyncio.Task[StaticSchedule]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        # Retrieve the exception so an unobserved failure is not reported twice
        if not task.cancelled():
            task.exception()

    async def _refresh(self) -> StaticSchedule:
        logger.info("schedule_refresh_started", endpoint=self.endpoint_key)
        try:
            result = await self._fetch_client.fetch(self.endpoint_key)
            schedule = await asyncio.to_thread(self._build, result.content)
        except TrackerError as e:
            record_schedule_refresh(type(e).__name__)
            logger.warning(
                "schedule_refresh_failed",
                error_type=type(e).__name__,
                error=str(e),
                kept_previous=self._schedule is not None,
            )
            raise

        self._schedule = schedule
        record_schedule_refresh("success", schedule.trip_count)
        record_skipped_rows(schedule.stats.rows_skipped)
        logger.info(
            "schedule_refreshed",
            trips=schedule.trip_count,
            stops=len(schedule.stops),
            skipped_rows=schedule.stats.total_skipped,
            digest=schedule.digest,
        )
        return schedule

    def _build(self, content: bytes) -> StaticSchedule:
        """Validate and parse archive bytes (runs in a worker thread)."""
        digest = hashlib.sha256(content).hexdigest()
        current = self._schedule
        if current is not None and current.digest == digest:
            logger.debug("schedule_unchanged", digest=digest)
            return replace(current, loaded_at=self._clock())

        files = extract_archive(
            content,
            max_member_bytes=self._max_member_bytes,
            max_compression_ratio=self._max_compression_ratio,
        )
        return build_schedule(
            files,
            timezone=self.timezone,
            direction_ids=self.direction_ids,
            loaded_at=self._clock(),
            digest=digest,
        )

    def is_stale(self, now: datetime) -> bool:
        schedule = self._schedule
        return schedule is None or now - schedule.loaded_at >= self.max_age

    async def ensure_loaded(self, now: datetime | None = None) -> StaticSchedule:
        """Return a schedule, refreshing first when none is loaded or it is too old.

        A failed refresh of a stale schedule keeps serving the stale one.

        Raises:
            TrackerError: If no schedule is loaded and the refresh fails.
        """
        now = now or self._clock()
        if not self.is_stale(now):
            return self.require_schedule()

        try:
            return await self.refresh()
        except TrackerError:
            if self._schedule is None:
                raise
            logger.warning("serving_stale_schedule", loaded_at=self._schedule.loaded_at.isoformat())
            return self._schedule

    def get_scheduled_departures(
        self,
        stop_id: str,
        direction: Direction,
        service_date: date,
        route_id: str | None = None,
    ) -> list[ScheduledDeparture]:
        """Scheduled departures from a stop on a service date, ordered by time.

        Trips running past midnight carry their real calendar instant (a
        ``25:10:00`` departure is at 01:10 on the following day).
        """
        return self.require_schedule().departures(
            stop_id,
            service_date,
            direction=direction,
            route_id=route_id,
        )

    def reference_instant(self, now: datetime, after: time | None = None) -> datetime:
        """Instant to list departures from.

        Without ``after`` this is ``now``. With ``after`` it is that time of
        day today, or tomorrow if that time of day has already passed.
        """
        local_now = now.astimezone(self.timezone)
        if after is None:
            return local_now
        reference = datetime.combine(local_now.date(), after, tzinfo=self.timezone)
        if reference < local_now:
            reference = datetime.combine(
                local_now.date() + timedelta(days=1), after, tzinfo=self.timezone
            )
        return reference

    def next_departures(
        self,
        stop_id: str,
        direction: Direction,
        now: datetime,
        after: time | None = None,
        count: int = 3,
        route_id: str | None = None,
    ) -> list[ScheduledDeparture]:
        """The next ``count`` departures at or after the reference instant.

        The previous, current and following service dates are all evaluated
        so late-night trips belonging to the previous service day and early
        trains of the next day are both found.
        """
        schedule = self.require_schedule()
        reference = self.reference_instant(now, after)
        day = reference.date()

        candidates: list[ScheduledDeparture] = []
        for service_date in (day - timedelta(days=1), day, day + timedelta(days=1)):
            candidates.extend(
                departure
                for departure in schedule.departures(
                    stop_id, service_date, direction=direction, route_id=route_id
                )
                if departure.departure_time >= reference
            )

        candidates.sort(key=lambda departure: (departure.departure_time, departure.trip_id))
        return candidates[:count]

    def get_arrival_time(
        self,
        from_stop: str,
        to_stop: str,
        departure_time: datetime,
        direction: Direction,
    ) -> datetime | None:
        """Scheduled arrival at ``to_stop`` of the trip leaving ``from_stop`` at ``departure_time``.

        The trip is the one whose departure is closest to ``departure_time``
        within the tolerance window. Returns None when no trip qualifies or
        the trip does not call at ``to_stop`` after ``from_stop``.
        """
        schedule = self.require_schedule()
        local = departure_time.astimezone(self.timezone)

        best: tuple[timedelta, ScheduledDeparture] | None = None
        for service_date in (local.date() - timedelta(days=1), local.date()):
            for departure in schedule.departures(from_stop, service_date, direction=direction):
                difference = abs(departure.departure_time - departure_time)
                if difference <= self.tolerance and (best is None or difference < best[0]):
                    best = (difference, departure)

        if best is None:
            return None

        departure = best[1]
        origin = schedule.stop_time(departure.trip_id, from_stop)
        destination = schedule.stop_time(departure.trip_id, to_stop)
        if origin is None or destination is None:
            return None
        if destination.stop_sequence <= origin.stop_sequence:
            return None
        return schedule.instant(departure.service_date, destination.arrival)
