"""Real-time estimates and their matching against scheduled departures."""

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, time, timedelta

from caltrain_tracker.errors import ConfigurationError, NetworkError, ParseError, RateLimited
from caltrain_tracker.fetcher import FetchClient
from caltrain_tracker.logging import get_logger
from caltrain_tracker.metrics import record_match_results
from caltrain_tracker.models import Direction, LiveEstimate, MatchedDeparture, ScheduledDeparture
from caltrain_tracker.schedule import ScheduleService
from caltrain_tracker.siri import parse_stop_monitoring

logger = get_logger(__name__)

DEFAULT_TOLERANCE = timedelta(minutes=2)

# Exact tokens only: "NEWARK" shares a first letter with "N" and must not match
DIRECTION_TOKENS: dict[Direction, frozenset[str]] = {
    Direction.NORTH: frozenset({"N", "NB", "NORTH", "NORTHBOUND"}),
    Direction.SOUTH: frozenset({"S", "SB", "SOUTH", "SOUTHBOUND"}),
}

# Failures after which departures are still served from the schedule alone
REALTIME_ERRORS = (NetworkError, RateLimited, ParseError, ConfigurationError)


def normalize_direction(token: str | None) -> Direction | None:
    """Map a raw direction token to a Direction, or None if it is not whitelisted."""
    if token is None:
        return None
    normalized = token.strip().upper()
    for direction, tokens in DIRECTION_TOKENS.items():
        if normalized in tokens:
            return direction
    return None


def _is_compatible(
    departure: ScheduledDeparture,
    estimate: LiveEstimate,
    direction: Direction | None,
) -> bool:
    if direction is None or direction != departure.direction:
        return False
    # An estimate without a line reference is compatible with any route
    if estimate.route_id is not None and estimate.route_id != departure.route_id:
        return False
    if estimate.stop_id is not None and estimate.stop_id != departure.stop_id:
        return False
    return True


def match(
    candidates: Sequence[ScheduledDeparture],
    estimates: Sequence[LiveEstimate],
    tolerance: timedelta = DEFAULT_TOLERANCE,
) -> list[MatchedDeparture]:
    """Attach at most one live estimate to each scheduled departure.

    Every compatible (departure, estimate) pair within ``tolerance`` is
    considered. Pairs are assigned greedily in order of absolute time
    difference, then earliest predicted time, then input position, and an
    estimate or departure already assigned is skipped. The result is
    deterministic and in the same order as ``candidates``.

    Args:
        candidates: Scheduled departures to enrich.
        estimates: Live estimates, with raw direction tokens.
        tolerance: Largest accepted gap between predicted and scheduled time.

    Returns:
        One MatchedDeparture per candidate.
    """
    directions = [normalize_direction(estimate.direction_token) for estimate in estimates]

    pairs: list[tuple[timedelta, datetime, int, int]] = []
    for i, departure in enumerate(candidates):
        for j, estimate in enumerate(estimates):
            if not _is_compatible(departure, estimate, directions[j]):
                continue
            difference = abs(estimate.predicted_time - departure.departure_time)
            if difference <= tolerance:
                pairs.append((difference, estimate.predicted_time, i, j))

    pairs.sort()
    assigned: dict[int, int] = {}
    used: set[int] = set()
    for _, _, i, j in pairs:
        if i in assigned or j in used:
            continue
        assigned[i] = j
        used.add(j)

    return [
        MatchedDeparture(departure=departure, estimate=estimates[assigned[i]] if i in assigned else None)
        for i, departure in enumerate(candidates)
    ]


class RealtimeService:
    """Fetches live estimates and reconciles them with the static schedule.

    Args:
        fetch_client: FetchClient used for StopMonitoring requests.
        schedule_service: Source of the candidate scheduled departures.
        endpoint_key: Endpoint key of the StopMonitoring feed.
        tolerance: Matching window between predicted and scheduled time.
        max_visits: Default number of visits requested per stop.
    """

    def __init__(
        self,
        fetch_client: FetchClient,
        schedule_service: ScheduleService,
        endpoint_key: str = "stop_monitoring",
        tolerance: timedelta = DEFAULT_TOLERANCE,
        max_visits: int = 6,
    ) -> None:
        self._fetch_client = fetch_client
        self._schedule = schedule_service
        self.endpoint_key = endpoint_key
        self.tolerance = tolerance
        self.max_visits = max_visits

    async def fetch_estimates(self, stop_code: str, max_visits: int | None = None) -> list[LiveEstimate]:
        """Fetch and decode live estimates for a stop.

        Raises:
            NetworkError: The request failed after retries.
            RateLimited: No rate-limit slot became free.
            ParseError: The response could not be decoded.
            ConfigurationError: The endpoint or its API key is not configured.
        """
        result = await self._fetch_client.fetch(
            self.endpoint_key,
            {
                "stopcode": stop_code,
                "MaximumStopVisits": str(max_visits or self.max_visits),
            },
        )
        estimates = parse_stop_monitoring(result.content)
        logger.debug(
            "estimates_fetched",
            stop=stop_code,
            estimates=len(estimates),
            from_cache=result.from_cache,
        )
        return estimates

    def match(
        self,
        candidates: Sequence[ScheduledDeparture],
        estimates: Sequence[LiveEstimate],
    ) -> list[MatchedDeparture]:
        """Match with this service's tolerance."""
        return match(candidates, estimates, self.tolerance)

    async def get_departures(
        self,
        stop_id: str,
        direction: Direction,
        now: datetime,
        after: time | None = None,
        count: int = 3,
        destination_stop: str | None = None,
    ) -> list[MatchedDeparture]:
        """Next scheduled departures from a stop, enriched with live estimates.

        Live data is best effort: if estimates cannot be fetched or decoded
        the departures are returned with scheduled times only.

        Args:
            stop_id: Platform stop code.
            direction: Travel direction.
            now: Current time (timezone-aware).
            after: Optional time of day to list departures from.
            count: Number of departures to return.
            destination_stop: Optional stop to report arrival times for.
        """
        await self._schedule.ensure_loaded(now)
        candidates = self._schedule.next_departures(stop_id, direction, now, after=after, count=count)
        if not candidates:
            return []

        try:
            estimates = await self.fetch_estimates(stop_id)
        except REALTIME_ERRORS as e:
            logger.warning(
                "realtime_unavailable",
                stop=stop_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            estimates = []

        matched = self.match(candidates, estimates)
        matched_count = sum(1 for departure in matched if departure.estimate is not None)
        record_match_results(matched_count, len(matched) - matched_count)

        if destination_stop is not None:
            matched = [self._with_arrival(departure, destination_stop) for departure in matched]
        return matched

    def _with_arrival(self, matched: MatchedDeparture, destination_stop: str) -> MatchedDeparture:
        """Attach the arrival time at a destination: live onward call first, then the schedule."""
        arrival = matched.estimate.arrival_at(destination_stop) if matched.estimate else None
        if arrival is None:
            departure = matched.departure
            arrival = self._schedule.get_arrival_time(
                departure.stop_id,
                destination_stop,
                departure.departure_time,
                departure.direction,
            )
        return replace(matched, arrival_time=arrival)
