"""Prometheus metrics for the transit data pipeline."""

from prometheus_client import Counter, Gauge, Histogram

# Fetch metrics
fetch_total = Counter(
    "caltrain_fetch_total",
    "Total network fetch attempts",
    ["endpoint"],
)

fetch_success = Counter(
    "caltrain_fetch_success_total",
    "Successful network fetches",
    ["endpoint"],
)

fetch_errors = Counter(
    "caltrain_fetch_errors_total",
    "Failed fetches (after retries)",
    ["endpoint", "error_type"],
)

fetch_duration = Histogram(
    "caltrain_fetch_duration_seconds",
    "Time to fetch an endpoint",
    ["endpoint"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    unit="seconds",
)

cache_hits = Counter(
    "caltrain_cache_hits_total",
    "Fetches answered from the response cache",
    ["endpoint"],
)

rate_limit_waits = Counter(
    "caltrain_rate_limit_waits_total",
    "Times a caller had to wait for a rate-limit slot",
    ["endpoint"],
)

# Schedule metrics
schedule_refresh_total = Counter(
    "caltrain_schedule_refresh_total",
    "Static schedule refreshes by outcome",
    ["outcome"],
)

schedule_trips = Gauge(
    "caltrain_schedule_trips",
    "Trips in the currently loaded static schedule",
)

schedule_skipped_rows = Counter(
    "caltrain_schedule_skipped_rows_total",
    "Malformed schedule rows skipped during parsing",
    ["file"],
)

# Matching metrics
departures_matched = Counter(
    "caltrain_departures_matched_total",
    "Scheduled departures matched to a live estimate",
)

departures_unmatched = Counter(
    "caltrain_departures_unmatched_total",
    "Scheduled departures left without a live estimate",
)

# History metrics
history_records = Gauge(
    "caltrain_history_records",
    "Trip records currently retained",
)


def record_fetch_attempt(endpoint: str) -> None:
    """Record a network fetch attempt.

    Args:
        endpoint: Endpoint key.
    """
    fetch_total.labels(endpoint=endpoint).inc()


def record_fetch_success(endpoint: str, duration_seconds: float) -> None:
    """Record a successful network fetch.

    Args:
        endpoint: Endpoint key.
        duration_seconds: Time taken to fetch in seconds.
    """
    fetch_success.labels(endpoint=endpoint).inc()
    fetch_duration.labels(endpoint=endpoint).observe(duration_seconds)


def record_fetch_error(endpoint: str, error_type: str) -> None:
    """Record a failed fetch.

    Args:
        endpoint: Endpoint key.
        error_type: Type of error (e.g., "timeout", "transport", "http_404", "rate_limited").
    """
    fetch_errors.labels(endpoint=endpoint, error_type=error_type).inc()


def record_cache_hit(endpoint: str) -> None:
    """Record a fetch served from cache."""
    cache_hits.labels(endpoint=endpoint).inc()


def record_rate_limit_wait(endpoint: str) -> None:
    """Record a wait for a rate-limit slot."""
    rate_limit_waits.labels(endpoint=endpoint).inc()


def record_schedule_refresh(outcome: str, trip_count: int | None = None) -> None:
    """Record a schedule refresh outcome.

    Args:
        outcome: "success" or the error class name.
        trip_count: Trips in the new schedule (success only).
    """
    schedule_refresh_total.labels(outcome=outcome).inc()
    if trip_count is not None:
        schedule_trips.set(trip_count)


def record_skipped_rows(skipped: dict[str, int]) -> None:
    """Record skipped rows per schedule file."""
    for file_name, count in skipped.items():
        if count:
            schedule_skipped_rows.labels(file=file_name).inc(count)


def record_match_results(matched: int, unmatched: int) -> None:
    """Record how many departures were matched."""
    departures_matched.inc(matched)
    departures_unmatched.inc(unmatched)


def set_history_records(count: int) -> None:
    """Set the number of retained trip records."""
    history_records.set(count)
