"""Pydantic configuration models and transit value types."""

import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Annotated, Self

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, HttpUrl, model_validator


class AuthType(str, Enum):
    """Type of authentication to apply."""

    HEADER = "header"
    QUERY = "query"


class AuthConfig(BaseModel):
    """Configuration for endpoint authentication.

    ``value`` may reference environment variables as ``${NAME}``; it is
    resolved lazily on first use.
    """

    type: AuthType
    key: str
    value: str

    # Populated at runtime after the template is resolved (excluded from serialization)
    resolved_value: str | None = Field(default=None, exclude=True)


class RetryConfig(BaseModel):
    """Configuration for retry behavior on transient failures."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base: float = Field(default=1.0, ge=0.01, le=10.0)
    backoff_max: float = Field(default=10.0, ge=0.1, le=60.0)


class RateLimitConfig(BaseModel):
    """Per-endpoint request budget over a trailing window.

    ``max_attempts`` bounds how many times a caller silently waits for a
    free slot before ``RateLimited`` is raised.
    """

    max_requests: int = Field(default=1, ge=1, le=10_000)
    window_seconds: float = Field(default=5.0, gt=0, le=3600)
    max_attempts: int = Field(default=5, ge=1, le=20)
    backoff_base: float = Field(default=1.0, ge=0.01, le=30.0)
    backoff_max: float = Field(default=8.0, ge=0.1, le=120.0)


class DefaultsConfig(BaseModel):
    """Default values applied to every endpoint."""

    timeout_seconds: float = Field(default=25.0, gt=0, le=300)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cache_ttl_seconds: float = Field(default=30.0, ge=0, le=86400)


class EndpointFileConfig(BaseModel):
    """An endpoint as written in the configuration file (before flattening)."""

    key: Annotated[str, Field(pattern=r"^[a-z0-9_]+$")]
    url: HttpUrl
    params: dict[str, str] = Field(default_factory=dict)
    auth: AuthConfig | None = None
    timeout_seconds: float | None = Field(default=None, gt=0, le=300)
    retry: RetryConfig | None = None
    rate_limit: RateLimitConfig | None = None
    cache_ttl_seconds: float | None = Field(default=None, ge=0, le=86400)


class MatchingConfig(BaseModel):
    """Real-time to schedule matching settings."""

    tolerance_seconds: int = Field(default=120, ge=0, le=900)


class TrackerFileConfig(BaseModel):
    """Schema for the tracker.yaml configuration file."""

    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    endpoints: list[EndpointFileConfig]
    matching: MatchingConfig = Field(default_factory=MatchingConfig)

    @model_validator(mode="after")
    def validate_unique_keys(self) -> Self:
        """Ensure endpoint keys are unique."""
        keys = [endpoint.key for endpoint in self.endpoints]
        duplicates = sorted({key for key in keys if keys.count(key) > 1})
        if duplicates:
            raise ValueError(f"Duplicate endpoint keys: {', '.join(duplicates)}")
        return self


class EndpointConfig(BaseModel):
    """Configuration for a single endpoint (flattened for runtime)."""

    key: Annotated[str, Field(pattern=r"^[a-z0-9_]+$")]
    url: HttpUrl
    params: dict[str, str] = Field(default_factory=dict)
    auth: AuthConfig | None = None

    timeout_seconds: float = Field(default=25.0, gt=0, le=300)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cache_ttl_seconds: float = Field(default=30.0, ge=0, le=86400)


class Direction(str, Enum):
    """Canonical travel directions."""

    NORTH = "north"
    SOUTH = "south"

    @property
    def label(self) -> str:
        """Short display label ("North"/"South")."""
        return self.value.title()


@dataclass(frozen=True)
class ScheduledDeparture:
    """One scheduled trip-stop event from the static schedule."""

    trip_id: str
    route_id: str
    direction: Direction
    stop_id: str
    departure_time: datetime  # timezone-aware, feed-local
    service_date: date
    trip_short_name: str | None = None
    destination: str | None = None


@dataclass(frozen=True)
class LiveEstimate:
    """One real-time arrival/departure prediction, as received."""

    journey_ref: str | None
    route_id: str | None
    direction_token: str | None  # raw, unvalidated
    predicted_time: datetime
    stop_id: str | None = None
    aimed_time: datetime | None = None
    vehicle_ref: str | None = None
    destination: str | None = None
    onward_arrivals: tuple[tuple[str, datetime], ...] = ()

    def arrival_at(self, stop_id: str) -> datetime | None:
        """Aimed arrival time at a downstream stop, if the feed listed it."""
        for onward_stop, arrival in self.onward_arrivals:
            if onward_stop == stop_id:
                return arrival
        return None


@dataclass(frozen=True)
class MatchedDeparture:
    """A scheduled departure, enriched with a live estimate when one qualifies."""

    departure: ScheduledDeparture
    estimate: LiveEstimate | None = None
    arrival_time: datetime | None = None

    @property
    def live_time(self) -> datetime | None:
        """Predicted time from the matched estimate, if any."""
        return self.estimate.predicted_time if self.estimate else None

    @property
    def delay(self) -> timedelta | None:
        """Live minus scheduled time (negative when early), None when unmatched."""
        if self.estimate is None:
            return None
        return self.estimate.predicted_time - self.departure.departure_time

    @property
    def delay_minutes(self) -> int | None:
        """Delay rounded to whole minutes."""
        delay = self.delay
        if delay is None:
            return None
        return round(delay.total_seconds() / 60)

    @property
    def expected_time(self) -> datetime:
        """Best known departure time: live when matched, scheduled otherwise."""
        return self.live_time or self.departure.departure_time

    def minutes_until(self, now: datetime) -> int:
        """Whole minutes until departure, rounded up and never negative."""
        seconds = (self.expected_time - now).total_seconds()
        return max(0, math.ceil(seconds / 60))


class TripRecord(BaseModel):
    """A user-confirmed trip. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    recorded_at: AwareDatetime
    route_id: str
    from_stop: str
    to_stop: str | None = None
    direction: Direction
    scheduled_time: AwareDatetime
    delay_minutes: int | None = None
    trip_id: str | None = None
