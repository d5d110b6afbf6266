"""Error taxonomy for the transit data pipeline."""


class TrackerError(Exception):
    """Base class for all errors raised by caltrain_tracker."""


class ConfigurationError(TrackerError):
    """Configuration is missing or cannot be resolved (e.g., an unset API key)."""


class NetworkError(TrackerError):
    """Transport, timeout or HTTP failure after internal retries were exhausted."""

    def __init__(self, endpoint: str, cause: BaseException | str) -> None:
        self.endpoint = endpoint
        self.cause = cause
        super().__init__(f"Request to '{endpoint}' failed: {cause}")


class NonRetryableError(NetworkError):
    """HTTP client error that is not worth retrying (e.g., 401, 404)."""

    def __init__(self, endpoint: str, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(endpoint, f"HTTP {status_code}: {message}")


class RateLimited(TrackerError):
    """No rate-limit slot became available within the retry budget."""

    def __init__(self, endpoint: str, attempts: int) -> None:
        self.endpoint = endpoint
        self.attempts = attempts
        super().__init__(f"Rate limit for '{endpoint}' still exhausted after {attempts} attempts")


class ScheduleError(TrackerError):
    """A static schedule refresh was aborted; the previous schedule is retained."""


class CorruptArchive(ScheduleError):
    """The schedule archive failed integrity validation."""

    def __init__(self, message: str, member: str | None = None) -> None:
        self.member = member
        super().__init__(f"{member}: {message}" if member else message)


class ParseError(ScheduleError):
    """Feed content could not be parsed."""


class EmptySchedule(ParseError):
    """Parsing succeeded but produced no usable trips."""


class HistoryError(TrackerError):
    """The trip history backing store could not be read."""


class HistoryWriteError(HistoryError):
    """A trip record could not be durably committed."""
