"""Service alerts from the 511.org GTFS-realtime JSON feed.

511.org does not follow the standard snake_case JSON mapping of GTFS-realtime:
most keys are PascalCase and some repeated fields are pluralized
(``ActivePeriods``, ``Translations``). Both spellings are accepted.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from caltrain_tracker.errors import ParseError
from caltrain_tracker.fetcher import FetchClient
from caltrain_tracker.logging import get_logger
from caltrain_tracker.siri import decode_payload

logger = get_logger(__name__)


@dataclass(frozen=True)
class ServiceAlert:
    id: str
    summary: str
    description: str | None = None
    severity: str | None = None
    active_from: datetime | None = None
    active_until: datetime | None = None


def _field(data: Any, *names: str) -> Any:
    """First present value among alternative key spellings."""
    if not isinstance(data, dict):
        return None
    for name in names:
        if name in data:
            return data[name]
    return None


def _translated(value: Any) -> str | None:
    translations = _field(value, "Translations", "Translation", "translation")
    if not isinstance(translations, list):
        return None
    for translation in translations:
        text = _field(translation, "Text", "text")
        if isinstance(text, str) and text.strip():
            return text.strip()
    return None


def _epoch(value: Any) -> datetime | None:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, UTC) if seconds > 0 else None


def parse_service_alerts(content: bytes) -> list[ServiceAlert]:
    """Decode a GTFS-realtime JSON alerts feed.

    Raises:
        ParseError: If the payload is not a JSON object.
    """
    data = decode_payload(content)
    entities = _field(data, "Entities", "Entity", "entity")
    if entities is None:
        return []
    if not isinstance(entities, list):
        raise ParseError("Alerts feed 'Entities' is not a list")

    alerts: list[ServiceAlert] = []
    for index, entity in enumerate(entities):
        alert = _field(entity, "Alert", "alert")
        if not isinstance(alert, dict):
            continue
        periods = _field(alert, "ActivePeriods", "ActivePeriod", "active_period") or []
        first_period = periods[0] if isinstance(periods, list) and periods else {}
        alerts.append(
            ServiceAlert(
                id=str(_field(entity, "Id", "id") or index),
                summary=_translated(_field(alert, "HeaderText", "header_text")) or "Service Alert",
                description=_translated(_field(alert, "DescriptionText", "description_text")),
                severity=_field(alert, "Severity", "severity_level"),
                active_from=_epoch(_field(first_period, "Start", "start")),
                active_until=_epoch(_field(first_period, "End", "end")),
            )
        )
    return alerts


async def fetch_service_alerts(
    fetch_client: FetchClient,
    endpoint_key: str = "service_alerts",
) -> list[ServiceAlert]:
    """Fetch and decode current service alerts.

    Raises:
        NetworkError: The request failed after retries.
        RateLimited: No rate-limit slot became free.
        ParseError: The response could not be decoded.
    """
    result = await fetch_client.fetch(endpoint_key)
    alerts = parse_service_alerts(result.content)
    logger.info("service_alerts_fetched", alerts=len(alerts), from_cache=result.from_cache)
    return alerts
