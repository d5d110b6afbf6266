"""Decoding of SIRI StopMonitoring responses (JSON or XML) into LiveEstimate values.

511.org serves SIRI with several quirks that are tolerated here: the root is
either ``{"Siri": {"ServiceDelivery": ...}}`` or a bare ``{"ServiceDelivery":
...}``, single-element collections may be an object instead of a list,
``DestinationName`` may be a string or a list of strings, and the body may
start with a UTF-8 byte order mark.
"""

import json
import xml.etree.ElementTree as ET
from datetime import UTC, datetime
from typing import Any

from caltrain_tracker.errors import ParseError
from caltrain_tracker.logging import get_logger
from caltrain_tracker.models import LiveEstimate

logger = get_logger(__name__)


def _as_list(value: Any) -> list[Any]:
    """Normalize a SIRI collection that may be absent, a single object or a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(value: Any) -> str | None:
    """First non-empty string of a SIRI text field (string, list or ``{"value": ...}``)."""
    for item in _as_list(value):
        if isinstance(item, dict):
            item = item.get("value") or item.get("#text")
        if isinstance(item, str) and item.strip():
            return item.strip()
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp; timestamps without an offset are taken as UTC."""
    text = _text(value)
    if text is None:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _element_to_dict(element: ET.Element) -> Any:
    """Convert an XML element into the same nested shape as SIRI JSON.

    Namespaces are dropped and repeated child elements become lists.
    """
    children = list(element)
    if not children:
        return (element.text or "").strip()
    result: dict[str, Any] = {}
    for child in children:
        name = _local_name(child.tag)
        value = _element_to_dict(child)
        if name in result:
            existing = result[name]
            if not isinstance(existing, list):
                result[name] = existing = [existing]
            existing.append(value)
        else:
            result[name] = value
    return result


def decode_payload(content: bytes) -> dict[str, Any]:
    """Decode a SIRI response body (JSON or XML) into nested dicts.

    Raises:
        ParseError: If the body is neither valid JSON nor valid XML.
    """
    try:
        text = content.decode("utf-8-sig").strip()
    except UnicodeDecodeError as e:
        raise ParseError(f"SIRI payload is not valid UTF-8: {e}") from e

    if text.startswith("<"):
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise ParseError(f"Invalid SIRI XML: {e}") from e
        return {_local_name(root.tag): _element_to_dict(root)}

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid SIRI JSON: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("SIRI payload root is not an object")
    return data


def _service_delivery(data: dict[str, Any]) -> dict[str, Any] | None:
    siri = data.get("Siri")
    if isinstance(siri, dict) and isinstance(siri.get("ServiceDelivery"), dict):
        return siri["ServiceDelivery"]
    delivery = data.get("ServiceDelivery")
    return delivery if isinstance(delivery, dict) else None


def _onward_calls(journey: dict[str, Any]) -> tuple[tuple[str, datetime], ...]:
    onward = journey.get("OnwardCalls")
    # Real SIRI nests calls as {"OnwardCall": [...]}; 511 sometimes sends the list directly
    if isinstance(onward, dict):
        onward = onward.get("OnwardCall")
    calls: list[tuple[str, datetime]] = []
    for call in _as_list(onward):
        if not isinstance(call, dict):
            continue
        stop = _text(call.get("StopPointRef"))
        arrival = parse_timestamp(
            call.get("ExpectedArrivalTime") or call.get("AimedArrivalTime") or call.get("AimedDepartureTime")
        )
        if stop and arrival:
            calls.append((stop, arrival))
    return tuple(calls)


def _estimate_from_visit(visit: dict[str, Any]) -> LiveEstimate | None:
    journey = visit.get("MonitoredVehicleJourney")
    if not isinstance(journey, dict):
        return None
    call = journey.get("MonitoredCall")
    call = call if isinstance(call, dict) else {}

    aimed = parse_timestamp(call.get("AimedDepartureTime")) or parse_timestamp(
        call.get("AimedArrivalTime")
    )
    predicted = (
        parse_timestamp(call.get("ExpectedDepartureTime"))
        or parse_timestamp(call.get("ExpectedArrivalTime"))
        or aimed
    )
    if predicted is None:
        return None

    framed = journey.get("FramedVehicleJourneyRef")
    journey_ref = _text(framed.get("DatedVehicleJourneyRef")) if isinstance(framed, dict) else None

    return LiveEstimate(
        journey_ref=journey_ref,
        route_id=_text(journey.get("LineRef")),
        direction_token=_text(journey.get("DirectionRef")),
        predicted_time=predicted,
        stop_id=_text(call.get("StopPointRef")) or _text(visit.get("MonitoringRef")),
        aimed_time=aimed,
        vehicle_ref=_text(journey.get("VehicleRef")),
        destination=_text(journey.get("DestinationName")),
        onward_arrivals=_onward_calls(journey),
    )


def parse_stop_monitoring(content: bytes) -> list[LiveEstimate]:
    """Parse a StopMonitoring response into live estimates.

    Visits without any usable time are skipped. A response without a
    ``ServiceDelivery`` yields no estimates.

    Raises:
        ParseError: If the payload cannot be decoded.
    """
    data = decode_payload(content)
    delivery = _service_delivery(data)
    if delivery is None:
        logger.debug("siri_no_service_delivery")
        return []

    estimates: list[LiveEstimate] = []
    skipped = 0
    for monitoring in _as_list(delivery.get("StopMonitoringDelivery")):
        if not isinstance(monitoring, dict):
            continue
        for visit in _as_list(monitoring.get("MonitoredStopVisit")):
            estimate = _estimate_from_visit(visit) if isinstance(visit, dict) else None
            if estimate is None:
                skipped += 1
                continue
            estimates.append(estimate)

    if skipped:
        logger.debug("siri_visits_skipped", skipped=skipped)
    return estimates
