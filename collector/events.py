"""
Validation of the beacon's event envelope.

Wire format::

    {"u": "<page url>", "id": "<tracking id>", "e": {"t": "<type>", "p": {...}}}

The payload ``e.p`` depends on ``e.t``:

* ``pageview``   -- ``{url, referrer?, userAgent?, timestamp?, data?}``
* ``hashchange`` -- ``{u, r?, data?}``
"""
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional
from urllib.parse import urlparse

from collector.errors import ValidationError


class TrackedEvent(NamedTuple):
    tracking_id: str
    url: str
    domain: str
    event_type: str
    route: str
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: Optional[str] = None
    additional_data: Any = None


def _optional_str(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Field '{key}' must be a string")
    return value


def _required_str(payload: dict, key: str) -> str:
    value = _optional_str(payload, key)
    if not value:
        raise ValidationError(f"Field '{key}' is required")
    return value


def _epoch_ms_to_iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Field 'timestamp' must be milliseconds since epoch")
    try:
        ts = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise ValidationError("Field 'timestamp' is out of range") from e
    return ts.isoformat(timespec="seconds")


def _parse_pageview(payload: dict) -> dict:
    return {
        "route": _required_str(payload, "url"),
        "referrer": _optional_str(payload, "referrer"),
        "user_agent": _optional_str(payload, "userAgent"),
        "timestamp": _epoch_ms_to_iso(payload.get("timestamp")),
        "additional_data": payload.get("data"),
    }


def _parse_hashchange(payload: dict) -> dict:
    return {
        "route": _required_str(payload, "u"),
        "referrer": _optional_str(payload, "r"),
        "additional_data": payload.get("data"),
    }


PAYLOAD_PARSERS = {
    "pageview": _parse_pageview,
    "hashchange": _parse_hashchange,
}


def get_domain(url: str) -> str:
    hostname = urlparse(url).hostname
    if not hostname:
        raise ValidationError(f"Cannot determine domain from URL: {url!r}")
    return hostname


def parse_event(body) -> TrackedEvent:
    if not isinstance(body, dict):
        raise ValidationError("Event body must be a JSON object")

    tracking_id = body.get("id")
    if not tracking_id:
        raise ValidationError("Tracking ID is required")
    if not isinstance(tracking_id, str):
        raise ValidationError("Tracking ID must be a string")

    url = _required_str(body, "u")
    envelope = body.get("e")
    if not isinstance(envelope, dict):
        raise ValidationError("Field 'e' must be an object")

    event_type = envelope.get("t")
    parser = PAYLOAD_PARSERS.get(event_type)
    if parser is None:
        raise ValidationError(f"Unsupported event type: {event_type!r}")

    payload = envelope.get("p")
    if not isinstance(payload, dict):
        raise ValidationError("Field 'e.p' must be an object")

    return TrackedEvent(
        tracking_id=tracking_id,
        url=url,
        domain=get_domain(url),
        event_type=event_type,
        **parser(payload),
    )
