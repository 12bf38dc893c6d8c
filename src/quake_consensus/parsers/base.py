"""Abstract base parser with validation logic."""

from __future__ import annotations

import abc
from datetime import datetime, timedelta, timezone, tzinfo

from quake_consensus.models import Event

# Japanese feeds report local times without an offset
JST = timezone(timedelta(hours=9), "JST")

_TIME_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
)


class ParseError(Exception):
    """Raised when a payload cannot be understood at all."""


class ValidationError(Exception):
    """Raised when an event fails validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Validation failed: {'; '.join(errors)}")


class EventParser(abc.ABC):
    """Abstract parser that converts a raw response body → list of Event."""

    # Set on parsers whose output is always lower-confidence
    degraded = False

    @abc.abstractmethod
    def parse(self, raw_payload: str, fetched_at: datetime) -> list[Event]:
        """Parse raw API response into normalized events.

        Args:
            raw_payload: The raw response body (text).
            fetched_at: When the data was fetched.

        Returns:
            List of Event instances.

        Raises:
            ParseError: the payload is not in the expected shape.
        """

    @staticmethod
    def validate(event: Event) -> list[str]:
        """Validate an Event. Returns list of error messages (empty = valid)."""
        errors: list[str] = []

        if not -90 <= event.latitude <= 90:
            errors.append(f"latitude {event.latitude} out of range [-90, 90]")

        if not -180 <= event.longitude <= 180:
            errors.append(f"longitude {event.longitude} out of range [-180, 180]")

        if event.depth_km is not None:
            if event.depth_km < -10:
                errors.append(f"depth_km {event.depth_km} unreasonably negative")
            if event.depth_km > 800:
                errors.append(f"depth_km {event.depth_km} exceeds 800 km")

        if event.magnitude is not None and not -2.0 <= event.magnitude <= 10.0:
            errors.append(f"magnitude {event.magnitude} out of range [-2, 10]")

        # Not in the future (with 1-hour tolerance)
        if event.origin_time_utc.tzinfo is None:
            errors.append("origin_time_utc is not timezone-aware")
        elif event.origin_time_utc > datetime.now(timezone.utc) + timedelta(hours=1):
            errors.append(f"origin_time_utc {event.origin_time_utc} is in the future")

        if not event.event_id:
            errors.append("event_id is empty")
        if not event.source_id:
            errors.append("source_id is empty")

        return errors


def parse_timestamp(value, default_tz: tzinfo = timezone.utc) -> datetime:
    """Accept epoch milliseconds, ISO 8601 or slash-separated local time strings.

    Naive values are interpreted in ``default_tz`` and returned in UTC.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"unusable timestamp {value!r}")

    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _TIME_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        else:
            raise ValueError(f"unrecognized timestamp {value!r}") from None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed.astimezone(timezone.utc)


def safe_float(val) -> float | None:
    if val is None or val == "":
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None
