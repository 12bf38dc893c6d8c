"""Category-specific fetch adapters: request + normalization into Events.

Adapters never raise for network or payload problems. Every call resolves to
a ``FetchOutcome``; failures carry ``ok=False`` and an error message for the
reliability scorer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from quake_consensus.clients.proxy_client import FetchError, ProxyClient, ProxyResponse
from quake_consensus.models import Event
from quake_consensus.parsers import EventParser, ParseError, get_html_parser, get_parser
from quake_consensus.sources import SourceConfig

logger = logging.getLogger(__name__)


@dataclass
class FetchOutcome:
    """Result of fetching one source once."""

    source_id: str
    ok: bool
    events: list[Event] = field(default_factory=list)
    degraded: bool = False      # HTML fallback or stale cache
    from_cache: bool = False
    stale: bool = False
    error: Optional[str] = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def failure(cls, source_id: str, error: str) -> FetchOutcome:
        return cls(source_id=source_id, ok=False, error=error)


class FetchAdapter:
    """Fetch a source through the proxy and normalize its payload."""

    categories: tuple[str, ...] = ()

    def __init__(self, client: ProxyClient):
        self.client = client

    async def fetch(self, source: SourceConfig) -> FetchOutcome:
        try:
            response = await self.client.fetch(source)
        except FetchError as exc:
            logger.warning("[%s] fetch failed: %s", source.id, exc)
            return FetchOutcome.failure(source.id, str(exc))

        try:
            return self.normalize(source, response)
        except ParseError as exc:
            logger.warning("[%s] parse failed: %s", source.id, exc)
            return FetchOutcome.failure(source.id, str(exc))
        except Exception as exc:
            logger.exception("[%s] unexpected error normalizing response", source.id)
            return FetchOutcome.failure(source.id, f"normalize error: {exc!r}")

    def normalize(self, source: SourceConfig, response: ProxyResponse) -> FetchOutcome:
        """Pick the JSON or degraded HTML path based on the response body."""
        fetched_at = datetime.now(timezone.utc)

        if response.is_json or _looks_like_json(response.text):
            parser = self.json_parser(source)
            degraded = False
        else:
            parser = self.html_parser(source)
            degraded = True
            logger.warning(
                "[%s] non-JSON response (%s), using degraded HTML extraction",
                source.id, response.content_type or "unknown content type",
            )

        events = _valid_events(parser, parser.parse(response.text, fetched_at))
        for event in events:
            event.category = source.category
            if degraded:
                event.degraded = True

        return FetchOutcome(
            source_id=source.id,
            ok=True,
            events=events,
            degraded=degraded,
            fetched_at=fetched_at,
        )

    def json_parser(self, source: SourceConfig) -> EventParser:
        return get_parser(source)

    def html_parser(self, source: SourceConfig) -> EventParser:
        return get_html_parser(source)


class SeismicAdapter(FetchAdapter):
    """Earthquake and seismic bulletins: magnitude, epicenter, depth, label."""

    categories = ("earthquake", "seismic")


class TsunamiAdapter(FetchAdapter):
    """Tsunami feeds: threat classification and coordinates, magnitude optional."""

    categories = ("tsunami",)

    def normalize(self, source: SourceConfig, response: ProxyResponse) -> FetchOutcome:
        outcome = super().normalize(source, response)
        for event in outcome.events:
            if event.tsunami_threat is None:
                event.tsunami_threat = "unknown"
        return outcome


def build_adapters(client: ProxyClient) -> dict[str, FetchAdapter]:
    """Map every source category to its adapter."""
    adapters: dict[str, FetchAdapter] = {}
    for adapter_cls in (SeismicAdapter, TsunamiAdapter):
        adapter = adapter_cls(client)
        for category in adapter_cls.categories:
            adapters[category] = adapter
    return adapters


def _looks_like_json(text: str) -> bool:
    return text.lstrip()[:1] in ("{", "[")


def _valid_events(parser: EventParser, events: list[Event]) -> list[Event]:
    valid: list[Event] = []
    for event in events:
        errors = parser.validate(event)
        if errors:
            logger.warning("[%s] dropping invalid event %s: %s",
                           event.source_id, event.event_id, errors)
            continue
        valid.append(event)
    return valid
