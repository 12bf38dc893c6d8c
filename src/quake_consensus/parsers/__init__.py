"""Parsers for converting raw source responses to Event."""

from datetime import timezone, tzinfo

from quake_consensus.parsers.base import JST, EventParser, ParseError, ValidationError
from quake_consensus.parsers.emsc_geojson import EMSCGeoJSONParser
from quake_consensus.parsers.events_json import SeismicEventsParser, TsunamiEventsParser
from quake_consensus.parsers.html_table import HTMLTableParser
from quake_consensus.parsers.p2p_quake import P2PQuakeParser
from quake_consensus.parsers.usgs_geojson import USGSGeoJSONParser
from quake_consensus.sources import SourceConfig

# Local time zone of sources that publish times without an offset
REGION_TIMEZONES: dict[str, tzinfo] = {
    "japan": JST,
}

PARSER_MAP: dict[str, EventParser] = {
    "usgs": USGSGeoJSONParser(),
    "emsc": EMSCGeoJSONParser(),
    "jma_eqvol": SeismicEventsParser("jma_eqvol", default_tz=JST),
    "noaa_tsunami": TsunamiEventsParser("noaa_tsunami"),
}


def source_timezone(source: SourceConfig) -> tzinfo:
    return REGION_TIMEZONES.get(source.region, timezone.utc)


def get_parser(source: SourceConfig) -> EventParser:
    """JSON parser for a source; unregistered sources get one for their category."""
    parser = PARSER_MAP.get(source.id)
    if parser is not None:
        return parser
    if source.category == "tsunami":
        return TsunamiEventsParser(source.id, default_tz=source_timezone(source))
    if source.format == "geojson":
        return USGSGeoJSONParser(source.id)
    return SeismicEventsParser(source.id, default_tz=source_timezone(source))


def get_html_parser(source: SourceConfig) -> HTMLTableParser:
    return HTMLTableParser(source.id, category=source.category, default_tz=source_timezone(source))


__all__ = [
    "PARSER_MAP",
    "REGION_TIMEZONES",
    "get_parser",
    "get_html_parser",
    "source_timezone",
    "EventParser",
    "ParseError",
    "ValidationError",
    "USGSGeoJSONParser",
    "EMSCGeoJSONParser",
    "SeismicEventsParser",
    "TsunamiEventsParser",
    "HTMLTableParser",
    "P2PQuakeParser",
]
