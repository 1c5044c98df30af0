from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, replace

import httpx

from geo.places import area_matches, extract_areas, resolve_area
from ingest.errors import SourceHTTPError, SourceParseError, SourceTimeout
from ingest.parsers.cap import parse_cap_alerts
from ingest.parsers.json import parse_json_records
from ingest.parsers.rss import parse_rss
from ingest.source_config import SourceOverride
from normalize.alert import RawCandidate


ParseFn = Callable[[bytes], list[dict]]
MapFn = Callable[[str | None], str]
ToCandidateFn = Callable[["SourceAdapter", dict], "RawCandidate | None"]


_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

_DISASTER_KEYWORDS = (
    "earthquake",
    "flood",
    "cyclone",
    "hurricane",
    "tsunami",
    "fire",
    "drought",
    "landslide",
    "avalanche",
    "storm",
    "warning",
    "alert",
    "disaster",
    "emergency",
    "evacuation",
    "rescue",
    "relief",
)

_SEVERITY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("critical", re.compile(r"\b(critical|extreme|red alert)\b")),
    ("high", re.compile(r"\b(high|severe|orange alert)\b")),
    ("medium", re.compile(r"\b(moderate|yellow alert)\b")),
)

_TYPE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("earthquake", re.compile(r"\b(earthquake|seismic)")),
    ("flood", re.compile(r"\b(flood|inundation)")),
    ("cyclone", re.compile(r"\b(cyclone|hurricane)")),
    ("fire", re.compile(r"\b(fire|wildfire)")),
    ("weather", re.compile(r"\b(weather|rain|storm)")),
)

_IMD_COLOURS = {
    "red": "critical",
    "orange": "high",
    "yellow": "medium",
    "green": "low",
}

_CAP_SEVERITIES = {
    "extreme": "critical",
    "severe": "high",
    "moderate": "medium",
    "minor": "low",
}

_WEATHER_INSTRUCTION_RULES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (
        ("rain", "flood"),
        (
            "Avoid waterlogged areas and underpasses",
            "Stay indoors unless absolutely necessary",
            "Keep emergency supplies ready",
        ),
    ),
    (
        ("cyclone", "storm"),
        (
            "Secure loose objects around your property",
            "Stock up on food, water, and medical supplies",
            "Stay away from windows and doors",
        ),
    ),
    (
        ("heat", "temperature"),
        (
            "Stay hydrated and avoid direct sunlight",
            "Wear light-colored, loose-fitting clothing",
            "Avoid outdoor activities during peak hours",
        ),
    ),
)


def clean_text(value: str | None) -> str:
    if not value:
        return ""
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", value)).strip()


def is_disaster_related(text: str) -> bool:
    lowered = text.casefold()
    return any(keyword in lowered for keyword in _DISASTER_KEYWORDS)


def keyword_severity(text: str | None) -> str:
    lowered = (text or "").casefold()
    for severity, pattern in _SEVERITY_PATTERNS:
        if pattern.search(lowered):
            return severity
    return "low"


def keyword_type(text: str | None) -> str:
    lowered = (text or "").casefold()
    for alert_type, pattern in _TYPE_PATTERNS:
        if pattern.search(lowered):
            return alert_type
    return "general"


def weather_type(text: str | None) -> str:
    lowered = (text or "").casefold()
    if "cyclone" in lowered or "hurricane" in lowered:
        return "cyclone"
    if "flood" in lowered or "heavy rain" in lowered:
        return "flood"
    return "weather"


def colour_severity(colour: str | None) -> str:
    return _IMD_COLOURS.get((colour or "").strip().casefold(), "medium")


def cap_severity(value: str | None) -> str:
    return _CAP_SEVERITIES.get((value or "").strip().casefold(), "medium")


def weather_instructions(text: str) -> list[str]:
    lowered = text.casefold()
    instructions: list[str] = []
    for keywords, rule_instructions in _WEATHER_INSTRUCTION_RULES:
        if any(k in lowered for k in keywords):
            instructions.extend(rule_instructions)
    instructions.append("Monitor official weather updates regularly")
    return instructions


def _text_areas(text: str) -> tuple[str, ...]:
    return tuple(f"{a.city}, {a.state}" for a in extract_areas(text))


def _absolute_url(link: str | None, adapter: SourceAdapter) -> str:
    if not link:
        return adapter.url
    if link.startswith("http"):
        return link
    return str(httpx.URL(adapter.url).join(link))


def _news_candidate(adapter: SourceAdapter, record: dict) -> RawCandidate | None:
    title = clean_text(record.get("title"))
    description = clean_text(record.get("content") or record.get("summary"))
    text = f"{title} {description}"
    if not title or not is_disaster_related(text):
        return None
    return RawCandidate(
        source=adapter.source,
        native_id=str(record["id"]) if adapter.stable_ids and record.get("id") else None,
        type=adapter.map_type(text),
        severity=adapter.map_severity(text),
        title=title,
        description=description[:500],
        raw_areas=_text_areas(text),
        issued_at=record.get("published") or record.get("updated"),
        source_url=_absolute_url(record.get("link"), adapter),
        raw={
            "id": record.get("id"),
            "title": record.get("title"),
            "summary": record.get("summary"),
            "published": record.get("published"),
            "link": record.get("link"),
        },
    )


def _imd_candidate(adapter: SourceAdapter, record: dict) -> RawCandidate | None:
    title = clean_text(record.get("title") or record.get("headline"))
    if not title:
        return None
    description = clean_text(record.get("description"))
    text = f"{title} {description}"

    state = clean_text(record.get("state"))
    districts = [clean_text(d) for d in record.get("districts") or [] if clean_text(d)]
    if districts and state:
        raw_areas = tuple(f"{d}, {state}" for d in districts)
    elif districts:
        raw_areas = tuple(districts)
    elif state:
        raw_areas = (state,)
    else:
        raw_areas = _text_areas(text)

    colour = record.get("color") or record.get("colour")
    native_id = record.get("id") or record.get("warning_id")
    return RawCandidate(
        source=adapter.source,
        native_id=str(native_id) if adapter.stable_ids and native_id else None,
        type=adapter.map_type(text),
        severity=adapter.map_severity(colour) if colour else keyword_severity(text),
        title=title,
        description=description,
        raw_areas=raw_areas,
        issued_at=record.get("issued") or record.get("issued_at"),
        expires_at=record.get("valid_till") or record.get("valid_until"),
        source_url=_absolute_url(record.get("url"), adapter),
        instructions=tuple(weather_instructions(text)),
        raw=dict(record),
    )


def _cap_candidate(adapter: SourceAdapter, record: dict) -> RawCandidate | None:
    if (record.get("status") or "Actual") != "Actual":
        return None
    if record.get("msg_type") == "Cancel":
        return None
    title = clean_text(record.get("headline") or record.get("event"))
    if not title:
        return None
    description = clean_text(record.get("description") or record.get("instruction"))
    instruction = clean_text(record.get("instruction"))
    identifier = record.get("identifier")
    return RawCandidate(
        source=adapter.source,
        native_id=str(identifier) if adapter.stable_ids and identifier else None,
        type=adapter.map_type(f"{record.get('event') or ''} {title} {description}"),
        severity=adapter.map_severity(record.get("severity")),
        title=title,
        description=description,
        raw_areas=tuple(record.get("areas") or ()),
        issued_at=record.get("sent") or record.get("effective"),
        expires_at=record.get("expires"),
        source_url=record.get("web") or adapter.url,
        instructions=(instruction,) if instruction else (),
        raw=dict(record),
    )


@dataclass(frozen=True)
class SourceAdapter:
    """One external provider: where to fetch, how to parse, how to map.

    ``fetch`` raises SourceError subclasses; converting them to a tagged
    result is the caller's job (see ingest.fetch).
    """

    source: str
    name: str
    url: str
    parse: ParseFn
    to_candidate: ToCandidateFn
    map_severity: MapFn
    map_type: MapFn
    stable_ids: bool
    enabled: bool = True
    timeout_seconds: float | None = None
    accept: str = "application/json, application/xml, application/rss+xml, text/xml, */*"

    def candidates(self, data: bytes, city: str | None = None) -> list[RawCandidate]:
        out: list[RawCandidate] = []
        for record in self.parse(data):
            try:
                candidate = self.to_candidate(self, record)
            except (KeyError, TypeError, ValueError) as exc:
                raise SourceParseError(f"{self.source}: bad record: {exc}") from exc
            if candidate is None:
                continue
            if city is not None and not candidate_matches_city(candidate, city):
                continue
            out.append(candidate)
        return out

    async def fetch(
        self,
        client: httpx.AsyncClient,
        *,
        user_agent: str,
        timeout_seconds: float,
        city: str | None = None,
    ) -> list[RawCandidate]:
        timeout = httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds))
        try:
            response = await client.get(
                self.url,
                headers={"User-Agent": user_agent, "Accept": self.accept},
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise SourceTimeout(f"{self.source}: {exc.__class__.__name__}") from exc
        if response.status_code != 200:
            raise SourceHTTPError(response.status_code)
        return self.candidates(response.content, city)


def candidate_matches_city(candidate: RawCandidate, city: str) -> bool:
    for raw in candidate.raw_areas:
        area = resolve_area(raw)
        if area is not None and area_matches(area, city):
            return True
    return False


def default_adapters() -> list[SourceAdapter]:
    return [
        SourceAdapter(
            source="NDMA",
            name="National Disaster Management Authority",
            url="https://ndma.gov.in/en/alerts-warnings.rss",
            parse=parse_rss,
            to_candidate=_news_candidate,
            map_severity=keyword_severity,
            map_type=keyword_type,
            stable_ids=False,
        ),
        SourceAdapter(
            source="IMD",
            name="India Meteorological Department",
            url="https://mausam.imd.gov.in/api/warnings.json",
            parse=parse_json_records,
            to_candidate=_imd_candidate,
            map_severity=colour_severity,
            map_type=weather_type,
            stable_ids=True,
            accept="application/json",
        ),
        SourceAdapter(
            source="SACHET",
            name="SACHET Common Alerting Protocol",
            url="https://sachet.ndma.gov.in/cap_public_website/rss/rss_india.xml",
            parse=parse_cap_alerts,
            to_candidate=_cap_candidate,
            map_severity=cap_severity,
            map_type=keyword_type,
            stable_ids=True,
            accept="application/cap+xml, application/xml, text/xml",
        ),
        SourceAdapter(
            source="ISRO",
            name="ISRO Disaster Management Support",
            url="https://www.isro.gov.in/news.rss",
            parse=parse_rss,
            to_candidate=_news_candidate,
            map_severity=keyword_severity,
            map_type=keyword_type,
            stable_ids=False,
        ),
    ]


def build_registry(
    overrides: dict[str, SourceOverride] | None = None,
) -> dict[str, SourceAdapter]:
    """Static adapter registry keyed by source name, with file overrides applied."""
    registry: dict[str, SourceAdapter] = {}
    for adapter in default_adapters():
        override = (overrides or {}).get(adapter.source)
        if override is not None:
            adapter = replace(
                adapter,
                url=override.url or adapter.url,
                enabled=adapter.enabled if override.enabled is None else override.enabled,
                timeout_seconds=override.timeout_seconds or adapter.timeout_seconds,
            )
        registry[adapter.source] = adapter
    return registry
