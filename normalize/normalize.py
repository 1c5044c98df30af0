from __future__ import annotations

import hashlib
import re
from datetime import datetime, timedelta

from geo.places import default_area, resolve_area
from normalize.alert import (
    ALERT_TYPES,
    DEFAULT_INSTRUCTIONS,
    IST,
    SEVERITIES,
    SEVERITY_RANK,
    SOURCES,
    Alert,
    Area,
    RawCandidate,
    parse_iso,
    parse_timestamp,
    to_iso,
)


_TITLE_WHITESPACE_RE = re.compile(r"\s+")
_TITLE_PUNCT_RE = re.compile(r"[^\w\s]+", flags=re.UNICODE)

_FINGERPRINT_STOPWORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "the",
        "of",
        "in",
        "for",
        "to",
        "on",
        "at",
        "over",
        "across",
        "alert",
        "alerts",
        "warning",
        "warnings",
        "advisory",
        "update",
        "updated",
        "issued",
        "latest",
        "new",
    }
)

HIGH_IMPACT_TYPES = frozenset({"earthquake", "cyclone", "flood"})

MAX_TITLE_LENGTH = 300
MAX_DESCRIPTION_LENGTH = 2000


class AlertValidationError(ValueError):
    """Rejected manual alert payload; the message is safe to show to the caller."""


def normalize_title(title: str) -> str:
    normalized = title.strip().casefold()
    normalized = _TITLE_PUNCT_RE.sub(" ", normalized)
    normalized = _TITLE_WHITESPACE_RE.sub(" ", normalized).strip()
    return normalized


def _stem(token: str) -> str:
    if len(token) > 5 and token.endswith("ing"):
        return token[:-3]
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def fingerprint_title(title: str) -> str:
    """Order-insensitive, lightly stemmed title used for content fingerprints.

    "Heavy Rainfall Warning for Chennai" and "Chennai: heavy rainfall" both
    become "chennai heavy rainfall".
    """
    tokens = {
        _stem(tok)
        for tok in normalize_title(title).split()
        if tok not in _FINGERPRINT_STOPWORDS
    }
    return " ".join(sorted(tokens))


def day_bucket(issued_at: str | None) -> str:
    # Undated items share one bucket so a re-scrape after midnight keeps its key.
    if issued_at is None:
        return "undated"
    return parse_iso(issued_at).astimezone(IST).date().isoformat()


def content_fingerprint(
    alert_type: str, title: str, areas: list[Area], issued_at: str | None
) -> str:
    area_part = ";".join(sorted(f"{state}|{city}" for city, state in {a.key for a in areas}))
    material = "\n".join(
        (alert_type, fingerprint_title(title), area_part, day_bucket(issued_at))
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def dedup_key(
    *,
    source: str,
    native_id: str | None,
    alert_type: str,
    title: str,
    areas: list[Area],
    issued_at: str | None,
) -> str:
    if native_id:
        return f"id:{source}:{native_id}"
    return "fp:" + content_fingerprint(alert_type, title, areas, issued_at)


def canonical_type(value: str | None) -> str:
    text = (value or "").strip().casefold()
    return text if text in ALERT_TYPES else "general"


def canonical_severity(value: str | None) -> str:
    text = (value or "").strip().casefold()
    return text if text in SEVERITIES else "medium"


def compute_priority(
    severity: str, alert_type: str, issued_at: str, now: datetime
) -> int:
    """Priority 1-10 from severity, hazard type and recency."""
    priority = 1 + SEVERITY_RANK[severity]
    if alert_type in HIGH_IMPACT_TYPES:
        priority += 2
    age = now - parse_iso(issued_at)
    if age <= timedelta(hours=6):
        priority += 2
    elif age <= timedelta(hours=24):
        priority += 1
    return max(1, min(priority, 10))


def canonical_areas(raw_areas: tuple[str, ...] | list[str]) -> list[Area]:
    areas: list[Area] = []
    seen: set[tuple[str, str]] = set()
    for raw in raw_areas:
        area = resolve_area(raw)
        if area is None or area.key in seen:
            continue
        seen.add(area.key)
        areas.append(area)
    return areas or [default_area()]


def union_areas(first: list[Area], second: list[Area]) -> list[Area]:
    merged = list(first)
    seen = {a.key for a in first}
    for area in second:
        if area.key in seen:
            continue
        seen.add(area.key)
        merged.append(area)
    return merged


def canonicalize(candidate: RawCandidate, now: datetime) -> Alert:
    """Map an adapter candidate onto a canonical (not yet persisted) Alert."""
    alert_type = canonical_type(candidate.type)
    severity = canonical_severity(candidate.severity)
    title = _TITLE_WHITESPACE_RE.sub(" ", candidate.title).strip()[:MAX_TITLE_LENGTH]
    description = candidate.description.strip()[:MAX_DESCRIPTION_LENGTH]
    areas = canonical_areas(candidate.raw_areas)
    source_issued_at = parse_timestamp(candidate.issued_at)
    issued_at = source_issued_at or to_iso(now)
    expires_at = parse_timestamp(candidate.expires_at)

    source = candidate.source if candidate.source in SOURCES else "manual"
    return Alert(
        dedup_key=dedup_key(
            source=source,
            native_id=(candidate.native_id or "").strip() or None,
            alert_type=alert_type,
            title=title,
            areas=areas,
            issued_at=source_issued_at,
        ),
        type=alert_type,
        severity=severity,
        title=title or "Alert Notification",
        description=description or "Please check official sources for details",
        affected_areas=areas,
        source=source,
        sources=[source],
        issued_at=issued_at,
        expires_at=expires_at,
        source_url=candidate.source_url,
        is_verified=False,
        priority=compute_priority(severity, alert_type, issued_at, now),
        instructions=list(candidate.instructions) or list(DEFAULT_INSTRUCTIONS),
        tags=list(candidate.tags) or [alert_type],
        raw=dict(candidate.raw),
    )


def validate_manual_alert(payload: dict, *, partial: bool = False) -> dict:
    """Check an admin create/update payload and return the cleaned fields.

    Raises AlertValidationError describing the first problem found. Nothing is
    written by this function, so a rejected payload is never partially applied.
    """
    cleaned: dict = {}
    required = () if partial else ("title", "description", "type", "severity")
    for name in required:
        if payload.get(name) in (None, ""):
            raise AlertValidationError(f"{name} is required")

    if "title" in payload and payload["title"] is not None:
        title = str(payload["title"]).strip()
        if not title:
            raise AlertValidationError("title must not be empty")
        if len(title) > MAX_TITLE_LENGTH:
            raise AlertValidationError(
                f"title must be at most {MAX_TITLE_LENGTH} characters"
            )
        cleaned["title"] = title

    if "description" in payload and payload["description"] is not None:
        description = str(payload["description"]).strip()
        if not description:
            raise AlertValidationError("description must not be empty")
        cleaned["description"] = description[:MAX_DESCRIPTION_LENGTH]

    if "type" in payload and payload["type"] is not None:
        if payload["type"] not in ALERT_TYPES:
            raise AlertValidationError(
                f"type must be one of: {', '.join(ALERT_TYPES)}"
            )
        cleaned["type"] = payload["type"]

    if "severity" in payload and payload["severity"] is not None:
        if payload["severity"] not in SEVERITIES:
            raise AlertValidationError(
                f"severity must be one of: {', '.join(SEVERITIES)}"
            )
        cleaned["severity"] = payload["severity"]

    if "affected_areas" in payload and payload["affected_areas"] is not None:
        areas: list[Area] = []
        seen: set[tuple[str, str]] = set()
        for entry in payload["affected_areas"]:
            area = Area.from_dict(entry)
            if not area.city.strip() or not area.state.strip():
                raise AlertValidationError("each affected area needs a city and a state")
            if area.key in seen:
                continue
            seen.add(area.key)
            areas.append(area)
        if not areas and not partial:
            raise AlertValidationError("at least one affected area is required")
        cleaned["affected_areas"] = areas

    if "expires_at" in payload:
        raw_expiry = payload["expires_at"]
        if raw_expiry is None:
            cleaned["expires_at"] = None
        else:
            expires_at = parse_timestamp(raw_expiry)
            if expires_at is None:
                raise AlertValidationError("expires_at is not a valid timestamp")
            cleaned["expires_at"] = expires_at

    for name in ("instructions", "tags"):
        if payload.get(name) is not None:
            cleaned[name] = [str(v).strip() for v in payload[name] if str(v).strip()]

    if payload.get("emergency_contacts") is not None:
        contacts = []
        for contact in payload["emergency_contacts"]:
            if not contact.get("name") or not contact.get("phone"):
                raise AlertValidationError("emergency contacts need a name and a phone")
            contacts.append(
                {
                    "name": str(contact["name"]),
                    "phone": str(contact["phone"]),
                    "type": str(contact.get("type") or ""),
                }
            )
        cleaned["emergency_contacts"] = contacts

    if payload.get("priority") is not None:
        priority = int(payload["priority"])
        if not 1 <= priority <= 10:
            raise AlertValidationError("priority must be between 1 and 10")
        cleaned["priority"] = priority

    for name in ("source_url",):
        if payload.get(name) is not None:
            cleaned[name] = str(payload[name])

    for name in ("is_active", "is_verified"):
        if payload.get(name) is not None:
            cleaned[name] = bool(payload[name])

    return cleaned
