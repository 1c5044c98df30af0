from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime


ALERT_TYPES = ("earthquake", "flood", "fire", "cyclone", "weather", "general")
SEVERITIES = ("low", "medium", "high", "critical")
SEVERITY_RANK = {name: rank for rank, name in enumerate(SEVERITIES, start=1)}
SOURCES = ("NDMA", "IMD", "SACHET", "ISRO", "manual")

# Naive timestamps from Indian providers are local time.
IST = timezone(timedelta(hours=5, minutes=30), name="IST")

DEFAULT_AREA_STATE = "India"
DEFAULT_AREA_CITY = "Multiple Areas"
DEFAULT_INSTRUCTIONS = ("Stay alert and follow official guidelines",)
DEFAULT_EMERGENCY_CONTACTS = (
    {"name": "Emergency Services", "phone": "108", "type": "medical"},
    {"name": "Police", "phone": "100", "type": "police"},
    {"name": "Fire Brigade", "phone": "101", "type": "fire"},
)

INSERT = "insert"
UPDATE = "update"
DISCARD = "discard"

_NAME_CLEAN_RE = re.compile(r"[^\w\s]+", flags=re.UNICODE)
_WS_RE = re.compile(r"\s+")
_INDIAN_DATE_RE = re.compile(r"(\d{1,2})[-/.](\d{1,2})[-/.](\d{4})")


def normalize_place_name(name: str) -> str:
    cleaned = _NAME_CLEAN_RE.sub(" ", name.strip().casefold())
    return _WS_RE.sub(" ", cleaned).strip()


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=IST)
    return dt.astimezone(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(datetime.now(tz=UTC))


def parse_iso(ts: str) -> datetime:
    if ts.endswith("Z"):
        return datetime.fromisoformat(ts.removesuffix("Z") + "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=IST)
    return dt


def parse_timestamp(value: object) -> str | None:
    """Best-effort conversion of a provider timestamp to canonical ISO-8601 UTC.

    Accepts datetimes, ISO-8601 strings, RFC 2822 dates (RSS) and the
    dd-mm-yyyy / dd/mm/yyyy forms used on Indian government sites. Returns
    None when nothing parses so the caller can fall back to ingestion time.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_iso(value)

    text = str(value).strip()
    if not text:
        return None

    try:
        return to_iso(parse_iso(text))
    except ValueError:
        pass

    try:
        return to_iso(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        pass

    match = _INDIAN_DATE_RE.search(text)
    if match is not None:
        day, month, year = (int(g) for g in match.groups())
        try:
            return to_iso(datetime(year, month, day, tzinfo=IST))
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class Area:
    city: str
    state: str
    district: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (normalize_place_name(self.city), normalize_place_name(self.state))

    def to_dict(self) -> dict:
        return {"city": self.city, "state": self.state, "district": self.district}

    @classmethod
    def from_dict(cls, data: dict) -> Area:
        return cls(
            city=str(data.get("city") or ""),
            state=str(data.get("state") or ""),
            district=str(data.get("district") or ""),
        )


@dataclass(frozen=True)
class RawCandidate:
    """One provider record mapped onto canonical vocabulary by its adapter."""

    source: str
    native_id: str | None
    type: str
    severity: str
    title: str
    description: str
    raw_areas: tuple[str, ...] = ()
    issued_at: str | None = None
    expires_at: str | None = None
    source_url: str = ""
    instructions: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    raw: dict = field(default_factory=dict, compare=False, hash=False)


@dataclass
class Alert:
    dedup_key: str
    type: str
    severity: str
    title: str
    description: str
    affected_areas: list[Area]
    source: str
    sources: list[str]
    issued_at: str
    expires_at: str | None = None
    source_url: str = ""
    is_verified: bool = False
    is_active: bool = True
    deactivated_reason: str | None = None
    notifications_sent: int = 0
    priority: int = 1
    views: int = 0
    instructions: list[str] = field(default_factory=lambda: list(DEFAULT_INSTRUCTIONS))
    emergency_contacts: list[dict] = field(
        default_factory=lambda: [dict(c) for c in DEFAULT_EMERGENCY_CONTACTS]
    )
    tags: list[str] = field(default_factory=list)
    raw: dict = field(default_factory=dict)
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def severity_rank(self) -> int:
        return SEVERITY_RANK[self.severity]

    def area_keys(self) -> set[tuple[str, str]]:
        return {a.key for a in self.affected_areas}

    def is_expired(self, now_iso: str) -> bool:
        return self.expires_at is not None and self.expires_at <= now_iso

    def to_dict(self) -> dict:
        return {
            "id": self.alert_id,
            "dedupKey": self.dedup_key,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "severity": self.severity,
            "source": self.source,
            "sources": list(self.sources),
            "sourceUrl": self.source_url,
            "affectedAreas": [a.to_dict() for a in self.affected_areas],
            "issuedAt": self.issued_at,
            "expiresAt": self.expires_at,
            "isActive": self.is_active,
            "isVerified": self.is_verified,
            "instructions": list(self.instructions),
            "emergencyContacts": [dict(c) for c in self.emergency_contacts],
            "tags": list(self.tags),
            "priority": self.priority,
            "views": self.views,
            "notificationsSent": self.notifications_sent,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class ReconcileAction:
    action: str
    alert: Alert
    escalated: bool = False
    previous_severity: str | None = None
