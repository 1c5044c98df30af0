from datetime import UTC, datetime

import pytest

from geo.places import extract_areas, is_generic_area, resolve_area
from normalize.alert import Area, RawCandidate, parse_timestamp
from normalize.normalize import (
    AlertValidationError,
    canonicalize,
    compute_priority,
    content_fingerprint,
    dedup_key,
    fingerprint_title,
    validate_manual_alert,
)


NOW = datetime(2024, 8, 15, 12, 0, tzinfo=UTC)
CHENNAI = Area(city="Chennai", state="Tamil Nadu")


def test_fingerprint_title_ignores_order_stopwords_and_suffixes() -> None:
    assert fingerprint_title("Heavy Rainfall Warning for Chennai") == "chennai heavy rainfall"
    assert fingerprint_title("Chennai: heavy rainfall") == "chennai heavy rainfall"
    assert fingerprint_title("Flooding alerts in Assam") == fingerprint_title("Flood in Assam")


def test_dedup_key_prefers_native_id() -> None:
    key = dedup_key(
        source="IMD",
        native_id="IMD-TN-1",
        alert_type="flood",
        title="anything",
        areas=[CHENNAI],
        issued_at="2024-08-15T02:00:00Z",
    )
    assert key == "id:IMD:IMD-TN-1"


def test_content_fingerprint_day_bucket_is_ist() -> None:
    morning = content_fingerprint("flood", "Flood in Chennai", [CHENNAI], "2024-08-15T02:00:00Z")
    evening = content_fingerprint("flood", "Chennai flood", [CHENNAI], "2024-08-15T17:00:00Z")
    next_day = content_fingerprint("flood", "Flood in Chennai", [CHENNAI], "2024-08-15T19:00:00Z")
    assert morning == evening
    assert morning != next_day


def test_undated_candidate_key_ignores_ingestion_day() -> None:
    candidate = RawCandidate(
        source="NDMA",
        native_id=None,
        type="flood",
        severity="high",
        title="Flood warning for Chennai",
        description="Rising water levels",
        raw_areas=("Chennai",),
    )
    before_midnight = canonicalize(candidate, datetime(2024, 8, 15, 18, 20, tzinfo=UTC))
    after_midnight = canonicalize(candidate, datetime(2024, 8, 15, 18, 50, tzinfo=UTC))
    assert before_midnight.dedup_key == after_midnight.dedup_key
    assert before_midnight.issued_at == "2024-08-15T18:20:00Z"


def test_content_fingerprint_area_set_is_order_insensitive() -> None:
    puri = Area(city="Puri", state="Odisha")
    a = content_fingerprint("cyclone", "Cyclone", [CHENNAI, puri], "2024-08-15T02:00:00Z")
    b = content_fingerprint("cyclone", "Cyclone", [puri, CHENNAI], "2024-08-15T02:00:00Z")
    c = content_fingerprint("cyclone", "Cyclone", [puri], "2024-08-15T02:00:00Z")
    assert a == b
    assert a != c


def test_canonicalize_fills_defaults() -> None:
    candidate = RawCandidate(
        source="Twitter",
        native_id=None,
        type="bogus",
        severity="unknown",
        title="  Something   happened ",
        description="",
    )
    alert = canonicalize(candidate, NOW)
    assert alert.type == "general"
    assert alert.severity == "medium"
    assert alert.source == "manual"
    assert alert.title == "Something happened"
    assert alert.description == "Please check official sources for details"
    assert alert.issued_at == "2024-08-15T12:00:00Z"
    assert [(a.city, a.state) for a in alert.affected_areas] == [("Multiple Areas", "India")]
    assert alert.tags == ["general"]
    assert alert.is_verified is False
    assert alert.dedup_key.startswith("fp:")


def test_canonicalize_parses_source_timestamps() -> None:
    candidate = RawCandidate(
        source="IMD",
        native_id="IMD-TN-1",
        type="flood",
        severity="high",
        title="Heavy Rainfall Warning",
        description="Heavy rain likely",
        raw_areas=("Chennai, Tamil Nadu", "chennai"),
        issued_at="2024-08-15T08:30:00+05:30",
        expires_at="2024-08-16T08:30:00+05:30",
    )
    alert = canonicalize(candidate, NOW)
    assert alert.issued_at == "2024-08-15T03:00:00Z"
    assert alert.expires_at == "2024-08-16T03:00:00Z"
    assert len(alert.affected_areas) == 1
    assert alert.sources == ["IMD"]
    assert alert.dedup_key == "id:IMD:IMD-TN-1"


def test_compute_priority() -> None:
    assert compute_priority("high", "flood", "2024-08-15T10:00:00Z", NOW) == 8
    assert compute_priority("critical", "cyclone", "2024-08-15T10:00:00Z", NOW) == 9
    assert compute_priority("medium", "weather", "2024-08-15T00:00:00Z", NOW) == 4
    assert compute_priority("low", "general", "2024-08-12T00:00:00Z", NOW) == 2


def test_parse_timestamp_formats() -> None:
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("garbage") is None
    assert parse_timestamp("2024-08-15T10:00:00Z") == "2024-08-15T10:00:00Z"
    assert parse_timestamp("2024-08-15T10:00:00") == "2024-08-15T04:30:00Z"
    assert parse_timestamp("Thu, 15 Aug 2024 06:30:00 +0530") == "2024-08-15T01:00:00Z"
    assert parse_timestamp("Issued on 15-08-2024") == "2024-08-14T18:30:00Z"
    assert parse_timestamp(NOW) == "2024-08-15T12:00:00Z"


def test_validate_manual_alert_accepts_complete_payload() -> None:
    cleaned = validate_manual_alert(
        {
            "title": " Evacuate coastal villages ",
            "description": "Cyclone landfall expected",
            "type": "cyclone",
            "severity": "critical",
            "affected_areas": [
                {"city": "Puri", "state": "Odisha"},
                {"city": "puri", "state": "odisha"},
            ],
            "expires_at": "2024-08-16T00:00:00Z",
            "priority": 10,
        }
    )
    assert cleaned["title"] == "Evacuate coastal villages"
    assert cleaned["affected_areas"] == [Area(city="Puri", state="Odisha")]
    assert cleaned["expires_at"] == "2024-08-16T00:00:00Z"
    assert cleaned["priority"] == 10


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"description": "d", "type": "flood", "severity": "high"}, "title is required"),
        (
            {"title": "t", "description": "d", "type": "flood", "severity": "extreme"},
            "severity must be one of",
        ),
        (
            {"title": "t", "description": "d", "type": "tornado", "severity": "high"},
            "type must be one of",
        ),
        (
            {
                "title": "t",
                "description": "d",
                "type": "flood",
                "severity": "high",
                "affected_areas": [{"city": "Patna", "state": ""}],
            },
            "city and a state",
        ),
        (
            {
                "title": "t",
                "description": "d",
                "type": "flood",
                "severity": "high",
                "expires_at": "next tuesday",
            },
            "expires_at",
        ),
        (
            {"title": "t", "description": "d", "type": "flood", "severity": "high", "priority": 11},
            "priority",
        ),
    ],
)
def test_validate_manual_alert_rejects(payload: dict, message: str) -> None:
    with pytest.raises(AlertValidationError, match=message):
        validate_manual_alert(payload)


def test_validate_partial_update() -> None:
    assert validate_manual_alert({"severity": "low"}, partial=True) == {"severity": "low"}


def test_resolve_area_shapes() -> None:
    assert resolve_area("Chennai") == Area(city="Chennai", state="Tamil Nadu")
    assert resolve_area("Bengaluru") == Area(city="Bangalore", state="Karnataka")
    assert resolve_area("Pune District") == Area(city="Pune", state="Maharashtra")
    assert resolve_area("Kerala") == Area(city="Kerala", state="Kerala")
    assert resolve_area("Tiruvallur, Tamil Nadu") == Area(city="Tiruvallur", state="Tamil Nadu")
    assert resolve_area("Chennai, Chennai District, tamil nadu") == Area(
        city="Chennai", state="Tamil Nadu", district="Chennai District"
    )
    assert resolve_area("Atlantis") == Area(city="Atlantis", state="Unknown")
    assert resolve_area(" , ") is None


def test_extract_areas_word_boundaries() -> None:
    areas = extract_areas("Floods in New Delhi and Gurugram; Punecity unaffected")
    assert [(a.city, a.state) for a in areas] == [("New Delhi", "Delhi"), ("Gurgaon", "Haryana")]


def test_generic_areas() -> None:
    assert is_generic_area(Area(city="Multiple Areas", state="India"))
    assert not is_generic_area(Area(city="Allahabad", state="Uttar Pradesh"))
