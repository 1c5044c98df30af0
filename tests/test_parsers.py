from pathlib import Path

import pytest

from ingest.errors import SourceParseError
from ingest.parsers.cap import parse_cap_alerts
from ingest.parsers.json import parse_json_records
from ingest.parsers.rss import parse_rss


FIXTURES = Path(__file__).resolve().parent / "fixtures"


def test_parse_ndma_rss_fixture() -> None:
    data = (FIXTURES / "ndma.rss.xml").read_bytes()
    entries = parse_rss(data)
    assert len(entries) == 3
    assert entries[0]["id"] == "ndma-item-1187"
    assert entries[0]["title"].startswith("Orange Alert")
    assert entries[0]["published"] == "2024-08-15T01:00:00Z"


def test_parse_rss_rejects_garbage() -> None:
    with pytest.raises(SourceParseError):
        parse_rss(b"definitely not a feed")


def test_parse_sachet_cap_fixture() -> None:
    data = (FIXTURES / "sachet_cap.xml").read_bytes()
    alerts = parse_cap_alerts(data)
    assert len(alerts) == 2

    cyclone = alerts[0]
    assert cyclone["identifier"] == "SACHET-2024-0815-001"
    assert cyclone["severity"] == "Extreme"
    assert cyclone["sent"] == "2024-08-15T01:30:00Z"
    assert cyclone["expires"] == "2024-08-16T01:30:00Z"
    assert cyclone["areas"] == ["Puri, Odisha", "Bhubaneswar, Odisha"]
    assert cyclone["instruction"] == "Move to the nearest cyclone shelter."
    assert alerts[1]["status"] == "Test"


def test_parse_single_cap_alert() -> None:
    data = b"""<alert xmlns="urn:oasis:names:tc:emergency:cap:1.2">
      <identifier>X-1</identifier><sent>2024-08-15T07:00:00+05:30</sent>
      <status>Actual</status><msgType>Alert</msgType>
      <info><event>Flood</event><headline>Flood</headline>
      <area><areaDesc>Patna, Bihar</areaDesc></area></info>
    </alert>"""
    alerts = parse_cap_alerts(data)
    assert [a["identifier"] for a in alerts] == ["X-1"]
    assert alerts[0]["severity"] is None


def test_parse_cap_rejects_malformed_xml() -> None:
    with pytest.raises(SourceParseError):
        parse_cap_alerts(b"<alert><identifier>broken")


def test_parse_imd_json_fixture() -> None:
    data = (FIXTURES / "imd.json").read_bytes()
    records = parse_json_records(data)
    assert [r["id"] for r in records] == ["IMD-TN-20240815-01", "IMD-RJ-20240815-02"]


def test_parse_json_errors() -> None:
    with pytest.raises(SourceParseError):
        parse_json_records(b"{not json")
    with pytest.raises(SourceParseError):
        parse_json_records(b'{"message": "maintenance"}')
    assert parse_json_records(b"[]") == []
