from __future__ import annotations

import xml.etree.ElementTree as ET

from ingest.errors import SourceParseError
from normalize.alert import parse_timestamp


def _text(el: ET.Element, tag: str) -> str | None:
    value = el.findtext(f"{{*}}{tag}")
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_cap_alerts(data: bytes) -> list[dict]:
    """Parse one CAP 1.2 ``<alert>`` or any document wrapping several of them.

    Only the first ``<info>`` block of each alert is read; every ``<area>`` in
    it contributes its ``areaDesc``.
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise SourceParseError(f"invalid CAP XML: {exc}") from exc

    if root.tag.endswith("alert"):
        alert_els = [root]
    else:
        alert_els = root.findall(".//{*}alert")

    records: list[dict] = []
    for alert in alert_els:
        info = alert.find("{*}info")
        if info is None:
            continue

        areas = [
            desc
            for area in info.findall("{*}area")
            if (desc := _text(area, "areaDesc")) is not None
        ]

        records.append(
            {
                "identifier": _text(alert, "identifier") or "",
                "sender": _text(alert, "sender"),
                "sent": parse_timestamp(_text(alert, "sent")),
                "status": _text(alert, "status"),
                "msg_type": _text(alert, "msgType"),
                "event": _text(info, "event"),
                "headline": _text(info, "headline"),
                "description": _text(info, "description") or "",
                "instruction": _text(info, "instruction"),
                "severity": _text(info, "severity"),
                "urgency": _text(info, "urgency"),
                "certainty": _text(info, "certainty"),
                "effective": parse_timestamp(_text(info, "effective")),
                "expires": parse_timestamp(_text(info, "expires")),
                "web": _text(info, "web"),
                "areas": areas,
            }
        )

    return records
