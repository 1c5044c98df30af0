from __future__ import annotations

import json

from ingest.errors import SourceParseError


def parse_json_records(data: bytes) -> list[dict]:
    try:
        doc = json.loads(data)
    except json.JSONDecodeError as exc:
        raise SourceParseError(f"invalid JSON: {exc}") from exc

    if isinstance(doc, list):
        return [r for r in doc if isinstance(r, dict)]
    if isinstance(doc, dict):
        for key in ("warnings", "alerts", "items", "data"):
            value = doc.get(key)
            if isinstance(value, list):
                return [r for r in value if isinstance(r, dict)]
        raise SourceParseError("JSON document has no record list")
    raise SourceParseError(f"unexpected JSON root: {type(doc).__name__}")
