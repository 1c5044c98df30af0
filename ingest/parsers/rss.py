from __future__ import annotations

import feedparser

from ingest.errors import SourceParseError
from normalize.alert import parse_timestamp


def parse_rss(data: bytes) -> list[dict]:
    parsed = feedparser.parse(data)
    if parsed.bozo and not parsed.entries and not parsed.get("version"):
        raise SourceParseError(f"not a feed: {parsed.get('bozo_exception')!r}")

    records: list[dict] = []
    for entry in parsed.entries:
        content = None
        if "content" in entry and entry["content"]:
            content = entry["content"][0].get("value")

        records.append(
            {
                "id": entry.get("id") or entry.get("guid") or entry.get("link"),
                "link": entry.get("link"),
                "title": entry.get("title", ""),
                "summary": entry.get("summary", ""),
                "content": content,
                "published": parse_timestamp(entry.get("published")),
                "updated": parse_timestamp(entry.get("updated")),
                "categories": [
                    str(t.get("term")) for t in entry.get("tags") or [] if t.get("term")
                ],
            }
        )
    return records
