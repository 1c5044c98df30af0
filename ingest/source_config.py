from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


KNOWN_SOURCES = ("NDMA", "IMD", "SACHET", "ISRO")


@dataclass(frozen=True)
class SourceOverride:
    source: str
    url: str | None = None
    enabled: bool | None = None
    timeout_seconds: float | None = None


def load_source_overrides(path: Path | None) -> dict[str, SourceOverride]:
    """Read per-source overrides from a YAML mapping keyed by source name.

    Example::

        IMD:
          url: https://mirror.example/imd.json
          timeout_seconds: 8
        ISRO:
          enabled: false
    """
    overrides: dict[str, SourceOverride] = {}
    if path is None or not path.exists():
        return overrides

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return overrides
    if not isinstance(raw, dict):
        raise ValueError(f"invalid sources file: {path}")

    for source, entry in raw.items():
        source = str(source)
        if source not in KNOWN_SOURCES:
            raise ValueError(f"unknown source {source!r} in: {path}")
        if entry is None:
            entry = {}
        if not isinstance(entry, dict):
            raise ValueError(f"invalid entry for {source} in: {path}")
        timeout = entry.get("timeout_seconds")
        overrides[source] = SourceOverride(
            source=source,
            url=str(entry["url"]) if entry.get("url") else None,
            enabled=bool(entry["enabled"]) if "enabled" in entry else None,
            timeout_seconds=float(timeout) if timeout is not None else None,
        )

    return overrides
