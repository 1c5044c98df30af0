"""Merge candidates that share a dedup key and decide insert/update/discard."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from normalize.alert import (
    DISCARD,
    INSERT,
    SEVERITY_RANK,
    UPDATE,
    Alert,
    RawCandidate,
    ReconcileAction,
    to_iso,
)
from normalize.normalize import canonicalize, compute_priority, union_areas


ExistingLookup = Callable[[str], Alert | None]


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def _later(a: str | None, b: str | None) -> str | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def merge_pair(base: Alert, other: Alert, now: datetime) -> Alert:
    """Fold *other* into *base*; identity fields of *base* are kept.

    Severity is the maximum reported, areas are unioned, the longest
    description wins and the latest expiry is kept.
    """
    severity = base.severity
    alert_type = base.type
    title = base.title
    if SEVERITY_RANK[other.severity] > SEVERITY_RANK[base.severity]:
        severity = other.severity
    if alert_type == "general" and other.type != "general":
        alert_type = other.type

    description = base.description
    if len(other.description) > len(description):
        description = other.description

    issued_at = min(base.issued_at, other.issued_at)
    raw = base.raw
    if other.raw and other.raw != base.raw:
        merged_raw = list(base.raw.get("merged") or ([base.raw] if base.raw else []))
        if other.raw not in merged_raw:
            merged_raw.append(other.raw)
        raw = {"merged": merged_raw}

    return replace(
        base,
        type=alert_type,
        severity=severity,
        title=title,
        description=description,
        affected_areas=union_areas(base.affected_areas, other.affected_areas),
        sources=_unique(base.sources + other.sources),
        issued_at=issued_at,
        expires_at=_later(base.expires_at, other.expires_at),
        source_url=base.source_url or other.source_url,
        instructions=_unique(base.instructions + other.instructions),
        tags=_unique(base.tags + other.tags),
        raw=raw,
        priority=compute_priority(severity, alert_type, issued_at, now),
    )


def merge_candidates(candidates: list[RawCandidate], now: datetime) -> list[Alert]:
    """Canonicalize candidates and merge those sharing a dedup key.

    Output order follows the first appearance of each key. This is the only
    step the live city search runs.
    """
    merged: dict[str, Alert] = {}
    for candidate in candidates:
        alert = canonicalize(candidate, now)
        current = merged.get(alert.dedup_key)
        merged[alert.dedup_key] = (
            alert if current is None else merge_pair(current, alert, now)
        )
    return list(merged.values())


def decide(incoming: Alert, existing: Alert | None, now: datetime) -> ReconcileAction:
    """Compare a merged candidate with the stored record for the same key."""
    now_iso = to_iso(now)
    if existing is None:
        if incoming.is_expired(now_iso):
            # Kept for history only; never live, never notified.
            incoming = replace(incoming, is_active=False, deactivated_reason="expired")
        return ReconcileAction(action=INSERT, alert=incoming)

    if not existing.is_active and existing.deactivated_reason == "admin":
        return ReconcileAction(action=DISCARD, alert=existing)

    merged = merge_pair(existing, incoming, now)
    # Scraped text never replaces the title an admin may have corrected.
    merged = replace(merged, title=existing.title, source=existing.source)

    escalated = merged.severity_rank > existing.severity_rank
    new_areas = bool(merged.area_keys() - existing.area_keys())
    text_changed = merged.description != existing.description
    expiry_extended = merged.expires_at != existing.expires_at

    if not (escalated or new_areas or text_changed or expiry_extended):
        return ReconcileAction(action=DISCARD, alert=existing)

    if not existing.is_active or existing.is_expired(now_iso):
        # Expired records, swept or not, come back only when the source
        # extends the expiry.
        if not expiry_extended or merged.is_expired(now_iso):
            return ReconcileAction(action=DISCARD, alert=existing)
        merged = replace(merged, is_active=True, deactivated_reason=None)

    return ReconcileAction(
        action=UPDATE,
        alert=merged,
        escalated=escalated,
        previous_severity=existing.severity,
    )


def reconcile(
    candidates: list[RawCandidate], lookup: ExistingLookup, now: datetime
) -> list[ReconcileAction]:
    """Group, merge and classify one cycle's candidates against the store."""
    return [
        decide(alert, lookup(alert.dedup_key), now)
        for alert in merge_candidates(candidates, now)
    ]
