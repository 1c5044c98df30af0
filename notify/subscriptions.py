from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from normalize.alert import normalize_place_name
from store.db import Database


@dataclass(frozen=True)
class Subscription:
    recipient_id: str
    endpoint: str
    city: str | None
    state: str


class SubscriptionRegistry(Protocol):
    def subscriptions_for_area(self, city: str, state: str) -> list[Subscription]: ...

    def location_for(self, recipient_id: str) -> tuple[str | None, str | None]: ...


class SqliteSubscriptionRegistry:
    """Read-only view over the ``subscriptions`` table.

    A subscription matches an area when the state matches and the subscriber
    either has no city preference or prefers that city. A statewide area
    (city named after the state, as ``resolve_area("Kerala")`` gives) matches
    every subscriber in the state.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def subscriptions_for_area(self, city: str, state: str) -> list[Subscription]:
        statewide = normalize_place_name(city) == normalize_place_name(state)
        with self._db.lock:
            rows = self._db.conn.execute(
                """
                SELECT recipient_id, endpoint, city, state
                FROM subscriptions
                WHERE alerts_enabled = 1
                  AND state = ? COLLATE NOCASE
                  AND (? OR city IS NULL OR city = '' OR city = ? COLLATE NOCASE)
                ORDER BY recipient_id ASC, endpoint ASC;
                """,
                (state.strip(), 1 if statewide else 0, city.strip()),
            ).fetchall()
        return [
            Subscription(
                recipient_id=str(r["recipient_id"]),
                endpoint=str(r["endpoint"]),
                city=r["city"],
                state=str(r["state"]),
            )
            for r in rows
        ]

    def location_for(self, recipient_id: str) -> tuple[str | None, str | None]:
        with self._db.lock:
            row = self._db.conn.execute(
                """
                SELECT city, state FROM subscriptions
                WHERE recipient_id = ?
                ORDER BY alerts_enabled DESC, endpoint ASC
                LIMIT 1;
                """,
                (recipient_id,),
            ).fetchone()
        if row is None:
            return None, None
        return row["city"] or None, row["state"] or None
