from __future__ import annotations

from pathlib import Path

import pytest

from app.settings import Settings
from store.alerts import AlertStore
from store.db import Database, close_database, open_database


FIXTURES = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture
def db(tmp_path: Path):
    database = open_database(tmp_path / "alerts.db")
    yield database
    close_database(database)


@pytest.fixture
def store(db: Database) -> AlertStore:
    return AlertStore(db)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        DB_PATH=tmp_path / "app.db",
        SCRAPE_ENABLED=False,
        SOURCE_TIMEOUT_SECONDS=5.0,
        SEARCH_DEADLINE_SECONDS=0.5,
        ADMIN_TOKEN="s3cret",
        LOG_FORMAT="console",
    )


def _add_subscription(
    db: Database,
    recipient_id: str,
    *,
    state: str,
    city: str | None = None,
    endpoint: str | None = None,
    enabled: bool = True,
) -> None:
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO subscriptions(recipient_id, city, state, endpoint, alerts_enabled)
            VALUES(?, ?, ?, ?, ?);
            """,
            (
                recipient_id,
                city,
                state,
                endpoint or f"https://push.test/{recipient_id}",
                1 if enabled else 0,
            ),
        )


@pytest.fixture
def subscribe():
    """Insert a row into the subscriptions table of a given database."""
    return _add_subscription
