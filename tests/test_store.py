import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from normalize.alert import DISCARD, INSERT, UPDATE, RawCandidate
from normalize.normalize import canonicalize
from store.alerts import AlertFilters, AlertStore
from store.db import close_database, open_database


NOW = datetime(2024, 8, 15, 12, 0, tzinfo=UTC)


def _alert(**overrides):
    fields = {
        "source": "IMD",
        "native_id": "IMD-TN-1",
        "type": "flood",
        "severity": "high",
        "title": "Heavy Rainfall Warning for Chennai",
        "description": "Heavy rain likely",
        "raw_areas": ("Chennai",),
        "issued_at": "2024-08-15T10:00:00Z",
        "expires_at": "2024-08-16T00:00:00Z",
    }
    fields.update(overrides)
    return canonicalize(RawCandidate(**fields), NOW)


def _put(store: AlertStore, alert):
    return store.upsert_by_key(alert.dedup_key, alert, NOW)


def test_upsert_inserts_then_discards_repeat(store: AlertStore) -> None:
    first = _put(store, _alert())
    assert first.action == INSERT
    assert first.alert.created_at == "2024-08-15T12:00:00Z"

    again = _put(store, _alert())
    assert again.action == DISCARD
    assert again.alert.alert_id == first.alert.alert_id
    assert store.count_rows() == 1


def test_upsert_escalates_in_place(store: AlertStore) -> None:
    first = _put(store, _alert())
    result = _put(store, _alert(severity="critical"))
    assert result.action == UPDATE
    assert result.escalated is True
    assert result.previous_severity == "high"

    stored = store.get(first.alert.alert_id)
    assert stored is not None
    assert stored.severity == "critical"
    assert stored.priority == 9
    assert store.count_rows() == 1


def test_find_active_orders_and_filters(store: AlertStore) -> None:
    _put(
        store,
        _alert(
            source="SACHET",
            native_id="S-1",
            type="cyclone",
            severity="critical",
            title="Cyclone warning",
            raw_areas=("Puri, Odisha",),
        ),
    )
    _put(store, _alert())
    _put(
        store,
        _alert(
            native_id="IMD-RJ-1",
            type="general",
            severity="low",
            title="Dust advisory",
            raw_areas=("Jaipur",),
            issued_at="2024-08-12T00:00:00Z",
        ),
    )

    page = store.find_active(AlertFilters(), now=NOW)
    assert page.total == 3
    assert [a.type for a in page.alerts] == ["cyclone", "flood", "general"]

    assert [a.type for a in store.find_active(AlertFilters(city="chen"), now=NOW).alerts] == [
        "flood"
    ]
    assert [a.type for a in store.find_active(AlertFilters(state="Odisha"), now=NOW).alerts] == [
        "cyclone"
    ]
    assert store.find_active(AlertFilters(severity="low"), now=NOW).total == 1
    assert store.find_active(AlertFilters(type="earthquake"), now=NOW).total == 0


def test_find_active_paginates(store: AlertStore) -> None:
    for i in range(25):
        _put(store, _alert(native_id=f"IMD-{i}"))

    page = store.find_active(AlertFilters(), page=3, page_size=10, now=NOW)
    assert page.total == 25
    assert page.total_pages == 3
    assert len(page.alerts) == 5

    assert store.find_active(AlertFilters(), page_size=500, now=NOW).page_size == 100


def test_expired_alerts_leave_active_set_but_stay_in_history(store: AlertStore) -> None:
    inserted = _put(store, _alert()).alert
    later = NOW + timedelta(days=1)

    assert store.find_active(AlertFilters(), now=later).total == 0
    assert store.find_history(AlertFilters()).total == 1

    assert store.deactivate_expired(later) == 1
    assert store.deactivate_expired(later) == 0
    stored = store.get(inserted.alert_id)
    assert stored is not None
    assert stored.is_active is False
    assert stored.deactivated_reason == "expired"


def test_already_expired_insert_is_history_only(store: AlertStore) -> None:
    result = _put(store, _alert(expires_at="2024-08-15T11:00:00Z"))
    assert result.action == INSERT
    assert result.alert.is_active is False
    assert store.find_active(AlertFilters(), now=NOW).total == 0
    assert store.find_history(AlertFilters()).total == 1


def test_concurrent_upserts_of_one_key_keep_one_row(tmp_path: Path) -> None:
    path = tmp_path / "shared.db"
    handles = [open_database(path), open_database(path)]
    stores = [AlertStore(h) for h in handles]
    barrier = threading.Barrier(len(stores))
    results = []

    def worker(store: AlertStore) -> None:
        alert = _alert()
        barrier.wait()
        results.append(store.upsert_by_key(alert.dedup_key, alert, NOW).action)

    threads = [threading.Thread(target=worker, args=(s,)) for s in stores]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    try:
        assert sorted(results) == [DISCARD, INSERT]
        assert stores[0].count_rows() == 1
    finally:
        for h in handles:
            close_database(h)


def test_find_for_location_includes_nationwide(store: AlertStore) -> None:
    _put(store, _alert())
    _put(store, _alert(source="SACHET", native_id="S-1", raw_areas=("Puri, Odisha",)))
    _put(store, _alert(source="SACHET", native_id="S-2", raw_areas=()))

    page = store.find_for_location(
        state="Tamil Nadu", city="Chennai", filters=AlertFilters(), now=NOW
    )
    cities = sorted(a.affected_areas[0].city for a in page.alerts)
    assert cities == ["Chennai", "Multiple Areas"]


def test_cities_available_skips_generic_areas(store: AlertStore) -> None:
    _put(store, _alert())
    _put(store, _alert(native_id="IMD-TN-2", severity="critical"))
    _put(store, _alert(source="SACHET", native_id="S-2", raw_areas=()))

    cities = store.cities_available(now=NOW)
    assert cities == [
        {
            "state": "Tamil Nadu",
            "city": "Chennai",
            "alertCount": 2,
            "criticalCount": 1,
            "highCount": 1,
            "mediumCount": 0,
            "lowCount": 0,
        }
    ]


def test_stats_counts_active_alerts(store: AlertStore) -> None:
    _put(store, _alert())
    _put(store, _alert(native_id="IMD-TN-2", type="weather", severity="critical"))
    _put(store, _alert(native_id="IMD-TN-3", expires_at="2024-08-15T11:00:00Z"))

    stats = store.stats(now=NOW)
    assert stats.total == 2
    assert stats.by_severity == {"low": 0, "medium": 0, "high": 1, "critical": 1}
    assert dict(stats.by_type) == {"flood": 1, "weather": 1}
    assert stats.by_source == [("IMD", 2)]


def test_update_fields_can_lower_severity(store: AlertStore) -> None:
    alert = _put(store, _alert()).alert

    updated, escalated = store.update_fields(alert.alert_id, {"severity": "low"}, NOW)
    assert escalated is False
    assert updated.severity == "low"
    assert updated.priority == 6

    _, escalated = store.update_fields(alert.alert_id, {"severity": "critical"}, NOW)
    assert escalated is True
    assert store.update_fields("missing", {"severity": "low"}, NOW) is None


def test_admin_deactivation_survives_rescrape(store: AlertStore) -> None:
    alert = _put(store, _alert()).alert
    assert store.deactivate(alert.alert_id) is True
    assert store.deactivate("missing") is False

    result = _put(store, _alert(severity="critical"))
    assert result.action == DISCARD
    stored = store.get(alert.alert_id)
    assert stored is not None
    assert stored.is_active is False
    assert stored.deactivated_reason == "admin"
    assert stored.severity == "high"


def test_counters_and_verification(store: AlertStore) -> None:
    alert = _put(store, _alert()).alert
    store.increment_views([alert.alert_id, alert.alert_id])
    store.increment_notifications(alert.alert_id, 3)
    store.increment_notifications(alert.alert_id, 0)
    verified = store.verify(alert.alert_id)

    assert verified is not None
    assert verified.is_verified is True
    assert verified.views == 2
    assert verified.notifications_sent == 3


@pytest.mark.parametrize("key", ["id:IMD:nope", "fp:0000"])
def test_get_by_key_unknown(store: AlertStore, key: str) -> None:
    assert store.get_by_key(key) is None
