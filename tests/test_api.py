from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from notify.transport import DeliveryError, PushTransport


FIXTURES = Path(__file__).resolve().parent / "fixtures"
ADMIN = {"X-Admin-Token": "s3cret"}

_FEEDS = {
    "ndma.gov.in": "ndma.rss.xml",
    "www.isro.gov.in": "ndma.rss.xml",
    "mausam.imd.gov.in": "imd.json",
    "sachet.ndma.gov.in": "sachet_cap.xml",
}


class RecordingTransport(PushTransport):
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []
        self.gone: set[str] = set()

    async def send(self, endpoint: str, payload: dict) -> None:
        if endpoint in self.gone:
            raise DeliveryError("endpoint_gone")
        self.sent.append((endpoint, payload))

    async def close(self) -> None:
        return None


def _fixture_feeds(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=(FIXTURES / _FEEDS[request.url.host]).read_bytes())


def _all_down(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503)


@pytest.fixture
def push() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_client(settings, push):
    def _make(handler=_fixture_feeds) -> TestClient:
        app = create_app(
            settings,
            source_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            push_transport=push,
        )
        return TestClient(app)

    return _make


def _manual(client: TestClient, **overrides) -> dict:
    body = {
        "title": "Evacuate coastal villages",
        "description": "Cyclone landfall expected near Puri tonight",
        "type": "cyclone",
        "severity": "high",
        "affectedAreas": [{"city": "Puri", "state": "Odisha"}],
        "expiresAt": "2099-01-01T00:00:00Z",
    }
    body.update(overrides)
    response = client.post("/alerts", json=body, headers=ADMIN)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(make_client) -> None:
    with make_client() as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["scheduler"]["running"] is False


def test_admin_routes_require_token(make_client) -> None:
    with make_client() as client:
        assert client.post("/alerts", json={}).status_code == 403
        wrong = client.post("/alerts/scrape", headers={"X-Admin-Token": "nope"})
        assert wrong.status_code == 403
        assert wrong.json() == {"error": "admin_required"}
        assert client.get("/alerts/history").status_code == 403


def test_create_alert_notifies_subscribers(make_client, push, subscribe) -> None:
    with make_client() as client:
        subscribe(client.app.state.db, "u-odisha", state="Odisha")
        subscribe(client.app.state.db, "u-gone", state="Odisha", endpoint="https://push.test/gone")
        push.gone.add("https://push.test/gone")

        body = _manual(client)
        alert = body["alert"]
        assert alert["source"] == "manual"
        assert alert["isVerified"] is True
        assert alert["affectedAreas"][0]["city"] == "Puri"
        assert body["delivery"]["succeeded"] == 1
        assert body["delivery"]["failures"][0]["reason"] == "endpoint_gone"
        assert push.sent[0][1]["title"] == "🚨 HIGH ALERT: CYCLONE"

        stored = client.get(f"/alerts/{alert['id']}").json()
        assert stored["notificationsSent"] == 1


def test_low_severity_manual_alert_is_not_pushed(make_client, push, subscribe) -> None:
    with make_client() as client:
        subscribe(client.app.state.db, "u-odisha", state="Odisha")
        body = _manual(client, severity="low")
    assert body["delivery"] is None
    assert push.sent == []


def test_create_alert_validation(make_client) -> None:
    with make_client() as client:
        response = client.post(
            "/alerts",
            json={"title": "x", "description": "y", "type": "flood", "severity": "extreme"},
            headers=ADMIN,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

        missing = client.post("/alerts", json={"title": "x"}, headers=ADMIN)
        assert missing.status_code == 422
        assert "description is required" in missing.json()["message"]

        assert client.get("/alerts", params={"page": 0}).status_code == 422


def test_get_alert_counts_views(make_client) -> None:
    with make_client() as client:
        alert_id = _manual(client)["alert"]["id"]
        assert client.get(f"/alerts/{alert_id}").json()["views"] == 1
        assert client.get(f"/alerts/{alert_id}").json()["views"] == 2

        missing = client.get("/alerts/does-not-exist")
        assert missing.status_code == 404
        assert missing.json() == {"error": "not_found"}


def test_update_alert_escalation_and_lowering(make_client, push, subscribe) -> None:
    with make_client() as client:
        subscribe(client.app.state.db, "u-odisha", state="Odisha")
        alert_id = _manual(client)["alert"]["id"]

        raised = client.put(f"/alerts/{alert_id}", json={"severity": "critical"}, headers=ADMIN)
        assert raised.status_code == 200
        assert raised.json()["delivery"]["trigger"] == "escalation"
        assert push.sent[-1][1]["requireInteraction"] is True

        lowered = client.put(f"/alerts/{alert_id}", json={"severity": "low"}, headers=ADMIN)
        assert lowered.json()["alert"]["severity"] == "low"
        assert lowered.json()["delivery"] is None

        bad = client.put(f"/alerts/{alert_id}", json={"type": "tornado"}, headers=ADMIN)
        assert bad.status_code == 422
        assert client.put("/alerts/nope", json={"severity": "low"}, headers=ADMIN).status_code == 404
    assert len(push.sent) == 2


def test_deactivate_and_verify(make_client) -> None:
    with make_client() as client:
        alert_id = _manual(client)["alert"]["id"]

        verified = client.post(f"/alerts/{alert_id}/verify", headers=ADMIN)
        assert verified.json()["alert"]["isVerified"] is True

        assert client.delete(f"/alerts/{alert_id}", headers=ADMIN).status_code == 200
        assert client.delete("/alerts/nope", headers=ADMIN).status_code == 404

        assert client.get("/alerts").json()["total"] == 0
        history = client.get("/alerts/history", headers=ADMIN).json()
        assert history["total"] == 1
        assert history["alerts"][0]["isActive"] is False
        assert client.get(f"/alerts/{alert_id}").json()["isActive"] is False


def test_scrape_then_query(make_client, subscribe) -> None:
    with make_client() as client:
        subscribe(client.app.state.db, "u1", state="Tamil Nadu", city="Chennai")

        response = client.post("/alerts/scrape", headers=ADMIN)
        assert response.status_code == 200
        counts = response.json()["result"]["counts"]
        # The IMD and SACHET fixtures have already expired; NDMA items carry no expiry.
        assert counts["inserted"] == 5

        listing = client.get("/alerts").json()
        assert listing["total"] == 2
        assert listing["lastUpdate"] is not None
        assert client.get("/alerts/history", headers=ADMIN).json()["total"] == 5
        assert client.get("/alerts", params={"type": "earthquake"}).json()["total"] == 1

        chennai = client.get("/alerts/city/chennai").json()
        assert chennai["total"] == 1
        assert chennai["state"] == "All States"

        mine = client.get("/alerts/my-location", headers={"X-User-Id": "u1"}).json()
        assert mine["location"] == {"city": "Chennai", "state": "Tamil Nadu"}
        assert mine["total"] == 1
        assert client.get("/alerts/my-location").status_code == 401

        cities = client.get("/alerts/cities/available").json()["cities"]
        assert sorted(c["city"] for c in cities) == ["Chennai", "Guwahati"]

        stats = client.get("/alerts/stats/overview").json()
        assert stats["overview"]["totalAlerts"] == 2
        assert {t["_id"] for t in stats["byType"]} == {"flood", "earthquake"}

        status = client.get("/alerts/scrape/status", headers=ADMIN).json()["status"]
        assert status["lastCycle"]["status"] == "ok"
        assert status["runningCycles"] == 0
        assert [s["source"] for s in status["sources"]] == ["IMD", "ISRO", "NDMA", "SACHET"]
        assert all(s["successCount"] == 1 for s in status["sources"])


def test_recent_includes_new_manual_alert(make_client) -> None:
    with make_client() as client:
        _manual(client)
        recent = client.get("/alerts/recent/24h").json()
    assert recent["count"] == 1
    assert recent["timeframe"] == "24 hours"


def test_search_live(make_client) -> None:
    with make_client() as client:
        response = client.get("/alerts/search/Chennai")
        assert response.status_code == 200
        body = response.json()
        assert body["live"] is True
        assert body["total"] >= 1
        assert client.get("/alerts/history", headers=ADMIN).json()["total"] == 0


def test_search_fails_when_every_source_fails(make_client) -> None:
    with make_client(_all_down) as client:
        response = client.get("/alerts/search/Chennai")
    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "all sources failed"
    assert len(body["sources"]["failed"]) == 4


def test_test_notification(make_client, push, subscribe) -> None:
    with make_client() as client:
        subscribe(client.app.state.db, "u-odisha", state="Odisha")
        alert_id = _manual(client, severity="low")["alert"]["id"]
        response = client.post(f"/alerts/{alert_id}/test-notification", headers=ADMIN)
        assert response.json()["delivery"]["trigger"] == "test"
        assert client.post("/alerts/nope/test-notification", headers=ADMIN).status_code == 404
    assert len(push.sent) == 1
