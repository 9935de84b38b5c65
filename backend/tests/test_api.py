"""HTTP and websocket surface, with a fake catalog and in-memory store behind the app."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.db.session import get_db
from app.main import app
from app.scheduler.engine import DropEngine
from conftest import COLLECTION, SHOP, TOKEN

AUTH = {"Authorization": f"Bearer {TOKEN}"}
Q = {"shop": SHOP}


@pytest.fixture
def client(catalog, session_factory, clock):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.state.engine = DropEngine(catalog, session_factory=session_factory, clock=clock)
    app.dependency_overrides[get_db] = _get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
        del app.state.engine


def _schedule(client, start="2025-01-01T10:00:00Z"):
    return client.post(
        "/api/drops/schedule-all",
        params=Q,
        headers=AUTH,
        json={"queued_collection_id": COLLECTION, "initial_start_time_utc": start, "duration_minutes": 60},
    )


class TestAuth:
    def test_health_is_open(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_missing_shop(self, client):
        r = client.get("/api/drops/queued", headers=AUTH)
        assert r.status_code == 400
        assert r.json() == {"error": "Bad Request: Shop parameter missing."}

    def test_invalid_shop_domain(self, client):
        r = client.get("/api/drops/queued", params={"shop": "evil.example.com"}, headers=AUTH)
        assert r.status_code == 400
        assert r.json() == {"error": "Bad Request: Invalid shop domain."}

    def test_missing_bearer(self, client):
        r = client.get("/api/drops/queued", params=Q)
        assert r.status_code == 401
        assert "error" in r.json()

    def test_wrong_token(self, client):
        r = client.get("/api/drops/queued", params=Q, headers={"Authorization": "Bearer nope"})
        assert r.status_code == 401
        assert r.json() == {"error": "Unauthorized: Invalid token for shop."}

    def test_verify_session(self, client):
        assert client.get("/api/verify-session", params=Q, headers=AUTH).json() == {"ok": True, "shop": SHOP}


class TestDrops:
    def test_schedule_all_then_nothing_new(self, client, catalog):
        r = _schedule(client)
        assert r.status_code == 201
        assert r.json() == {"scheduled_count": 3, "message": "Successfully scheduled 3 new drops."}

        # The immediate pass promoted the first drop (clock sits at its start)
        active = client.get("/api/drops/active", params=Q, headers=AUTH).json()
        assert active["title"] == "A"
        assert catalog.writes == ["handle-a"]

        again = _schedule(client)
        assert again.status_code == 200
        assert again.json()["scheduled_count"] == 0

    def test_queued_paging(self, client):
        _schedule(client, start="2030-01-01T00:00:00Z")
        r = client.get("/api/drops/queued", params={**Q, "page": "2", "limit": "2"}, headers=AUTH)
        body = r.json()
        assert body["totalCount"] == 3
        assert [d["title"] for d in body["data"]] == ["C"]
        assert client.get("/api/drops/completed", params=Q, headers=AUTH).json() == {"data": [], "totalCount": 0}

    def test_schedule_all_rejects_local_time(self, client):
        r = _schedule(client, start="2025-01-01T10:00:00")
        assert r.status_code == 400
        assert "error" in r.json()

    def test_create_single_drop(self, client):
        body = {"product_id": "77", "title": "Hat", "start_time": "2030-01-01T00:00:00Z", "duration_minutes": 15}
        r = client.post("/api/drops", params=Q, headers=AUTH, json=body)
        assert r.status_code == 201
        assert r.json()["product_id"] == "gid://shopify/Product/77"
        assert r.json()["status"] == "queued"

        dup = client.post("/api/drops", params=Q, headers=AUTH, json=body)
        assert dup.status_code == 409
        assert "error" in dup.json()

    def test_create_rejects_naive_start(self, client):
        body = {"product_id": "77", "title": "Hat", "start_time": "2030-01-01T00:00:00", "duration_minutes": 15}
        assert client.post("/api/drops", params=Q, headers=AUTH, json=body).status_code == 400

    def test_delete_queued(self, client):
        _schedule(client, start="2030-01-01T00:00:00Z")
        ids = [d["id"] for d in client.get("/api/drops", params=Q, headers=AUTH).json()]
        r = client.request("DELETE", "/api/drops", params=Q, headers=AUTH, json={"dropIds": ids[:2]})
        assert r.json() == {"deleted_count": 2, "message": "Successfully deleted 2 queued drops."}
        assert len(client.get("/api/drops", params=Q, headers=AUTH).json()) == 1

    def test_delete_requires_ids(self, client):
        r = client.request("DELETE", "/api/drops", params=Q, headers=AUTH, json={"dropIds": []})
        assert r.status_code == 400

    def test_stop_and_clear(self, client, catalog):
        _schedule(client)
        r = client.post("/api/drops/stop-and-clear-queue", params=Q, headers=AUTH)
        assert r.status_code == 200
        assert r.json() == {
            "message": "Active drop 'A' completed. 2 scheduled drops cleared. Queued collection setting reset.",
            "activeDropCompleted": True,
            "queuedDropsCleared": 2,
            "settingsReset": True,
        }
        assert catalog.writes == ["handle-a", ""]
        cleared = client.delete("/api/drops/completed", params=Q, headers=AUTH)
        assert cleared.json()["deleted_count"] == 1


class TestSettingsAndCatalog:
    def test_settings_defaults_and_partial_save(self, client):
        assert client.get("/api/settings", params=Q, headers=AUTH).json()["drop_time"] == "10:00"
        r = client.post("/api/settings", params=Q, headers=AUTH, json={"default_drop_duration_minutes": 45})
        assert r.status_code == 200
        saved = client.get("/api/settings", params=Q, headers=AUTH).json()
        assert saved["default_drop_duration_minutes"] == 45
        assert saved["drop_time"] == "10:00"

    def test_settings_rejects_bad_time(self, client):
        r = client.post("/api/settings", params=Q, headers=AUTH, json={"drop_time": "7pm"})
        assert r.status_code == 400

    def test_collections(self, client):
        assert client.get("/api/collections", params=Q, headers=AUTH).json() == [{"id": COLLECTION, "title": "Spring Drops"}]

    def test_products_limit(self, client):
        r = client.get("/api/products-by-collection", params={**Q, "collectionId": "100", "limit": "2"}, headers=AUTH)
        assert [p["title"] for p in r.json()] == ["A", "B"]
        missing = client.get("/api/products-by-collection", params=Q, headers=AUTH)
        assert missing.status_code == 400

    def test_unknown_collection_is_404(self, client):
        r = client.get("/api/products-by-collection", params={**Q, "collectionId": "999"}, headers=AUTH)
        assert r.status_code == 404


class TestDebug:
    def test_metafield_state_and_forced_update(self, client, catalog):
        r = client.get("/api/debug/metafield", params=Q, headers=AUTH).json()
        assert r["success"] is True
        assert r["current_metafield"] is None

        _schedule(client)
        out = client.post("/api/debug/metafield/update", params=Q, headers=AUTH, json={"reset_cache": True}).json()
        assert out["success"] is True
        assert out["message"] == "Metafield update triggered"
        assert out["written"] is True
        assert out["value"] == "handle-a"
        assert catalog.writes == ["handle-a", "handle-a"]

        after = client.get("/api/debug/metafield", params=Q, headers=AUTH).json()
        assert after["current_metafield"] == {"id": "gid://shopify/Metafield/1", "value": "handle-a"}
        assert after["cache_state"]["last_published_value"] == "handle-a"


class TestEvents:
    def test_ping_and_queries(self, client):
        with client.websocket_connect(f"/ws?shop={SHOP}&token={TOKEN}") as ws:
            ws.send_json({"event": "ping_server"})
            assert ws.receive_json()["event"] == "pong_response"
            ws.send_json({"event": "get_settings"})
            msg = ws.receive_json()
            assert msg["event"] == "settings"
            assert msg["data"]["default_drop_duration_minutes"] == 60
            ws.send_json({"event": "get_scheduled_drops", "data": {"page": 1, "limit": 5}})
            assert ws.receive_json() == {"event": "scheduled_drops", "data": {"drops": [], "totalCount": 0}}
            ws.send_json({"event": "nope"})
            assert ws.receive_json()["event"] == "error"

    def test_bad_token_refused(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws?shop={SHOP}&token=wrong") as ws:
                ws.receive_json()

    def test_catalog_queries(self, client):
        with client.websocket_connect(f"/ws?shop={SHOP}&token={TOKEN}") as ws:
            ws.send_json({"event": "get_collections"})
            assert ws.receive_json() == {"event": "collections", "data": [{"label": "Spring Drops", "value": COLLECTION}]}

            ws.send_json({"event": "get_queued_products", "data": COLLECTION})
            msg = ws.receive_json()
            assert msg["event"] == "queued_products"
            assert [p["title"] for p in msg["data"]] == ["A", "B", "C"]
            assert msg["data"][0] == {"id": "gid://shopify/Product/1", "title": "A", "imageUrl": "https://cdn.test/1.png"}

            ws.send_json({"event": "get_queued_products", "data": {"collection_id": "999"}})
            assert ws.receive_json()["data"]["event"] == "get_queued_products"

            ws.send_json({"event": "get_queued_products", "data": "no-digits"})
            assert ws.receive_json()["data"] == {"event": "get_queued_products", "message": "Invalid collection ID format"}
