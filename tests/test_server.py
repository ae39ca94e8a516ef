import time

import pytest
from fastapi.testclient import TestClient

from live_triage.core.engine import TriageEngine
from live_triage.server import create_app


class TestServer:
    """Integration tests for the HTTP and WebSocket surface"""

    @pytest.fixture
    def client(self, settings, fast_timing):
        engine = TriageEngine(settings=settings, timing_store=fast_timing)
        with TestClient(create_app(engine)) as client:
            yield client

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["tier2"] == "keywords"
        assert data["active_calls"] == 0

    def test_call_lifecycle(self, client):
        assert client.post("/calls/CA1/start").json()["status"] == "listening"

        response = client.post("/calls/CA1/segments",
                               json={"speaker": "caller", "text": "my pipe has burst, water everywhere",
                                     "timestamp_ms": 0})
        assert response.status_code == 202
        time.sleep(0.5)

        data = client.get("/calls/CA1").json()
        assert data["status"] == "active"
        assert data["recommendation"]["route"] == "visit"
        assert data["segment"]["segment"] == "EMERGENCY"
        assert [job["traffic_light"] for job in data["jobs"].values()] == ["red"]

        assert [c["call_id"] for c in client.get("/calls").json()["calls"]] == ["CA1"]

        ended = client.post("/calls/CA1/end").json()
        assert ended["status"] == "ended"
        assert client.get("/calls").json()["calls"] == []
        assert len(client.get("/calls", params={"include_ended": True}).json()["calls"]) == 1

    def test_invalid_segment_is_422(self, client):
        client.post("/calls/CA2/start")
        response = client.post("/calls/CA2/segments", json={"speaker": "robot", "text": "hi", "timestamp_ms": 0})
        assert response.status_code == 422
        assert response.json()["error"] == "InvalidSegmentError"

    def test_unknown_call_is_404(self, client):
        assert client.get("/calls/missing").status_code == 404
        assert client.post("/calls/missing/metadata/reset", json={"fields": []}).status_code == 404

    def test_ending_unknown_call_is_a_no_op(self, client):
        response = client.post("/calls/never-started/end")
        assert response.status_code == 200
        assert response.json() is None

    def test_first_segment_starts_call(self, client):
        response = client.post("/calls/CA4/segments",
                               json={"speaker": "caller", "text": "my tap drips", "timestamp_ms": 0})
        assert response.status_code == 202
        assert client.get("/calls/CA4").json()["call_id"] == "CA4"

        client.post("/calls/CA4/end")
        response = client.post("/calls/CA4/segments",
                               json={"speaker": "caller", "text": "hello?", "timestamp_ms": 10})
        assert response.status_code == 404

    def test_metadata_reset(self, client):
        client.post("/calls/CA3/start")
        response = client.post("/calls/CA3/metadata/reset", json={"fields": ["name"]})
        assert response.status_code == 200
        assert response.json()["metadata"]["name"] is None
        assert client.post("/calls/CA3/metadata/reset", json={"fields": ["shoe_size"]}).status_code == 409

    def test_timing_settings(self, client):
        current = client.get("/settings/timing").json()
        assert current["sku_debounce_ms"] == 50

        response = client.patch("/settings/timing", json={"skuDebounceMs": 250})
        assert response.status_code == 200
        assert response.json()["sku_debounce_ms"] == 250
        assert response.json()["version"] == current["version"] + 1

        response = client.patch("/settings/timing", json={"sku_debounce_ms": 1})
        assert response.status_code == 422
        assert response.json()["error"] == "ConfigurationError"
        assert client.patch("/settings/timing", json={"warp": 9}).status_code == 422

    def test_analyze(self, client):
        response = client.post("/triage/analyze", json={"text": "I need an IKEA wardrobe built and a TV mounted"})
        data = response.json()
        assert response.status_code == 200
        assert {job["catalog_ref"]["sku_code"] for job in data["jobs"]} == {"FLATPACK-GENERIC", "HANDY-TV-MOUNT"}
        assert data["recommendation"]["route"] == "instant"

    def test_analyze_nothing_detected(self, client):
        data = client.post("/triage/analyze", json={"text": "what are your opening hours"}).json()
        assert data["jobs"] == []
        assert data["recommendation"] is None

    def test_websocket_broadcasts_snapshots(self, client):
        with client.websocket_connect("/ws/calls") as websocket:
            assert websocket.receive_json()["type"] == "sessions"
            client.post("/calls/WS1/start")
            message = websocket.receive_json()
            assert message["type"] == "snapshot"
            assert message["data"]["call_id"] == "WS1"
