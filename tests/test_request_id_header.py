def test_request_id_header_generated(client):
    r = client.get("/api/v1/health/live")
    assert r.status_code == 200
    assert r.json() == {"status": "alive"}
    assert len(r.headers["X-Request-Id"]) > 10


def test_request_id_passthrough(client):
    rid = "test-rid-123"
    r = client.get("/api/v1/health/live", headers={"X-Request-Id": rid})
    assert r.headers.get("X-Request-Id") == rid


def test_request_id_on_errors(client):
    r = client.get("/api/v1/runs/run-missing", headers={"X-Request-Id": "rid-404"})
    assert r.status_code == 404
    assert r.headers.get("X-Request-Id") == "rid-404"
