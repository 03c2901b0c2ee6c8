def test_health_endpoints(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/api/v1/health/live").json() == {"status": "alive"}


def test_ready_with_default_pipeline(client):
    r = client.get("/api/v1/health/ready")
    assert r.status_code == 200
    assert r.json()["status"] == "ready"


def test_ready_with_pipeline_file(client, api_pipeline):
    assert client.get("/api/v1/health/ready").status_code == 200


def test_not_ready_when_pipeline_is_invalid(client, ws, monkeypatch):
    bad = ws / "broken.yaml"
    bad.write_text("stages: []\nimage: registry.local/app\n", encoding="utf-8")
    monkeypatch.setenv("SHIPYARD_PIPELINE_FILE", str(bad))

    r = client.get("/api/v1/health/ready")
    assert r.status_code == 503
    body = r.json()
    assert body["status"] == "not_ready"
    assert body["problems"][0].startswith("pipeline_invalid:")
