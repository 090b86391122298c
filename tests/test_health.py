from fastapi.testclient import TestClient

from relay.main import app

client = TestClient(app)


def test_health_endpoint():
    r = client.get("/health")
    assert r.status_code == 200
    j = r.json()
    assert j.get("status") == "ok"


def test_health_is_not_rate_limited():
    for _ in range(30):
        assert client.get("/health").status_code == 200


def test_metrics_endpoint():
    r = client.get("/metrics")
    assert r.status_code == 200
    # should contain prometheus metrics header
    assert r.headers.get("content-type").startswith("text/plain")
    assert "relay_rate_limiters" in r.text
