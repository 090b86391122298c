import pytest
from fastapi.testclient import TestClient

from relay.config import Settings
from relay.limiter import RateLimiterRegistry
from relay.main import create_app
from relay.share_store_base import InMemoryShareStore, StorageError


def _settings(**overrides):
    values = {"database_url": "memory://", "sweep_interval": 3600, "max_data_bytes": 64}
    values.update(overrides)
    return Settings(**values)


def _app(clock, ticks, **overrides):
    settings = _settings(**overrides)
    limiter = RateLimiterRegistry(
        settings.rate_limit_tokens,
        settings.rate_limit_interval,
        settings.rate_limit_burst,
        clock=ticks,
    )
    return create_app(settings, store=InMemoryShareStore(clock=clock), limiter=limiter)


@pytest.fixture()
def client(clock, ticks):
    with TestClient(_app(clock, ticks, rate_limit_burst=100)) as c:
        yield c


class BrokenStore(InMemoryShareStore):
    def exists(self, code):
        raise StorageError("database is locked")

    def put(self, code, data, ttl):
        raise StorageError("database is locked")

    def get(self, code):
        raise StorageError("database is locked")


def test_share_then_receive(client):
    r = client.post("/share", json={"code": "ABC1", "data": "blob"})
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "created"
    assert body["expires_at"] == "2026-01-01T12:10:00+00:00"

    r2 = client.get("/receive/ABC1")
    assert r2.status_code == 200
    assert r2.json() == {"data": "blob"}


def test_share_with_custom_expiry(client):
    r = client.post("/share", json={"code": "c", "data": "d", "expires_minutes": 60})
    assert r.status_code == 201
    assert r.json()["expires_at"] == "2026-01-01T13:00:00+00:00"


def test_receive_after_expiry_is_not_found(client, clock):
    client.post("/share", json={"code": "ABC1", "data": "blob"})
    clock.advance(minutes=11)

    r = client.get("/receive/ABC1")
    assert r.status_code == 404
    assert r.json()["detail"] == "Code not found or expired"


def test_receive_unknown_code(client):
    assert client.get("/receive/never-stored").status_code == 404


def test_check_code(client, clock):
    r = client.get("/check/ABC1")
    assert r.status_code == 404
    assert r.json() == {"status": "available"}

    client.post("/share", json={"code": "ABC1", "data": "blob", "expires_minutes": 1})
    r2 = client.get("/check/ABC1")
    assert r2.status_code == 409
    assert r2.json()["detail"] == "Code in use"

    # expired but not yet swept: still reported in use
    clock.advance(minutes=2)
    assert client.get("/check/ABC1").status_code == 409


def test_sharing_again_replaces_blob(client):
    client.post("/share", json={"code": "c", "data": "first"})
    r = client.post("/share", json={"code": "c", "data": "second"})
    assert r.status_code == 201
    assert client.get("/receive/c").json() == {"data": "second"}


@pytest.mark.parametrize(
    "payload",
    [
        {"code": "", "data": "blob"},
        {"code": "c", "data": ""},
        {"code": "c", "data": "blob", "expires_minutes": 0},
        {"code": "c", "data": "blob", "expires_minutes": 61},
        {"code": "x" * 65, "data": "blob"},
    ],
)
def test_share_rejects_invalid_fields(client, payload):
    r = client.post("/share", json=payload)
    assert r.status_code == 400


def test_share_rejects_malformed_body(client):
    r = client.post("/share", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid JSON"

    r2 = client.post("/share", json={"code": "c"})
    assert r2.status_code == 400


def test_share_rejects_oversized_data(client):
    r = client.post("/share", json={"code": "c", "data": "x" * 65})
    assert r.status_code == 413
    assert client.get("/check/c").status_code == 404


def test_rate_limit_applies_across_routes(clock, ticks):
    with TestClient(_app(clock, ticks, rate_limit_burst=3)) as client:
        assert client.get("/check/a").status_code == 404
        assert client.post("/share", json={"code": "a", "data": "b"}).status_code == 201
        assert client.get("/receive/a").status_code == 200

        r = client.get("/receive/a")
        assert r.status_code == 429
        assert r.json()["detail"] == "Rate limit exceeded"

        # health and metrics stay reachable
        assert client.get("/health").status_code == 200
        assert client.get("/metrics").status_code == 200

        ticks.advance(60)
        assert client.get("/receive/a").status_code == 200


def test_forwarded_for_identifies_clients_when_trusted(clock, ticks):
    app = _app(clock, ticks, rate_limit_burst=1, trust_forwarded_for=True)
    with TestClient(app) as client:
        assert client.get("/check/a", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 404
        assert client.get("/check/a", headers={"X-Forwarded-For": "2.2.2.2, 10.0.0.1"}).status_code == 404
        assert client.get("/check/a", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 429
        assert "2.2.2.2" in app.state.limiter


def test_forwarded_for_ignored_by_default(clock, ticks):
    with TestClient(_app(clock, ticks, rate_limit_burst=1)) as client:
        assert client.get("/check/a", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 404
        assert client.get("/check/a", headers={"X-Forwarded-For": "2.2.2.2"}).status_code == 429


def test_storage_errors_return_500(clock, ticks):
    app = create_app(_settings(rate_limit_burst=100), store=BrokenStore(clock=clock))
    with TestClient(app) as client:
        assert client.get("/check/a").status_code == 500
        r = client.post("/share", json={"code": "a", "data": "b"})
        assert r.status_code == 500
        assert r.json()["detail"] == "Database error"
        assert client.get("/receive/a").status_code == 500


def test_lifespan_runs_sweeper(clock, ticks):
    app = _app(clock, ticks)
    with TestClient(app):
        assert app.state.sweeper.running is True
    assert app.state.sweeper.running is False


def test_metrics_count_shares(client):
    client.post("/share", json={"code": "m", "data": "d"})
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "relay_shares_created_total" in r.text
