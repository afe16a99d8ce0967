import coachmeter.api.health as health_api


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok_with_tables(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_reports_missing_tables(client, monkeypatch):
    monkeypatch.setattr(health_api, "missing_tables", lambda: ["coaching_session_logs"])

    resp = client.get("/readyz")

    assert resp.status_code == 503
    assert "coaching_session_logs" in resp.json()["detail"]


def test_readyz_database_unreachable(client, monkeypatch):
    monkeypatch.setattr(health_api, "check_connection", lambda: False)

    resp = client.get("/readyz")

    assert resp.status_code == 503
    assert resp.json()["detail"] == "database unreachable"
