import pytest
from fastapi.testclient import TestClient

from dur import api, db
from dur.ledger import Ledger, LogRecord
from dur.models import Action

A = "sha256:" + "a" * 64
B = "sha256:" + "b" * 64


@pytest.fixture
def client(tmp_path, monkeypatch):
    ledger = Ledger(str(tmp_path / "history.log"))
    ledger.append(LogRecord("2024-05-01T10:00:00Z", "web", "nginx:1", A, Action.UPDATE))
    ledger.append(LogRecord("2024-05-02T10:00:00Z", "db", "postgres:16", B, Action.PULL_FAIL))
    ledger.append(LogRecord("2024-05-03T10:00:00Z", "web", "nginx:2", B, Action.UPDATE))

    monkeypatch.setattr(api, "docker_available", lambda: False)
    api.app.dependency_overrides[api.get_ledger] = lambda: ledger
    with TestClient(api.app) as c:
        yield c
    api.app.dependency_overrides.clear()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["docker"] is False
    assert body["ledger"].endswith("history.log")


def test_history_filters(client):
    r = client.get("/history")
    assert [x["timestamp"] for x in r.json()] == [
        "2024-05-03T10:00:00Z",
        "2024-05-02T10:00:00Z",
        "2024-05-01T10:00:00Z",
    ]

    r = client.get("/history", params={"kind": "pull_fail"})
    assert [x["name"] for x in r.json()] == ["db"]

    r = client.get("/history", params={"name": "web", "limit": 1})
    assert r.json() == [
        {"timestamp": "2024-05-03T10:00:00Z", "name": "web", "image": "nginx:2", "identity": B, "action": "UPDATE"}
    ]


def test_unknown_kind_is_400(client):
    assert client.get("/history", params={"kind": "EXPLODE"}).status_code == 400


def test_history_for_name(client):
    r = client.get("/history/web")
    assert r.status_code == 200
    assert len(r.json()) == 2
    assert client.get("/history/nobody").status_code == 404


def test_events(client):
    db.log_event("WARN", "pull failed", target="db", image="postgres:16")
    db.log_event("INFO", "fine", target="web")

    r = client.get("/events", params={"target": "db"})
    assert r.status_code == 200
    events = r.json()
    assert len(events) == 1
    assert events[0]["level"] == "WARN"
    assert events[0]["image"] == "postgres:16"
