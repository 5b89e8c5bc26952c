import pytest
from fastapi.testclient import TestClient

import billing_engine.api.health as health_api
from billing_engine.features.billing.provider import FakeGateway
from billing_engine.main import build_container, create_app


@pytest.fixture
def container(clock):
    return build_container(clock=clock, gateway=FakeGateway(), persistent=False)


@pytest.fixture
def client(container):
    return TestClient(create_app(container))


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_memory_storage(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "storage": "memory"}


def test_readyz_ok_with_mocked_db(client, container, monkeypatch):
    class FakeConn:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def exec_driver_sql(self, query):
            return None

    class FakeEngine:
        def connect(self):
            return FakeConn()

    class FakeInspector:
        def __init__(self, tables):
            self.tables = set(tables)

        def has_table(self, name):
            return name in self.tables

    container.persistent = True
    monkeypatch.setattr(health_api, "get_engine", lambda: FakeEngine())
    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector(["subscriptions", "billing_events"]))

    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json().get("storage") == "sql"


def test_readyz_reports_missing_tables(client, container, monkeypatch):
    class FakeConn:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def exec_driver_sql(self, query):
            return None

    class FakeEngine:
        def connect(self):
            return FakeConn()

    class FakeInspector:
        def has_table(self, name):
            return name == "subscriptions"

    container.persistent = True
    monkeypatch.setattr(health_api, "get_engine", lambda: FakeEngine())
    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector())

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "billing_events" in resp.json().get("detail", "")


def test_readyz_handles_db_down(client, container, monkeypatch):
    def boom():
        raise RuntimeError("db down")

    container.persistent = True
    monkeypatch.setattr(health_api, "get_engine", boom)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "database" in body.get("detail", "")


def test_readyz_with_sqlite(sqlite_db, clock):
    container = build_container(clock=clock, gateway=FakeGateway(), persistent=False)
    container.persistent = True
    resp = TestClient(create_app(container)).get("/readyz")
    assert resp.status_code == 200
