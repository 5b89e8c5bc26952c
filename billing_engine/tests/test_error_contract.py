"""Tests for normalized error responses."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from billing_engine.core.errors import (
    AppError,
    CatalogCorruptionError,
    PersistenceUnavailableError,
    app_error_handler,
    unhandled_exception_handler,
)
from billing_engine.core.middleware.request_id import RequestIdMiddleware
from billing_engine.features.billing.provider import FakeGateway
from billing_engine.main import build_container, create_app


def _client(clock):
    return TestClient(create_app(build_container(clock=clock, gateway=FakeGateway(), persistent=False)))


def test_validation_error_has_standard_shape(clock):
    client = _client(clock)
    resp = client.get("/api/analytics/growth", params={"months": 99})
    assert resp.status_code == 400
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_conflict_error_normalized(clock):
    client = _client(clock)
    sid = client.post("/api/subscriptions", json={"user_id": "u1", "plan_id": "basic"}).json()["subscription"]["subscription_id"]
    client.post(f"/api/subscriptions/{sid}/cancel", json={"immediate": True})

    resp = client.post(f"/api/subscriptions/{sid}/cancel")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "already_canceled"


def _bare_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get("/catalog")
    async def catalog():
        raise CatalogCorruptionError("plan basic missing")

    @app.get("/db")
    async def db():
        raise PersistenceUnavailableError("database unavailable")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return app


def test_fatal_errors_keep_their_codes():
    client = TestClient(_bare_app(), raise_server_exceptions=False)
    catalog = client.get("/catalog")
    assert catalog.status_code == 500
    assert catalog.json()["error"]["code"] == "catalog_corrupted"

    db = client.get("/db")
    assert db.status_code == 503
    assert db.json()["error"]["code"] == "persistence_unavailable"


def test_unhandled_exception_hides_details():
    client = TestClient(_bare_app(), raise_server_exceptions=False)
    resp = client.get("/boom")
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal_error"
    assert "secret" not in body["error"]["message"]
