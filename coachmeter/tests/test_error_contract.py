"""Tests for normalized error responses."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from coachmeter.core.errors import AppError, app_error_handler, unhandled_exception_handler
from coachmeter.core.middleware.request_id import RequestIdMiddleware


def test_validation_error_has_standard_shape(client):
    resp = client.post("/v1/coaching/plans", json={"name": "", "billing_type": "recurring"})
    assert resp.status_code == 400
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_not_found_error_normalized(client):
    resp = client.get("/v1/coaching/subscriptions/does-not-exist", headers={"X-Request-Id": "rid-404"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["error"]["code"] == "not_found"
    assert body["error"]["request_id"] == "rid-404"
    assert resp.headers.get("x-request-id") == "rid-404"


def test_bad_now_parameter_is_validation_error(client):
    resp = client.get("/v1/coaching/subscriptions", params={"now": "yesterday"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_malformed_body_is_validation_error(client):
    resp = client.post(
        "/v1/coaching/subscriptions",
        json={"child_id": "c", "plan_id": "p", "start_date": "not-a-date"},
    )
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert "start_date" in body["error"]["message"]


def test_unknown_route_uses_standard_shape(client):
    resp = client.get("/v1/coaching/nowhere")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_unhandled_exception_is_internal_error():
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(AppError, app_error_handler)
    test_app.add_exception_handler(Exception, unhandled_exception_handler)

    @test_app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    client = TestClient(test_app, raise_server_exceptions=False)
    resp = client.get("/boom")

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal_error"
    assert "kaboom" not in body["detail"]
