"""Tests for the error envelope format and exception handlers.

Error responses share one envelope:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from keeper.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from keeper.api.schemas import Envelope, ErrorBody, SignInRequest
from keeper.service.errors import ConflictError, TransientStorageError


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="authentication failed")
        assert error.details is None

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="no code")


class TestEnvelope:
    def test_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        assert Envelope(status="ok").request_id


class TestErrorResponse:
    def test_code_defaults_from_status(self):
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(418) == "server_error"
        assert _STATUS_TO_CODE[503] == "service_unavailable"

    def test_response_body(self):
        response = _error_response(409, "username already exists", {"field": "username"})
        body = json.loads(response.body)
        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "username already exists",
            "details": {"field": "username"},
        }


def test_sign_in_request_caps_challenge_length():
    with pytest.raises(ValidationError):
        SignInRequest(username="alice", password="pw", challenge="0" * 1000)


@pytest.fixture
def handler_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("username already exists", detail={"field": "username"})

    @app.get("/unavailable")
    async def unavailable():
        raise TransientStorageError("sign_in: storage unavailable")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("postgresql://app:hunter2@db/keeper exploded")

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_conflict(self, handler_client):
        response = handler_client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert response.json()["error"]["details"] == {"field": "username"}

    def test_service_error(self, handler_client):
        response = handler_client.get("/unavailable")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"

    def test_uncaught_exception_hides_details(self, handler_client):
        response = handler_client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert "hunter2" not in response.text
