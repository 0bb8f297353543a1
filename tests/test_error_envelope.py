"""Tests for the error envelope returned by every failing endpoint.

{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from ephemera.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from ephemera.api.schemas import Envelope, ErrorBody
from ephemera.logging import correlation_id_var
from ephemera.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    SessionExpiredError,
)
from ephemera.service.errors import ValidationError as ValidationErrorExc


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Not Authorized.")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="invalid request",
            details=[{"loc": ["body", "email"], "msg": "invalid email address"}],
        )
        assert error.details[0]["loc"] == ["body", "email"]

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_request_id_auto_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_basic(self):
        response = _error_response(404, "This account does not exist.")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "This account does not exist.",
            "details": None,
        }

    def test_custom_code_and_details(self):
        response = _error_response(401, "invalid refresh", {"reason": "expired"}, code="unauthorized")
        body = json.loads(response.body)
        assert body["error"]["details"] == {"reason": "expired"}

    def test_request_id_follows_correlation_id(self):
        token = correlation_id_var.set("corr-42")
        try:
            body = json.loads(_error_response(400, "bad").body)
            assert body["request_id"] == "corr-42"
        finally:
            correlation_id_var.reset(token)


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc_cls,status",
        [
            (ValidationErrorExc, 400),
            (AuthenticationError, 401),
            (SessionExpiredError, 401),
            (ForbiddenError, 403),
            (NotFoundError, 404),
            (ConflictError, 409),
            (RateLimitedError, 429),
        ],
    )
    def test_codes_are_stable(self, exc_cls, status):
        exc = exc_cls("boom")
        assert exc.status_code == status
        assert _error_code_for_status(status) == exc.error_code
        ErrorBody(code=exc.error_code, message=exc.message)

    def test_overrides(self):
        exc = NotFoundError("gone", detail={"id": "x"}, status_code=410, error_code="not_found")
        assert exc.status_code == 410
        assert exc.detail == {"id": "x"}

    def test_retry_after_never_below_one_second(self):
        assert RateLimitedError("slow down", retry_after=0).retry_after == 1
        assert RateLimitedError("slow down", retry_after=42).retry_after == 42

    def test_session_expired_is_an_authentication_error(self):
        exc = SessionExpiredError("invalid refresh", detail={"reason": "expired"})
        assert isinstance(exc, AuthenticationError)
        assert exc.error_code == "unauthorized"
