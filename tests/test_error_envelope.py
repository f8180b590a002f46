"""Tests for the error envelope format.

Error responses share one shape:
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
from pydantic import ValidationError

from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from authcore.api.schemas import Envelope, ErrorBody


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "invalid credentials"
        assert error.details is None

    def test_error_body_with_details_dict(self):
        error = ErrorBody(
            code="unauthorized",
            message="account locked",
            details={"reason": "account_locked"},
        )
        assert error.details == {"reason": "account_locked"}

    def test_error_body_with_details_list(self):
        """ErrorBody accepts list details."""
        error = ErrorBody(
            code="validation_error",
            message="invalid request",
            details=[{"loc": ["body", "email"]}, {"loc": ["body", "password"]}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_error_body_rejects_unknown_code(self):
        """Only stable codes are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_error_envelope_structure(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="not_found", message="user not found"),
        )
        dumped = envelope.model_dump()

        assert dumped["status"] == "error"
        assert dumped["data"] is None
        assert dumped["error"]["code"] == "not_found"
        assert dumped["request_id"]

    def test_ok_envelope_carries_data(self):
        envelope = Envelope(status="ok", data={"deleted": True})
        assert envelope.error is None
        assert envelope.data == {"deleted": True}

    def test_request_ids_are_unique(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="failure")


class TestErrorCodeMapping:
    """HTTP status codes map onto the stable error codes."""

    @pytest.mark.parametrize(
        "status_code,expected",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_known_status_codes(self, status_code, expected):
        assert _error_code_for_status(status_code) == expected

    def test_unknown_status_falls_back_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(502) == "server_error"

    def test_mapping_only_produces_stable_codes(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "validation_error",
            "unauthorized",
            "forbidden",
            "not_found",
            "conflict",
            "server_error",
            "service_unavailable",
        }


class TestErrorResponse:
    def test_error_response_body_and_status(self):
        response = _error_response(401, "session is no longer valid", {"reason": "session_invalid"})

        assert response.status_code == 401
        body = json.loads(response.body)
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "session is no longer valid",
            "details": {"reason": "session_invalid"},
        }
        assert body["request_id"]

    def test_explicit_code_and_headers(self):
        response = _error_response(
            503,
            "service temporarily unavailable",
            code="service_unavailable",
            headers={"Retry-After": "1"},
        )

        assert response.headers["Retry-After"] == "1"
        assert json.loads(response.body)["error"]["code"] == "service_unavailable"
