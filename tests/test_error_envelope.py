"""Tests for the error envelope format and error handling.

These tests verify that error responses conform to the stable API envelope format:
{
    "status": "error",
    "message": "<human_readable>",
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
from fastapi import HTTPException
from pydantic import ValidationError

from coursegate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    _unpack_http_detail,
)
from coursegate.api.schemas import Envelope, ErrorBody
from coursegate.service.errors import RateLimitedError


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_details_dict(self):
        error = ErrorBody(code="forbidden", message="denied", details={"incident_id": 3})
        assert error.details == {"incident_id": 3}

    def test_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    @pytest.mark.parametrize(
        "code",
        [
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "expired",
            "invalid_token",
            "conflict",
            "server_error",
        ],
    )
    def test_stable_codes_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code

    def test_unknown_code_rejected(self):
        """Codes outside the stable set are refused."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert envelope.request_id

    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_error_envelope_shape(self):
        envelope = Envelope(
            status="error",
            message="nope",
            error=ErrorBody(code="forbidden", message="nope"),
        )
        dumped = envelope.model_dump()

        assert dumped["status"] == "error"
        assert dumped["error"]["code"] == "forbidden"
        assert dumped["data"] is None


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_falls_back(self):
        assert _error_code_for_status(418) == "server_error"


class TestErrorResponse:
    def test_message_repeated_at_top_level(self):
        response = _error_response(403, "forbidden", {"incident_id": 7})
        body = json.loads(response.body)

        assert response.status_code == 403
        assert body["status"] == "error"
        assert body["message"] == "forbidden"
        assert body["error"] == {
            "code": "forbidden",
            "message": "forbidden",
            "details": {"incident_id": 7},
        }
        assert body["request_id"]

    def test_explicit_code_wins(self):
        response = _error_response(400, "backup code expired", code="expired")
        assert json.loads(response.body)["error"]["code"] == "expired"

    def test_headers_passed_through(self):
        response = _error_response(429, "rate limit exceeded", headers={"Retry-After": "30"})
        assert response.headers["Retry-After"] == "30"


class TestUnpackHttpDetail:
    def test_envelope_detail_keeps_code_and_details(self):
        exc = HTTPException(
            status_code=403,
            detail={"status": "error", "error": {"code": "forbidden", "message": "nope", "details": {"incident_id": 2}}},
        )
        assert _unpack_http_detail(exc) == ("nope", "forbidden", {"incident_id": 2})

    def test_plain_string_detail_becomes_message(self):
        exc = HTTPException(status_code=404, detail="Not Found")
        assert _unpack_http_detail(exc) == ("Not Found", "not_found", None)

    def test_unmapped_client_status_is_validation_error(self):
        exc = HTTPException(status_code=405, detail="Method Not Allowed")
        assert _unpack_http_detail(exc)[1] == "validation_error"


class TestRateLimitedError:
    def test_carries_retry_after(self):
        exc = RateLimitedError(retry_after=12)

        assert exc.status_code == 429
        assert exc.error_code == "rate_limited"
        assert exc.headers == {"Retry-After": "12"}

    def test_retry_after_is_at_least_one_second(self):
        assert RateLimitedError(retry_after=0).headers == {"Retry-After": "1"}
