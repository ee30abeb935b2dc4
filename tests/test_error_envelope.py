"""Tests for the error envelope and request schemas.

Error responses always take the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from streamline.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from streamline.api.schemas import (
    CategoryCreateRequest,
    DocumentUpdateRequest,
    Envelope,
    ErrorBody,
    LoginRequest,
    RegisterRequest,
    VideoUpdateRequest,
)
from streamline.logging import set_correlation_id
from streamline.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid email or password")
        assert error.details is None

    def test_details_may_be_list(self):
        error = ErrorBody(code="bad_request", message="bad", details=[{"field": "email"}])
        assert error.details == [{"field": "email"}]

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="validation_error", message="nope")


class TestEnvelope:
    def test_ok_envelope(self):
        envelope = Envelope(status="ok", data={"id": "1"})
        assert envelope.error is None
        assert len(envelope.request_id) == 36

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code, code",
        [
            (400, "bad_request"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "bad_request"),
            (429, "too_many_requests"),
            (500, "internal_server_error"),
            (503, "internal_server_error"),
        ],
    )
    def test_mapping(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")

    @pytest.mark.parametrize(
        "exc, status_code, code",
        [
            (BadRequestError("x"), 400, "bad_request"),
            (AuthenticationError("x"), 401, "unauthorized"),
            (ForbiddenError("x"), 403, "forbidden"),
            (NotFoundError("x"), 404, "not_found"),
            (ConflictError("x"), 409, "conflict"),
            (RateLimitedError("x", retry_after=5), 429, "too_many_requests"),
        ],
    )
    def test_service_errors_carry_matching_codes(self, exc, status_code, code):
        assert exc.status_code == status_code
        assert exc.error_code == code == _error_code_for_status(status_code)


class TestErrorResponseFactory:
    def test_uses_correlation_id(self):
        set_correlation_id("corr-42")
        response = _error_response(404, "Project not found")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body == {
            "status": "error",
            "data": None,
            "error": {"code": "not_found", "message": "Project not found", "details": None},
            "request_id": "corr-42",
        }

    def test_headers_pass_through(self):
        response = _error_response(429, "slow down", headers={"Retry-After": "30"})
        assert response.headers["Retry-After"] == "30"


class TestRequestSchemas:
    def test_register_normalizes_email(self):
        body = RegisterRequest(email="  Person@Example.COM ", password="x", name="  Pat  ")
        assert body.email == "person@example.com"
        assert body.name == "Pat"

    @pytest.mark.parametrize("email", ["plain", "a@b", "two@@example.com", "sp ace@example.com"])
    def test_register_rejects_bad_email(self, email):
        with pytest.raises(ValidationError):
            RegisterRequest(email=email, password="x")

    def test_zero_width_characters_are_dropped(self):
        body = RegisterRequest(email="us\u200ber@example.com", password="x")
        assert body.email == "user@example.com"

    def test_login_accepts_malformed_email(self):
        assert LoginRequest(email="Not An Email", password="x").email == "not an email"

    def test_document_version_must_be_positive(self):
        with pytest.raises(ValidationError):
            DocumentUpdateRequest(content="", expected_version=0)

    def test_video_update_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            VideoUpdateRequest(project_id="other")

    def test_category_color_format(self):
        assert CategoryCreateRequest(name="News", color="#A1B2C3").color == "#A1B2C3"
        with pytest.raises(ValidationError):
            CategoryCreateRequest(name="News", color="red")
