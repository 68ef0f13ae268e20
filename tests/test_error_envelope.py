"""Tests for the error envelope format and error handling.

Every error response has the shape:
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

from harmonia.api.error_handling import (
    _STATUS_TO_CODE,
    error_code_for_status,
    error_response,
)
from harmonia.api.schemas import Envelope, ErrorBody
from harmonia.logging import set_correlation_id
from harmonia.service import errors


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_details_dict_and_list(self):
        assert ErrorBody(code="validation_error", message="x", details={"field": "email"}).details == {
            "field": "email"
        }
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id

    def test_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert error_code_for_status(status) == code
        assert _STATUS_TO_CODE[status] == code

    def test_unmapped_statuses_fall_back_by_class(self):
        assert error_code_for_status(422) == "validation_error"
        assert error_code_for_status(503) == "server_error"


class TestErrorResponse:
    def test_body_shape(self):
        response = error_response(404, "account not found", {"account_id": "abc"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "account not found",
            "details": {"account_id": "abc"},
        }

    def test_explicit_code_wins(self):
        body = json.loads(error_response(503, "down", code="server_error").body)
        assert body["error"]["code"] == "server_error"

    def test_request_id_follows_correlation_id(self):
        set_correlation_id("corr-1")
        body = json.loads(error_response(401, "nope").body)
        assert body["request_id"] == "corr-1"


class TestServiceErrorTaxonomy:
    @pytest.mark.parametrize(
        "exc_cls,status,code",
        [
            (errors.ValidationError, 400, "validation_error"),
            (errors.InvalidOrExpiredOtpError, 400, "validation_error"),
            (errors.UnauthenticatedError, 401, "unauthorized"),
            (errors.InvalidCredentialsError, 401, "unauthorized"),
            (errors.TokenExpiredError, 401, "unauthorized"),
            (errors.TokenInvalidSignatureError, 401, "unauthorized"),
            (errors.TokenMalformedError, 401, "unauthorized"),
            (errors.RefreshTokenRevokedError, 401, "unauthorized"),
            (errors.ForbiddenError, 403, "forbidden"),
            (errors.AccountNotVerifiedError, 403, "forbidden"),
            (errors.NotFoundError, 404, "not_found"),
            (errors.EmailAlreadyExistsError, 409, "conflict"),
            (errors.HashingError, 500, "server_error"),
            (errors.InvalidCredentialFormatError, 500, "server_error"),
        ],
    )
    def test_status_and_code(self, exc_cls, status, code):
        exc = exc_cls("boom")
        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.message == "boom"

    def test_token_errors_share_a_base(self):
        assert issubclass(errors.TokenExpiredError, errors.TokenError)
        assert issubclass(errors.TokenError, errors.AuthenticationError)

    def test_overrides(self):
        exc = errors.ServiceError("custom", status_code=418, detail={"a": 1}, error_code="conflict")
        assert exc.status_code == 418
        assert exc.error_code == "conflict"
        assert exc.detail == {"a": 1}
