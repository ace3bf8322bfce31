import pytest

from authsync.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    OtpPendingError,
    ServiceError,
    ValidationError,
)


@pytest.mark.parametrize(
    "error_cls, status, code",
    [
        (ValidationError, 400, "validation_error"),
        (BadRequestError, 400, "validation_error"),
        (OtpPendingError, 400, "otp_pending"),
        (AuthenticationError, 401, "unauthorized"),
        (NotFoundError, 404, "not_found"),
        (ConflictError, 409, "conflict"),
    ],
)
def test_error_envelope(error_cls, status, code):
    err = error_cls("boom", detail={"field": "email"})

    assert isinstance(err, ServiceError)
    assert err.status_code == status
    assert err.to_dict() == {"code": code, "message": "boom", "details": {"field": "email"}}


def test_overrides_and_empty_detail():
    err = ServiceError("teapot", status_code=418, error_code="teapot")

    assert err.status_code == 418
    assert err.to_dict() == {"code": "teapot", "message": "teapot", "details": None}
    # class defaults are untouched by the per-instance override
    assert ServiceError.status_code == 400
