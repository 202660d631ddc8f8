"""Translate domain errors into HTTP responses."""

from fastapi import HTTPException

from premarket_platform.domain.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PaymentProviderError,
    PermissionDenied,
    PreMarketError,
    PricingError,
    ValidationError,
)

_STATUS_BY_ERROR = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (PermissionDenied, 403),
    (ConflictError, 409),
    (InvariantViolation, 409),
    (PaymentProviderError, 502),
    (PricingError, 500),
]


def http_error(e: PreMarketError) -> HTTPException:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(e, error_cls):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
