"""
Custom exception classes and error handling.

Provides consistent error responses across the API. Each class maps one
failure kind of the check-in / entitlement core to a status code and a
stable ``error_code`` the mobile client switches on.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class UnauthorizedError(APIException):
    """No session, invalid session, or a resource the caller does not own."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"}
        )


class InvalidPayloadError(APIException):
    """Schema violation. Shown as a form error, never retried automatically."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"INVALID_PAYLOAD_{field.upper()}" if field else "INVALID_PAYLOAD"
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code=error_code
        )


class ConflictError(APIException):
    """Resource conflict (e.g., duplicate entry)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


class RetryableError(APIException):
    """Storage or network failure. Safe to retry: every write path is idempotent."""

    def __init__(self, detail: str = "Temporarily unavailable, please try again"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="RETRYABLE"
        )


class ProviderNotConfiguredError(APIException):
    """A billing provider integration is missing configuration."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="PROVIDER_NOT_CONFIGURED"
        )


class UnresolvableEventError(Exception):
    """
    A lifecycle event points at no known profile.

    Never surfaced over HTTP: the event is logged, marked in the ledger and
    acknowledged so the provider stops redelivering it.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
