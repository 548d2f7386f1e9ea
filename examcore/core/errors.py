"""
Typed HTTP errors for the REST API.

Services never raise these; they return typed outcomes which the routers
translate here so clients can branch on ``errorCode``.
"""
from typing import Any, Dict, Optional
from fastapi import HTTPException, status


class ExamcoreAPIException(HTTPException):
    """Base error carrying a machine-readable code."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        headers: Optional[Dict[str, str]] = None,
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.extra = extra or {}


class ResourceNotFoundError(ExamcoreAPIException):
    def __init__(self, resource: str, identifier: str, error_code: str = "not_found"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} '{identifier}' not found",
            error_code=error_code,
            extra={"resource": resource, "id": identifier}
        )


class TestMismatchError(ExamcoreAPIException):
    """Code is real but bound to another test."""

    def __init__(self, code: str, expected_test_id: str):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Code is not valid for this test",
            error_code="test_mismatch",
            extra={"code": code, "expectedTestId": expected_test_id}
        )


class RedemptionRejectedError(ExamcoreAPIException):
    """Expired, exhausted or contended redemption."""

    def __init__(self, error_code: str, detail: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code=error_code,
            extra=extra
        )


class AccessCodeConflictError(ExamcoreAPIException):
    def __init__(self, code: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Access code '{code}' already exists",
            error_code="code_exists",
            extra={"code": code}
        )


class InvalidAccessCodeError(ExamcoreAPIException):
    def __init__(self, detail: str, error_code: str = "invalid_access_code", extra: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code,
            extra=extra
        )


class RateLimitedError(ExamcoreAPIException):
    def __init__(self, retry_after: int):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many redemption attempts, slow down",
            headers={"Retry-After": str(retry_after)},
            error_code="rate_limited"
        )


class AuthorizationError(ExamcoreAPIException):
    def __init__(self, detail: str = "Not authorized to perform this action"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code="forbidden"
        )
