"""
Mapping of domain error codes to HTTP responses.
"""
from typing import Optional

from fastapi import HTTPException, status

from buildledger.domain.exceptions import DomainError

# Codes that are not plain 400 validation failures
ERROR_STATUS = {
    "INVALID_TOKEN": status.HTTP_401_UNAUTHORIZED,
    "TOKEN_EXPIRED": status.HTTP_410_GONE,
    "TOKEN_ALREADY_USED": status.HTTP_410_GONE,
    "PERMISSION_DENIED": status.HTTP_403_FORBIDDEN,
    "CONCURRENCY_ERROR": status.HTTP_409_CONFLICT,
    "INVALID_ORDER_STATUS": status.HTTP_409_CONFLICT,
    "TRANSFER_NOT_PENDING": status.HTTP_409_CONFLICT,
    "PROJECT_HAS_SPENDING": status.HTTP_409_CONFLICT,
}


def status_for_code(code: Optional[str]) -> int:
    if code in ERROR_STATUS:
        return ERROR_STATUS[code]
    if code and code.endswith("_NOT_FOUND"):
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_400_BAD_REQUEST


def error_response(code: Optional[str], message: Optional[str], **details) -> HTTPException:
    """Build the HTTPException for a failed operation."""
    detail = {"code": code, "message": message}
    detail.update({k: v for k, v in details.items() if v is not None})
    return HTTPException(status_code=status_for_code(code), detail=detail)


def domain_error_response(error: DomainError, **details) -> HTTPException:
    return error_response(error.code, error.message, **details)
