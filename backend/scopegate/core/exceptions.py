# backend/scopegate/core/exceptions.py
"""
Domain-specific exceptions for the authorization engine.

Expected deny outcomes are not exceptions; they come back as
AuthorizationDecision values. These exceptions cover invalid input and
infrastructure faults, and know how to present themselves at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when request validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidConfigurationException(DomainException):
    """Raised when a grant carries a rate limit that can never be satisfied."""

    status_code = HTTP_422_UNPROCESSABLE

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, code="INVALID_CONFIGURATION", details=details)


class NotFoundException(DomainException):
    """Raised when a requested grant is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class UnauthorizedException(DomainException):
    """Raised when the calling subject cannot be identified."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


class StoreUnavailableException(ServiceException):
    """
    Raised when the counter store or grant store is unreachable or timed out.

    Never interpreted as "count is zero" or "no grant": callers decide what
    to do through the configured failure policy.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, store: str, operation: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(
            message=f"{store} unavailable during {operation}",
            code="STORE_UNAVAILABLE",
            details={"store": store, "operation": operation},
        )
        self.store = store
        self.operation = operation
        self.cause = cause


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
