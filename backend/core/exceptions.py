"""
Custom Exception Classes for the GrantMatch API.

Provides standardized HTTP exceptions with consistent error messages
across all API endpoints, plus the internal failures the matching engine
raises and absorbs.
"""
from datetime import datetime
from typing import Optional

from fastapi import HTTPException, status


class NotFoundError(HTTPException):
    """Exception raised when a requested resource is not found."""

    def __init__(self, resource: str, id: str = None):
        detail = f"{resource} not found" + (f": {id}" if id else "")
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ValidationError(HTTPException):
    """Exception raised when request validation fails."""

    def __init__(self, message: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


class QuotaExceededError(HTTPException):
    """Exception raised when an organization has used up its generation quota."""

    def __init__(self, plan: str, limit: Optional[int], reset_at: datetime):
        self.plan = plan
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "QUOTA_EXCEEDED",
                "plan": plan,
                "limit": limit,
                "remaining": 0,
                "reset_at": reset_at.isoformat(),
            },
        )


class StorageFailureError(HTTPException):
    """Exception raised when match persistence fails. Safe to retry."""

    def __init__(self, message: str = "Match storage is temporarily unavailable. Please retry."):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=message,
            headers={"Retry-After": "5"},
        )


class OrganizationNotFoundError(NotFoundError):
    """Exception raised when match generation targets an unknown organization."""

    def __init__(self, organization_id: str):
        super().__init__("Organization", organization_id)


class UpstreamUnavailableError(Exception):
    """Explanation provider is down, slow, or short-circuited."""

    def __init__(self, message: str, reason: str = "PROVIDER_ERROR"):
        super().__init__(message)
        self.reason = reason


class CacheUnavailableError(Exception):
    """Cache store could not be reached."""

    pass
