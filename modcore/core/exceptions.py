"""Custom exception classes for modcore."""

from typing import Optional

from fastapi import HTTPException, status


class ModcoreError(Exception):
    """Base exception for modcore."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class AuthorizationError(ModcoreError):
    """Raised when user lacks permission."""
    pass


class ResourceNotFoundError(ModcoreError):
    """Raised when a requested resource is not found."""
    pass


class ResourceConflictError(ModcoreError):
    """Raised when a resource already exists."""
    pass


class ValidationError(ModcoreError):
    """Raised when input validation fails."""
    pass


class CacheError(ModcoreError):
    """Raised when a cache operation fails.

    ``op`` and ``key`` identify the failing call, e.g. ``cache.get user:1: ...``.
    """

    def __init__(self, message: str = "cache error", op: Optional[str] = None, key: Optional[str] = None):
        self.op = op
        self.key = key
        prefix = f"cache.{op}" if op else "cache"
        if key:
            prefix = f"{prefix} {key}"
        super().__init__(f"{prefix}: {message}")


class KeyNotFoundError(CacheError):
    """Raised when a key is absent or its TTL has elapsed."""

    def __init__(self, key: Optional[str] = None, op: str = "get"):
        super().__init__("key not found", op=op, key=key)


class CacheConnectionError(CacheError):
    """Raised when a remote cache tier is unreachable or times out."""
    pass


class CacheClosedError(CacheError):
    """Raised when a cache is used after close()."""

    def __init__(self, op: Optional[str] = None):
        super().__init__("cache is closed", op=op)


class BufferFullError(CacheError):
    """Raised when a background job queue cannot accept more work."""
    pass


# HTTP exception shortcuts
def forbidden(detail: str = "Insufficient permissions") -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def service_unavailable(detail: str = "Authorization check unavailable") -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def too_many_requests(detail: str = "Too many requests. Please try again later.", headers: Optional[dict] = None) -> HTTPException:
    return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail, headers=headers)
