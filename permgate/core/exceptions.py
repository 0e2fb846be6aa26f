"""Custom exception classes for the permission gate."""

from typing import List, Optional

from fastapi import HTTPException, status


class PermGateError(Exception):
    """Base exception for the permission gate."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(PermGateError):
    """Raised when the configuration or role hierarchy is invalid."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Configuration validation failed: " + "; ".join(self.errors))


class RoleNotFoundError(PermGateError):
    """Raised when a role is not part of the built hierarchy."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Role not found: {role}")


class PermissionNotFoundError(PermGateError):
    """Raised when a permission name does not resolve to an active permission."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Permission not found: {name}")


class StoreError(PermGateError):
    """Raised when the backing permission store fails."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Store operation failed: {operation}{detail}")


class AuditError(PermGateError):
    """Raised when an audit event cannot be recorded."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Audit operation failed: {operation}{detail}")


class CacheError(PermGateError):
    """Raised when the cache backend is unreachable."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Cache operation failed: {operation}{detail}")


class PermissionDeniedError(PermGateError):
    """Raised by the HTTP adapter when the authorizer denies a request."""

    def __init__(self, user_id: str, target: str, reason: str = ""):
        self.user_id = user_id
        self.target = target
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Access to {target} denied{detail}")


# HTTP exception shortcuts
def not_found(detail: str = "Resource not found") -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def service_unavailable(detail: str = "Authorization could not be determined") -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
