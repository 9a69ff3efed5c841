from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from tenantgate.logging import get_logger
from tenantgate.storage.errors import BackendUnavailable

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code returned in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403), plus the finer-grained access codes below
    - not_found (404)
    - conflict (409)
    - gone (410)
    - infrastructure_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ExpiredOrUnknownTokenError(AuthenticationError):
    """Refresh token is unknown, expired or already redeemed (401)."""
    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class OrgRevokedError(ForbiddenError):
    """The session's organization was disabled or its epoch moved on (403)."""
    error_code = "org_revoked"


class OrgAccessRevokedError(OrgRevokedError):
    """Raised by request authentication when org access no longer holds."""
    pass


class NoMembershipError(ForbiddenError):
    error_code = "no_membership"


class MembershipDisabledError(ForbiddenError):
    error_code = "membership_disabled"


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"


class SuperAdminOrgError(ForbiddenError):
    """Super-admins authenticate without an organization."""
    error_code = "super_admin_org"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class InvalidInviteError(NotFoundError):
    """Invite token is unknown or already accepted (404)."""
    error_code = "invalid_invite"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class InviteExpiredError(ServiceError):
    """Invite is past its expiry (410)."""
    status_code = 410
    error_code = "invite_expired"


class InfrastructureError(ServiceError):
    """A backing store failed; the request may be retried (500)."""
    status_code = 500
    error_code = "infrastructure_error"

    def __init__(self, message: str = "temporarily unavailable", **kwargs) -> None:
        detail = {"retryable": True, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)


@contextlib.contextmanager
def backend_guard(operation: str) -> Iterator[None]:
    """Surface storage outages as retryable InfrastructureError."""
    try:
        yield
    except BackendUnavailable as exc:
        logger.error(
            "backend_unavailable",
            operation=operation,
            backend=exc.backend,
            failed_call=exc.operation,
        )
        raise InfrastructureError(
            f"{exc.backend} temporarily unavailable", detail={"backend": exc.backend}
        ) from exc


__all__ = [
    "backend_guard",
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ExpiredOrUnknownTokenError",
    "ForbiddenError",
    "OrgRevokedError",
    "OrgAccessRevokedError",
    "NoMembershipError",
    "MembershipDisabledError",
    "AccountDisabledError",
    "SuperAdminOrgError",
    "NotFoundError",
    "InvalidInviteError",
    "ConflictError",
    "InviteExpiredError",
    "InfrastructureError",
]
