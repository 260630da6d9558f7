"""Caller identity and role checks.

Trust Model:
- API Gateway validates the JWT before the request reaches the Lambda
- After validation, API Gateway injects the ``x-user-sub`` header
- Backend trusts this header since it comes from API Gateway, not the client

Roles are looked up per request in the user-roles table.
"""

import logging
from dataclasses import dataclass, field

from fastapi import Depends, Request

from rental_core.models.enums import UserRole
from rental_core.models.errors import BookingError, ErrorCode
from rental_core.services.bookings import BookingRepository

from rental_api.dependencies import get_booking_repository

logger = logging.getLogger(__name__)

USER_SUB_HEADER = "x-user-sub"


@dataclass(frozen=True)
class CurrentUser:
    """Authenticated caller."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return UserRole.ADMIN.value in self.roles

    @property
    def is_staff(self) -> bool:
        """Staff or admin."""
        return self.is_admin or UserRole.STAFF.value in self.roles


def get_user_sub(request: Request) -> str:
    """Extract the caller's subject from the API Gateway request.

    Supports two API Gateway configurations:
    1. HTTP API with JWT authorizer: sub mapped to the x-user-sub header
    2. REST API with a user pool authorizer: claims in
       event.requestContext.authorizer.claims (via Mangum)

    Raises:
        BookingError: AUTH_REQUIRED if no subject is present.
    """
    user_sub = (request.headers.get(USER_SUB_HEADER) or "").strip()

    if not user_sub:
        event = request.scope.get("aws.event", {})
        claims = event.get("requestContext", {}).get("authorizer", {}).get("claims", {})
        user_sub = claims.get("sub") or ""

    if not user_sub:
        logger.warning("auth_user_sub_missing", extra={"path": request.url.path})
        raise BookingError(ErrorCode.AUTH_REQUIRED)
    return user_sub


def get_current_user(
    request: Request,
    repository: BookingRepository = Depends(get_booking_repository),
) -> CurrentUser:
    user_sub = get_user_sub(request)
    return CurrentUser(user_id=user_sub, roles=frozenset(repository.get_roles(user_sub)))


def require_staff(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_staff:
        raise BookingError(ErrorCode.FORBIDDEN, details={"requiredRole": "staff"})
    return user


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise BookingError(ErrorCode.FORBIDDEN, details={"requiredRole": "admin"})
    return user
