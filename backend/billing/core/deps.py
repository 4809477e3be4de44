"""
FastAPI dependencies for authentication and authorization.

WHY: Dependencies provide reusable authentication and authorization logic
that can be injected into route handlers, so every billing endpoint
resolves the caller the same way.

The token is trusted as issued upstream; the user is always re-read from
the database so a deactivated account or a changed role takes effect
immediately.
"""

from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.auth import verify_token
from billing.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    TokenExpiredError,
    TokenInvalidError,
)
from billing.dao.user import UserDAO
from billing.db.session import get_db
from billing.models.user import User, UserRole


# HTTP Bearer token security scheme
# auto_error is off so a missing header goes through AuthenticationError (401)
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Get current authenticated user from JWT token.

    WHY: This dependency:
    1. Extracts token from Authorization header
    2. Verifies token signature and expiration
    3. Fetches user from database
    4. Ensures user still exists and is active

    Usage:
        @router.get("/invoices")
        async def list_invoices(user: User = Depends(get_current_user)):
            ...

    Raises:
        AuthenticationError: If token is missing, invalid, expired, or the
            user is unknown or inactive
    """
    if credentials is None:
        raise AuthenticationError(message="Missing bearer token")

    try:
        payload = verify_token(credentials.credentials)
    except (TokenExpiredError, TokenInvalidError) as e:
        # WHY: Re-raise as AuthenticationError for consistent API responses
        raise AuthenticationError(message=e.message)

    user_id = payload.get("user_id")
    if not user_id:
        raise AuthenticationError(message="Invalid token: missing user_id")

    user = await UserDAO(db).get_by_id(user_id)

    if not user:
        raise AuthenticationError(message="User not found", user_id=user_id)

    if not user.is_active:
        raise AuthenticationError(message="User account is inactive", user_id=user_id)

    return user


def require_role(*roles: UserRole):
    """
    Factory function to create a role requirement dependency.

    Usage:
        @router.get("/earnings")
        async def earnings(user: User = Depends(require_role(UserRole.CONSULTANT))):
            ...

    Args:
        roles: Roles allowed through

    Returns:
        Dependency function that checks the caller's role
    """

    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise AuthorizationError(
                message=f"{' or '.join(r.value for r in roles)} access required",
                user_id=current_user.id,
                user_role=current_user.role.value,
            )
        return current_user

    return role_checker


async def require_admin(
    current_user: User = Depends(get_current_user),
) -> User:
    """
    Require user to have ADMIN role.

    WHY: Payouts and bulk recurring generation move platform money and
    must not be reachable by clients or consultants.

    Raises:
        AuthorizationError: If user is not ADMIN
    """
    if current_user.role != UserRole.ADMIN:
        raise AuthorizationError(
            message="Admin access required",
            user_id=current_user.id,
            user_role=current_user.role.value,
            required_role=UserRole.ADMIN.value,
        )

    return current_user
