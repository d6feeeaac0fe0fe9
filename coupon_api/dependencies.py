"""
FastAPI dependencies for authentication and authorization.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coupon_api.config import get_settings
from coupon_api.db.database import get_db
from coupon_api.models.user import User
from coupon_api.services.cognito import cognito_service

logger = logging.getLogger(__name__)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    authorization: Optional[str] = Header(None, description="Bearer token"),
) -> Dict[str, Any]:
    """
    Validate the Bearer token and return the caller's claims.

    Returns:
        Dict with 'sub', 'email' and 'groups' keys.

    Raises:
        HTTPException(401): If the token is missing, invalid, or expired.
    """
    if not authorization:
        raise _unauthorized("Missing authentication token")

    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer":
        raise _unauthorized("Invalid authorization header format")
    if not token:
        raise _unauthorized("Missing authentication token")

    try:
        return await cognito_service.get_user_info(token)
    except ValueError as e:
        logger.warning(f"Token validation failed: {e}")
        raise _unauthorized(str(e))


async def get_current_user_with_db(
    user_info: Dict[str, Any] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Get the caller's local user record.

    Creates the record on first login. The role follows the token: callers
    in the Cognito admin group are admins, everyone else is a customer.
    """
    admin_group = get_settings().cognito_admin_group
    role = "admin" if admin_group in user_info.get("groups", []) else "customer"

    result = await db.execute(
        select(User).where(User.cognito_id == user_info["sub"])
    )
    user = result.scalar_one_or_none()

    if not user:
        user = User(
            cognito_id=user_info["sub"],
            email=user_info["email"],
            role=role,
        )
        db.add(user)
        await db.commit()
        logger.info(f"Created new {role} user: {user.email}")
    elif user.role != role:
        logger.info(f"Role of {user.email} changed from {user.role} to {role}")
        user.role = role
        await db.commit()

    return user


async def require_admin(
    user: User = Depends(get_current_user_with_db),
) -> User:
    """
    Restrict a route to coupon administrators.

    Raises:
        HTTPException(403): If the caller is not an admin.
    """
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
