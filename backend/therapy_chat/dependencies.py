# fastapi dependency injection
# provides get_current_user, role-based access control and the per-request service bundle

import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from therapy_chat.config import settings
from therapy_chat.services.ai_gateway import AIGateway, get_ai_gateway
from therapy_chat.services.access import AccessResolver
from therapy_chat.services.auth_service import decode_token
from therapy_chat.services.db import Database, get_db
from therapy_chat.services.registry import TherapyServices, build_services

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Database = Depends(get_db),
) -> dict:
    """extract and validate the current user from the jwt bearer token"""
    token = credentials.credentials
    payload = decode_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing subject",
        )

    user = await AccessResolver(db).get_user(user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


def require_role(*roles: str):
    """factory for role-based access control dependency"""

    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("role") not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {' or '.join(roles)}",
            )
        return current_user

    return role_checker


async def get_services(
    db: Database = Depends(get_db),
    gateway: AIGateway = Depends(get_ai_gateway),
) -> TherapyServices:
    """chat core services bound to the request's database and gateway"""
    return build_services(db, gateway, settings)
