"""
API dependencies for FastAPI endpoints.
"""

import hmac
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import structlog

from degen_backend.core.container import ServiceContainer
from degen_backend.core.exceptions import AuthenticationError


logger = structlog.get_logger(__name__)

admin_auth_scheme = HTTPBearer(auto_error=False)


def get_container(request: Request) -> ServiceContainer:
    """Service container attached to the application at startup."""
    return request.app.state.container


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(admin_auth_scheme),
    container: ServiceContainer = Depends(get_container)
) -> None:
    """Require ``Authorization: Bearer <ADMIN_API_KEY>``."""
    expected = container.config.admin_api_key
    if not expected:
        raise AuthenticationError("Admin API is disabled")

    token = credentials.credentials.strip() if credentials else ""
    if not token or not hmac.compare_digest(token, expected):
        logger.warning("Rejected admin request")
        raise AuthenticationError("Invalid admin credentials")
