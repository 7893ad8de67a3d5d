"""API dependencies."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Dict, Any
import httpx
import logging

from crm_sync.core.config import get_settings
from crm_sync.services import IntegrationService, ServiceContainer

logger = logging.getLogger(__name__)

# Security
security = HTTPBearer()


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """Get current user from auth service."""
    settings = get_settings()
    token = credentials.credentials

    try:
        # Verify token with auth service
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                f"{settings.auth_service_url}/api/v1/users/me",
                headers={"Authorization": f"Bearer {token}"}
            )
    except httpx.RequestError as e:
        logger.error(f"Auth service request failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable"
        )

    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return response.json()


async def get_company_id(current_user: Dict[str, Any] = Depends(get_current_user)) -> str:
    """The caller's company; every operation is scoped to it."""
    company_id = current_user.get("company_id") or current_user.get("organization_id")
    if not company_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not associated with a company",
        )
    return str(company_id)


# Service dependencies
def get_services(request: Request) -> ServiceContainer:
    """Service graph built at startup."""
    return request.app.state.services


def get_integration_service(services: ServiceContainer = Depends(get_services)) -> IntegrationService:
    """Get integration service instance."""
    return services.integrations
