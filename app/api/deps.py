"""FastAPI dependency injection utilities."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.security import verify_cron_key
from app.db.session import get_db
from app.services.crm import CRMClient
from app.services.crm import get_crm_client as build_crm_client
from app.services.typeform import FormProvider, TypeformClient

# Security scheme for scheduled-job endpoints
security = HTTPBearer(auto_error=False)


def get_form_provider() -> FormProvider:
    """Form provider client used by sync endpoints."""
    return TypeformClient()


def get_crm_client(request: Request) -> CRMClient:
    """CRM client used by the scoring tail; the one built at startup when present."""
    client = getattr(request.app.state, "crm_client", None)
    return client if client is not None else build_crm_client()


async def require_cron_key(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> None:
    """Require the scheduled-job bearer key.

    Raises:
        HTTPException: 404 when no key is configured, 401 when no bearer
            token is sent, 403 when it does not match
    """
    if not settings.cron_secure_key:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found",
        )
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not verify_cron_key(credentials.credentials, settings.cron_secure_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid key",
        )


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
FormProviderDep = Annotated[FormProvider, Depends(get_form_provider)]
CRMClientDep = Annotated[CRMClient, Depends(get_crm_client)]
