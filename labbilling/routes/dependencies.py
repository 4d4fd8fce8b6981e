"""
Shared FastAPI dependencies and error mapping for the API routers.
"""
import logging
from typing import NoReturn, Optional

from fastapi import Depends, Header, HTTPException, status

from labbilling.core.backend_client import BackendClient
from labbilling.core.errors import BackendServiceError, ErrorCategory, RecordNotFoundError
from labbilling.core.settings import load_backend_settings


logger = logging.getLogger(__name__)

_backend_client: Optional[BackendClient] = None

CATEGORY_STATUS = {
    ErrorCategory.AUTH: status.HTTP_401_UNAUTHORIZED,
    ErrorCategory.PERMISSION: status.HTTP_403_FORBIDDEN,
    ErrorCategory.NETWORK: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


def get_backend_client() -> BackendClient:
    """Process-wide backend client, created on first use."""
    global _backend_client
    if _backend_client is None:
        _backend_client = BackendClient(load_backend_settings())
    return _backend_client


def get_organization_id(x_organization_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_organization_id


def require_organization_id(organization_id: Optional[str] = Depends(get_organization_id)) -> str:
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-Id header is required",
        )
    return organization_id


def get_laboratory_id(x_laboratory_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_laboratory_id


def require_laboratory_id(laboratory_id: Optional[str] = Depends(get_laboratory_id)) -> str:
    if not laboratory_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Laboratory-Id header is required",
        )
    return laboratory_id


def raise_http_error(exc: Exception, action: str) -> NoReturn:
    """
    Translate a service exception into an ``HTTPException``.

    ValueError -> 400, RecordNotFoundError -> 404, backend failures by
    category (auth 401, permission 403, network 503), anything else 500.
    """
    if isinstance(exc, HTTPException):
        raise exc
    if isinstance(exc, ValueError):
        logger.warning("%s rejected: %s", action, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, RecordNotFoundError):
        logger.warning("%s: %s", action, exc)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, BackendServiceError) and exc.category in CATEGORY_STATUS:
        code = CATEGORY_STATUS[exc.category]
        logger.warning("%s failed: %s", action, exc, extra={"error_category": exc.category.value})
        raise HTTPException(status_code=code, detail=str(exc)) from exc

    logger.exception("Unexpected error during %s", action)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action.lower()}",
    ) from exc
