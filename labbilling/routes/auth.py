"""
API routes for the backend session: sign in, sign out and current session.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import handle_backend_error
from labbilling.core.session_store import Session
from labbilling.routes.dependencies import get_backend_client, raise_http_error
from labbilling.schemas.auth_schema import LoginRequest, SessionInfo


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

# status codes the auth endpoint uses for bad credentials
_REJECTED_LOGIN_STATUSES = (400, 401)


def _sign_in(client: BackendClient, request: LoginRequest) -> Session:
    try:
        return client.sign_in_with_password(request.email, request.password)
    except BackendError as exc:
        if exc.status_code in _REJECTED_LOGIN_STATUSES:
            logger.warning("Sign-in rejected", extra={"email": request.email})
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid email or password",
            ) from exc
        handle_backend_error(exc, "Sign In")


@router.post("/login", response_model=SessionInfo)
def login(request: LoginRequest, client: BackendClient = Depends(get_backend_client)):
    """
    Sign in with email and password; later backend calls use the user's token.
    """
    try:
        session = _sign_in(client, request)
    except Exception as exc:
        raise_http_error(exc, "Sign in")
    logger.info("Signed in", extra={"user_id": session.user_id})
    return SessionInfo(authenticated=True, user_id=session.user_id)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(client: BackendClient = Depends(get_backend_client)):
    client.sign_out()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/session", response_model=SessionInfo)
def current_session(client: BackendClient = Depends(get_backend_client)):
    session = client.session_store.session
    if session is None:
        return SessionInfo(authenticated=False)
    return SessionInfo(authenticated=True, user_id=session.user_id)
