"""Session cookie middleware.

Cookies are issued by the sign-in service and signed with the shared
``SESSION_SECRET_KEY``; this service only verifies them.
"""

import json
import logging
from datetime import datetime, timezone
from collections.abc import Awaitable, Callable

from fastapi import HTTPException, Request, Response
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..adapters.identity import IdentityStore
from ..config import Settings, get_settings
from .models import SessionData

logger = logging.getLogger(__name__)

PUBLIC_PATHS = (
    "/healthz",
    "/readyz",
    "/metrics",
    "/docs",
    "/openapi.json",
)


class SessionMiddleware(BaseHTTPMiddleware):
    """Verifies the session cookie and attaches it to ``request.state``.

    Requests without a valid cookie continue unauthenticated; routes decide
    whether to reject them via ``require_auth``.
    """

    def __init__(self, app: ASGIApp, settings: Settings | None = None) -> None:
        super().__init__(app)
        self.settings = settings or get_settings()
        self.signer = TimestampSigner(self.settings.session_secret_key)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if self._is_public_path(request.url.path):
            return await call_next(request)

        request.state.authenticated = False
        session_cookie = request.cookies.get(self.settings.session_cookie_name)

        if session_cookie:
            try:
                session_data = self._validate_session_cookie(session_cookie)
                request.state.session = session_data
                request.state.authenticated = True

                logger.debug(
                    "session.validated",
                    extra={"user_id": session_data.user_id, "path": request.url.path},
                )

            except (SignatureExpired, BadSignature) as e:
                logger.warning(
                    "session.invalid_cookie",
                    extra={"error": str(e), "path": request.url.path},
                )
            except (ValueError, ValidationError) as e:
                logger.error(
                    "session.validation_error",
                    extra={"error": str(e), "path": request.url.path},
                )

        return await call_next(request)

    def _validate_session_cookie(self, cookie_value: str) -> SessionData:
        """Validate and extract session data from session cookie.

        Raises:
            SignatureExpired: If the cookie or the session it carries has expired.
            BadSignature: If the cookie signature is invalid.
        """
        unsigned_value = self.signer.unsign(
            cookie_value,
            max_age=self.settings.session_cookie_max_age,
        )
        session_dict = json.loads(unsigned_value.decode("utf-8"))
        session_data = SessionData(**session_dict)
        expires_at = session_data.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= datetime.now(timezone.utc):
            raise SignatureExpired("Session expired")
        return session_data

    def _is_public_path(self, path: str) -> bool:
        if path == "/" or path == "":
            return True
        return any(path.startswith(p) for p in PUBLIC_PATHS)


def create_session_cookie(
    settings: Settings,
    session_data: SessionData,
) -> tuple[str, str]:
    """Create a signed session cookie.

    Returns:
        Tuple of (cookie_name, cookie_value).
    """
    signer = TimestampSigner(settings.session_secret_key)
    session_json = session_data.model_dump_json()
    signed_session = signer.sign(session_json.encode("utf-8")).decode("utf-8")
    return settings.session_cookie_name, signed_session


def get_current_session(request: Request) -> SessionData | None:
    return getattr(request.state, "session", None)


def require_auth(request: Request) -> SessionData:
    """Require authentication and return current session.

    Raises:
        HTTPException: 401 if the caller has no verified session.
    """
    session = get_current_session(request)
    if not session:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return session


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def ensure_session_active(
    session: SessionData, identities: IdentityStore
) -> None:
    """Reject a session issued before the account's sessions were revoked.

    Raises:
        HTTPException: 401 if the session has been revoked.
        StoreError: If the identity store is unavailable.
    """
    identity = await identities.get_identity(session.user_id)
    if identity is None or identity.sessions_revoked_at is None:
        return
    if _utc(session.created_at) <= _utc(identity.sessions_revoked_at):
        logger.warning("session.revoked", extra={"user_id": session.user_id})
        raise HTTPException(status_code=401, detail="Session revoked")
