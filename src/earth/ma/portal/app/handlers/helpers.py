import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web

from earth.ma.portal.app.config import (
    CsrfCodecAppKey,
    RateLimiterAppKey,
    SessionStoreAppKey,
)
from earth.ma.portal.model.session import UserSession
from earth.ma.portal.security.session import (
    OAUTH_STATE_COOKIE,
    OAUTH_TTL_MS,
    SESSION_COOKIE,
    USER_TTL_MS,
)

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"
RATE_LIMIT_WINDOW_MS = 60 * 1000


class AuthenticationException(Exception):
    """
    Exception raised for authentication failures.

    The static constructors build the HTTP error for each failure. Messages are generic on
    purpose: a caller learns that a session or CSRF token was rejected, never which check
    rejected it.
    """

    def __init__(
        self, status: int, message: str, headers: Optional[Dict[str, str]] = None
    ) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.headers = headers or {}

    @staticmethod
    def not_authenticated() -> "AuthenticationException":
        """No valid user session cookie."""
        return AuthenticationException(401, "Not authenticated")

    @staticmethod
    def not_verified() -> "AuthenticationException":
        """The session has not passed its second factor yet."""
        return AuthenticationException(403, "Two-factor verification required")

    @staticmethod
    def invalid_csrf() -> "AuthenticationException":
        """The CSRF header is missing, malformed, tampered with or expired."""
        return AuthenticationException(403, "Invalid CSRF token")

    @staticmethod
    def rate_limited(
        retry_after: Optional[int], message: str = "Too many requests"
    ) -> "AuthenticationException":
        headers = {"Retry-After": str(retry_after)} if retry_after is not None else {}
        return AuthenticationException(429, message, headers)

    def to_http(self) -> web.HTTPException:
        return json_error(self.status, self.message, self.headers)


_HTTP_ERRORS = {
    400: web.HTTPBadRequest,
    401: web.HTTPUnauthorized,
    403: web.HTTPForbidden,
    404: web.HTTPNotFound,
    429: web.HTTPTooManyRequests,
    500: web.HTTPInternalServerError,
    502: web.HTTPBadGateway,
    503: web.HTTPServiceUnavailable,
}


def json_error(
    status: int, message: str, headers: Optional[Dict[str, str]] = None
) -> web.HTTPException:
    """Build an HTTP error whose body is ``{"error": message}``."""
    error_class = _HTTP_ERRORS.get(status, web.HTTPBadRequest)
    return error_class(
        body=json.dumps({"error": message}),
        content_type="application/json",
        headers=headers,
    )


def require_session(request: web.Request, verified: bool = False) -> UserSession:
    """
    Return the user session for the request or raise a 401.

    With ``verified`` the session must also have passed its second factor, otherwise a
    403 is raised.
    """
    session_store = request.app[SessionStoreAppKey]
    session = session_store.get_session_from_cookie(request.cookies)
    if session is None:
        raise AuthenticationException.not_authenticated().to_http()
    if verified and not session.verified:
        raise AuthenticationException.not_verified().to_http()
    return session


def require_csrf(request: web.Request) -> None:
    if not request.app[CsrfCodecAppKey].validate(request.headers.get(CSRF_HEADER)):
        raise AuthenticationException.invalid_csrf().to_http()


def require_rate_limit(
    request: web.Request,
    key: str,
    max_requests: int,
    window_ms: int = RATE_LIMIT_WINDOW_MS,
    message: str = "Too many requests",
) -> None:
    result = request.app[RateLimiterAppKey].check(key, max_requests, window_ms)
    if not result.allowed:
        raise AuthenticationException.rate_limited(result.retry_after, message).to_http()


async def read_json(request: web.Request) -> Dict[str, Any]:
    """Parse a JSON object body, raising a 400 for anything else."""
    try:
        body = await request.json()
    except ValueError:
        raise json_error(400, "Invalid JSON")
    if not isinstance(body, dict):
        raise json_error(400, "Invalid JSON")
    return body


def client_address(request: web.Request) -> str:
    """Best-effort client address: first X-Forwarded-For hop, else the peer address."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.remote or "unknown"


def set_session_cookie(response: web.StreamResponse, signed_session: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        signed_session,
        max_age=USER_TTL_MS // 1000,
        path="/",
        httponly=True,
        secure=True,
        samesite="Lax",
    )


def set_oauth_state_cookie(response: web.StreamResponse, signed_session: str) -> None:
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        signed_session,
        max_age=OAUTH_TTL_MS // 1000,
        path="/",
        httponly=True,
        secure=True,
        samesite="Lax",
    )


def replace_user_session(
    request: web.Request, response: web.StreamResponse, session: UserSession
) -> None:
    """Swap the request's session for a new one carrying ``session``'s fields."""
    session_store = request.app[SessionStoreAppKey]
    session_store.delete_user_session(request.cookies.get(SESSION_COOKIE))
    signed_session = session_store.create_user_session(session)
    set_session_cookie(response, signed_session)
