"""
AT Protocol OAuth Handlers

This module implements the web request handlers for signing in with AT Protocol OAuth.

OAuth Flow with AT Protocol:
1. The browser requests /api/oauth/login with an email or handle
2. The portal pushes an authorization request and redirects to the authorization server
3. The user authenticates with their PDS
4. The PDS redirects back to /api/oauth/callback with an authorization code
5. The portal exchanges the code, creates a user session and sets the session cookie
6. Users with a second factor are sent to /verify-2fa, everyone else to /welcome

The handlers in this module provide the following endpoints:
- GET /api/oauth/login - Start a login
- GET /api/oauth/callback - OAuth callback from the authorization server
- GET /client-metadata.json - OAuth client metadata
- GET /api/csrf - CSRF token for the current session
- GET /api/auth/me - The signed-in user
- POST /api/auth/logout - End the session

Browser-facing failures redirect to ``/?error=<message>`` instead of returning JSON.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from aiohttp import web
import sentry_sdk

from earth.ma.portal.app.config import (
    CsrfCodecAppKey,
    MetricsClientAppKey,
    RateLimiterAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    SettingsAppKey,
    TwoFactorStoreAppKey,
)
from earth.ma.portal.app.handlers.helpers import (
    client_address,
    require_csrf,
    require_session,
    set_oauth_state_cookie,
    set_session_cookie,
)
from earth.ma.portal.atproto.oauth import (
    OAuthError,
    client_metadata,
    oauth_complete,
    oauth_init,
)
from earth.ma.portal.security.session import OAUTH_STATE_COOKIE, SESSION_COOKIE
from earth.ma.portal.security.validation import sanitize_for_log
from earth.ma.portal.twofa.store import TwoFactorError

logger = logging.getLogger(__name__)

LOGIN_RATE_LIMIT = 10
LOGIN_RATE_WINDOW_MS = 60 * 1000

WELCOME_PATH = "/welcome"
VERIFY_2FA_PATH = "/verify-2fa"


def error_redirect(public_url: str, message: str) -> web.HTTPFound:
    return web.HTTPFound(f"{public_url}/?{urlencode({'error': message})}")


async def handle_oauth_login(request: web.Request):
    """
    Start an OAuth login.

    Query Parameters:
        email: Optional email address; logs in through the default PDS
        handle: Optional AT Protocol handle; logs in through the handle's own PDS

    Raises:
        HTTPFound: To the authorization server, or to ``/?error=`` on failure
    """
    settings = request.app[SettingsAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    rate_limit = request.app[RateLimiterAppKey].check(
        f"login:{client_address(request)}", LOGIN_RATE_LIMIT, LOGIN_RATE_WINDOW_MS
    )
    if not rate_limit.allowed:
        raise error_redirect(settings.public_url, "Too many login attempts")

    email: Optional[str] = request.query.get("email", None)
    handle: Optional[str] = request.query.get("handle", None)

    try:
        result = await oauth_init(
            settings,
            request.app[SessionAppKey],
            metrics_client,
            request.app[SessionStoreAppKey],
            email=email,
            handle=handle,
        )
    except OAuthError as e:
        logger.warning("Login failed: %s", e)
        metrics_client.increment("oauth.login.failed", 1)
        raise error_redirect(settings.public_url, str(e))
    except Exception as e:
        logger.exception("login error")
        sentry_sdk.capture_exception(e)
        raise error_redirect(settings.public_url, "Login failed")

    metrics_client.increment(
        "oauth.login.started", 1, tag_dict={"method": "handle" if handle else "email"}
    )

    response = web.HTTPFound(result.redirect_url)
    set_oauth_state_cookie(response, result.signed_oauth_session)
    raise response


async def handle_oauth_callback(request: web.Request):
    """
    Handle the OAuth callback from the authorization server.

    The OAuth flow session named by the ``oauth_state`` cookie is consumed whether or not
    the exchange succeeds, so a callback URL can never be replayed.

    Query Parameters:
        state: OAuth state parameter, checked against the flow session
        code: Authorization code to exchange for tokens
        iss: Issuer identifier (authorization server)
        error: Set by the authorization server when the user declined

    Raises:
        HTTPFound: To /welcome or /verify-2fa on success, or to ``/?error=`` on failure
    """
    settings = request.app[SettingsAppKey]
    session_store = request.app[SessionStoreAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    signed_oauth_session = request.cookies.get(OAUTH_STATE_COOKIE)
    oauth_session = session_store.get_oauth_session(signed_oauth_session)
    session_store.delete_oauth_session(signed_oauth_session)

    def fail(message: str) -> web.HTTPFound:
        metrics_client.increment("oauth.callback.failed", 1)
        response = error_redirect(settings.public_url, message)
        response.del_cookie(OAUTH_STATE_COOKIE, path="/")
        return response

    authorization_error = request.query.get("error")
    if authorization_error:
        raise fail(request.query.get("error_description") or authorization_error)

    if oauth_session is None:
        raise fail("Login session expired, please try again")

    try:
        user_session = await oauth_complete(
            settings,
            request.app[SessionAppKey],
            metrics_client,
            request.app[TwoFactorStoreAppKey],
            oauth_session,
            request.query.get("state"),
            request.query.get("code"),
            request.query.get("iss"),
        )
    except OAuthError as e:
        logger.warning("Callback failed: %s", e)
        raise fail(str(e))
    except TwoFactorError as e:
        logger.exception("Unreadable two-factor configuration")
        sentry_sdk.capture_exception(e)
        raise fail("Login failed")

    signed_session = session_store.create_user_session(user_session)

    metrics_client.increment(
        "oauth.callback.completed", 1, tag_dict={"verified": user_session.verified}
    )

    destination = WELCOME_PATH if user_session.verified else VERIFY_2FA_PATH
    response = web.HTTPFound(f"{settings.public_url}{destination}")
    set_session_cookie(response, signed_session)
    response.del_cookie(OAUTH_STATE_COOKIE, path="/")
    raise response


async def handle_client_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(client_metadata(settings).model_dump())


async def handle_csrf_token(request: web.Request):
    """Issue a CSRF token. The session may still be waiting for its second factor."""
    require_session(request)
    return web.json_response({"csrf_token": request.app[CsrfCodecAppKey].generate()})


async def handle_auth_me(request: web.Request):
    session = require_session(request)
    return web.json_response(
        {
            "did": session.user_did,
            "handle": session.user_handle,
            "verified": session.verified,
        }
    )


async def handle_auth_logout(request: web.Request):
    require_csrf(request)

    session_store = request.app[SessionStoreAppKey]
    signed_session = request.cookies.get(SESSION_COOKIE)
    session = session_store.get_user_session(signed_session)
    session_store.delete_user_session(signed_session)

    if session is not None:
        logger.info("Signed out %s", sanitize_for_log(session.user_did))

    response = web.json_response({"success": True})
    response.del_cookie(SESSION_COOKIE, path="/")
    return response
