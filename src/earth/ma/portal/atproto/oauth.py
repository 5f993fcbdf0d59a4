"""
AT Protocol OAuth Client Implementation

This module implements the relying-party side of AT Protocol OAuth for a public
browser-facing client.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)

The OAuth flow is implemented in two stages:
1. Initialization (`oauth_init`): Discover endpoints for a handle (or use the default
   PDS for email logins), prepare PKCE and a DPoP key, push the authorization request
   and return the authorize URL along with a signed OAuth flow session
2. Completion (`oauth_complete`): Check the callback against the flow session,
   exchange the code with a DPoP proof from the same key and return the user session

The client is public (``token_endpoint_auth_method: none``), so the only secrets are
the PKCE verifier and the DPoP private key, both of which live in the flow session.
"""

import asyncio
import hmac
import logging
import time
from typing import List, Optional
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel

from earth.ma.portal.app.config import Settings
from earth.ma.portal.app.metrics import MetricsClient
from earth.ma.portal.atproto.chain import (
    ChainAttemptsExceeded,
    ChainMiddlewareClient,
    GenerateDpopMiddleware,
    MetricsMiddleware,
)
from earth.ma.portal.atproto.jwt import (
    DpopProofError,
    generate_code_challenge,
    generate_code_verifier,
    generate_dpop_key_pair,
    generate_state,
    restore_dpop_key_pair,
)
from earth.ma.portal.atproto.pds import (
    DiscoveryError,
    OAuthEndpoints,
    default_oauth_endpoints,
    discover_oauth_endpoints,
)
from earth.ma.portal.model.session import OAuthFlowSession, UserSession
from earth.ma.portal.resolve.handle import (
    ResolutionError,
    resolve_did_to_handle,
    resolve_did_to_pds,
    resolve_handle_to_did,
)
from earth.ma.portal.security.session import SessionStore
from earth.ma.portal.security.validation import (
    sanitize_for_log,
    validate_email,
    validate_handle,
)
from earth.ma.portal.twofa.store import TwoFactorStore

logger = logging.getLogger(__name__)

OAUTH_TIMEOUT = ClientTimeout(total=5)
OAUTH_SCOPE = "atproto transition:generic"


class OAuthError(Exception):
    """A login or callback failure with a message that is safe to show the user."""


class OAuthInitResult(BaseModel):
    redirect_url: str
    signed_oauth_session: str


def client_id(settings: Settings) -> str:
    return f"{settings.public_url}/client-metadata.json"


def redirect_uri(settings: Settings) -> str:
    return f"{settings.public_url}/api/oauth/callback"


class ATProtocolOAuthClientMetadata(BaseModel):
    """
    OAuth 2.0 Client Metadata (RFC 7591) served at the client id URL.

    Authorization servers fetch this document to validate the portal's requests. The
    portal is a public client, so no JWKS or signing algorithm is advertised.
    """

    client_id: str
    """Client identifier URI"""

    client_name: str
    """Human-readable name of the client application"""

    client_uri: str
    """URI of the client's homepage"""

    redirect_uris: List[str]
    """List of allowed redirect URIs for this client"""

    scope: str
    grant_types: List[str]
    response_types: List[str]
    application_type: str

    token_endpoint_auth_method: str
    """Always ``none``: token requests are bound by PKCE and DPoP instead of a client secret"""

    dpop_bound_access_tokens: bool


def client_metadata(settings: Settings) -> ATProtocolOAuthClientMetadata:
    return ATProtocolOAuthClientMetadata(
        client_id=client_id(settings),
        client_name="Ma Earth",
        client_uri=settings.public_url,
        redirect_uris=[redirect_uri(settings)],
        scope=OAUTH_SCOPE,
        grant_types=["authorization_code"],
        response_types=["code"],
        application_type="web",
        token_endpoint_auth_method="none",
        dpop_bound_access_tokens=True,
    )


def authorize_url(
    endpoints: OAuthEndpoints,
    settings: Settings,
    request_uri: str,
    login_hint: Optional[str] = None,
) -> str:
    """Append the client id, request URI and optional login hint to the authorize endpoint."""
    parsed_authorization_endpoint = urlparse(endpoints.auth_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update({"client_id": client_id(settings), "request_uri": request_uri})
    if login_hint:
        query["login_hint"] = login_hint
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


async def oauth_init(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    session_store: SessionStore,
    email: Optional[str] = None,
    handle: Optional[str] = None,
) -> OAuthInitResult:
    """
    Start a login by pushing an authorization request to the user's authorization server.

    Handle logins resolve the handle to a DID and PDS and discover that PDS's OAuth
    endpoints. Email logins use the configured default PDS and pass the email as
    ``login_hint``.

    Args:
        settings: Application settings
        http_session: HTTP session for making requests
        metrics_client: Metrics client for outbound request timing
        session_store: Store that keeps the flow state until the callback
        email: Optional email address for the default PDS
        handle: Optional AT Protocol handle, with or without a leading ``@``

    Returns:
        OAuthInitResult: The authorize URL and the signed OAuth flow session id

    Raises:
        OAuthError: For invalid input and for any resolution, discovery or PAR failure
    """
    email = (email or "").strip() or None
    handle = (handle or "").strip().removeprefix("@").strip().lower() or None

    if handle is not None and not validate_handle(handle):
        raise OAuthError("Invalid handle")
    if email is not None and not validate_email(email):
        raise OAuthError("Invalid email address")

    expected_did: Optional[str] = None
    expected_pds_url: Optional[str] = None
    issuer: Optional[str] = None

    try:
        if handle is not None:
            logger.info("Resolving handle %s", handle)
            expected_did = await resolve_handle_to_did(
                http_session, handle, settings.handle_resolver_url
            )
            expected_pds_url = await resolve_did_to_pds(
                http_session, expected_did, settings.plc_directory_url
            )
            endpoints = await discover_oauth_endpoints(http_session, expected_pds_url)
            issuer = endpoints.issuer
            logger.info(
                "Resolved %s to %s on %s",
                handle,
                sanitize_for_log(expected_did),
                expected_pds_url,
            )
        else:
            endpoints = default_oauth_endpoints(settings.pds_url, settings.auth_endpoint)

        code_verifier = generate_code_verifier()
        state = generate_state()
        dpop_key_pair = generate_dpop_key_pair()

        data = {
            "client_id": client_id(settings),
            "redirect_uri": redirect_uri(settings),
            "response_type": "code",
            "scope": OAUTH_SCOPE,
            "state": state,
            "code_challenge": generate_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        if email is not None:
            data["login_hint"] = email
        elif handle is not None:
            data["login_hint"] = handle

        chain_client = ChainMiddlewareClient(
            client_session=http_session,
            middleware=[
                MetricsMiddleware(metrics_client, "par"),
                GenerateDpopMiddleware(dpop_key_pair.key, dpop_key_pair.public_jwk),
            ],
        )

        async with chain_client.post(
            endpoints.par_endpoint, data=data, timeout=OAUTH_TIMEOUT
        ) as (_, chain_response):
            if not chain_response.ok:
                logger.error(
                    "PAR failed with %s: %s",
                    chain_response.status,
                    chain_response.body_text()[:500],
                )
                raise OAuthError(f"PAR failed: {chain_response.body_text()}")

            par_response = chain_response.body

    except (ResolutionError, DiscoveryError) as e:
        raise OAuthError(str(e)) from e
    except (DpopProofError, ChainAttemptsExceeded, ClientError, asyncio.TimeoutError) as e:
        logger.exception("PAR request failed")
        raise OAuthError("Authorization request failed") from e

    request_uri = par_response.get("request_uri") if isinstance(par_response, dict) else None
    if not request_uri:
        raise OAuthError("PAR failed: no request_uri in response")

    signed_oauth_session = session_store.create_oauth_session(
        OAuthFlowSession(
            state=state,
            code_verifier=code_verifier,
            dpop_private_jwk=dpop_key_pair.private_jwk,
            token_endpoint=endpoints.token_endpoint,
            redirect_uri=redirect_uri(settings),
            issuer=issuer,
            email=email,
            expected_did=expected_did,
            expected_pds_url=expected_pds_url,
        )
    )

    return OAuthInitResult(
        redirect_url=authorize_url(endpoints, settings, request_uri, email),
        signed_oauth_session=signed_oauth_session,
    )


async def oauth_complete(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    twofa_store: TwoFactorStore,
    oauth_session: OAuthFlowSession,
    state: Optional[str],
    code: Optional[str],
    issuer: Optional[str] = None,
) -> UserSession:
    """
    Finish a login by exchanging the authorization code for tokens.

    Args:
        settings: Application settings
        http_session: HTTP session for making requests
        metrics_client: Metrics client for outbound request timing
        twofa_store: Two-factor store, consulted to decide whether the session is verified
        oauth_session: Flow state recorded by ``oauth_init``, already consumed by the caller
        state: ``state`` query parameter from the callback
        code: ``code`` query parameter from the callback
        issuer: ``iss`` query parameter from the callback, if the server sent one

    Returns:
        UserSession: The new session, unverified when the user has a second factor

    Raises:
        OAuthError: On a state or issuer mismatch, a failed exchange, or an unexpected subject
    """
    if not state or not hmac.compare_digest(
        state.encode("utf-8"), oauth_session.state.encode("utf-8")
    ):
        raise OAuthError("Invalid OAuth state")

    if not code:
        raise OAuthError("Missing authorization code")

    if (
        oauth_session.issuer
        and issuer
        and issuer.rstrip("/") != oauth_session.issuer.rstrip("/")
    ):
        raise OAuthError("Unexpected authorization server")

    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": oauth_session.redirect_uri,
        "client_id": client_id(settings),
        "code_verifier": oauth_session.code_verifier,
    }

    try:
        dpop_key_pair = restore_dpop_key_pair(oauth_session.dpop_private_jwk)

        chain_client = ChainMiddlewareClient(
            client_session=http_session,
            middleware=[
                MetricsMiddleware(metrics_client, "token"),
                GenerateDpopMiddleware(dpop_key_pair.key, dpop_key_pair.public_jwk),
            ],
        )

        async with chain_client.post(
            oauth_session.token_endpoint, data=data, timeout=OAUTH_TIMEOUT
        ) as (_, chain_response):
            if not chain_response.ok:
                logger.error(
                    "Token exchange failed with %s: %s",
                    chain_response.status,
                    chain_response.body_text()[:500],
                )
                raise OAuthError("Token exchange failed")

            token_response = chain_response.body

    except (DpopProofError, ChainAttemptsExceeded, ClientError, asyncio.TimeoutError) as e:
        logger.exception("Token request failed")
        raise OAuthError("Token exchange failed") from e

    if not isinstance(token_response, dict):
        raise OAuthError("Invalid token response")

    user_did = token_response.get("sub")
    if not isinstance(user_did, str) or not user_did.startswith("did:"):
        raise OAuthError("Token response has no subject")

    if oauth_session.expected_did and user_did != oauth_session.expected_did:
        logger.warning(
            "Token subject %s does not match expected %s",
            sanitize_for_log(user_did),
            sanitize_for_log(oauth_session.expected_did),
        )
        raise OAuthError("Signed in account does not match the requested handle")

    try:
        user_handle = await resolve_did_to_handle(
            http_session, user_did, settings.plc_directory_url
        )
    except ResolutionError as e:
        logger.warning("Could not resolve handle for %s: %s", sanitize_for_log(user_did), e)
        user_handle = None

    twofa_config = await twofa_store.get_config(user_did)

    logger.info(
        "Signed in %s (second factor %s)",
        sanitize_for_log(user_did),
        "required" if twofa_config is not None else "not enabled",
    )

    return UserSession(
        user_did=user_did,
        user_handle=user_handle or user_did,
        created_at=int(time.time() * 1000),
        verified=twofa_config is None,
    )
