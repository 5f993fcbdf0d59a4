"""
Tests for the sign-in handlers.

Covers the login redirect and its state cookie, the callback's redirects, the CSRF
token endpoint, the current-user endpoint and logout.
"""

from urllib.parse import parse_qs, urlparse

import pytest

from earth.ma.portal.app.config import SessionStoreAppKey
from earth.ma.portal.atproto.jwt import generate_dpop_key_pair
from earth.ma.portal.model.session import OAuthFlowSession
from earth.ma.portal.model.twofa import TotpMethodConfig, TwoFactorConfig
from earth.ma.portal.security.session import OAUTH_STATE_COOKIE, SESSION_COOKIE
from tests.test_helpers import (
    TEST_DID,
    TEST_HANDLE,
    create_mock_response,
    did_document,
    login,
    route_get,
)


def error_of(location: str) -> str:
    return parse_qs(urlparse(location).query)["error"][0]


def start_flow(app) -> str:
    return app[SessionStoreAppKey].create_oauth_session(
        OAuthFlowSession(
            state="state-1",
            code_verifier="verifier",
            dpop_private_jwk=generate_dpop_key_pair().private_jwk,
            token_endpoint="https://pds.example/oauth/token",
            redirect_uri="https://portal.example/api/oauth/callback",
        )
    )


class TestLogin:
    """Test GET /api/oauth/login."""

    @pytest.mark.asyncio
    async def test_redirects_to_authorization_server(self, client, app, mock_session):
        mock_session.request.return_value = create_mock_response(
            201, {"request_uri": "urn:1"}
        )

        resp = await client.get(
            "/api/oauth/login",
            params={"email": "alice@example.com"},
            allow_redirects=False,
        )

        assert resp.status == 302
        assert resp.headers["Location"].startswith(
            "https://auth.pds.example/oauth/authorize?"
        )
        cookie = resp.cookies[OAUTH_STATE_COOKIE]
        assert cookie["httponly"]
        assert cookie["secure"]
        assert cookie["samesite"] == "Lax"
        assert app[SessionStoreAppKey].get_oauth_session(cookie.value) is not None

    @pytest.mark.asyncio
    async def test_failure_redirects_home_with_error(self, client):
        resp = await client.get(
            "/api/oauth/login", params={"handle": "not a handle"}, allow_redirects=False
        )

        assert resp.status == 302
        assert resp.headers["Location"].startswith("https://portal.example/?")
        assert error_of(resp.headers["Location"]) == "Invalid handle"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_generic(self, client, mock_session):
        mock_session.request.side_effect = RuntimeError("boom")

        resp = await client.get(
            "/api/oauth/login",
            params={"email": "alice@example.com"},
            allow_redirects=False,
        )

        assert error_of(resp.headers["Location"]) == "Login failed"

    @pytest.mark.asyncio
    async def test_rate_limited_per_client(self, client):
        for _ in range(10):
            resp = await client.get(
                "/api/oauth/login", params={"email": "bad"}, allow_redirects=False
            )
            assert error_of(resp.headers["Location"]) == "Invalid email address"

        resp = await client.get(
            "/api/oauth/login", params={"email": "bad"}, allow_redirects=False
        )
        assert error_of(resp.headers["Location"]) == "Too many login attempts"


class TestCallback:
    """Test GET /api/oauth/callback."""

    def route_token(self, mock_session, settings):
        mock_session.request.return_value = create_mock_response(
            200, {"access_token": "at", "sub": TEST_DID}
        )
        route_get(
            mock_session,
            {f"{settings.plc_directory_url}/{TEST_DID}": create_mock_response(
                200, did_document()
            )},
        )

    @pytest.mark.asyncio
    async def test_success_without_second_factor(
        self, client, app, mock_session, settings
    ):
        self.route_token(mock_session, settings)
        signed_flow = start_flow(app)

        resp = await client.get(
            "/api/oauth/callback",
            params={"state": "state-1", "code": "code-1"},
            headers={"Cookie": f"{OAUTH_STATE_COOKIE}={signed_flow}"},
            allow_redirects=False,
        )

        assert resp.status == 302
        assert resp.headers["Location"] == "https://portal.example/welcome"
        session = app[SessionStoreAppKey].get_user_session(
            resp.cookies[SESSION_COOKIE].value
        )
        assert session.user_did == TEST_DID
        assert session.user_handle == TEST_HANDLE
        assert session.verified is True
        # The flow session is single use.
        assert app[SessionStoreAppKey].get_oauth_session(signed_flow) is None

    @pytest.mark.asyncio
    async def test_second_factor_redirects_to_verification(
        self, client, app, mock_session, settings, twofa_store
    ):
        await twofa_store.save_config(
            TEST_DID,
            TwoFactorConfig(
                default_method="totp",
                methods=[TotpMethodConfig(secret="JBSWY3DPEHPK3PXP", enabled_at=1)],
            ),
        )
        self.route_token(mock_session, settings)

        resp = await client.get(
            "/api/oauth/callback",
            params={"state": "state-1", "code": "code-1"},
            headers={"Cookie": f"{OAUTH_STATE_COOKIE}={start_flow(app)}"},
            allow_redirects=False,
        )

        assert resp.headers["Location"] == "https://portal.example/verify-2fa"
        session = app[SessionStoreAppKey].get_user_session(
            resp.cookies[SESSION_COOKIE].value
        )
        assert session.verified is False

    @pytest.mark.asyncio
    async def test_missing_flow_session(self, client):
        resp = await client.get(
            "/api/oauth/callback",
            params={"state": "state-1", "code": "code-1"},
            allow_redirects=False,
        )
        assert error_of(resp.headers["Location"]) == (
            "Login session expired, please try again"
        )

    @pytest.mark.asyncio
    async def test_state_mismatch_consumes_flow(self, client, app, mock_session):
        signed_flow = start_flow(app)

        resp = await client.get(
            "/api/oauth/callback",
            params={"state": "other", "code": "code-1"},
            headers={"Cookie": f"{OAUTH_STATE_COOKIE}={signed_flow}"},
            allow_redirects=False,
        )

        assert error_of(resp.headers["Location"]) == "Invalid OAuth state"
        assert SESSION_COOKIE not in resp.cookies
        assert app[SessionStoreAppKey].get_oauth_session(signed_flow) is None
        mock_session.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_authorization_error(self, client, app):
        resp = await client.get(
            "/api/oauth/callback",
            params={"error": "access_denied", "error_description": "User declined"},
            headers={"Cookie": f"{OAUTH_STATE_COOKIE}={start_flow(app)}"},
            allow_redirects=False,
        )
        assert error_of(resp.headers["Location"]) == "User declined"


class TestSessionEndpoints:
    @pytest.mark.asyncio
    async def test_client_metadata(self, client):
        resp = await client.get("/client-metadata.json")
        body = await resp.json()

        assert body["client_id"] == "https://portal.example/client-metadata.json"
        assert body["dpop_bound_access_tokens"] is True

    @pytest.mark.asyncio
    async def test_csrf_token_for_unverified_session(self, client, app):
        resp = await client.get("/api/csrf", headers=login(app, verified=False))

        assert resp.status == 200
        token = (await resp.json())["csrf_token"]
        assert len(token.split(".")) == 3

    @pytest.mark.asyncio
    async def test_csrf_token_requires_session(self, client):
        resp = await client.get("/api/csrf")
        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_me(self, client, app):
        resp = await client.get("/api/auth/me", headers=login(app, verified=False))
        assert await resp.json() == {
            "did": TEST_DID,
            "handle": TEST_HANDLE,
            "verified": False,
        }

    @pytest.mark.asyncio
    async def test_logout(self, client, app):
        headers = login(app)

        resp = await client.post("/api/auth/logout", headers=headers)

        assert resp.status == 200
        assert await resp.json() == {"success": True}
        assert resp.cookies[SESSION_COOKIE].value == ""

        resp = await client.get("/api/auth/me", headers=headers)
        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_logout_requires_csrf(self, client, app):
        headers = login(app)
        headers["X-CSRF-Token"] = "bogus"

        resp = await client.post("/api/auth/logout", headers=headers)

        assert resp.status == 403
        resp = await client.get("/api/auth/me", headers=headers)
        assert resp.status == 200
