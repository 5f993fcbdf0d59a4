"""
Common testing utilities for the portal tests.

Provides mocked aiohttp responses, URL-routed ``session.get`` mocks and a helper that
signs a test user in.
"""

import json
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock, Mock

from aiohttp import ClientResponse, hdrs, web
from multidict import CIMultiDict, CIMultiDictProxy

from earth.ma.portal.app.config import CsrfCodecAppKey, SessionStoreAppKey
from earth.ma.portal.app.handlers.helpers import CSRF_HEADER
from earth.ma.portal.model.session import UserSession
from earth.ma.portal.security.session import SESSION_COOKIE

TEST_DID = "did:plc:testuser1234567890"
TEST_HANDLE = "alice.test"


def create_mock_response(
    status: int = 200,
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
    content_type: str = "application/json",
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse."""
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status

    headers_dict = dict(headers or {})
    headers_dict.setdefault(hdrs.CONTENT_TYPE, content_type)
    mock_response.headers = CIMultiDictProxy(CIMultiDict(headers_dict))

    if content_type.startswith("application/json"):
        mock_response.json = AsyncMock(return_value=body if body is not None else {})
        mock_response.text = AsyncMock(return_value=json.dumps(body or {}))
    else:
        text_body = str(body) if body is not None else ""
        mock_response.json = AsyncMock(side_effect=ValueError("Not JSON"))
        mock_response.text = AsyncMock(return_value=text_body)
        mock_response.read = AsyncMock(return_value=text_body.encode())

    mock_response.closed = False
    mock_response.close = Mock()
    mock_response.release = Mock()
    return mock_response


def response_context(response: ClientResponse) -> MagicMock:
    """Wrap a response so it can be used with ``async with session.get(...)``."""
    context = MagicMock()
    context.__aenter__.return_value = response
    context.__aexit__.return_value = False
    return context


def route_get(mock_session, responses: Dict[str, ClientResponse]) -> None:
    """Answer ``session.get(url)`` from a URL to response map; unknown URLs get a 404."""

    def get(url, *args, **kwargs):
        return response_context(responses.get(str(url), create_mock_response(404)))

    mock_session.get = MagicMock(side_effect=get)


def did_document(
    did: str = TEST_DID,
    handle: Optional[str] = TEST_HANDLE,
    pds: str = "https://pds.example",
) -> Dict[str, Any]:
    return {
        "id": did,
        "alsoKnownAs": [f"at://{handle}"] if handle else [],
        "service": [
            {
                "id": "#atproto_pds",
                "type": "AtprotoPersonalDataServer",
                "serviceEndpoint": pds,
            }
        ],
    }


def login(app: web.Application, verified: bool = True, did: str = TEST_DID) -> Dict[str, str]:
    """Create a user session and return request headers carrying it and a CSRF token."""
    signed = app[SessionStoreAppKey].create_user_session(
        UserSession(
            user_did=did,
            user_handle=TEST_HANDLE,
            created_at=1_700_000_000_000,
            verified=verified,
        )
    )
    return {
        "Cookie": f"{SESSION_COOKIE}={signed}",
        CSRF_HEADER: app[CsrfCodecAppKey].generate(),
    }
