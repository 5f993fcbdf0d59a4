"""
Unit tests for the outbound request middleware chain.

Tests cover request copying, response decoding, DPoP proof attachment, the single
nonce retry, metrics recording and the attempt cap.
"""

import json
from unittest.mock import Mock

import pytest
from aiohttp import web
from jwcrypto import jws

from earth.ma.portal.app.metrics import MetricsClient
from earth.ma.portal.atproto.chain import (
    ChainAttemptsExceeded,
    ChainMiddlewareClient,
    ChainMiddlewareContext,
    ChainRequest,
    ChainResponse,
    GenerateDpopMiddleware,
    MetricsMiddleware,
    RequestMiddlewareBase,
)
from earth.ma.portal.atproto.jwt import generate_dpop_key_pair
from tests.test_helpers import create_mock_response


def proof_payload(proof: str) -> dict:
    token = jws.JWS()
    token.deserialize(proof)
    return json.loads(token.objects["payload"])


class TestChainRequest:
    """Test ChainRequest copying."""

    def test_from_chain_request_increments_attempt(self):
        original = ChainRequest(
            method="POST",
            url="https://example.com",
            headers={"A": "1"},
            kwargs={"data": {"k": "v"}},
            dpop_nonce="n",
        )
        copy = ChainRequest.from_chain_request(original)

        assert copy.attempt == 1
        assert copy.method == "POST"
        assert copy.kwargs == {"data": {"k": "v"}}
        assert copy.dpop_nonce == "n"

    def test_from_chain_request_copies_headers(self):
        original = ChainRequest(method="GET", url="https://example.com", headers={"A": "1"})
        copy = ChainRequest.from_chain_request(original)

        copy.headers["B"] = "2"
        assert original.headers == {"A": "1"}


class TestChainResponse:
    """Test decoding of aiohttp responses."""

    @pytest.mark.asyncio
    async def test_json_body(self):
        response = create_mock_response(200, {"ok": True})
        chain_response = await ChainResponse.from_aiohttp_response(response)

        assert chain_response.ok
        assert chain_response.body == {"ok": True}
        assert chain_response.body_matches_kv("ok", True)
        assert not chain_response.body_matches_kv("ok", False)

    @pytest.mark.asyncio
    async def test_invalid_json_falls_back_to_text(self):
        response = create_mock_response(502, {"x": 1})
        response.json.side_effect = ValueError("bad json")
        response.text.return_value = "<html>"

        chain_response = await ChainResponse.from_aiohttp_response(response)

        assert not chain_response.ok
        assert chain_response.body == "<html>"
        assert chain_response.body_text() == "<html>"

    @pytest.mark.asyncio
    async def test_text_body(self):
        response = create_mock_response(200, "hello", content_type="text/plain")
        chain_response = await ChainResponse.from_aiohttp_response(response)
        assert chain_response.body == "hello"

    def test_body_text_of_dict_and_bytes(self):
        headers = create_mock_response().headers
        assert ChainResponse(200, headers, {"a": 1}).body_text() == '{"a": 1}'
        assert ChainResponse(200, headers, b"raw").body_text() == "raw"
        assert ChainResponse(200, headers, None).body_text() == ""

    def test_to_web_response(self):
        headers = create_mock_response().headers
        response = ChainResponse(201, headers, {"a": 1}).to_web_response()

        assert isinstance(response, web.Response)
        assert response.status == 201
        assert json.loads(response.body) == {"a": 1}


class TestGenerateDpopMiddleware:
    """Test DPoP proof attachment and the nonce retry."""

    @pytest.mark.asyncio
    async def test_attaches_proof_for_method_and_url(self, mock_session):
        key_pair = generate_dpop_key_pair()
        mock_session.request.return_value = create_mock_response(200, {"ok": True})
        client = ChainMiddlewareClient(
            mock_session,
            middleware=[GenerateDpopMiddleware(key_pair.key, key_pair.public_jwk)],
        )

        _, chain_response = await client.post("https://pds.example/oauth/par", data={})

        assert chain_response.body == {"ok": True}
        headers = mock_session.request.call_args.kwargs["headers"]
        payload = proof_payload(headers["DPoP"])
        assert payload["htm"] == "POST"
        assert payload["htu"] == "https://pds.example/oauth/par"
        assert "nonce" not in payload

    @pytest.mark.asyncio
    async def test_access_token_binds_ath(self, mock_session):
        key_pair = generate_dpop_key_pair()
        mock_session.request.return_value = create_mock_response(200)
        client = ChainMiddlewareClient(
            mock_session,
            middleware=[
                GenerateDpopMiddleware(
                    key_pair.key, key_pair.public_jwk, access_token="token"
                )
            ],
        )

        await client.get("https://pds.example/xrpc/x")

        headers = mock_session.request.call_args.kwargs["headers"]
        assert "ath" in proof_payload(headers["DPoP"])

    @pytest.mark.asyncio
    async def test_retries_once_with_server_nonce(self, mock_session):
        key_pair = generate_dpop_key_pair()
        mock_session.request.side_effect = [
            create_mock_response(
                400, {"error": "use_dpop_nonce"}, headers={"DPoP-Nonce": "nonce-1"}
            ),
            create_mock_response(201, {"request_uri": "urn:1"}),
        ]
        client = ChainMiddlewareClient(
            mock_session,
            middleware=[GenerateDpopMiddleware(key_pair.key, key_pair.public_jwk)],
        )

        _, chain_response = await client.post("https://pds.example/oauth/par")

        assert chain_response.status == 201
        assert mock_session.request.call_count == 2
        first, second = mock_session.request.call_args_list
        first_proof = first.kwargs["headers"]["DPoP"]
        second_proof = second.kwargs["headers"]["DPoP"]
        assert "nonce" not in proof_payload(first_proof)
        assert proof_payload(second_proof)["nonce"] == "nonce-1"
        assert proof_payload(first_proof)["jti"] != proof_payload(second_proof)["jti"]

    @pytest.mark.asyncio
    async def test_nonce_retry_is_not_repeated(self, mock_session):
        """A second nonce challenge is returned to the caller, not retried."""
        key_pair = generate_dpop_key_pair()
        mock_session.request.side_effect = [
            create_mock_response(400, {}, headers={"DPoP-Nonce": "nonce-1"}),
            create_mock_response(400, {}, headers={"DPoP-Nonce": "nonce-2"}),
            create_mock_response(200),
        ]
        client = ChainMiddlewareClient(
            mock_session,
            middleware=[GenerateDpopMiddleware(key_pair.key, key_pair.public_jwk)],
            attempt_max=5,
        )

        _, chain_response = await client.post("https://pds.example/oauth/token")

        assert chain_response.status == 400
        assert mock_session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_400_without_nonce_is_not_retried(self, mock_session):
        key_pair = generate_dpop_key_pair()
        mock_session.request.return_value = create_mock_response(
            400, {"error": "invalid_grant"}
        )
        client = ChainMiddlewareClient(
            mock_session,
            middleware=[GenerateDpopMiddleware(key_pair.key, key_pair.public_jwk)],
        )

        _, chain_response = await client.post("https://pds.example/oauth/token")

        assert chain_response.body == {"error": "invalid_grant"}
        assert mock_session.request.call_count == 1


class TestMetricsMiddleware:
    @pytest.mark.asyncio
    async def test_records_time_and_status(self, mock_session):
        metrics = Mock(spec=MetricsClient)
        mock_session.request.return_value = create_mock_response(204)
        client = ChainMiddlewareClient(
            mock_session, middleware=[MetricsMiddleware(metrics, "par")]
        )

        await client.get("https://pds.example")

        metrics.timer.assert_called_once()
        metrics.increment.assert_called_once_with(
            "client.request.count", 1, tag_dict={"name": "par", "status": 204}
        )

    @pytest.mark.asyncio
    async def test_records_failure_with_zero_status(self, mock_session):
        metrics = Mock(spec=MetricsClient)
        mock_session.request.side_effect = ConnectionError("refused")
        client = ChainMiddlewareClient(
            mock_session, middleware=[MetricsMiddleware(metrics, "par")]
        )

        with pytest.raises(ConnectionError):
            await client.get("https://pds.example")

        assert metrics.increment.call_args.kwargs["tag_dict"]["status"] == 0


class AlwaysRetry(RequestMiddlewareBase):
    async def handle(self, next, request):
        client_response, chain_response = await next(request)
        return client_response, chain_response, ChainRequest.from_chain_request(request)


class TestChainMiddlewareContext:
    """Test the attempt cap and response bookkeeping."""

    @pytest.mark.asyncio
    async def test_attempt_cap_returns_last_response(self, mock_session):
        mock_session.request.return_value = create_mock_response(503)
        client = ChainMiddlewareClient(
            mock_session, middleware=[AlwaysRetry()], attempt_max=3
        )

        _, chain_response = await client.get("https://pds.example")

        assert chain_response.status == 503
        assert mock_session.request.call_count == 3

    @pytest.mark.asyncio
    async def test_zero_attempts_raises(self, mock_session):
        async def callback(request):
            raise AssertionError("should not be called")

        context = ChainMiddlewareContext(
            callback, ChainRequest(method="GET", url="https://x"), attempt_max=0
        )

        with pytest.raises(ChainAttemptsExceeded):
            await context

    @pytest.mark.asyncio
    async def test_async_context_closes_response(self, mock_session):
        response = create_mock_response(200, {"a": 1})
        mock_session.request.return_value = response
        client = ChainMiddlewareClient(mock_session)

        async with client.get("https://pds.example") as (_, chain_response):
            assert chain_response.body == {"a": 1}

        response.close.assert_called_once()
        response.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_request_kwargs_are_forwarded(self, mock_session):
        mock_session.request.return_value = create_mock_response(200)
        client = ChainMiddlewareClient(mock_session)

        await client.post(
            "https://pds.example/oauth/token",
            data={"grant_type": "authorization_code"},
            headers={"Accept": "application/json"},
        )

        args, kwargs = mock_session.request.call_args
        assert args == ("post", "https://pds.example/oauth/token")
        assert kwargs["headers"] == {"Accept": "application/json"}
        assert kwargs["data"] == {"grant_type": "authorization_code"}
