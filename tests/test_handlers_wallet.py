"""Tests for the wallet handlers and the wallet service client."""

from decimal import Decimal
from unittest.mock import MagicMock

from aiohttp import ClientConnectionError
import pytest

from earth.ma.portal.app.config import DailySpendAppKey
from tests.test_helpers import (
    TEST_DID,
    create_mock_response,
    login,
    response_context,
    route_get,
)

ADDRESS = "0x" + "ab" * 20
WALLET_URL = "https://wallet.example/wallet/did%3Aplc%3Atestuser1234567890"


def wallet_post(mock_session, response):
    mock_session.post = MagicMock(return_value=response_context(response))


class TestGetWallet:
    @pytest.mark.asyncio
    async def test_returns_wallet(self, client, app, mock_session):
        route_get(
            mock_session,
            {WALLET_URL: create_mock_response(200, {"address": ADDRESS, "balance": "1"})},
        )

        resp = await client.get("/api/wallet", headers=login(app))

        assert resp.status == 200
        assert await resp.json() == {"address": ADDRESS, "balance": "1"}
        assert mock_session.get.call_args.kwargs["headers"] == {"X-API-Key": "wallet-key"}

    @pytest.mark.asyncio
    async def test_requires_verified_session(self, client, app):
        resp = await client.get("/api/wallet", headers=login(app, verified=False))
        assert resp.status == 403

    @pytest.mark.asyncio
    async def test_upstream_failure(self, client, app, mock_session):
        route_get(mock_session, {})

        resp = await client.get("/api/wallet", headers=login(app))

        assert resp.status == 502
        assert await resp.json() == {"error": "Wallet service error"}


class TestSend:
    """Test POST /api/wallet/send."""

    @pytest.mark.asyncio
    async def test_passes_upstream_response_through(self, client, app, mock_session):
        wallet_post(mock_session, create_mock_response(200, {"hash": "0x1"}))

        resp = await client.post(
            "/api/wallet/send",
            json={"to": ADDRESS, "amount": "0.05"},
            headers=login(app),
        )

        assert resp.status == 200
        assert await resp.json() == {"hash": "0x1"}
        args, kwargs = mock_session.post.call_args
        assert args[0] == "https://wallet.example/wallet/send"
        assert kwargs["json"] == {"did": TEST_DID, "to": ADDRESS, "amount": "0.05"}
        assert app[DailySpendAppKey].daily_total(TEST_DID) == Decimal("0.05")

    @pytest.mark.asyncio
    async def test_rejected_transaction_releases_reservation(
        self, client, app, mock_session
    ):
        wallet_post(mock_session, create_mock_response(422, {"error": "insufficient"}))

        resp = await client.post(
            "/api/wallet/send",
            json={"to": ADDRESS, "amount": "0.05"},
            headers=login(app),
        )

        assert resp.status == 422
        assert await resp.json() == {"error": "insufficient"}
        assert app[DailySpendAppKey].daily_total(TEST_DID) == Decimal("0")

    @pytest.mark.asyncio
    async def test_accepted_without_json_body_keeps_reservation(
        self, client, app, mock_session
    ):
        wallet_post(
            mock_session, create_mock_response(200, "queued", content_type="text/plain")
        )

        resp = await client.post(
            "/api/wallet/send",
            json={"to": ADDRESS, "amount": "0.05"},
            headers=login(app),
        )

        assert resp.status == 200
        assert await resp.json() == {}
        assert app[DailySpendAppKey].daily_total(TEST_DID) == Decimal("0.05")

    @pytest.mark.asyncio
    async def test_rejected_without_json_body(self, client, app, mock_session):
        wallet_post(
            mock_session,
            create_mock_response(500, "Internal error", content_type="text/plain"),
        )

        resp = await client.post(
            "/api/wallet/send",
            json={"to": ADDRESS, "amount": "0.05"},
            headers=login(app),
        )

        assert resp.status == 502
        assert app[DailySpendAppKey].daily_total(TEST_DID) == Decimal("0")

    @pytest.mark.asyncio
    async def test_unreachable_service(self, client, app, mock_session):
        mock_session.post = MagicMock(side_effect=ClientConnectionError("refused"))

        resp = await client.post(
            "/api/wallet/send",
            json={"to": ADDRESS, "amount": "0.05"},
            headers=login(app),
        )

        assert resp.status == 502
        assert app[DailySpendAppKey].daily_total(TEST_DID) == Decimal("0")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body, message",
        [
            ({"to": "0x123", "amount": "0.01"}, "Invalid Ethereum address"),
            ({"to": ADDRESS, "amount": "lots"}, "Invalid amount"),
            ({"to": ADDRESS, "amount": "-1"}, "Invalid amount"),
            ({"to": ADDRESS, "amount": "0.5"}, "Exceeds transaction limit of 0.1 ETH"),
        ],
    )
    async def test_validation(self, client, app, mock_session, body, message):
        mock_session.post = MagicMock()

        resp = await client.post("/api/wallet/send", json=body, headers=login(app))

        assert resp.status == 400
        assert await resp.json() == {"error": message}
        mock_session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_daily_limit(self, client, app, mock_session):
        app[DailySpendAppKey].reserve(TEST_DID, Decimal("0.95"), Decimal("1.0"))
        mock_session.post = MagicMock()

        resp = await client.post(
            "/api/wallet/send",
            json={"to": ADDRESS, "amount": "0.1"},
            headers=login(app),
        )

        assert resp.status == 400
        assert await resp.json() == {"error": "Exceeds daily limit of 1.0 ETH"}
        mock_session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_rate_limit(self, client, app, mock_session):
        wallet_post(mock_session, create_mock_response(200, {"hash": "0x1"}))
        headers = login(app)

        statuses = []
        for _ in range(6):
            resp = await client.post(
                "/api/wallet/send",
                json={"to": ADDRESS, "amount": "0.01"},
                headers=headers,
            )
            statuses.append(resp.status)

        assert statuses == [200] * 5 + [429]
        assert await resp.json() == {"error": "Too many transactions"}

    @pytest.mark.asyncio
    async def test_requires_csrf(self, client, app):
        headers = login(app)
        del headers["X-CSRF-Token"]

        resp = await client.post(
            "/api/wallet/send", json={"to": ADDRESS, "amount": "0.01"}, headers=headers
        )
        assert resp.status == 403


class TestNotConfigured:
    @pytest.fixture
    def settings(self, settings):
        return settings.model_copy(update={"wallet_service_url": None})

    @pytest.mark.asyncio
    async def test_service_unavailable(self, client, app):
        resp = await client.get("/api/wallet", headers=login(app))

        assert resp.status == 503
        assert await resp.json() == {"error": "Wallet service not configured"}
