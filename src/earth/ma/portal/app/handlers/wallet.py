"""
Wallet Handlers

- GET /api/wallet - The signed-in user's wallet, as reported by the wallet service
- POST /api/wallet/send - Submit a transaction ``{to, amount}``

Both require a verified session. Sends are CSRF-checked, rate limited per user and held
to the configured per-transaction and daily limits before they reach the wallet service.
"""

import logging

from aiohttp import web

from earth.ma.portal.app.config import (
    DailySpendAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from earth.ma.portal.app.handlers.helpers import (
    json_error,
    read_json,
    require_csrf,
    require_rate_limit,
    require_session,
)
from earth.ma.portal.security.validation import sanitize_for_log, validate_eth_address
from earth.ma.portal.wallet.client import (
    WalletClient,
    WalletNotConfigured,
    WalletServiceError,
)
from earth.ma.portal.wallet.limits import AmountError, parse_amount

logger = logging.getLogger(__name__)


def wallet_client(request: web.Request) -> WalletClient:
    settings = request.app[SettingsAppKey]
    try:
        return WalletClient.from_settings(
            request.app[SessionAppKey],
            settings.wallet_service_url,
            settings.wallet_api_key,
        )
    except WalletNotConfigured as e:
        raise json_error(503, str(e))


async def handle_wallet(request: web.Request):
    session = require_session(request, verified=True)
    client = wallet_client(request)

    try:
        wallet = await client.get_wallet(session.user_did)
    except WalletServiceError as e:
        raise json_error(502, str(e))

    return web.json_response(wallet)


async def handle_wallet_send(request: web.Request):
    """
    Submit a transaction to the wallet service.

    The amount is reserved against the daily limit before the upstream call and given
    back if the wallet service rejects the transaction or cannot be reached. The wallet
    service's status and JSON body are passed through unchanged.
    """
    settings = request.app[SettingsAppKey]
    session = require_session(request, verified=True)
    did = session.user_did

    require_csrf(request)
    require_rate_limit(
        request,
        f"tx:{did}",
        settings.rate_limit_transaction,
        message="Too many transactions",
    )

    client = wallet_client(request)
    body = await read_json(request)

    to = str(body.get("to") or "").strip()
    if not validate_eth_address(to):
        raise json_error(400, "Invalid Ethereum address")

    raw_amount = str(body.get("amount") or "0").strip()
    try:
        amount = parse_amount(raw_amount)
    except AmountError as e:
        raise json_error(400, str(e))

    if amount > settings.max_transaction_amount:
        raise json_error(
            400,
            f"Exceeds transaction limit of {settings.max_transaction_amount} ETH",
        )

    daily_spend = request.app[DailySpendAppKey]
    if not daily_spend.reserve(did, amount, settings.max_daily_amount):
        raise json_error(400, f"Exceeds daily limit of {settings.max_daily_amount} ETH")

    metrics_client = request.app[MetricsClientAppKey]
    try:
        status, data = await client.send_transaction(did, to, raw_amount)
    except WalletServiceError as e:
        daily_spend.release(did, amount)
        metrics_client.increment("wallet.send.failed", 1)
        raise json_error(502, str(e))

    if status < 200 or status >= 300:
        daily_spend.release(did, amount)
        metrics_client.increment("wallet.send.failed", 1)
        logger.warning(
            "Wallet service rejected transaction for %s with %s",
            sanitize_for_log(did),
            status,
        )
    else:
        metrics_client.increment("wallet.send.succeeded", 1)

    return web.json_response(data, status=status)
