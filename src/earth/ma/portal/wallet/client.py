import asyncio
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

from aiohttp import ClientError, ClientSession, ClientTimeout

from earth.ma.portal.security.validation import sanitize_for_log

logger = logging.getLogger(__name__)

WALLET_TIMEOUT = ClientTimeout(total=10)
TRANSACTION_TIMEOUT = ClientTimeout(total=30)


class WalletServiceError(Exception):
    pass


class WalletNotConfigured(Exception):
    pass


class WalletClient:
    """
    Client for the wallet microservice.

    Every request carries the service API key in ``X-API-Key``. Wallets are addressed
    by the user's DID; the portal never sees private keys.
    """

    def __init__(self, http_session: ClientSession, base_url: str, api_key: str) -> None:
        self.http_session = http_session
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    @staticmethod
    def from_settings(
        http_session: ClientSession, base_url: Optional[str], api_key: Optional[str]
    ) -> "WalletClient":
        if not base_url or not api_key:
            raise WalletNotConfigured("Wallet service not configured")
        return WalletClient(http_session, base_url, api_key)

    def _headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_key}

    async def get_wallet(self, did: str) -> Dict[str, Any]:
        """Fetch the wallet for ``did``. Raises WalletServiceError on any upstream failure."""
        url = f"{self.base_url}/wallet/{quote(did, safe='')}"
        try:
            async with self.http_session.get(
                url, headers=self._headers(), timeout=WALLET_TIMEOUT
            ) as resp:
                if resp.status != 200:
                    logger.warning(
                        "Wallet lookup for %s returned %s",
                        sanitize_for_log(did),
                        resp.status,
                    )
                    raise WalletServiceError("Wallet service error")
                return await resp.json(content_type=None)
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            raise WalletServiceError("Wallet service error") from e

    async def send_transaction(
        self, did: str, to: str, amount: str
    ) -> Tuple[int, Any]:
        """
        Submit a transaction and return the upstream status and JSON body unchanged.

        A 2xx answer without a JSON body still means the transaction was accepted, so
        it comes back as ``{}`` rather than an error.

        Raises:
            WalletServiceError: If the service cannot be reached, or rejects the
                transaction without a JSON body
        """
        payload = {"did": did, "to": to, "amount": amount}
        try:
            async with self.http_session.post(
                f"{self.base_url}/wallet/send",
                json=payload,
                headers=self._headers(),
                timeout=TRANSACTION_TIMEOUT,
            ) as resp:
                accepted = 200 <= resp.status < 300
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    if not accepted:
                        raise
                    data = None
                if data is None and accepted:
                    logger.warning(
                        "Wallet service accepted a transaction for %s without a JSON body",
                        sanitize_for_log(did),
                    )
                    data = {}
                return resp.status, data
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            raise WalletServiceError("Wallet service error") from e
