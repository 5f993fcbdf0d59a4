"""Delivery of email one-time codes through a transactional email HTTP API."""

from abc import ABC, abstractmethod
import asyncio
import logging
from typing import List, Optional, Tuple

from aiohttp import ClientError, ClientSession, ClientTimeout

from earth.ma.portal.security.validation import sanitize_for_log

logger = logging.getLogger(__name__)

EMAIL_TIMEOUT = ClientTimeout(total=10)
EMAIL_SUBJECT = "Your Ma Earth verification code"


class EmailDeliveryError(Exception):
    pass


class EmailSender(ABC):
    """Sends a plain-text message to a single recipient."""

    @abstractmethod
    async def send(self, to: str, subject: str, text: str) -> None:
        """Deliver the message or raise EmailDeliveryError."""
        pass


class HttpEmailSender(EmailSender):
    """
    Sends mail by POSTing JSON to a provider endpoint with a bearer API key.

    The request body is ``{"from", "to", "subject", "text"}``, the shape accepted by the
    common transactional email APIs. Any non-2xx response is a delivery failure.
    """

    def __init__(
        self, http_session: ClientSession, api_url: str, api_key: str, sender: str
    ) -> None:
        self.http_session = http_session
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender

    async def send(self, to: str, subject: str, text: str) -> None:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {"from": self.sender, "to": [to], "subject": subject, "text": text}
        try:
            async with self.http_session.post(
                self.api_url, json=payload, headers=headers, timeout=EMAIL_TIMEOUT
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    raise EmailDeliveryError(
                        f"Email provider returned {resp.status}: {body[:200]}"
                    )
        except (ClientError, asyncio.TimeoutError) as e:
            raise EmailDeliveryError("Email provider unreachable") from e


class LoggingEmailSender(EmailSender):
    """
    Development sender: records messages and logs them instead of sending.

    Only used in debug mode, so the message text, code included, goes to the debug log
    for a developer to complete an email sign-in.
    """

    def __init__(self) -> None:
        self.outbox: List[Tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, text: str) -> None:
        self.outbox.append((to, subject, text))
        logger.warning(
            "Email delivery is not configured; dropped message to %s",
            sanitize_for_log(to),
        )
        logger.debug("Dropped message to %s: %s", sanitize_for_log(to), text)


def email_otp_body(code: str) -> str:
    return (
        f"Your verification code is {code}.\n\n"
        "It expires in 10 minutes. If you did not request this code, you can ignore "
        "this email."
    )


async def send_email_otp(
    sender: Optional[EmailSender], address: str, code: str
) -> None:
    if sender is None:
        raise EmailDeliveryError("Email delivery is not configured")
    await sender.send(address, EMAIL_SUBJECT, email_otp_body(code))
    logger.info("Sent verification code to %s", sanitize_for_log(address))
