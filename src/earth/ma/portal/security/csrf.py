"""
Stateless CSRF tokens.

Tokens have the form ``timestamp.nonce.hmac`` where the timestamp is the creation time in
milliseconds encoded in base 36, the nonce is 16 random bytes, and the HMAC is
HMAC-SHA256 over ``timestamp.nonce`` with the configured secret. Nothing is stored
server-side: a token is valid when its HMAC matches and it is younger than the maximum age.
"""

import base64
import hashlib
import hmac
import secrets
import string
import time
from typing import Callable, Optional

TOKEN_MAX_AGE_SECONDS = 60 * 60

_BASE36_ALPHABET = string.digits + string.ascii_lowercase


def _now_ms() -> int:
    return int(time.time() * 1000)


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding only supports non-negative integers")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


class CsrfTokenCodec:
    """Mints and validates CSRF tokens for a single secret."""

    def __init__(
        self,
        secret: str,
        max_age_seconds: int = TOKEN_MAX_AGE_SECONDS,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._secret = secret.encode("utf-8")
        self._max_age_ms = max_age_seconds * 1000
        self._clock = clock or _now_ms

    def _mac(self, payload: str) -> str:
        digest = hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def generate(self) -> str:
        timestamp = to_base36(self._clock())
        nonce = secrets.token_urlsafe(16)
        payload = f"{timestamp}.{nonce}"
        return f"{payload}.{self._mac(payload)}"

    def validate(self, token: Optional[str]) -> bool:
        """
        Check a token without revealing why it failed.

        Returns False for malformed, tampered and expired tokens alike. Never raises.
        """
        if not token:
            return False

        parts = token.split(".")
        if len(parts) != 3:
            return False

        timestamp, nonce, provided_mac = parts
        if not timestamp or not nonce or not provided_mac:
            return False

        expected_mac = self._mac(f"{timestamp}.{nonce}")
        if len(expected_mac) != len(provided_mac):
            return False
        if not hmac.compare_digest(
            expected_mac.encode("ascii"), provided_mac.encode("utf-8")
        ):
            return False

        try:
            created = int(timestamp, 36)
        except ValueError:
            return False

        return self._clock() - created <= self._max_age_ms
