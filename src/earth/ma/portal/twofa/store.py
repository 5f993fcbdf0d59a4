"""
Redis-backed storage for two-factor state.

Key layout (all keys are per user DID):

- ``twofa:config:{did}``: encrypted TwoFactorConfig JSON, no expiry
- ``twofa:code:{did}:{purpose}``: pending email code JSON, expires with the code
- ``twofa:totp-pending:{did}``: encrypted TOTP secret awaiting its first code
- ``twofa:passkeys:{did}``: hash of credential id to credential JSON
- ``twofa:challenge:{did}:{purpose}``: outstanding WebAuthn challenge

Configurations and pending TOTP secrets carry shared secrets, so they are encrypted
with the service's Fernet key before they reach Redis.
"""

import hmac
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ValidationError
from redis.exceptions import WatchError

from earth.ma.portal.model.twofa import MethodType, TwoFactorConfig
from earth.ma.portal.security.validation import sanitize_for_log
from earth.ma.portal.twofa.config import with_default_method

logger = logging.getLogger(__name__)

PENDING_CODE_TTL_SECONDS = 10 * 60
PENDING_CODE_ATTEMPTS = 5
PENDING_TOTP_TTL_SECONDS = 10 * 60
CHALLENGE_TTL_SECONDS = 5 * 60

PURPOSE_EMAIL_SETUP = "email-setup"
PURPOSE_EMAIL_DISABLE = "email-disable"
PURPOSE_EMAIL_LOGIN = "email-login"


class TwoFactorError(Exception):
    pass


class PendingCode(BaseModel):
    code: str
    purpose: str
    address: str
    expires_at: int
    attempts_left: int = PENDING_CODE_ATTEMPTS


def _now_ms() -> int:
    return int(time.time() * 1000)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class TwoFactorStore:
    def __init__(
        self,
        redis_client: Any,
        encryption_key: Fernet,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.redis_client = redis_client
        self.encryption_key = encryption_key
        self._clock = clock or _now_ms

    # Configuration

    @staticmethod
    def _config_key(did: str) -> str:
        return f"twofa:config:{did}"

    async def get_config(self, did: str) -> Optional[TwoFactorConfig]:
        value = await self.redis_client.get(self._config_key(did))
        if value is None:
            return None
        try:
            decrypted = self.encryption_key.decrypt(value)
            return TwoFactorConfig.model_validate_json(decrypted)
        except (InvalidToken, ValidationError) as e:
            # An unreadable record must not silently turn 2FA off.
            raise TwoFactorError(
                f"Unreadable two-factor configuration for {sanitize_for_log(did)}"
            ) from e

    async def save_config(self, did: str, config: TwoFactorConfig) -> None:
        encrypted = self.encryption_key.encrypt(
            config.model_dump_json().encode("utf-8")
        )
        await self.redis_client.set(self._config_key(did), encrypted)

    async def delete_config(self, did: str) -> None:
        await self.redis_client.delete(self._config_key(did))

    async def set_default_method(self, did: str, method: MethodType) -> TwoFactorConfig:
        config = await self.get_config(did)
        if config is None:
            raise TwoFactorError("Two-factor authentication is not enabled")
        try:
            updated = with_default_method(config, method)
        except ValueError as e:
            raise TwoFactorError(f"Method {method} is not enabled") from e
        await self.save_config(did, updated)
        return updated

    # Pending email codes

    @staticmethod
    def _code_key(did: str, purpose: str) -> str:
        return f"twofa:code:{did}:{purpose}"

    async def save_pending_code(
        self, did: str, purpose: str, code: str, address: str
    ) -> PendingCode:
        """Store a code for ``purpose``, replacing any code already pending for it."""
        pending = PendingCode(
            code=code,
            purpose=purpose,
            address=address,
            expires_at=self._clock() + PENDING_CODE_TTL_SECONDS * 1000,
        )
        await self.redis_client.set(
            self._code_key(did, purpose),
            pending.model_dump_json(),
            ex=PENDING_CODE_TTL_SECONDS,
        )
        return pending

    async def verify_pending_code(
        self, did: str, purpose: str, code: str
    ) -> Optional[str]:
        """
        Check ``code`` against the pending code for ``purpose``.

        Returns the address the code was sent to on success, consuming the code. A
        mismatch uses up one attempt, and the code is discarded once it has expired or
        run out of attempts. Returns None on any failure.

        The read and the write back happen in one WATCH/MULTI transaction, so two
        concurrent requests cannot both consume a code or both spend the same attempt.
        """
        key = self._code_key(did, purpose)
        provided = (code or "").strip()

        async with self.redis_client.pipeline(transaction=True) as redis_pipe:
            while True:
                try:
                    await redis_pipe.watch(key)
                    value = await redis_pipe.get(key)
                    if value is None:
                        return None

                    address, updated, ttl = self._check_pending_code(
                        did, purpose, value, provided
                    )

                    redis_pipe.multi()
                    if updated is None:
                        redis_pipe.delete(key)
                    else:
                        redis_pipe.set(key, updated.model_dump_json(), ex=ttl)
                    await redis_pipe.execute()
                    return address
                except WatchError:
                    logger.debug(
                        "Pending %s code for %s changed, retrying",
                        purpose,
                        sanitize_for_log(did),
                    )
                    continue

    def _check_pending_code(
        self, did: str, purpose: str, value: Any, provided: str
    ) -> Tuple[Optional[str], Optional[PendingCode], int]:
        """
        Decide the outcome for one stored code.

        Returns the matched address (or None) and the record to write back with its
        TTL, where a None record means the key is deleted.
        """
        try:
            pending = PendingCode.model_validate_json(value)
        except ValidationError:
            return None, None, 0

        now = self._clock()
        if pending.expires_at <= now:
            return None, None, 0

        if hmac.compare_digest(pending.code.encode("utf-8"), provided.encode("utf-8")):
            return pending.address, None, 0

        attempts_left = pending.attempts_left - 1
        if attempts_left <= 0:
            logger.info(
                "Discarding %s code for %s after too many attempts",
                purpose,
                sanitize_for_log(did),
            )
            return None, None, 0

        remaining_ttl = max(1, (pending.expires_at - now) // 1000)
        return (
            None,
            pending.model_copy(update={"attempts_left": attempts_left}),
            remaining_ttl,
        )

    # Pending TOTP secrets

    @staticmethod
    def _totp_key(did: str) -> str:
        return f"twofa:totp-pending:{did}"

    async def save_pending_totp_secret(self, did: str, secret: str) -> None:
        await self.redis_client.set(
            self._totp_key(did),
            self.encryption_key.encrypt(secret.encode("utf-8")),
            ex=PENDING_TOTP_TTL_SECONDS,
        )

    async def get_pending_totp_secret(self, did: str) -> Optional[str]:
        value = await self.redis_client.get(self._totp_key(did))
        if value is None:
            return None
        try:
            return self.encryption_key.decrypt(value).decode("utf-8")
        except InvalidToken:
            return None

    async def delete_pending_totp_secret(self, did: str) -> None:
        await self.redis_client.delete(self._totp_key(did))

    # Passkeys

    @staticmethod
    def _passkeys_key(did: str) -> str:
        return f"twofa:passkeys:{did}"

    @staticmethod
    def _challenge_key(did: str, purpose: str) -> str:
        return f"twofa:challenge:{did}:{purpose}"

    async def add_passkey_credential(
        self, did: str, credential_id: str, credential: Dict[str, Any]
    ) -> None:
        await self.redis_client.hset(
            self._passkeys_key(did), credential_id, json.dumps(credential)
        )

    async def get_passkey_credentials(self, did: str) -> List[Dict[str, Any]]:
        stored = await self.redis_client.hgetall(self._passkeys_key(did))
        credentials = []
        for credential_id, value in (stored or {}).items():
            credential = json.loads(_text(value))
            credential.setdefault("id", _text(credential_id))
            credentials.append(credential)
        return credentials

    async def update_passkey_credential(
        self, did: str, credential_id: str, credential: Dict[str, Any]
    ) -> None:
        await self.add_passkey_credential(did, credential_id, credential)

    async def delete_passkey_credentials(self, did: str) -> None:
        await self.redis_client.delete(self._passkeys_key(did))

    async def save_passkey_challenge(
        self, did: str, purpose: str, challenge: str
    ) -> None:
        await self.redis_client.set(
            self._challenge_key(did, purpose), challenge, ex=CHALLENGE_TTL_SECONDS
        )

    async def pop_passkey_challenge(self, did: str, purpose: str) -> Optional[str]:
        """Return and forget the outstanding challenge, so each one is used once."""
        key = self._challenge_key(did, purpose)
        async with self.redis_client.pipeline() as redis_pipe:
            redis_pipe.get(key)
            redis_pipe.delete(key)
            value, _ = await redis_pipe.execute()
        if value is None:
            return None
        return _text(value)

    async def delete_all(self, did: str) -> None:
        """Remove the configuration and every piece of pending or credential state."""
        await self.redis_client.delete(
            self._config_key(did),
            self._totp_key(did),
            self._passkeys_key(did),
            *[
                self._code_key(did, purpose)
                for purpose in (
                    PURPOSE_EMAIL_SETUP,
                    PURPOSE_EMAIL_DISABLE,
                    PURPOSE_EMAIL_LOGIN,
                )
            ],
        )
