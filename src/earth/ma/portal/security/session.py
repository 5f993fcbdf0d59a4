"""
Signed, typed, in-memory session store.

Sessions are stored under random 32-byte identifiers that never leave the process in raw
form. Clients only ever see ``id.signature`` where the signature is an HMAC-SHA256 of the
identifier, so a forged or tampered cookie cannot name a stored record.

Two kinds of record share the store:

- OAuth flow sessions (10 minutes) created at PAR time and consumed by the callback
- User sessions (24 hours) created after a successful token exchange

Lookups check the signature, then the record's kind, then its expiry. Every failure is
reported as ``None`` so callers cannot tell a wrong kind from an expired or unknown id.
"""

import asyncio
import base64
import contextlib
import hashlib
import hmac
import logging
import secrets
import threading
import time
from typing import Callable, Dict, Mapping, Optional

from earth.ma.portal.model.session import (
    OAuthFlowSession,
    SessionKind,
    SessionRecord,
    UserSession,
)

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_id"
OAUTH_STATE_COOKIE = "oauth_state"

OAUTH_TTL_MS = 10 * 60 * 1000
USER_TTL_MS = 24 * 60 * 60 * 1000
CLEANUP_INTERVAL_SECONDS = 60

SESSION_TTL_MS: Dict[SessionKind, int] = {
    SessionKind.oauth: OAUTH_TTL_MS,
    SessionKind.user: USER_TTL_MS,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionStore:
    def __init__(
        self,
        secret: str,
        clock: Optional[Callable[[], int]] = None,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._secret = secret.encode("utf-8")
        self._records: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock or _now_ms
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    def __len__(self) -> int:
        return len(self._records)

    # Signing

    def _mac(self, session_id: str) -> str:
        digest = hmac.new(
            self._secret, session_id.encode("utf-8"), hashlib.sha256
        ).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def sign(self, session_id: str) -> str:
        return f"{session_id}.{self._mac(session_id)}"

    def verify_signed_id(self, signed: Optional[str]) -> Optional[str]:
        """
        Return the raw session id if the signature is valid, otherwise None.

        The value is split on its last ``.``; raw ids are URL-safe base64 and never
        contain one.
        """
        if not signed:
            return None

        session_id, dot, provided_mac = signed.rpartition(".")
        if not dot or not session_id or not provided_mac:
            return None

        expected_mac = self._mac(session_id)
        if len(provided_mac) != len(expected_mac):
            return None
        if not hmac.compare_digest(
            provided_mac.encode("utf-8"), expected_mac.encode("ascii")
        ):
            return None
        return session_id

    # Storage

    def _create(self, kind: SessionKind, data) -> str:
        self.start()
        session_id = secrets.token_urlsafe(32)
        record = SessionRecord(
            kind=kind, data=data, expires_at=self._clock() + SESSION_TTL_MS[kind]
        )
        with self._lock:
            self._records[session_id] = record
        return self.sign(session_id)

    def _get(self, kind: SessionKind, signed: Optional[str]):
        session_id = self.verify_signed_id(signed)
        if session_id is None:
            return None
        with self._lock:
            record = self._records.get(session_id)
        if record is None:
            return None
        if record.kind is not kind:
            return None
        if record.expires_at <= self._clock():
            return None
        return record.data

    def _delete(self, signed: Optional[str]) -> None:
        session_id = self.verify_signed_id(signed)
        if session_id is None:
            return
        with self._lock:
            self._records.pop(session_id, None)

    def create_oauth_session(self, data: OAuthFlowSession) -> str:
        return self._create(SessionKind.oauth, data)

    def get_oauth_session(self, signed: Optional[str]) -> Optional[OAuthFlowSession]:
        return self._get(SessionKind.oauth, signed)

    def delete_oauth_session(self, signed: Optional[str]) -> None:
        self._delete(signed)

    def create_user_session(self, data: UserSession) -> str:
        return self._create(SessionKind.user, data)

    def get_user_session(self, signed: Optional[str]) -> Optional[UserSession]:
        return self._get(SessionKind.user, signed)

    def delete_user_session(self, signed: Optional[str]) -> None:
        self._delete(signed)

    def get_session_from_cookie(
        self, cookies: Mapping[str, str]
    ) -> Optional[UserSession]:
        """Resolve the user session named by the ``session_id`` cookie, if any."""
        signed = cookies.get(SESSION_COOKIE)
        if not signed:
            return None
        return self.get_user_session(signed)

    # Cleanup

    def sweep(self, now: Optional[int] = None) -> int:
        """Delete every expired record. Returns the number removed."""
        if now is None:
            now = self._clock()
        with self._lock:
            expired = [
                session_id
                for session_id, record in self._records.items()
                if record.expires_at <= now
            ]
            for session_id in expired:
                del self._records[session_id]
        return len(expired)

    def start(self) -> None:
        """Start the periodic sweep if an event loop is running. Safe to call repeatedly."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._cleanup_task
        self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            expired = self.sweep()
            if expired:
                logger.debug("Removed %d expired sessions", expired)
