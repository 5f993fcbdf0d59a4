"""
Two-Factor Authentication Handlers

Any signed-in session:
- GET /api/twofa/status - Enabled methods, default method and masked email

Settings endpoints (verified session required):
- POST /api/twofa/set-default - Choose the default method
- POST /api/twofa/disable - Remove one method, or every method
- POST /api/twofa/totp-setup - Enroll an authenticator app (init, then verify)
- POST /api/twofa/email-setup - Enroll an email address (send, then verify)
- POST /api/twofa/passkey-register-options - Start a passkey registration
- POST /api/twofa/passkey-register-verify - Finish a passkey registration

Login gate (the session may still be unverified):
- POST /api/twofa/send-email-code - Email a login code
- POST /api/twofa/verify - Check a TOTP or email code
- POST /api/twofa/passkey-auth-options - Start a passkey assertion
- POST /api/twofa/passkey-verify - Finish a passkey assertion

Every POST requires the X-CSRF-Token header and counts against the per-user
``twofa:{did}`` rate limit. A successful login-gate check replaces the session with a
verified one.
"""

import logging
import time
from typing import Optional

from aiohttp import web

from earth.ma.portal.app.config import (
    EmailSenderAppKey,
    MetricsClientAppKey,
    PasskeyCeremonyAppKey,
    TwoFactorStoreAppKey,
)
from earth.ma.portal.app.handlers.helpers import (
    json_error,
    read_json,
    replace_user_session,
    require_csrf,
    require_rate_limit,
    require_session,
)
from earth.ma.portal.model.session import UserSession
from earth.ma.portal.model.twofa import (
    METHOD_TYPES,
    EmailMethodConfig,
    PasskeyMethodConfig,
    TotpMethodConfig,
    TwoFactorConfig,
)
from earth.ma.portal.security.validation import sanitize_for_log, validate_email
from earth.ma.portal.twofa.codes import (
    TOTP_DIGITS,
    generate_email_otp,
    generate_totp_secret,
    get_totp_uri,
    verify_totp_code,
)
from earth.ma.portal.twofa.config import (
    add_method,
    get_enabled_methods,
    get_method_config,
    remove_method,
)
from earth.ma.portal.twofa.email import EmailDeliveryError, send_email_otp
from earth.ma.portal.twofa.passkey import (
    PasskeyCeremony,
    PasskeyVerificationError,
    find_credential,
)
from earth.ma.portal.twofa.store import (
    PURPOSE_EMAIL_DISABLE,
    PURPOSE_EMAIL_LOGIN,
    PURPOSE_EMAIL_SETUP,
    TwoFactorStore,
)

logger = logging.getLogger(__name__)

TWOFA_RATE_LIMIT = 10

CHALLENGE_REGISTER = "register"
CHALLENGE_AUTHENTICATE = "authenticate"


def _now_ms() -> int:
    return int(time.time() * 1000)


def mask_email(address: str) -> str:
    """``alice@example.com`` becomes ``a***@example.com``."""
    local, _, domain = address.partition("@")
    return f"{local[:1]}***@{domain}"


def status_payload(config: Optional[TwoFactorConfig]):
    if config is None:
        return {"enabled": False}

    methods = []
    for method in config.methods:
        entry = {"type": method.type, "enabled_at": method.enabled_at}
        if isinstance(method, EmailMethodConfig):
            entry["address"] = mask_email(method.address)
        methods.append(entry)

    return {
        "enabled": True,
        "default_method": config.default_method,
        "methods": methods,
        "enabled_methods": get_enabled_methods(config),
    }


def _guard_mutation(request: web.Request, verified: bool) -> UserSession:
    session = require_session(request, verified=verified)
    require_csrf(request)
    require_rate_limit(request, f"twofa:{session.user_did}", TWOFA_RATE_LIMIT)
    return session


def _code_from(body) -> str:
    code = str(body.get("code") or "").strip()
    if len(code) != TOTP_DIGITS:
        raise json_error(400, "Code required")
    return code


def _passkey_ceremony(request: web.Request) -> PasskeyCeremony:
    ceremony = request.app.get(PasskeyCeremonyAppKey)
    if ceremony is None:
        raise json_error(503, "Passkeys are not available")
    return ceremony


async def _email_code(
    request: web.Request, did: str, purpose: str, address: str
) -> None:
    """Generate, store and send an email code, mapping delivery failures to HTTP errors."""
    sender = request.app.get(EmailSenderAppKey)
    if sender is None:
        raise json_error(503, "Email delivery is not configured")

    store = request.app[TwoFactorStoreAppKey]
    code = generate_email_otp()
    await store.save_pending_code(did, purpose, code, address)

    try:
        await send_email_otp(sender, address, code)
    except EmailDeliveryError:
        logger.exception(
            "Failed to send %s code to %s", purpose, sanitize_for_log(address)
        )
        raise json_error(502, "Failed to send verification email")


def _mark_verified(
    request: web.Request, session: UserSession, method: str
) -> web.Response:
    request.app[MetricsClientAppKey].increment(
        "twofa.verify.succeeded", 1, tag_dict={"method": method}
    )
    response = web.json_response({"success": True})
    replace_user_session(
        request, response, session.model_copy(update={"verified": True})
    )
    return response


async def _require_config(store: TwoFactorStore, did: str) -> TwoFactorConfig:
    config = await store.get_config(did)
    if config is None:
        raise json_error(400, "2FA not enabled")
    return config


async def handle_twofa_status(request: web.Request):
    """
    Report the user's two-factor methods.

    Unverified sessions may call this too: the verification page needs to know which
    methods to offer.
    """
    session = require_session(request)
    config = await request.app[TwoFactorStoreAppKey].get_config(session.user_did)
    return web.json_response(status_payload(config))


async def handle_twofa_set_default(request: web.Request):
    session = _guard_mutation(request, verified=True)
    body = await read_json(request)

    method = body.get("method")
    if method not in METHOD_TYPES:
        raise json_error(400, "Invalid method")

    store = request.app[TwoFactorStoreAppKey]
    config = await _require_config(store, session.user_did)
    if get_method_config(config, method) is None:
        raise json_error(400, f"Method {method} is not enabled")

    await store.set_default_method(session.user_did, method)
    return web.json_response({"success": True})


async def handle_twofa_disable(request: web.Request):
    """
    Remove a two-factor method.

    TOTP removal needs a current code. Email removal is two calls: ``step: send-code``
    emails a code to the enrolled address, then the code confirms the removal. Passkey
    removal needs no code. Without a ``method`` every method is removed.
    """
    session = _guard_mutation(request, verified=True)
    did = session.user_did
    store = request.app[TwoFactorStoreAppKey]

    config = await _require_config(store, did)
    body = await read_json(request)

    method = body.get("method")
    if method is not None and method not in METHOD_TYPES:
        raise json_error(400, "Invalid method")

    if method is None:
        await store.delete_all(did)
        logger.info("Disabled all two-factor methods for %s", sanitize_for_log(did))
        return web.json_response({"success": True})

    method_config = get_method_config(config, method)
    if method_config is None:
        raise json_error(400, f"Method {method} is not enabled")

    if method == "email" and body.get("step") == "send-code":
        await _email_code(request, did, PURPOSE_EMAIL_DISABLE, method_config.address)
        return web.json_response({"success": True})

    if method == "totp":
        if not verify_totp_code(method_config.secret, _code_from(body)):
            raise json_error(400, "Invalid code")
    elif method == "email":
        code = _code_from(body)
        if await store.verify_pending_code(did, PURPOSE_EMAIL_DISABLE, code) is None:
            raise json_error(400, "Invalid or expired code")

    updated = remove_method(config, method)
    if updated is None:
        await store.delete_all(did)
    else:
        if method == "passkey":
            await store.delete_passkey_credentials(did)
        await store.save_config(did, updated)

    logger.info("Disabled %s two-factor for %s", method, sanitize_for_log(did))
    return web.json_response({"success": True})


async def handle_totp_setup(request: web.Request):
    """
    Enroll an authenticator app.

    ``step: init`` creates a secret, kept encrypted and pending until ``step: verify``
    proves the app produces matching codes.
    """
    session = _guard_mutation(request, verified=True)
    did = session.user_did
    store = request.app[TwoFactorStoreAppKey]
    body = await read_json(request)

    step = body.get("step")
    if step == "init":
        secret = generate_totp_secret()
        await store.save_pending_totp_secret(did, secret)
        return web.json_response(
            {"secret": secret, "uri": get_totp_uri(secret, session.user_handle)}
        )

    if step != "verify":
        raise json_error(400, "Invalid step")

    code = _code_from(body)
    secret = await store.get_pending_totp_secret(did)
    if secret is None:
        raise json_error(400, "Setup expired, please start again")
    if not verify_totp_code(secret, code):
        raise json_error(400, "Invalid code")

    config = add_method(
        await store.get_config(did),
        TotpMethodConfig(secret=secret, enabled_at=_now_ms()),
    )
    await store.save_config(did, config)
    await store.delete_pending_totp_secret(did)

    logger.info("Enabled TOTP for %s", sanitize_for_log(did))
    return web.json_response({"success": True})


async def handle_email_setup(request: web.Request):
    session = _guard_mutation(request, verified=True)
    did = session.user_did
    store = request.app[TwoFactorStoreAppKey]
    body = await read_json(request)

    step = body.get("step")
    if step == "send":
        email = str(body.get("email") or "").strip()
        if not validate_email(email):
            raise json_error(400, "Invalid email address")
        await _email_code(request, did, PURPOSE_EMAIL_SETUP, email)
        return web.json_response({"success": True})

    if step != "verify":
        raise json_error(400, "Invalid step")

    address = await store.verify_pending_code(did, PURPOSE_EMAIL_SETUP, _code_from(body))
    if address is None:
        raise json_error(400, "Invalid or expired code")

    config = add_method(
        await store.get_config(did),
        EmailMethodConfig(address=address, enabled_at=_now_ms()),
    )
    await store.save_config(did, config)

    logger.info("Enabled email two-factor for %s", sanitize_for_log(did))
    return web.json_response({"success": True})


async def handle_passkey_register_options(request: web.Request):
    session = _guard_mutation(request, verified=True)
    ceremony = _passkey_ceremony(request)
    store = request.app[TwoFactorStoreAppKey]

    credentials = await store.get_passkey_credentials(session.user_did)
    options = ceremony.registration_options(
        session.user_did, session.user_handle, credentials
    )
    await store.save_passkey_challenge(
        session.user_did, CHALLENGE_REGISTER, options.challenge
    )
    return web.json_response(options.options)


async def handle_passkey_register_verify(request: web.Request):
    session = _guard_mutation(request, verified=True)
    did = session.user_did
    ceremony = _passkey_ceremony(request)
    store = request.app[TwoFactorStoreAppKey]
    body = await read_json(request)

    challenge = await store.pop_passkey_challenge(did, CHALLENGE_REGISTER)
    if challenge is None:
        raise json_error(400, "Challenge expired, please try again")

    try:
        credential = ceremony.verify_registration(body, challenge)
    except PasskeyVerificationError as e:
        logger.info("Passkey registration rejected for %s: %s", sanitize_for_log(did), e)
        raise json_error(400, "Registration failed")

    await store.add_passkey_credential(
        did, credential.credential_id, credential.to_dict()
    )

    config = await store.get_config(did)
    if get_method_config(config, "passkey") is None:
        config = add_method(config, PasskeyMethodConfig(enabled_at=_now_ms()))
        await store.save_config(did, config)

    logger.info("Registered passkey for %s", sanitize_for_log(did))
    return web.json_response({"success": True})


async def handle_send_email_code(request: web.Request):
    session = _guard_mutation(request, verified=False)
    store = request.app[TwoFactorStoreAppKey]

    config = await _require_config(store, session.user_did)
    email_config = get_method_config(config, "email")
    if email_config is None:
        raise json_error(400, "Email 2FA not configured")

    await _email_code(
        request, session.user_did, PURPOSE_EMAIL_LOGIN, email_config.address
    )
    return web.json_response({"success": True})


async def handle_twofa_verify(request: web.Request):
    """
    Check a login code.

    ``method`` defaults to the user's default method; passkeys use the passkey
    endpoints instead.
    """
    session = _guard_mutation(request, verified=False)
    did = session.user_did
    store = request.app[TwoFactorStoreAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    config = await _require_config(store, did)
    body = await read_json(request)

    method = body.get("method") or config.default_method
    code = _code_from(body)

    if method == "totp":
        totp_config = get_method_config(config, "totp")
        if totp_config is None:
            raise json_error(400, "TOTP not configured")
        verified = verify_totp_code(totp_config.secret, code)
    elif method == "email":
        if get_method_config(config, "email") is None:
            raise json_error(400, "Email 2FA not configured")
        verified = (
            await store.verify_pending_code(did, PURPOSE_EMAIL_LOGIN, code) is not None
        )
    else:
        raise json_error(400, "Invalid method")

    if not verified:
        metrics_client.increment("twofa.verify.failed", 1, tag_dict={"method": method})
        raise json_error(400, "Invalid code")

    return _mark_verified(request, session, method)


async def handle_passkey_auth_options(request: web.Request):
    session = _guard_mutation(request, verified=False)
    ceremony = _passkey_ceremony(request)
    store = request.app[TwoFactorStoreAppKey]

    credentials = await store.get_passkey_credentials(session.user_did)
    if not credentials:
        raise json_error(400, "No passkeys registered")

    options = ceremony.authentication_options(credentials)
    await store.save_passkey_challenge(
        session.user_did, CHALLENGE_AUTHENTICATE, options.challenge
    )
    return web.json_response(options.options)


async def handle_passkey_verify(request: web.Request):
    session = _guard_mutation(request, verified=False)
    did = session.user_did
    ceremony = _passkey_ceremony(request)
    store = request.app[TwoFactorStoreAppKey]
    body = await read_json(request)

    challenge = await store.pop_passkey_challenge(did, CHALLENGE_AUTHENTICATE)
    if challenge is None:
        raise json_error(400, "Challenge expired, please try again")

    credentials = await store.get_passkey_credentials(did)
    credential = find_credential(credentials, body.get("id"))
    if credential is None:
        raise json_error(400, "Unknown passkey")

    try:
        sign_count = ceremony.verify_authentication(body, challenge, credential)
    except PasskeyVerificationError as e:
        logger.info("Passkey assertion rejected for %s: %s", sanitize_for_log(did), e)
        request.app[MetricsClientAppKey].increment(
            "twofa.verify.failed", 1, tag_dict={"method": "passkey"}
        )
        raise json_error(400, "Passkey verification failed")

    await store.update_passkey_credential(
        did, credential["id"], dict(credential, sign_count=sign_count)
    )
    return _mark_verified(request, session, "passkey")
