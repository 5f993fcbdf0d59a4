import asyncio
import contextlib
import json
import logging
from time import time
from typing import Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from earth.ma.portal.app.config import (
    CsrfCodecAppKey,
    DailySpendAppKey,
    EmailSenderAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    PasskeyCeremonyAppKey,
    RateLimiterAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
    TickHealthTaskAppKey,
    TwoFactorStoreAppKey,
)
from earth.ma.portal.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
    handle_internal_resolve,
)
from earth.ma.portal.app.handlers.oauth import (
    handle_auth_logout,
    handle_auth_me,
    handle_client_metadata,
    handle_csrf_token,
    handle_oauth_callback,
    handle_oauth_login,
)
from earth.ma.portal.app.handlers.twofa import (
    handle_email_setup,
    handle_passkey_auth_options,
    handle_passkey_register_options,
    handle_passkey_register_verify,
    handle_passkey_verify,
    handle_send_email_code,
    handle_totp_setup,
    handle_twofa_disable,
    handle_twofa_set_default,
    handle_twofa_status,
    handle_twofa_verify,
)
from earth.ma.portal.app.handlers.wallet import handle_wallet, handle_wallet_send
from earth.ma.portal.app.metrics import create_metrics_client
from earth.ma.portal.app.tasks import tick_health_task
from earth.ma.portal.model.health import HealthGauge
from earth.ma.portal.security.csrf import CsrfTokenCodec
from earth.ma.portal.security.ratelimit import RateLimiter
from earth.ma.portal.security.session import SessionStore
from earth.ma.portal.twofa.email import HttpEmailSender, LoggingEmailSender
from earth.ma.portal.twofa.passkey import WebAuthnCeremony
from earth.ma.portal.twofa.store import TwoFactorStore
from earth.ma.portal.wallet.limits import DailySpendTracker

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.debug(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    app[RedisClientAppKey] = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
    )
    app[TwoFactorStoreAppKey] = TwoFactorStore(
        app[RedisClientAppKey], settings.encryption_key
    )

    if settings.email_api_url and settings.email_api_key:
        app[EmailSenderAppKey] = HttpEmailSender(
            app[SessionAppKey],
            settings.email_api_url,
            settings.email_api_key,
            settings.email_from,
        )
    elif settings.debug:
        app[EmailSenderAppKey] = LoggingEmailSender()
    else:
        logger.warning("Email delivery is not configured; email codes are disabled")

    await app[MetricsClientAppKey].connect()

    app[SessionStoreAppKey].start()
    app[RateLimiterAppKey].start()

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    await app[SessionStoreAppKey].stop()
    await app[RateLimiterAppKey].stop()

    await app[SessionAppKey].close()
    await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Report unexpected exceptions and answer them with a JSON 500."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].womp()
        logger.exception("Unhandled error in %s %s", request.method, request.path)
        raise web.HTTPInternalServerError(
            body=json.dumps({"error": "Internal server error"}),
            content_type="application/json",
        )


@web.middleware
async def metrics_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def create_app(settings: Settings) -> web.Application:
    """
    Build the application with its routes, middlewares, in-process stores and the
    passkey ceremony.

    Resources that need a running event loop (HTTP session, Redis, the two-factor store,
    the email sender) are attached by ``background_tasks``.
    """
    app = web.Application(middlewares=[metrics_middleware, error_middleware])

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()
    app[MetricsClientAppKey] = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        prefix=settings.statsd_prefix,
        debug=settings.debug,
    )
    app[SessionStoreAppKey] = SessionStore(settings.session_secret)
    app[RateLimiterAppKey] = RateLimiter()
    app[CsrfCodecAppKey] = CsrfTokenCodec(settings.csrf_secret)
    app[DailySpendAppKey] = DailySpendTracker()
    app[PasskeyCeremonyAppKey] = WebAuthnCeremony.for_public_url(
        settings.public_url, settings.passkey_rp_name
    )

    app.add_routes([web.get("/client-metadata.json", handle_client_metadata)])

    app.add_routes(
        [
            web.get("/api/oauth/login", handle_oauth_login),
            web.get("/api/oauth/callback", handle_oauth_callback),
            web.get("/api/csrf", handle_csrf_token),
            web.get("/api/auth/me", handle_auth_me),
            web.post("/api/auth/logout", handle_auth_logout),
        ]
    )

    app.add_routes(
        [
            web.get("/api/twofa/status", handle_twofa_status),
            web.post("/api/twofa/set-default", handle_twofa_set_default),
            web.post("/api/twofa/disable", handle_twofa_disable),
            web.post("/api/twofa/totp-setup", handle_totp_setup),
            web.post("/api/twofa/email-setup", handle_email_setup),
            web.post(
                "/api/twofa/passkey-register-options", handle_passkey_register_options
            ),
            web.post(
                "/api/twofa/passkey-register-verify", handle_passkey_register_verify
            ),
            web.post("/api/twofa/send-email-code", handle_send_email_code),
            web.post("/api/twofa/verify", handle_twofa_verify),
            web.post("/api/twofa/passkey-auth-options", handle_passkey_auth_options),
            web.post("/api/twofa/passkey-verify", handle_passkey_verify),
        ]
    )

    app.add_routes(
        [
            web.get("/api/wallet", handle_wallet),
            web.post("/api/wallet/send", handle_wallet_send),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.get("/internal/api/resolve", handle_internal_resolve),
        ]
    )

    return app


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    app = create_app(settings)
    app.cleanup_ctx.append(background_tasks)

    return app
