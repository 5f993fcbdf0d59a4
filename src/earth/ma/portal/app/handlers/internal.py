import logging

from aiohttp import web

from earth.ma.portal.app.config import (
    HealthGaugeAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from earth.ma.portal.resolve.handle import ResolutionError, resolve_subject

logger = logging.getLogger(__name__)


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    if await health_gauge.is_healthy():
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)


async def handle_internal_resolve(request: web.Request):
    """Resolve each ``subject`` query value (handle or DID); unresolvable ones are left out."""
    subjects = request.query.getall("subject", [])
    if len(subjects) == 0:
        return web.json_response([])

    settings = request.app[SettingsAppKey]

    results = []
    for subject in subjects:
        try:
            resolved_subject = await resolve_subject(
                request.app[SessionAppKey],
                subject,
                settings.handle_resolver_url,
                settings.plc_directory_url,
            )
        except ResolutionError as e:
            logger.info("Could not resolve subject: %s", e)
            continue
        results.append(resolved_subject.model_dump())

    return web.json_response(results)
