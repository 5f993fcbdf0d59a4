import asyncio
import logging
from typing import NoReturn

from aiohttp import web

from earth.ma.portal.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RateLimiterAppKey,
    SessionStoreAppKey,
)

logger = logging.getLogger(__name__)

HEALTH_TICK_SECONDS = 30


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the health score by 1 each time.

    Each tick also reports the gauge and the size of the in-memory stores.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    metrics_client = app[MetricsClientAppKey]
    while True:
        await health_gauge.tick()
        metrics_client.gauge("health.gauge", health_gauge.value)
        metrics_client.gauge("sessions.count", len(app[SessionStoreAppKey]))
        metrics_client.gauge("ratelimit.buckets", len(app[RateLimiterAppKey]))
        await asyncio.sleep(HEALTH_TICK_SECONDS)
