"""
Metrics Abstraction Layer for the Ma Earth portal

This module provides a small vendor-agnostic metrics interface so handlers and the
outbound request chain never talk to a metrics backend directly.

Key Components:
- MetricsClient: Abstract interface for all metrics operations
- TelegrafMetricsClient: Wrapper around aio_statsd's TelegrafStatsdClient
- NoOpMetricsClient: No-operation client for disabled metrics and tests
- create_metrics_client: Factory function for backend selection

Three metric types are supported:
- Counters: Monotonic values that only increase (e.g., request counts)
- Gauges: Point-in-time values that can increase/decrease (e.g., health gauge)
- Timers: Durations in seconds (e.g., request duration)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from aio_statsd import TelegrafStatsdClient

logger = logging.getLogger(__name__)

METRICS_BACKENDS = ("telegraf", "none")


class MetricsClient(ABC):
    """
    Abstract metrics client interface.

    Tags are passed as a plain dictionary and rendered by the backend.
    """

    @abstractmethod
    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Increment a counter metric by the specified value.

        Args:
            name: Metric name (e.g., 'portal.server.request.count')
            value: Amount to increment by (default: 1)
            tag_dict: Optional tags for metric dimensions
        """
        pass

    @abstractmethod
    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Set a gauge metric to the specified value.

        Args:
            name: Metric name (e.g., 'portal.health.gauge')
            value: Current value to set
            tag_dict: Optional tags for metric dimensions
        """
        pass

    @abstractmethod
    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record a duration in seconds.

        Args:
            name: Metric name (e.g., 'portal.server.request.time')
            value: Duration in seconds
            tag_dict: Optional tags for metric dimensions
        """
        pass

    async def connect(self) -> None:
        """Open any network resources the backend needs."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Flush pending metrics and close network resources."""
        pass


class TelegrafMetricsClient(MetricsClient):
    """Delegates to a TelegrafStatsdClient, which sends tagged StatsD lines over UDP."""

    def __init__(self, telegraf_client: TelegrafStatsdClient, prefix: str = ""):
        self.client = telegraf_client
        self.prefix = prefix

    def _name(self, name: str) -> str:
        if self.prefix:
            return f"{self.prefix}.{name}"
        return name

    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.increment(self._name(name), value, tag_dict=tag_dict or {})

    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.gauge(self._name(name), value, tag_dict=tag_dict or {})

    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.timer(self._name(name), value, tag_dict=tag_dict or {})

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        try:
            await self.client.close()
        except OSError as e:
            logger.warning(f"Error closing Telegraf client: {e}")


class NoOpMetricsClient(MetricsClient):
    """Accepts every metric and records nothing."""

    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    async def close(self) -> None:
        pass


def create_metrics_client(
    backend: str,
    host: str = "localhost",
    port: int = 8125,
    prefix: str = "",
    debug: bool = False,
) -> MetricsClient:
    """
    Create the metrics client for a backend name.

    Args:
        backend: Backend type ('telegraf' or 'none')
        host: Telegraf/StatsD host
        port: Telegraf/StatsD port
        prefix: Prefix prepended to every metric name
        debug: Enable aio_statsd debug logging

    Returns:
        MetricsClient: Configured metrics client instance, not yet connected

    Raises:
        ValueError: If the backend type is unknown
    """
    backend = backend.lower()

    if backend == "telegraf":
        telegraf_client = TelegrafStatsdClient(host=host, port=port, debug=debug)
        return TelegrafMetricsClient(telegraf_client, prefix=prefix)

    elif backend == "none":
        logger.info("Metrics collection disabled (no-op client)")
        return NoOpMetricsClient()

    raise ValueError(
        f"Invalid metrics backend: {backend}. "
        f"Supported backends: {', '.join(METRICS_BACKENDS)}"
    )
