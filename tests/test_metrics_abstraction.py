"""
Unit Tests for Metrics Abstraction Layer

Test Coverage:
- MetricsClient interface implementations
- Backend selection via factory function
- Prefixing and tag forwarding for the Telegraf backend
- Error handling on close
"""

import pytest
from unittest.mock import AsyncMock, Mock

from aio_statsd import TelegrafStatsdClient

from earth.ma.portal.app.metrics import (
    MetricsClient,
    NoOpMetricsClient,
    TelegrafMetricsClient,
    create_metrics_client,
)


class TestMetricsClientInterface:
    """Test the abstract MetricsClient interface."""

    def test_interface_is_abstract(self):
        """MetricsClient should be abstract and not instantiable."""
        with pytest.raises(TypeError):
            MetricsClient()


class TestNoOpMetricsClient:
    """Test the NoOpMetricsClient implementation."""

    @pytest.fixture
    def noop_client(self):
        return NoOpMetricsClient()

    def test_noop_metrics(self, noop_client):
        """NoOp metrics should accept every call without raising."""
        noop_client.increment("test.counter", 1, {"tag": "value"})
        noop_client.increment("test.counter")
        noop_client.gauge("test.gauge", 42.5, {"tag": "value"})
        noop_client.timer("test.timer", 0.5)

    @pytest.mark.asyncio
    async def test_noop_lifecycle(self, noop_client):
        await noop_client.connect()
        await noop_client.close()


class TestTelegrafMetricsClient:
    """Test the Telegraf wrapper."""

    @pytest.fixture
    def telegraf(self):
        client = Mock(spec=TelegrafStatsdClient)
        client.connect = AsyncMock()
        client.close = AsyncMock()
        return client

    def test_prefix_and_tags(self, telegraf):
        client = TelegrafMetricsClient(telegraf, prefix="portal")

        client.increment("server.request.count", 1, {"status": 200})
        client.gauge("health.gauge", 3)
        client.timer("server.request.time", 0.25, {"path": "/"})

        telegraf.increment.assert_called_once_with(
            "portal.server.request.count", 1, tag_dict={"status": 200}
        )
        telegraf.gauge.assert_called_once_with("portal.health.gauge", 3, tag_dict={})
        telegraf.timer.assert_called_once_with(
            "portal.server.request.time", 0.25, tag_dict={"path": "/"}
        )

    def test_no_prefix(self, telegraf):
        TelegrafMetricsClient(telegraf).increment("x")
        telegraf.increment.assert_called_once_with("x", 1, tag_dict={})

    @pytest.mark.asyncio
    async def test_connect_and_close(self, telegraf):
        client = TelegrafMetricsClient(telegraf)
        await client.connect()
        await client.close()

        telegraf.connect.assert_awaited_once()
        telegraf.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_error_is_logged_not_raised(self, telegraf):
        telegraf.close.side_effect = OSError("socket gone")
        await TelegrafMetricsClient(telegraf).close()


class TestCreateMetricsClient:
    """Test backend selection."""

    def test_none_backend(self):
        assert isinstance(create_metrics_client("none"), NoOpMetricsClient)

    def test_backend_name_is_case_insensitive(self):
        assert isinstance(create_metrics_client("NONE"), NoOpMetricsClient)

    def test_telegraf_backend(self):
        client = create_metrics_client("telegraf", host="localhost", port=8125, prefix="p")
        assert isinstance(client, TelegrafMetricsClient)
        assert client.prefix == "p"

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Invalid metrics backend"):
            create_metrics_client("otel")
