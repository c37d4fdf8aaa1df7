"""
Metrics Abstraction Layer

Handlers, middleware and background tasks record metrics through the `MetricsClient` interface rather than
talking to StatsD directly, so metrics can be switched off (tests, local development) without touching call
sites.

Key Components:
- MetricsClient: Abstract interface for all metrics operations
- TelegrafCompatibilityClient: Wrapper around aio-statsd's TelegrafStatsdClient
- NoOpMetricsClient: Client that drops everything
- create_metrics_client: Factory function for backend selection

Three metric types are supported:
- Counters: Monotonic values that only increase (e.g., request counts)
- Gauges: Point-in-time values that can increase/decrease (e.g., queue size)
- Timers: Durations in seconds (e.g., request time)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from aio_statsd import TelegrafStatsdClient

logger = logging.getLogger(__name__)


class MetricsClient(ABC):
    """
    Abstract metrics client.

    Tags are passed as a plain dictionary and forwarded to the backend as StatsD/Telegraf tags.
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
            name: Metric name without the prefix (e.g., 'server.request.count')
            value: Amount to increment by (default: 1)
            tag_dict: Optional tags for metric dimensions
        """

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
            name: Metric name without the prefix (e.g., 'task.token_refresh.global_queue_count')
            value: Current value to set
            tag_dict: Optional tags for metric dimensions
        """

    @abstractmethod
    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record a timing measurement in seconds.

        Args:
            name: Metric name without the prefix (e.g., 'server.request.time')
            value: Duration in seconds
            tag_dict: Optional tags for metric dimensions
        """

    async def connect(self) -> None:
        """Open any network resources. Most backends need nothing."""

    @abstractmethod
    async def close(self) -> None:
        """Flush pending metrics and release network resources."""


class TelegrafCompatibilityClient(MetricsClient):
    """
    MetricsClient backed by an aio-statsd TelegrafStatsdClient.

    Telegraf tags are sent as part of the metric line, so tag values are stringified before they go out.
    When a prefix is set every metric name is sent as `<prefix>.<name>`.
    """

    def __init__(self, telegraf_client: TelegrafStatsdClient, prefix: Optional[str] = None):
        self.client = telegraf_client
        self.prefix = prefix

    def _name(self, name: str) -> str:
        return f"{self.prefix}.{name}" if self.prefix else name

    @staticmethod
    def _tags(tag_dict: Optional[Dict[str, Any]]) -> Dict[str, str]:
        return {str(k): str(v) for k, v in (tag_dict or {}).items()}

    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.increment(self._name(name), value, tag_dict=self._tags(tag_dict))

    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.gauge(self._name(name), value, tag_dict=self._tags(tag_dict))

    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.timer(self._name(name), value, tag_dict=self._tags(tag_dict))

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.warning(f"Error closing Telegraf client: {e}")


class NoOpMetricsClient(MetricsClient):
    """Metrics client that records nothing. Used in tests and when METRICS_BACKEND=none."""

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
    telegraf_client: Optional[TelegrafStatsdClient] = None,
    debug: bool = False,
    prefix: Optional[str] = None,
) -> MetricsClient:
    """
    Create the metrics client for a backend name.

    Args:
        backend: Backend type ('telegraf' or 'none')
        host: Telegraf/StatsD host
        port: Telegraf/StatsD port
        telegraf_client: Pre-configured TelegrafStatsdClient instance
        debug: Enable debug logging in the statsd client
        prefix: Namespace prepended to every metric name

    Raises:
        ValueError: If the backend name is not recognized
    """
    backend = backend.strip().lower()

    if backend == "telegraf":
        if telegraf_client is None:
            telegraf_client = TelegrafStatsdClient(host=host, port=port, debug=debug)
        return TelegrafCompatibilityClient(telegraf_client, prefix=prefix)

    if backend == "none":
        logger.info("Metrics collection disabled (no-op client)")
        return NoOpMetricsClient()

    raise ValueError(
        f"Invalid metrics backend: {backend}. Supported backends: 'telegraf', 'none'"
    )
