"""Prometheus metrics exporter module.

This module handles:
- Rendering the latest MetricsStateStore snapshot as Prometheus metrics
- Exposing the metrics HTTP server on the configured listen address

Metrics are produced by a custom collector at scrape time, so each scrape
reads one consistent snapshot and never waits for a poll in progress.
"""

import logging
from typing import Iterator, Optional, Tuple

from prometheus_client import REGISTRY, CollectorRegistry, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from envoy_exporter.state import MetricsStateStore

# Configure module logger
logger = logging.getLogger(__name__)


class EnvoyCollector:
    """Collector that reads the state store on every scrape.

    Exposes the following metrics:
    - enphase_envoy_production_watts: Currently produced watts
    - enphase_envoy_inverter_production_watts: Last known watts per inverter (label serial_num)
    - enphase_envoy_lifetime_watt_hours: Total watt hours produced (counter)
    - enphase_envoy_poll_success: Whether the last tick of each poll succeeded (label poll)
    - enphase_envoy_poll_timestamp_seconds: Unix timestamp of the last tick of each poll
    - enphase_envoy_poll_duration_seconds: Duration of the last tick of each poll
    """

    def __init__(self, store: MetricsStateStore):
        self._store = store

    def collect(self) -> Iterator[Metric]:
        reading = self._store.current()

        yield GaugeMetricFamily(
            "enphase_envoy_production_watts",
            "Currently produced watts",
            value=reading.production_watts,
        )

        inverters = GaugeMetricFamily(
            "enphase_envoy_inverter_production_watts",
            "Last known production for inverters",
            labels=["serial_num"],
        )
        for serial_num, watts in sorted(reading.inverters.items()):
            inverters.add_metric([serial_num], watts)
        yield inverters

        yield CounterMetricFamily(
            "enphase_envoy_lifetime_watt_hours",
            "Total amount of watt hours produced by the system",
            value=reading.lifetime_watt_hours,
        )

        statuses = sorted(self._store.poll_statuses().items())

        success = GaugeMetricFamily(
            "enphase_envoy_poll_success",
            "Whether the last poll succeeded (1=success, 0=failure)",
            labels=["poll"],
        )
        timestamp = GaugeMetricFamily(
            "enphase_envoy_poll_timestamp_seconds",
            "Unix timestamp of the last poll",
            labels=["poll"],
        )
        duration = GaugeMetricFamily(
            "enphase_envoy_poll_duration_seconds",
            "Duration of the last poll in seconds",
            labels=["poll"],
        )
        for name, status in statuses:
            success.add_metric([name], 1 if status.success else 0)
            timestamp.add_metric([name], status.timestamp)
            duration.add_metric([name], status.duration)
        yield success
        yield timestamp
        yield duration


def parse_listen_address(listen_address: str) -> Tuple[str, int]:
    """Split a listen address into host and port.

    Args:
        listen_address: Address such as "[::1]:12345", "0.0.0.0:9120" or ":9120"

    Returns:
        Tuple of (host, port); an empty host means all interfaces

    Raises:
        ValueError: If the address has no valid port

    Example:
        >>> parse_listen_address("[::1]:12345")
        ('::1', 12345)
    """
    host, sep, port = listen_address.rpartition(":")
    if not sep:
        raise ValueError(f"Listen address has no port: {listen_address}")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in listen address: {listen_address}")

    if not 0 < port_number < 65536:
        raise ValueError(f"Port out of range in listen address: {listen_address}")

    return host or "0.0.0.0", port_number


class EnvoyExporter:
    """Prometheus exporter for Envoy production data.

    Attributes:
        listen_address: Address the HTTP server binds to, e.g. "[::1]:12345"
    """

    def __init__(
        self,
        store: MetricsStateStore,
        listen_address: str = "[::1]:12345",
        registry: Optional[CollectorRegistry] = None
    ):
        """Initialize the exporter.

        Args:
            store: State store the metrics are read from
            listen_address: Address the HTTP server binds to
            registry: Optional custom registry for testing. If None, uses default REGISTRY.
        """
        self.listen_address = listen_address
        self._registry = registry if registry is not None else REGISTRY
        self._server_started = False

        self._registry.register(EnvoyCollector(store))

    def start(self) -> None:
        """Start the HTTP server to expose metrics.

        The server runs in a daemon thread and exposes metrics at /metrics.
        """
        if self._server_started:
            logger.warning("Prometheus server already started")
            return

        host, port = parse_listen_address(self.listen_address)
        logger.info(f"Starting Prometheus HTTP server on {self.listen_address}")
        start_http_server(port, addr=host, registry=self._registry)
        self._server_started = True
