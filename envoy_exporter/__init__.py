"""Enphase Envoy Prometheus exporter package.

Polls a local Enphase Envoy for real-time production telemetry, managing the
Enphase cloud owner token and the Envoy's local session, and exposes the
readings as Prometheus metrics.
"""

__version__ = "0.1.0"
