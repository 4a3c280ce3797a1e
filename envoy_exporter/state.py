"""Shared metrics state module.

Holds the latest ProductionReading for the metrics endpoint. Pollers are the
only writers; every write builds a new immutable snapshot and swaps it in
under a short-held lock, so readers always see a complete reading.
"""

import dataclasses
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from envoy_exporter.telemetry import ProductionReading


@dataclass(frozen=True)
class PollStatus:
    """Outcome of the most recent tick of one poll.

    Attributes:
        success: Whether the tick published new data
        timestamp: Unix timestamp at the end of the tick
        duration: Seconds the tick took
        error: Error message of a failed tick
    """
    success: bool
    timestamp: float
    duration: float
    error: Optional[str] = None


class MetricsStateStore:
    """Concurrency-safe holder of the latest published readings."""

    def __init__(self):
        self._lock = threading.Lock()
        self._reading = ProductionReading()
        self._statuses: Dict[str, PollStatus] = {}

    def publish(self, reading: ProductionReading) -> None:
        """Replace the whole snapshot."""
        with self._lock:
            self._reading = reading

    def publish_production(self, watts: float) -> None:
        with self._lock:
            self._reading = dataclasses.replace(self._reading, production_watts=watts, has_data=True)

    def publish_inverters(self, readings: Dict[str, float]) -> None:
        """Replace the per-inverter readings as a unit."""
        with self._lock:
            self._reading = dataclasses.replace(self._reading, inverters=dict(readings))

    def publish_lifetime(self, watt_hours: float) -> None:
        with self._lock:
            self._reading = dataclasses.replace(self._reading, lifetime_watt_hours=watt_hours)

    def record_poll(self, name: str, status: PollStatus) -> None:
        with self._lock:
            statuses = dict(self._statuses)
            statuses[name] = status
            self._statuses = statuses

    def current(self) -> ProductionReading:
        """Return the latest snapshot (the empty reading before the first poll)."""
        with self._lock:
            return self._reading

    def current_production(self) -> float:
        return self.current().production_watts

    def current_inverter_readings(self) -> Dict[str, float]:
        return dict(self.current().inverters)

    def current_lifetime_watt_hours(self) -> float:
        return self.current().lifetime_watt_hours

    def poll_status(self, name: str) -> Optional[PollStatus]:
        with self._lock:
            return self._statuses.get(name)

    def poll_statuses(self) -> Dict[str, PollStatus]:
        with self._lock:
            return dict(self._statuses)
