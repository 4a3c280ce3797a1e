"""Telemetry polling module.

This module handles:
- Fetching production, per-inverter and lifetime telemetry from the Envoy
- Renewing the local session once per tick when the Envoy rejects it
- Publishing parsed readings into the MetricsStateStore

A failed tick never raises and never touches the published readings; the
error is logged and recorded as the poll's status.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from envoy_exporter.cloud_auth import AuthError, UnexpectedResponseError
from envoy_exporter.device import (
    EnvoyDevice,
    PollError,
    TransientPollError,
    UnauthorizedPollError,
)
from envoy_exporter.session import LocalSessionManager
from envoy_exporter.state import MetricsStateStore, PollStatus
from envoy_exporter.telemetry import (
    TelemetryParseError,
    parse_inverters,
    parse_lifetime_watt_hours,
    parse_production,
)

# Configure module logger
logger = logging.getLogger(__name__)

PRODUCTION_PATH = "/ivp/meters/reports/production"
INVERTERS_PATH = "/api/v1/production/inverters"
LIFETIME_PATH = "/production.json"


class TelemetryPoller:
    """Polls the Envoy and publishes readings into the state store.

    Attributes:
        last_errors: Most recent error per poll name, cleared on success
    """

    def __init__(
        self,
        session: LocalSessionManager,
        device: EnvoyDevice,
        store: MetricsStateStore,
        clock=time.time,
    ):
        """Initialize the poller.

        Args:
            session: Source of local Envoy sessions
            device: Client for the local Envoy
            store: Destination for published readings
            clock: Callable returning the current Unix time
        """
        self._session = session
        self._device = device
        self._store = store
        self._clock = clock
        self.last_errors: Dict[str, Exception] = {}

    def fetch(self, path: str) -> Any:
        """GET a JSON document, renewing the session once if it is rejected.

        Args:
            path: Envoy API path

        Returns:
            Decoded JSON body

        Raises:
            AuthError: If no session can be obtained
            UnauthorizedPollError: If the Envoy also rejects the renewed session
            TransientPollError: On network errors, non-2xx statuses or invalid JSON
        """
        token = self._session.get_token()
        try:
            return self._device.get_json(path, token)
        except UnauthorizedPollError as e:
            logger.warning(f"Envoy rejected session for {path}, renewing: {e}")
            self._session.invalidate(token)

        token = self._session.get_token()
        try:
            return self._device.get_json(path, token)
        except UnauthorizedPollError as e:
            self._session.reject(token, f"Envoy rejected a renewed session: {e}")
            raise UnauthorizedPollError(f"{e} (after renewing the session)") from e

    def _run(self, name: str, path: str, parse: Callable[[Any], Any], publish: Callable[[Any], None]) -> bool:
        """Execute one tick: fetch, parse, publish, record the outcome.

        Returns:
            True if new data was published, False otherwise
        """
        start = self._clock()
        error: Optional[Exception] = None

        try:
            value = parse(self.fetch(path))

        except TelemetryParseError as e:
            error = TransientPollError(f"Could not parse {path}: {e}")
            logger.error(f"{name} poll failed (unexpected payload, possible API change): {e}")

        except UnexpectedResponseError as e:
            error = e
            logger.error(f"{name} poll failed (unexpected authentication response): {e}")

        except AuthError as e:
            error = e
            logger.warning(f"{name} poll failed (authentication error): {e}")

        except PollError as e:
            error = e
            logger.warning(f"{name} poll failed: {e}")

        except Exception as e:
            error = e
            logger.error(f"{name} poll failed (unexpected error): {e}")

        else:
            publish(value)

        end = self._clock()
        if error is None:
            self.last_errors.pop(name, None)
            self._store.record_poll(name, PollStatus(success=True, timestamp=end, duration=end - start))
            logger.debug(f"{name} poll completed in {end - start:.3f}s")
            return True

        self.last_errors[name] = error
        self._store.record_poll(
            name,
            PollStatus(success=False, timestamp=end, duration=end - start, error=str(error)),
        )
        return False

    def poll_production(self) -> bool:
        """Poll overall production watts."""
        return self._run("production", PRODUCTION_PATH, parse_production, self._store.publish_production)

    def poll_inverters(self) -> bool:
        """Poll last reported watts per inverter."""
        return self._run("inverters", INVERTERS_PATH, parse_inverters, self._store.publish_inverters)

    def poll_lifetime(self) -> bool:
        """Poll lifetime watt hours."""
        return self._run("lifetime", LIFETIME_PATH, parse_lifetime_watt_hours, self._store.publish_lifetime)

    def poll_detail(self) -> bool:
        """Poll the slowly changing data: inverters and lifetime energy.

        Returns:
            True if both polls succeeded
        """
        inverters_ok = self.poll_inverters()
        lifetime_ok = self.poll_lifetime()
        return inverters_ok and lifetime_ok
