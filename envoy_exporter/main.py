"""Main entry point for the Envoy exporter.

This module handles:
- Loading configuration from environment variables (and a .env file)
- Obtaining the owner token at startup, which is fatal on failure
- Scheduling production and detail polls with APScheduler
- Serving the collected readings as Prometheus metrics
"""

import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

from envoy_exporter.cloud_auth import AuthError, CloudAuthClient
from envoy_exporter.device import DeviceEndpoint, EnvoyDevice
from envoy_exporter.exporter import EnvoyExporter, parse_listen_address
from envoy_exporter.poller import TelemetryPoller
from envoy_exporter.session import LocalSessionManager
from envoy_exporter.state import MetricsStateStore

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_LISTEN_ADDRESS = "[::1]:12345"


@dataclass
class ExporterConfig:
    """Configuration for the exporter process."""

    envoy_address: str
    envoy_serial: str
    username: str
    password: str
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    poll_interval: float = 1.0
    inverter_poll_interval: float = 60.0
    request_timeout: float = 10.0
    session_lifetime: float = 3600.0
    auth_retry_backoff: float = 60.0
    log_level: str = "INFO"


def _env_float(name: str, default: float) -> float:
    """Read a positive float from the environment, falling back to ``default``."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}, using default: {default}")
        return default
    if value <= 0:
        logger.warning(f"{name} must be greater than zero, using default: {default}")
        return default
    return value


def load_config() -> Optional[ExporterConfig]:
    """Load configuration from environment variables.

    Required:
        ENVOY_ADDRESS: Address of the Envoy on the local network
        ENVOY_SERIAL: Serial number of the Envoy
        ENVOY_USERNAME: Enlighten account email
        ENVOY_PASSWORD: Enlighten account password

    Optional:
        WEB_LISTEN_ADDRESS: Address to expose metrics on (default: [::1]:12345)
        POLL_INTERVAL: Seconds between production polls (default: 1)
        INVERTER_POLL_INTERVAL: Seconds between inverter polls (default: 60)
        REQUEST_TIMEOUT: Timeout for every outbound request in seconds (default: 10)
        SESSION_LIFETIME: Assumed lifetime of an Envoy session in seconds (default: 3600)
        AUTH_RETRY_BACKOFF: Seconds to wait after a failed login (default: 60)
        LOG_LEVEL: Logging level (default: INFO)

    Returns:
        ExporterConfig if all required config loaded, None otherwise
    """
    values = {
        "ENVOY_ADDRESS": os.getenv("ENVOY_ADDRESS", ""),
        "ENVOY_SERIAL": os.getenv("ENVOY_SERIAL", ""),
        "ENVOY_USERNAME": os.getenv("ENVOY_USERNAME", ""),
        "ENVOY_PASSWORD": os.getenv("ENVOY_PASSWORD", ""),
    }

    missing = [name for name, value in values.items() if not value]
    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        return None

    listen_address = os.getenv("WEB_LISTEN_ADDRESS", DEFAULT_LISTEN_ADDRESS)
    try:
        parse_listen_address(listen_address)
    except ValueError as e:
        logger.error(f"Invalid WEB_LISTEN_ADDRESS: {e}")
        return None

    config = ExporterConfig(
        envoy_address=values["ENVOY_ADDRESS"],
        envoy_serial=values["ENVOY_SERIAL"],
        username=values["ENVOY_USERNAME"],
        password=values["ENVOY_PASSWORD"],
        listen_address=listen_address,
        poll_interval=_env_float("POLL_INTERVAL", 1.0),
        inverter_poll_interval=_env_float("INVERTER_POLL_INTERVAL", 60.0),
        request_timeout=_env_float("REQUEST_TIMEOUT", 10.0),
        session_lifetime=_env_float("SESSION_LIFETIME", 3600.0),
        auth_retry_backoff=_env_float("AUTH_RETRY_BACKOFF", 60.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    logger.info(f"Configuration loaded: envoy={config.envoy_address}, "
                f"serial={config.envoy_serial}, "
                f"listen_address={config.listen_address}, "
                f"poll_interval={config.poll_interval}s, "
                f"inverter_poll_interval={config.inverter_poll_interval}s")
    return config


def build_scheduler(config: ExporterConfig, poller: TelemetryPoller) -> BlockingScheduler:
    """Create the scheduler with the production and detail poll jobs.

    Both jobs run once immediately. A tick that is still running when the
    next one is due delays it rather than running alongside it.
    """
    scheduler = BlockingScheduler(
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": None,
        }
    )

    now = datetime.now()
    scheduler.add_job(
        poller.poll_production,
        trigger=IntervalTrigger(seconds=config.poll_interval),
        id="production",
        name=f"Production poll every {config.poll_interval}s",
        next_run_time=now,
    )
    scheduler.add_job(
        poller.poll_detail,
        trigger=IntervalTrigger(seconds=config.inverter_poll_interval),
        id="detail",
        name=f"Inverter poll every {config.inverter_poll_interval}s",
        next_run_time=now,
    )
    return scheduler


def main() -> int:
    """Main entry point.

    1. Load .env file with python-dotenv
    2. Load and validate configuration
    3. Obtain the owner token from the Enphase cloud (exit on failure)
    4. Start Prometheus HTTP server
    5. Start scheduler with production and detail polls (blocks)

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    logger.info("Envoy exporter starting")

    load_dotenv()

    config = load_config()
    if config is None:
        logger.error("Configuration failed, exiting")
        return 1

    logging.getLogger().setLevel(getattr(logging, config.log_level, logging.INFO))

    endpoint = DeviceEndpoint(address=config.envoy_address, serial=config.envoy_serial)
    device = EnvoyDevice(endpoint, timeout=config.request_timeout)
    session = LocalSessionManager(
        CloudAuthClient(timeout=config.request_timeout),
        device,
        username=config.username,
        password=config.password,
        session_lifetime=config.session_lifetime,
        retry_backoff=config.auth_retry_backoff,
    )

    # Nothing can ever be served without an owner token
    try:
        session.ensure_owner_credential()
    except AuthError as e:
        logger.error(f"Failed to obtain owner token ({type(e).__name__}): {e}")
        return 1

    store = MetricsStateStore()
    poller = TelemetryPoller(session, device, store)

    exporter = EnvoyExporter(store, listen_address=config.listen_address)
    exporter.start()
    logger.info(f"Prometheus metrics available at http://{config.listen_address}/metrics")

    scheduler = build_scheduler(config, poller)

    logger.info("Starting scheduler, press Ctrl+C to exit")
    try:
        scheduler.start()
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        scheduler.shutdown(wait=False)

    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
