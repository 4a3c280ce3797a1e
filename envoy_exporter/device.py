"""Envoy gateway HTTP transport module.

This module handles:
- Exchanging an owner token for a local session on the Envoy (/auth/check_jwt)
- Authenticated GET requests against the Envoy's local JSON API
- Mapping transport and HTTP failures onto AuthError / PollError

The Envoy serves its API over HTTPS with a self-signed certificate, so
certificate verification is disabled for this session only.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import requests
import urllib3
from bs4 import BeautifulSoup

from envoy_exporter.cloud_auth import (
    AuthNetworkError,
    InvalidCredentialsError,
    OwnerCredential,
    UnexpectedResponseError,
)

# Configure module logger
logger = logging.getLogger(__name__)

SESSION_COOKIE = "sessionId"


class PollError(Exception):
    """Base exception for telemetry request errors."""
    pass


class UnauthorizedPollError(PollError):
    """Exception raised when the Envoy rejects the local session (HTTP 401/403)."""
    pass


class TransientPollError(PollError):
    """Exception raised for network errors, non-2xx statuses and unreadable bodies."""
    pass


@dataclass(frozen=True)
class DeviceEndpoint:
    """Address and serial number of the on-premises Envoy.

    Attributes:
        address: Host name or IP address of the Envoy
        serial: Envoy serial number
    """
    address: str
    serial: str

    @property
    def base_url(self) -> str:
        return f"https://{self.address}"


@dataclass(frozen=True)
class LocalSessionToken:
    """Short-lived session accepted by one Envoy.

    Attributes:
        value: Session cookie value, or the owner token when the Envoy
            accepts bearer authentication only
        scheme: "cookie" or "bearer"
        address: Address of the Envoy the session was issued by
        serial: Serial number of the Envoy the session was issued by
        expires_at: Unix timestamp after which the session must be renewed
    """
    value: str
    scheme: str
    address: str
    serial: str
    expires_at: float

    def remaining(self, now: float) -> float:
        return self.expires_at - now

    def request_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments that authenticate a requests call with this session."""
        if self.scheme == "cookie":
            return {"cookies": {SESSION_COOKIE: self.value}}
        return {"headers": {"Authorization": f"Bearer {self.value}"}}

    def __repr__(self) -> str:
        return (f"LocalSessionToken(scheme={self.scheme!r}, address={self.address!r}, "
                f"serial={self.serial!r}, expires_at={self.expires_at!r})")


class EnvoyDevice:
    """HTTP client for the local Envoy API.

    Attributes:
        endpoint: Envoy address and serial number
        timeout: Timeout in seconds applied to every request
    """

    CHECK_ACCESS_PATH = "/auth/check_jwt"

    def __init__(
        self,
        endpoint: DeviceEndpoint,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the device client.

        Args:
            endpoint: Envoy address and serial number
            timeout: Request timeout in seconds
            session: Optional requests session, mainly for testing
        """
        self.endpoint = endpoint
        self.timeout = timeout

        if session is None:
            session = requests.Session()
            session.verify = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        self.session = session

    def check_access(self, credential: OwnerCredential) -> Tuple[str, str]:
        """Exchange an owner token for a local session.

        Args:
            credential: Owner credential issued for this Envoy

        Returns:
            Tuple of (session value, scheme) where scheme is "cookie" or "bearer"

        Raises:
            InvalidCredentialsError: If the Envoy rejects the owner token
            AuthNetworkError: If the Envoy cannot be reached
            UnexpectedResponseError: If the Envoy's answer cannot be understood
        """
        if credential.serial != self.endpoint.serial:
            raise ValueError(
                f"Owner token for {credential.serial} cannot be used with Envoy {self.endpoint.serial}"
            )

        url = f"{self.endpoint.base_url}{self.CHECK_ACCESS_PATH}"
        logger.debug(f"Checking owner token with Envoy at {self.endpoint.address}")

        try:
            response = self.session.get(
                url,
                headers={"Authorization": f"Bearer {credential.token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthNetworkError(f"Envoy token check failed: {e}") from e

        # Sessions are passed explicitly per request, never via the jar
        session_id = response.cookies.get(SESSION_COOKIE)
        self.session.cookies.clear()

        if response.status_code in (401, 403):
            raise InvalidCredentialsError(
                f"Envoy rejected owner token with status {response.status_code}"
            )
        if not 200 <= response.status_code < 300:
            raise UnexpectedResponseError(f"Envoy token check returned status {response.status_code}")

        if session_id:
            return session_id, "cookie"

        # Older firmware sets no cookie but accepts the owner token directly
        message = BeautifulSoup(response.text, "html.parser").get_text(" ", strip=True)
        if "valid token" in message.lower():
            logger.debug("Envoy set no session cookie, using bearer authentication")
            return credential.token, "bearer"

        logger.error(f"Unexpected Envoy token check response: {message[:200]}")
        raise UnexpectedResponseError("Envoy token check response has no session")

    def get_json(self, path: str, token: LocalSessionToken) -> Any:
        """GET a JSON document from the Envoy.

        Args:
            path: API path, e.g. "/ivp/meters/reports/production"
            token: Local session issued by this Envoy

        Returns:
            Decoded JSON body

        Raises:
            UnauthorizedPollError: If the Envoy rejects the session
            TransientPollError: On network errors, other non-2xx statuses or invalid JSON
        """
        if token.serial != self.endpoint.serial or token.address != self.endpoint.address:
            raise ValueError(
                f"Session for Envoy {token.serial} at {token.address} cannot be used with "
                f"Envoy {self.endpoint.serial} at {self.endpoint.address}"
            )

        url = f"{self.endpoint.base_url}{path}"

        try:
            response = self.session.get(url, timeout=self.timeout, **token.request_kwargs())
        except requests.RequestException as e:
            raise TransientPollError(f"GET {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise UnauthorizedPollError(f"GET {path} rejected with status {response.status_code}")
        if not 200 <= response.status_code < 300:
            raise TransientPollError(f"GET {path} returned status {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise TransientPollError(f"GET {path} returned invalid JSON: {e}") from e
