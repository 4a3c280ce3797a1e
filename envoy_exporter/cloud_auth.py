"""Enphase cloud authentication module.

This module handles:
- Logging in to Enlighten with the account username and password
- Exchanging the Enlighten session for an owner token issued by Entrez
- Classifying failures into invalid credentials, network and API drift errors

The owner token is a JWT that is valid for about a year. It is held in
memory only and is never written to disk.
"""

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

import requests

# Configure module logger
logger = logging.getLogger(__name__)

# Lifetime assumed for owner tokens whose expiry cannot be decoded
DEFAULT_OWNER_TOKEN_LIFETIME = 365 * 24 * 3600


class AuthError(Exception):
    """Base exception for authentication errors."""
    pass


class InvalidCredentialsError(AuthError):
    """Exception raised when the credentials are rejected."""
    pass


class AuthNetworkError(AuthError):
    """Exception raised when an authentication endpoint cannot be reached."""
    pass


class UnexpectedResponseError(AuthError):
    """Exception raised when an authentication endpoint returns a payload we do not understand."""
    pass


@dataclass(frozen=True)
class OwnerCredential:
    """Long-lived owner token proving account ownership of a device.

    Attributes:
        token: Opaque bearer token (JWT) issued by Entrez
        serial: Serial number of the Envoy the token was issued for
        expires_at: Unix timestamp after which the token is no longer valid
    """
    token: str
    serial: str
    expires_at: float

    def remaining(self, now: float) -> float:
        """Seconds of validity left at ``now``."""
        return self.expires_at - now

    def __repr__(self) -> str:
        return f"OwnerCredential(serial={self.serial!r}, expires_at={self.expires_at!r})"


def decode_token_expiry(token: str) -> Optional[float]:
    """Read the ``exp`` claim from a JWT without verifying its signature.

    Args:
        token: Encoded JWT

    Returns:
        Expiry as a Unix timestamp, or None if the token is not a decodable JWT

    Example:
        >>> decode_token_expiry("not-a-jwt") is None
        True
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None

    payload = parts[1]
    payload += "=" * (-len(payload) % 4)

    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError):
        return None

    if not isinstance(claims, dict):
        return None

    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return float(exp)


class CloudAuthClient:
    """Client for the Enphase cloud identity services.

    Performs the two-step login used by the Enphase mobile app:
    Enlighten issues a web session for the account, and Entrez turns that
    session into an owner token scoped to one Envoy serial number.

    No retries are performed here; the caller decides when to try again.

    Attributes:
        timeout: Timeout in seconds applied to every request
    """

    LOGIN_URL = "https://enlighten.enphaseenergy.com/login/login.json"
    TOKEN_URL = "https://entrez.enphaseenergy.com/tokens"

    def __init__(
        self,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        clock=time.time,
    ):
        """Initialize the client.

        Args:
            timeout: Request timeout in seconds
            session: Optional requests session, mainly for testing
            clock: Callable returning the current Unix time
        """
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self._clock = clock

    def _post(self, url: str, step: str, **kwargs) -> requests.Response:
        """POST to a cloud endpoint and map failures onto AuthError subclasses.

        Args:
            url: Endpoint URL
            step: Short description of the step, used in error messages
            **kwargs: Additional arguments passed to requests

        Returns:
            Successful response

        Raises:
            InvalidCredentialsError: On HTTP 401 or 403
            AuthNetworkError: On transport errors
            UnexpectedResponseError: On any other non-2xx status
        """
        try:
            response = self.session.post(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise AuthNetworkError(f"{step} failed: {e}") from e

        if response.status_code in (401, 403):
            raise InvalidCredentialsError(f"{step} rejected with status {response.status_code}")

        if not 200 <= response.status_code < 300:
            raise UnexpectedResponseError(f"{step} returned status {response.status_code}")

        return response

    def login(self, username: str, password: str) -> str:
        """Log in to Enlighten.

        Args:
            username: Enlighten account email
            password: Enlighten account password

        Returns:
            Enlighten session ID

        Raises:
            AuthError: If the login fails
        """
        logger.debug(f"Logging in to Enlighten as {username}")

        # Enlighten expects a multipart form, not urlencoded data
        response = self._post(
            self.LOGIN_URL,
            "Enlighten login",
            files={
                "user[email]": (None, username),
                "user[password]": (None, password),
            },
        )

        try:
            payload = response.json()
        except ValueError as e:
            raise UnexpectedResponseError(f"Enlighten login returned invalid JSON: {e}") from e

        session_id = payload.get("session_id") if isinstance(payload, dict) else None
        if not session_id:
            logger.error(f"Enlighten login response has no session_id: {str(payload)[:200]}")
            raise UnexpectedResponseError("Enlighten login response has no session_id")

        return str(session_id)

    def request_token(self, session_id: str, username: str, serial: str) -> str:
        """Request an owner token for an Envoy from Entrez.

        Args:
            session_id: Enlighten session ID from login()
            username: Enlighten account email
            serial: Envoy serial number

        Returns:
            Owner token (JWT) as text

        Raises:
            AuthError: If the token request fails
        """
        logger.debug(f"Requesting owner token for Envoy {serial}")

        response = self._post(
            self.TOKEN_URL,
            "Entrez token request",
            json={
                "session_id": session_id,
                "username": username,
                "serial_num": serial,
            },
        )

        token = response.content.decode("utf-8", errors="replace").strip()
        if not token:
            raise UnexpectedResponseError("Entrez returned an empty token")
        return token

    def authenticate(self, username: str, password: str, serial: str) -> OwnerCredential:
        """Complete authentication flow: Enlighten login then Entrez token.

        Args:
            username: Enlighten account email
            password: Enlighten account password
            serial: Envoy serial number the token is requested for

        Returns:
            OwnerCredential for the Envoy

        Raises:
            InvalidCredentialsError: If the credentials are rejected
            AuthNetworkError: If the cloud cannot be reached
            UnexpectedResponseError: If a response cannot be understood
        """
        logger.info(f"Authenticating with Enphase cloud as {username}")

        session_id = self.login(username, password)
        token = self.request_token(session_id, username, serial)

        now = self._clock()
        expires_at = decode_token_expiry(token)
        if expires_at is None:
            logger.warning("Owner token expiry could not be decoded, assuming one year")
            expires_at = now + DEFAULT_OWNER_TOKEN_LIFETIME

        credential = OwnerCredential(token=token, serial=serial, expires_at=expires_at)
        logger.info(f"Obtained owner token for Envoy {serial}, "
                    f"valid for {credential.remaining(now) / 86400:.0f} days")
        return credential


def main():
    """Check Enphase cloud credentials from the environment."""
    import os

    from dotenv import load_dotenv

    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    load_dotenv()

    username = os.getenv("ENVOY_USERNAME", "")
    password = os.getenv("ENVOY_PASSWORD", "")
    serial = os.getenv("ENVOY_SERIAL", "")

    if not (username and password and serial):
        print("ENVOY_USERNAME, ENVOY_PASSWORD and ENVOY_SERIAL must be set")
        return False

    print(f"Checking Enphase credentials for Envoy {serial}")
    print("=" * 60)

    try:
        credential = CloudAuthClient().authenticate(username, password, serial)
    except InvalidCredentialsError as e:
        print(f"\n   Credentials REJECTED: {e}")
        return False
    except AuthError as e:
        print(f"\n   Authentication FAILED: {e}")
        return False

    print(f"   Owner token expires at {time.ctime(credential.expires_at)}")
    return True


if __name__ == "__main__":
    import sys
    success = main()
    sys.exit(0 if success else 1)
