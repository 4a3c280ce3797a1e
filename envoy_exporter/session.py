"""Local session lifecycle module.

This module handles:
- Obtaining and caching the owner token from the Enphase cloud
- Exchanging it for a local Envoy session and tracking that session's expiry
- Renewing on expiry or explicit invalidation, one exchange at a time

State machine::

    UNAUTHENTICATED --get_token--> AUTHENTICATING --ok--> VALID
                                                  --fail-> UNAUTHENTICATED
    VALID --expiring / invalidate--> RENEWING --ok--> VALID
                                              --fail-> UNAUTHENTICATED
    VALID --reject--> UNAUTHENTICATED (retry backoff applies)

Callers that ask for a token while an exchange is in flight wait for that
exchange and share its outcome, so one expiry or invalidation costs at most
one cloud login and one Envoy token check.
"""

import enum
import logging
import threading
import time
from typing import Optional

from envoy_exporter.cloud_auth import AuthError, CloudAuthClient, InvalidCredentialsError, OwnerCredential
from envoy_exporter.device import EnvoyDevice, LocalSessionToken

# Configure module logger
logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    VALID = "valid"
    RENEWING = "renewing"


class LocalSessionManager:
    """Owns the owner credential and the local Envoy session.

    Attributes:
        username: Enlighten account email
        safety_margin: Renew a token once less than this many seconds remain
        session_lifetime: Assumed lifetime of a local session in seconds
        retry_backoff: Seconds to wait after a failed exchange before trying again
    """

    def __init__(
        self,
        cloud: CloudAuthClient,
        device: EnvoyDevice,
        username: str,
        password: str,
        safety_margin: float = 60.0,
        session_lifetime: float = 3600.0,
        retry_backoff: float = 60.0,
        clock=time.time,
    ):
        """Initialize the session manager.

        Args:
            cloud: Client for the Enphase cloud identity services
            device: Client for the local Envoy
            username: Enlighten account email
            password: Enlighten account password
            safety_margin: Seconds before expiry at which tokens are renewed
            session_lifetime: Assumed lifetime of a local session in seconds
            retry_backoff: Fixed delay after a failed exchange, in seconds
            clock: Callable returning the current Unix time
        """
        self._cloud = cloud
        self._device = device
        self.username = username
        self._password = password
        self.safety_margin = safety_margin
        self.session_lifetime = session_lifetime
        self.retry_backoff = retry_backoff
        self._clock = clock

        # Sessions shorter than the safety margin would be renewed on every call
        self._session_margin = min(safety_margin, session_lifetime / 2)
        if self._session_margin < safety_margin:
            logger.warning(f"Session lifetime of {session_lifetime}s is shorter than the safety margin, "
                           f"renewing {self._session_margin:.0f}s before expiry instead")

        self._cond = threading.Condition()
        self._state = SessionState.UNAUTHENTICATED
        self._owner: Optional[OwnerCredential] = None
        self._token: Optional[LocalSessionToken] = None
        self._invalidated = False

        # Outcome of the most recent exchange, shared with waiting callers
        self._generation = 0
        self._last_error: Optional[AuthError] = None
        self._last_failure_at: Optional[float] = None

    @property
    def state(self) -> SessionState:
        with self._cond:
            return self._state

    @property
    def serial(self) -> str:
        return self._device.endpoint.serial

    def current_token(self) -> Optional[LocalSessionToken]:
        """Return the current session without triggering any exchange."""
        with self._cond:
            return self._token

    def ensure_owner_credential(self) -> OwnerCredential:
        """Obtain the owner credential if it is missing or about to expire.

        Used at startup, where failing to authenticate with the cloud is fatal.

        Raises:
            AuthError: If the cloud rejects or cannot process the login
        """
        with self._cond:
            owner = self._owner
        if owner is not None and owner.remaining(self._clock()) > self.safety_margin:
            return owner

        owner = self._cloud.authenticate(self.username, self._password, self.serial)
        with self._cond:
            self._owner = owner
        return owner

    def invalidate(self, token: Optional[LocalSessionToken] = None) -> None:
        """Mark the current session as rejected so the next get_token() renews it.

        Args:
            token: The session the Envoy rejected. If the manager already
                holds a different session, the call is ignored.
        """
        with self._cond:
            if token is not None and self._token is not None and token != self._token:
                logger.debug("Ignoring invalidation of a session that was already replaced")
                return
            if self._state == SessionState.VALID:
                logger.info("Local session invalidated, will renew on next request")
                self._invalidated = True
                if self._token is not None and self._token.scheme == "bearer":
                    # The session is the owner token itself, only the cloud can replace it
                    self._owner = None

    def reject(self, token: LocalSessionToken, reason: str) -> None:
        """Record that the Envoy refused a freshly issued session.

        The session and the owner credential are dropped and the retry
        backoff applies, so an Envoy that keeps refusing sessions is not
        asked for a new one on every tick.

        Args:
            token: The renewed session the Envoy rejected
            reason: Description of the rejection
        """
        with self._cond:
            if token != self._token or self._state != SessionState.VALID:
                return
            logger.warning(f"Envoy refused a renewed session, backing off for {self.retry_backoff:.0f}s")
            self._owner = None
            self._token = None
            self._state = SessionState.UNAUTHENTICATED
            self._invalidated = False
            self._last_error = InvalidCredentialsError(reason)
            self._last_failure_at = self._clock()

    def get_token(self) -> LocalSessionToken:
        """Return a usable local session, renewing it first if needed.

        Returns:
            Current LocalSessionToken

        Raises:
            AuthError: If the exchange (or the one this call waited for) failed,
                or a previous failure is still within the retry backoff
        """
        with self._cond:
            if self._state in (SessionState.AUTHENTICATING, SessionState.RENEWING):
                return self._wait_for_exchange()

            if self._state == SessionState.VALID and not self._needs_renewal():
                return self._token

            if self._last_error is not None and self._in_backoff():
                raise self._last_error

            if self._state == SessionState.VALID:
                self._state = SessionState.RENEWING
                logger.info("Renewing local Envoy session")
            else:
                self._state = SessionState.AUTHENTICATING
                logger.info("Authenticating with Envoy")
            owner = self._owner

        token: Optional[LocalSessionToken] = None
        error: Optional[AuthError] = None
        try:
            owner, token = self._exchange(owner)
        except AuthError as e:
            error = e
        finally:
            with self._cond:
                self._generation += 1
                if token is not None:
                    self._owner = owner
                    self._token = token
                    self._state = SessionState.VALID
                    self._invalidated = False
                    self._last_error = None
                    self._last_failure_at = None
                else:
                    if isinstance(error, InvalidCredentialsError):
                        self._owner = None
                    self._token = None
                    self._state = SessionState.UNAUTHENTICATED
                    self._invalidated = False
                    self._last_error = error
                    self._last_failure_at = self._clock()
                self._cond.notify_all()

        if error is not None:
            logger.warning(f"Envoy authentication failed: {error}")
            raise error
        return token

    def _exchange(self, owner: Optional[OwnerCredential]):
        """Obtain an owner credential if needed and exchange it with the Envoy.

        Runs without the lock held; only one thread is ever inside it.

        Returns:
            Tuple of (owner credential used, new LocalSessionToken)
        """
        now = self._clock()
        if owner is None or owner.remaining(now) <= self.safety_margin:
            owner = self._cloud.authenticate(self.username, self._password, self.serial)
            with self._cond:
                self._owner = owner

        try:
            value, scheme = self._device.check_access(owner)
        except InvalidCredentialsError:
            logger.warning("Envoy rejected the owner token, it will be requested again")
            raise

        now = self._clock()
        expires_at = min(now + self.session_lifetime, owner.expires_at)
        token = LocalSessionToken(
            value=value,
            scheme=scheme,
            address=self._device.endpoint.address,
            serial=owner.serial,
            expires_at=expires_at,
        )
        logger.info(f"Local Envoy session valid for {token.remaining(now):.0f}s")
        return owner, token

    def _wait_for_exchange(self) -> LocalSessionToken:
        """Block until the in-flight exchange completes and share its outcome.

        Must be called with the lock held.
        """
        generation = self._generation
        while self._generation == generation:
            self._cond.wait()

        if self._state == SessionState.VALID and self._token is not None:
            return self._token
        if self._last_error is not None:
            raise self._last_error
        raise AuthError("Envoy authentication did not complete")

    def _needs_renewal(self) -> bool:
        if self._invalidated or self._token is None:
            return True
        return self._token.remaining(self._clock()) <= self._session_margin

    def _in_backoff(self) -> bool:
        if self._last_failure_at is None:
            return False
        return self._clock() - self._last_failure_at < self.retry_backoff
