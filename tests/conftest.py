"""Shared test fixtures and fakes for the Envoy exporter tests."""

import base64
import json
import threading
from unittest.mock import MagicMock

import pytest

from envoy_exporter.cloud_auth import OwnerCredential
from envoy_exporter.device import DeviceEndpoint, UnauthorizedPollError

ENVOY_ADDRESS = "192.168.1.50"
ENVOY_SERIAL = "122302045041"
YEAR = 365 * 24 * 3600

_ALL_ENV_VARS = (
    "ENVOY_ADDRESS",
    "ENVOY_SERIAL",
    "ENVOY_USERNAME",
    "ENVOY_PASSWORD",
    "WEB_LISTEN_ADDRESS",
    "POLL_INTERVAL",
    "INVERTER_POLL_INTERVAL",
    "REQUEST_TIMEOUT",
    "SESSION_LIFETIME",
    "AUTH_RETRY_BACKOFF",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    """Remove exporter env vars and run each test away from any .env file."""
    for var in _ALL_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


def make_jwt(claims: dict) -> str:
    """Build an unsigned JWT carrying ``claims``."""
    def encode(part: dict) -> str:
        raw = json.dumps(part).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{encode({'alg': 'ES256', 'typ': 'JWT'})}.{encode(claims)}.signature"


def make_response(status_code=200, json_data=None, text="", cookies=None, json_error=False):
    """Create a mock requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.content = text.encode("utf-8")
    response.cookies = cookies or {}
    if json_error:
        response.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
    else:
        response.json.return_value = json_data
    return response


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCloud:
    """Stand-in for CloudAuthClient that issues numbered owner tokens."""

    def __init__(self, clock: FakeClock, lifetime: float = YEAR):
        self._clock = clock
        self.lifetime = lifetime
        self.calls = 0
        self.error = None

    def authenticate(self, username, password, serial):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return OwnerCredential(
            token=f"owner-{self.calls}",
            serial=serial,
            expires_at=self._clock() + self.lifetime,
        )


class FakeEnvoy:
    """Stand-in for EnvoyDevice that issues numbered sessions and serves scripted payloads."""

    def __init__(self, address: str = ENVOY_ADDRESS, serial: str = ENVOY_SERIAL):
        self.endpoint = DeviceEndpoint(address=address, serial=serial)
        self.check_access_calls = 0
        self.check_access_error = None
        self.check_access_gate = None
        self.valid_sessions = set()
        self.reject_all = False
        # Older firmware: no session cookie, the owner token itself is the session
        self.bearer = False
        self.responses = {}
        self.get_calls = []
        self._lock = threading.Lock()

    def check_access(self, credential):
        with self._lock:
            self.check_access_calls += 1
            number = self.check_access_calls
        if self.check_access_gate is not None:
            self.check_access_gate.wait(timeout=5)
        if self.check_access_error is not None:
            raise self.check_access_error
        if self.bearer:
            return credential.token, "bearer"
        value = f"session-{number}"
        self.valid_sessions.add(value)
        return value, "cookie"

    def expire_sessions(self):
        self.valid_sessions.clear()

    def get_json(self, path, token):
        self.get_calls.append((path, token.value))
        if self.reject_all or token.value not in self.valid_sessions:
            raise UnauthorizedPollError(f"GET {path} rejected with status 401")
        response = self.responses[path]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cloud(clock):
    return FakeCloud(clock)


@pytest.fixture
def envoy():
    return FakeEnvoy()
