"""Shared fixtures: a fake clock, a scripted HTTP transport and a counting handshake."""

import json
import threading
from dataclasses import dataclass, field

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from credentials import Credentials
from digest_provider import DigestProvider
from models import AuthSession
from request_executor import RequestExecutor
from session_manager import SessionManager

SITE_URL = "https://contoso.sharepoint.com/sites/team"


def make_response(status=200, json_data=None, content=None, headers=None, cookies=None):
    """Build a real ``requests.Response`` without touching the network."""
    headers = dict(headers or {})
    if json_data is not None:
        content = json.dumps(json_data).encode("utf-8")
        headers.setdefault("Content-Type", "application/json;odata=verbose;charset=utf-8")
    response = requests.Response()
    response.status_code = status
    response.reason = "OK" if status < 400 else "Error"
    response._content = content or b""
    response.headers = CaseInsensitiveDict(headers)
    response.encoding = "utf-8"
    for name, value in (cookies or {}).items():
        response.cookies.set(name, value)
    return response


def digest_body(value, lifetime=1800):
    return {
        "d": {
            "GetContextWebInformation": {
                "FormDigestValue": value,
                "FormDigestTimeoutSeconds": lifetime,
            }
        }
    }


@dataclass
class Call:
    method: str
    url: str
    kwargs: dict = field(default_factory=dict)

    @property
    def headers(self):
        return self.kwargs.get("headers") or {}


class FakeHttp:
    """Stands in for ``requests.Session``; routes by method and URL fragment."""

    def __init__(self):
        self.calls = []
        self.routes = []
        self._lock = threading.Lock()

    def route(self, method, fragment, *responses):
        """Answer matching calls with ``responses`` in order; the last one repeats.

        Items may be responses, exceptions to raise, or callables taking the Call.
        """
        self.routes.append((method, fragment, list(responses)))

    def request(self, method, url, **kwargs):
        call = Call(method, url, kwargs)
        with self._lock:
            self.calls.append(call)
            for route_method, fragment, responses in self.routes:
                if route_method == method and fragment in url:
                    item = responses.pop(0) if len(responses) > 1 else responses[0]
                    break
            else:
                raise AssertionError(f"Unexpected {method} {url}")
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(call)
        return item

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def calls_to(self, fragment):
        return [call for call in self.calls if fragment in call.url]


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class CountingHandshake:
    """Issues numbered cookie sessions: FedAuth=fed-1, fed-2, ..."""

    def __init__(self, clock, lifetime=None, gate=None, events=None):
        self.clock = clock
        self.lifetime = lifetime
        self.gate = gate
        self.events = events
        self.count = 0
        self.failures = []

    def __call__(self, credentials):
        self.count += 1
        if self.events is not None:
            self.events.append("handshake")
        if self.gate is not None:
            self.gate.wait(5)
        if self.failures:
            raise self.failures.pop(0)
        now = self.clock()
        expires_at = now + self.lifetime if self.lifetime else None
        return AuthSession(
            cookies={"FedAuth": f"fed-{self.count}", "rtFa": f"rt-{self.count}"},
            acquired_at=now,
            expires_at=expires_at,
        )


class DigestResponder:
    """Answers /_api/contextinfo with digest-1, digest-2, ..."""

    def __init__(self, lifetime=1800, events=None):
        self.lifetime = lifetime
        self.events = events
        self.count = 0

    def __call__(self, call):
        self.count += 1
        if self.events is not None:
            self.events.append("contextinfo")
        return make_response(json_data=digest_body(f"digest-{self.count}", self.lifetime))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def credentials():
    return Credentials(
        username="alice@contoso.com",
        password="s3cret",
        domain="contoso.sharepoint.com",
        site_path="/sites/team",
    )


@pytest.fixture
def events():
    return []


@pytest.fixture
def handshake(clock, events):
    return CountingHandshake(clock, events=events)


@pytest.fixture
def digests(events):
    return DigestResponder(events=events)


@pytest.fixture
def http(digests):
    fake = FakeHttp()
    fake.route("POST", "/_api/contextinfo", digests)
    return fake


@pytest.fixture
def session_manager(credentials, handshake, clock):
    return SessionManager(credentials, handshake=handshake, clock=clock)


@pytest.fixture
def digest_provider(session_manager, http, clock):
    return DigestProvider(session_manager, SITE_URL, http=http, clock=clock)


@pytest.fixture
def executor(session_manager, digest_provider, http):
    return RequestExecutor(session_manager, digest_provider, http=http)
