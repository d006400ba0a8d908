import json as jsonlib
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

import pytest
import requests

from saviynt_config import ServerSettings
from saviynt_mcp_server import SaviyntMCPServer


BASE_URL = "https://tenant.example.com"


def make_response(status: int = 200, body: Any = None, content_type: str = "application/json",
                  reason: Optional[str] = None, url: str = BASE_URL) -> requests.Response:
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status
    response.reason = reason if reason is not None else ("OK" if status < 400 else "Error")
    response.url = url
    response.encoding = "utf-8"
    if body is None:
        raw = b""
    elif isinstance(body, (bytes, str)):
        raw = body.encode("utf-8") if isinstance(body, str) else body
    else:
        raw = jsonlib.dumps(body).encode("utf-8")
    response._content = raw
    if content_type:
        response.headers["Content-Type"] = content_type
    return response


Route = Union[requests.Response, List[requests.Response], Callable[..., requests.Response]]


class FakeSession:
    """Stand-in for requests.Session scripted by URL path.

    A route is a single response (served forever), a list of responses
    (served in order, the last one repeating) or a callable taking the
    recorded call. Unknown paths answer 404.
    """

    def __init__(self):
        self.routes: Dict[str, Route] = {}
        self.calls: List[Dict[str, Any]] = []

    def route(self, path: str, response: Route) -> None:
        self.routes[path] = response

    def request(self, method, url, params=None, json=None, headers=None, timeout=None, **kwargs):
        call = {
            "method": method,
            "url": url,
            "path": urlparse(url).path,
            "params": params,
            "json": json,
            "headers": dict(headers or {}),
            "timeout": timeout,
        }
        self.calls.append(call)

        route = self.routes.get(call["path"])
        if route is None:
            return make_response(404, {"error": "not found"}, reason="Not Found", url=url)
        if callable(route):
            return route(call)
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        return route

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["path"] == path]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def login_ok(token: str = "tok-1", expires_in: Optional[int] = 3600) -> requests.Response:
    body: Dict[str, Any] = {"access_token": token}
    if expires_in is not None:
        body["expires_in"] = expires_in
    return make_response(200, body)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_server(session, clock):
    """Factory for servers wired to the fake session and clock."""
    def factory(**overrides) -> SaviyntMCPServer:
        settings = ServerSettings(**overrides)
        return SaviyntMCPServer(settings=settings, session=session, clock=clock)
    return factory
