"""Pytest fixtures for hitest tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import httpx
import pytest

Handler = Callable[[httpx.Request], httpx.Response]


class Router:
    """httpx.MockTransport dispatching on the URL path; records every request."""

    def __init__(self) -> None:
        self.routes: dict[str, Handler] = {}
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def add(self, path: str, handler: Handler | int, body: bytes | str = b"", headers: dict | None = None) -> None:
        if callable(handler):
            self.routes[path] = handler
            return
        status = handler
        self.routes[path] = lambda _req: httpx.Response(status, content=body, headers=headers)

    def hits(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, content=b"no route")
        return handler(request)


@pytest.fixture
def router() -> Router:
    return Router()


@pytest.fixture
def tmp_path_load_config(tmp_path: Path) -> Path:
    """Minimal valid throughput load config."""
    p = tmp_path / "load.yaml"
    p.write_text(
        """
type: throughput
rate: 50
duration: 2s
count: 10
ramp: 0
uniform: true
max_error_rate: 0.5
collect_from: fail
""",
        encoding="utf-8",
    )
    return p


@pytest.fixture
def sample_suite_path(tmp_path: Path) -> Path:
    """Suite with a login setup, two main tests (one from a file) and a teardown."""
    (tmp_path / "tests").mkdir()
    (tmp_path / "tests" / "profile.yaml").write_text(
        """
Name: Profile
Request:
  URL: "{{HOST}}/profile"
  Header:
    X-Token: "{{TOKEN}}"
Checks:
  - Check: StatusCode
    Expect: 200
  - Check: Body
    Contains: alice
""",
        encoding="utf-8",
    )
    p = tmp_path / "suite.yaml"
    p.write_text(
        """
Name: Shop
Description: login and browse
KeepCookies: true
Variables:
  HOST: http://shop.example.org
Setup:
  - Name: Login
    Request:
      Method: POST
      URL: "{{HOST}}/login"
      ParamsAs: body
      Params:
        user: alice
    Checks:
      - Check: StatusCode
        Expect: 200
    VarEx:
      TOKEN:
        Extractor: JSONExtractor
        Element: token
Main:
  - "@tests/profile.yaml"
  - Name: Health
    Request:
      URL: "{{HOST}}/health"
    Checks:
      - Check: StatusCode
        Expect: 200
Teardown:
  - Name: Logout
    Request:
      URL: "{{HOST}}/logout"
""",
        encoding="utf-8",
    )
    return p
