"""Data models for the hitest execution engine.

Declarative templates (Request, Poll, Test, Suite) are plain dataclasses and
are never mutated during execution; every run produces fresh result objects.
Hot-path result classes use __slots__ to keep load tests cheap on memory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Iterable

import httpx

if TYPE_CHECKING:
    from .checks import Check
    from .extractors import Extractor


class Status(IntEnum):
    """Outcome of a check, a test or a suite, ordered by severity."""

    NOT_RUN = 0  # Not yet executed
    SKIPPED = 1  # Omitted deliberately or due to a short-circuit
    PASS = 2  # That's what we want
    FAIL = 3  # One or more checks failed
    ERROR = 4  # Request or body reading failed
    BOGUS = 5  # Malformed test or check

    def __str__(self) -> str:
        return _STATUS_NAMES[self]

    @classmethod
    def parse(cls, text: str) -> "Status":
        """Parse a status name case-insensitively ("fail", "NotRun", "not_run")."""
        key = text.strip().lower().replace("_", "")
        for status, name in _STATUS_NAMES.items():
            if name.lower() == key:
                return status
        raise ValueError(f"unknown status {text!r}")


_STATUS_NAMES = {
    Status.NOT_RUN: "NotRun",
    Status.SKIPPED: "Skipped",
    Status.PASS: "Pass",
    Status.FAIL: "Fail",
    Status.ERROR: "Error",
    Status.BOGUS: "Bogus",
}


def combine_status(statuses: Iterable[Status], empty: Status = Status.PASS) -> Status:
    """Return the most severe status, or ``empty`` if there is none."""
    worst: Status | None = None
    for s in statuses:
        if worst is None or s > worst:
            worst = s
    return empty if worst is None else worst


class ParamsAs(str, Enum):
    """How Request.params are transmitted."""

    URL = "URL"
    BODY = "body"
    MULTIPART = "multipart"

    @classmethod
    def parse(cls, text: str | None) -> "ParamsAs":
        if not text:
            return cls.URL
        for member in cls:
            if member.value.lower() == text.strip().lower():
                return member
        raise ValueError(f"unknown parameter transmission {text!r}")


@dataclass(slots=True)
class Cookie:
    """A cookie to send with a request."""

    name: str
    value: str = ""


@dataclass(slots=True)
class Request:
    """Declarative HTTP request. Strings may contain {{VARIABLE}} placeholders."""

    url: str = ""
    method: str = ""  # empty means GET
    params: dict[str, list[str]] = field(default_factory=dict)
    params_as: str = ""  # "", "URL", "body" or "multipart"
    header: dict[str, list[str]] = field(default_factory=dict)
    cookies: list[Cookie] = field(default_factory=list)
    body: str = ""
    follow_redirects: bool = False
    timeout: float | None = None  # seconds; None uses the test/default timeout
    basic_auth_user: str = ""
    basic_auth_pass: str = ""


@dataclass(slots=True)
class Poll:
    """Retry policy. The zero value means "just do the test once".

    max: maximum number of tries; 0 and 1 both mean a single try,
         negative values disable the test.
    sleep: seconds to wait between two tries.
    """

    max: int = 0
    sleep: float = 0.0

    @property
    def skip(self) -> bool:
        return self.max < 0

    @property
    def tries(self) -> int:
        return max(1, self.max)


@dataclass(slots=True)
class Test:
    """A single logical test: one HTTP request plus checks on its response."""

    __test__ = False  # not a pytest test class

    name: str
    description: str = ""
    request: Request = field(default_factory=Request)
    checks: list[Check] = field(default_factory=list)
    poll: Poll = field(default_factory=Poll)
    timeout: float | None = None
    variables: dict[str, str] = field(default_factory=dict)
    extract: dict[str, Extractor] = field(default_factory=dict)
    base_dir: str = "."

    @property
    def disabled(self) -> bool:
        return self.poll.skip


@dataclass(slots=True)
class Suite:
    """Ordered Setup/Main/Teardown tests sharing cookies and variables."""

    name: str
    description: str = ""
    setup: list[Test] = field(default_factory=list)
    main: list[Test] = field(default_factory=list)
    teardown: list[Test] = field(default_factory=list)
    keep_cookies: bool = False
    omit_checks: bool = False
    variables: dict[str, str] = field(default_factory=dict)

    def all_tests(self) -> list[Test]:
        return [*self.setup, *self.main, *self.teardown]


class Response:
    """A received HTTP response with its body fully read.

    Uses __slots__; one instance per executed request.
    """

    __slots__ = ("status_code", "headers", "body", "body_error", "duration", "url", "redirections", "http_version")

    def __init__(
        self,
        status_code: int,
        headers: httpx.Headers | dict[str, str] | None = None,
        body: bytes = b"",
        body_error: str | None = None,
        duration: float = 0.0,
        url: str = "",
        redirections: list[str] | None = None,
        http_version: str = "HTTP/1.1",
    ) -> None:
        self.status_code = status_code
        self.headers = headers if isinstance(headers, httpx.Headers) else httpx.Headers(headers or {})
        self.body = body
        self.body_error = body_error
        self.duration = duration
        self.url = url
        self.redirections = redirections if redirections is not None else []
        self.http_version = http_version

    @classmethod
    def from_httpx(cls, resp: httpx.Response, duration: float, body_error: str | None = None) -> "Response":
        return cls(
            status_code=resp.status_code,
            headers=resp.headers,
            body=resp.content if body_error is None else b"",
            body_error=body_error,
            duration=duration,
            url=str(resp.url),
            redirections=[str(r.headers.get("location", "")) for r in resp.history],
            http_version=resp.http_version,
        )

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def set_cookies(self) -> list[tuple[str, str]]:
        """Return (name, value) pairs of all Set-Cookie headers, in order."""
        out: list[tuple[str, str]] = []
        for raw in self.headers.get_list("set-cookie"):
            pair = raw.split(";", 1)[0]
            name, _, value = pair.partition("=")
            out.append((name.strip(), value.strip().strip('"')))
        return out

    def __repr__(self) -> str:
        return f"Response(status={self.status_code}, bytes={len(self.body)}, duration={self.duration:.4f})"


class CheckResult:
    """Outcome of a single check inside a test."""

    __slots__ = ("name", "status", "duration", "error")

    def __init__(
        self,
        name: str,
        status: Status = Status.NOT_RUN,
        duration: float = 0.0,
        error: str | None = None,
    ) -> None:
        self.name = name
        self.status = status
        self.duration = duration
        self.error = error

    def __repr__(self) -> str:
        return f"CheckResult(name={self.name!r}, status={self.status})"


@dataclass(slots=True)
class Extraction:
    """Result of one variable extraction."""

    value: str = ""
    error: str | None = None


class TestResult:
    """Outcome of running one Test (all tries).

    duration is the round trip time of the last request, full_duration covers
    all tries including poll sleeps.
    """

    __test__ = False  # not a pytest test class

    __slots__ = (
        "name", "description", "status", "error", "started", "duration",
        "full_duration", "tries", "checks", "response", "request_body",
        "extractions",
    )

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self.status = Status.NOT_RUN
        self.error: str | None = None
        self.started: float = 0.0  # epoch seconds
        self.duration: float = 0.0
        self.full_duration: float = 0.0
        self.tries: int = 0
        self.checks: list[CheckResult] = []
        self.response: Response | None = None
        self.request_body: str = ""
        self.extractions: dict[str, Extraction] = {}

    def extracted_values(self) -> dict[str, str]:
        """Successfully extracted variables."""
        return {k: e.value for k, e in self.extractions.items() if e.error is None}

    def __repr__(self) -> str:
        return (
            f"TestResult(name={self.name!r}, status={self.status}, tries={self.tries}, "
            f"duration={self.duration:.4f})"
        )


@dataclass(slots=True)
class SuiteResult:
    """Outcome of executing a Suite. Element order is declaration order."""

    name: str
    description: str = ""
    status: Status = Status.NOT_RUN
    error: str | None = None
    started: float = 0.0
    full_duration: float = 0.0
    setup: list[TestResult] = field(default_factory=list)
    main: list[TestResult] = field(default_factory=list)
    teardown: list[TestResult] = field(default_factory=list)
    teardown_status: Status = Status.NOT_RUN
    variables: dict[str, str] = field(default_factory=dict)  # final scope

    @property
    def elements(self) -> list[TestResult]:
        return [*self.setup, *self.main, *self.teardown]


# --- Load testing ---

class LoadType(str, Enum):
    """Load generation mode."""

    THROUGHPUT = "throughput"  # target arrival rate
    CONCURRENCY = "concurrency"  # fixed number in flight


@dataclass(slots=True)
class LoadTestOptions:
    """Load test configuration.

    count = 0 means no request cap, max_error_rate < 0 disables the
    circuit breaker.
    """

    type: LoadType = LoadType.THROUGHPUT
    rate: float = 20.0  # requests/second (throughput mode)
    concurrency: int = 1  # in-flight tests (concurrency mode)
    duration: float = 30.0  # wall-clock cap in seconds
    count: int = 0
    ramp: float = 0.0
    uniform: bool = False
    max_error_rate: float = 0.9
    collect_from: Status = Status.FAIL


class LoadRecord:
    """One completed execution during a load test (one CSV row)."""

    __slots__ = ("id", "started", "req_duration", "status", "elapsed", "conc_tot", "conc_own", "error")

    def __init__(
        self,
        id: str,
        started: float,
        req_duration: float,
        status: Status,
        elapsed: float,
        conc_tot: int,
        conc_own: int,
        error: str | None = None,
    ) -> None:
        self.id = id
        self.started = started
        self.req_duration = req_duration
        self.status = status
        self.elapsed = elapsed
        self.conc_tot = conc_tot
        self.conc_own = conc_own
        self.error = error

    def __repr__(self) -> str:
        return f"LoadRecord(id={self.id!r}, status={self.status}, req_duration={self.req_duration:.4f})"


@dataclass(slots=True)
class LoadTestResult:
    """Everything recorded during a load test."""

    options: LoadTestOptions
    records: list[LoadRecord] = field(default_factory=list)
    collected: list[TestResult] = field(default_factory=list)  # status >= collect_from
    started: float = 0.0
    finished: float = 0.0
    aborted: bool = False

    @property
    def elapsed(self) -> float:
        return max(0.0, self.finished - self.started)


@dataclass(slots=True)
class AggregateMetrics:
    """Aggregated counts and latency statistics (milliseconds)."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    errored: int = 0
    bogus: int = 0
    skipped: int = 0
    not_run: int = 0
    avg_ms: float = 0.0
    max_ms: float = 0.0
    p50_ms: float = 0.0
    p90_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    pass_p50_ms: float = 0.0
    pass_p95_ms: float = 0.0
    fail_p50_ms: float = 0.0
    fail_p95_ms: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def error_rate(self) -> float:
        """Fraction of Fail, Error and Bogus among all executions."""
        if self.total == 0:
            return 0.0
        return (self.failed + self.errored + self.bogus) / self.total

    @property
    def status(self) -> Status:
        if self.bogus:
            return Status.BOGUS
        if self.errored:
            return Status.ERROR
        if self.failed:
            return Status.FAIL
        if self.passed:
            return Status.PASS
        if self.skipped:
            return Status.SKIPPED
        return Status.NOT_RUN
