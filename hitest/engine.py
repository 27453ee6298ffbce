"""Test execution engine.

This module provides the core of running a single Test:
- ClientPool: the AsyncClient (and cookie jar) shared by the tests of a run
- prepare_test: variable substitution, request construction, check compilation
- execute_once: one HTTP round trip plus ordered checks
- run_test: the poll/retry loop and variable extraction

run_test never raises for Fail/Error/Bogus outcomes; they are recorded in
the returned TestResult.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Awaitable, Callable, Mapping, Sequence, TypeVar

import httpx

from .checks import Check, CheckFailure, MalformedCheck, is_status_ok_first
from .exceptions import RequestBuildError
from .extractors import Extractor
from .logging_config import get_logger
from .models import CheckResult, Extraction, Response, Status, Test, TestResult, combine_status
from .request_builder import PreparedRequest, build_request
from .variables import Replacer, map_test, merge_variables, now_variables

logger = get_logger("engine")

T = TypeVar("T")
R = TypeVar("R")

# Timeout for a request when neither the request nor the test sets one (seconds)
DEFAULT_TIMEOUT_SEC = 10.0
MAX_REDIRECTS = 10
DEFAULT_MAX_CONNECTIONS = 1000
DEFAULT_MAX_KEEPALIVE = 200
DEFAULT_KEEPALIVE_EXPIRY = 30.0


def create_client(
    http2: bool = True,
    timeout: float = DEFAULT_TIMEOUT_SEC,
    limits: httpx.Limits | None = None,
    cookies: httpx.Cookies | CookieJar | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    verify: bool = True,
) -> httpx.AsyncClient:
    """Create an async HTTP client.

    Uses high connection limits for load tests. Redirects are never
    followed by default; run_test enables them per request.
    """
    limits = limits or httpx.Limits(
        max_connections=DEFAULT_MAX_CONNECTIONS,
        max_keepalive_connections=DEFAULT_MAX_KEEPALIVE,
        keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
    )
    return httpx.AsyncClient(
        http2=http2,
        timeout=timeout,
        limits=limits,
        cookies=cookies,
        transport=transport,
        verify=verify,
        follow_redirects=False,
        max_redirects=MAX_REDIRECTS,
    )


def _discarding_jar() -> CookieJar:
    """A jar that refuses to store any cookie.

    Passed to the client as a bare CookieJar: httpx copies Cookies objects
    into a fresh jar, which would drop the policy.
    """
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


class ClientPool:
    """HTTP client owned by one suite run (or one load test).

    With keep_cookies the client carries a shared cookie jar so cookies set
    by one test are sent by the following ones; otherwise nothing persists.
    The jar is only touched from the event loop thread.
    """

    def __init__(
        self,
        keep_cookies: bool = False,
        http2: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        verify: bool = True,
    ) -> None:
        self.keep_cookies = keep_cookies
        self.http2 = http2
        self.transport = transport
        self.verify = verify
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_client(
                http2=self.http2,
                cookies=httpx.Cookies() if self.keep_cookies else _discarding_jar(),
                transport=self.transport,
                verify=self.verify,
            )
        return self._client

    @property
    def cookies(self) -> httpx.Cookies:
        return self.client.cookies

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ClientPool":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()


@dataclass(slots=True)
class PreparedTest:
    """A test with all variables substituted, request built and checks compiled."""

    test: Test
    request: PreparedRequest
    request_body: str


def prepare_test(test: Test, variables: Mapping[str, str], now: datetime | None = None) -> PreparedTest:
    """Substitute variables and build the request.

    variables win over the test's own defaults; NOW expressions are
    evaluated once against a single instant. Raises RequestBuildError or
    MalformedCheck.
    """
    scope = merge_variables(variables, test.variables)
    scope.update(now_variables(test, now))
    replacer = Replacer(scope)
    concrete = map_test(test, replacer)
    timeout = concrete.request.timeout or concrete.timeout or DEFAULT_TIMEOUT_SEC
    request, body = build_request(concrete.request, concrete.base_dir, replacer, timeout=timeout)
    errors = []
    for i, ck in enumerate(concrete.checks):
        try:
            ck.prepare()
        except MalformedCheck as e:
            errors.append(f"check {i} {ck.name}: {e}")
        except Exception as e:  # noqa: BLE001
            errors.append(f"check {i} {ck.name}: {type(e).__name__}: {e}")
    if errors:
        raise MalformedCheck("; ".join(errors))
    return PreparedTest(concrete, request, body)


def execute_checks(checks: list[Check], response: Response) -> list[CheckResult]:
    """Run checks in order.

    A failing first StatusCode(200) check marks all remaining checks Skipped;
    other failures do not prevent later checks.
    """
    results = [CheckResult(ck.name) for ck in checks]
    short_circuit = is_status_ok_first(checks)
    for i, ck in enumerate(checks):
        res = results[i]
        start = time.perf_counter()
        try:
            ck.execute(response)
            res.status = Status.PASS
        except MalformedCheck as e:
            res.status, res.error = Status.BOGUS, str(e)
        except CheckFailure as e:
            res.status, res.error = Status.FAIL, str(e) or "failed"
        except Exception as e:  # noqa: BLE001
            res.status, res.error = Status.BOGUS, f"{type(e).__name__}: {e}"
        res.duration = time.perf_counter() - start
        if i == 0 and short_circuit and res.status != Status.PASS:
            for rest in results[1:]:
                rest.status = Status.SKIPPED
            break
    return results


def _skip_checks(checks: list[Check]) -> list[CheckResult]:
    return [CheckResult(ck.name, Status.SKIPPED) for ck in checks]


async def execute_once(prepared: PreparedTest, pool: ClientPool, result: TestResult) -> None:
    """One request/response cycle; fills status, response, duration and checks of result."""
    test = prepared.test
    client = pool.client
    result.request_body = prepared.request_body
    result.response = None
    result.error = None
    try:
        req = prepared.request.to_httpx(client)
    except RequestBuildError as e:
        result.status = Status.BOGUS
        result.error = str(e)
        result.checks = _skip_checks(test.checks)
        logger.warning("bogus request: %s", e, extra={"test": test.name})
        return
    start = time.perf_counter()
    try:
        logger.debug("%s %s", req.method, req.url, extra={"test": test.name})
        resp = await client.send(req, follow_redirects=prepared.request.follow_redirects)
    except httpx.HTTPError as e:
        result.duration = time.perf_counter() - start
        result.status = Status.ERROR
        result.error = f"{type(e).__name__}: {e}"
        result.checks = _skip_checks(test.checks)
        logger.debug("request failed: %s", result.error, extra={"test": test.name})
        return
    result.duration = time.perf_counter() - start
    response = Response.from_httpx(resp, result.duration)
    result.response = response
    result.checks = execute_checks(test.checks, response)
    result.status = combine_status((c.status for c in result.checks), empty=Status.PASS)
    if result.status > Status.PASS:
        failed = [f"{c.name}: {c.error}" for c in result.checks if c.status > Status.PASS]
        result.error = "; ".join(failed)


def extract_all(extract: Mapping[str, Extractor], response: Response, test_name: str = "") -> dict[str, Extraction]:
    out: dict[str, Extraction] = {}
    for varname, ex in extract.items():
        try:
            out[varname] = Extraction(value=ex.extract(response))
        except Exception as e:  # noqa: BLE001
            out[varname] = Extraction(error=str(e) or type(e).__name__)
            logger.warning("problems extracting %r: %s", varname, e, extra={"test": test_name})
    return out


async def run_test(test: Test, variables: Mapping[str, str], pool: ClientPool) -> TestResult:
    """Run test with polling. Never raises for test outcomes.

    Poll.max < 0 skips the test without a request. Each try is prepared
    afresh (NOW and file content are re-evaluated) and tries stop at the
    first Pass. Extraction happens only after a Pass.
    """
    result = TestResult(test.name, test.description)
    result.started = time.time()
    if test.poll.skip:
        result.status = Status.SKIPPED
        result.checks = _skip_checks(test.checks)
        logger.debug("skipped", extra={"test": test.name})
        return result

    prepared: PreparedTest | None = None
    start = time.perf_counter()
    for attempt in range(test.poll.tries):
        if attempt > 0 and test.poll.sleep > 0:
            await asyncio.sleep(test.poll.sleep)
        result.tries = attempt + 1
        try:
            prepared = prepare_test(test, variables)
        except (RequestBuildError, MalformedCheck) as e:
            result.status = Status.BOGUS
            result.error = str(e)
            result.checks = _skip_checks(test.checks)
            logger.warning("bogus test: %s", e, extra={"test": test.name})
            break
        result.name = prepared.test.name
        result.description = prepared.test.description
        await execute_once(prepared, pool, result)
        if result.status in (Status.PASS, Status.BOGUS):
            break
        logger.debug("try %d: %s", attempt + 1, result.status, extra={"test": test.name})
    result.full_duration = time.perf_counter() - start

    if result.status == Status.PASS and prepared is not None and result.response is not None and prepared.test.extract:
        result.extractions = extract_all(prepared.test.extract, result.response, result.name)
    logger.debug("%s (%d tries, %.1fms)", result.status, result.tries, result.duration * 1000,
                 extra={"test": result.name})
    return result


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[int, T], Awaitable[R]],
    concurrency: int = 1,
) -> list[R]:
    """Apply worker to every item with at most concurrency calls in flight.

    Workers pull indices from a queue and store results by index, so the
    returned list is in item order regardless of completion order. A
    failing call does not stop the others; its exception is re-raised once
    all items are done.
    """
    n = len(items)
    results: list[R | None] = [None] * n
    if n == 0:
        return []
    queue: asyncio.Queue[int | None] = asyncio.Queue()
    for i in range(n):
        queue.put_nowait(i)
    num_workers = max(1, min(concurrency, n))
    for _ in range(num_workers):
        queue.put_nowait(None)
    errors: list[BaseException] = []

    async def pull() -> None:
        while True:
            idx = await queue.get()
            if idx is None:
                return
            try:
                results[idx] = await worker(idx, items[idx])
            except Exception as e:  # noqa: BLE001
                logger.error("worker for item %d failed: %s", idx, e)
                errors.append(e)

    await asyncio.gather(*(pull() for _ in range(num_workers)))
    if errors:
        raise errors[0]
    return results  # type: ignore[return-value]
