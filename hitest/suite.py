"""Suite execution: Setup, Main and Teardown tests sharing one variable scope.

Setup runs sequentially and a Setup test ending worse than Pass aborts the
suite: Main and Teardown are then reported as NotRun. Main runs sequentially
or with bounded concurrency. Teardown always runs after a successful Setup
and never influences the suite status.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Mapping

import httpx

from .engine import ClientPool, run_bounded, run_test
from .logging_config import get_logger
from .models import Status, Suite, Test, TestResult, SuiteResult, combine_status
from .variables import new_scope

logger = get_logger("suite")


@dataclass
class PreparedSuite:
    """A suite ready for execution: its scope, client pool and final test lists."""

    suite: Suite
    scope: dict[str, str]
    pool: ClientPool
    setup: list[Test] = field(default_factory=list)
    main: list[Test] = field(default_factory=list)
    teardown: list[Test] = field(default_factory=list)


def prepare_suite(
    suite: Suite,
    variables: Mapping[str, str] | None = None,
    pool: ClientPool | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    http2: bool = True,
) -> PreparedSuite:
    """Compute the scope and create the client pool.

    variables (command line, variables file) win over the suite's own
    variables; the scope gets fresh COUNTER and RANDOM values. Checks are
    dropped from Main and Teardown when the suite omits checks.
    """
    scope = new_scope(variables or {}, suite.variables, auto=True)
    if pool is None:
        pool = ClientPool(keep_cookies=suite.keep_cookies, http2=http2, transport=transport)

    def strip(tests: list[Test]) -> list[Test]:
        if not suite.omit_checks:
            return list(tests)
        return [replace(t, checks=[]) for t in tests]

    return PreparedSuite(
        suite=suite,
        scope=scope,
        pool=pool,
        setup=list(suite.setup),
        main=strip(suite.main),
        teardown=strip(suite.teardown),
    )


def _not_run(tests: list[Test]) -> list[TestResult]:
    return [TestResult(t.name, t.description) for t in tests]


async def _run_and_extract(prepared: PreparedSuite, test: Test) -> TestResult:
    # Reads the scope at start; extractions land whenever the test finishes.
    result = await run_test(test, prepared.scope, prepared.pool)
    prepared.scope.update(result.extracted_values())
    return result


async def execute_suite(prepared: PreparedSuite, concurrency: int = 1) -> SuiteResult:
    """Execute a prepared suite. The client pool stays open."""
    suite = prepared.suite
    result = SuiteResult(name=suite.name, description=suite.description, started=time.time())
    start = time.perf_counter()
    logger.info("suite %r: %d setup, %d main, %d teardown tests", suite.name,
                len(prepared.setup), len(prepared.main), len(prepared.teardown))

    for i, test in enumerate(prepared.setup):
        tr = await _run_and_extract(prepared, test)
        result.setup.append(tr)
        if tr.status > Status.PASS:
            result.setup.extend(_not_run(prepared.setup[i + 1:]))
            result.main = _not_run(prepared.main)
            result.teardown = _not_run(prepared.teardown)
            result.status = tr.status
            result.error = f"setup test {tr.name!r} {tr.status}: {tr.error or ''}".rstrip(": ")
            result.full_duration = time.perf_counter() - start
            result.variables = dict(prepared.scope)
            logger.warning("suite %r aborted: %s", suite.name, result.error)
            return result

    if concurrency <= 1:
        for test in prepared.main:
            result.main.append(await _run_and_extract(prepared, test))
    else:
        result.main = await run_bounded(
            prepared.main,
            lambda _i, t: _run_and_extract(prepared, t),
            concurrency,
        )

    for test in prepared.teardown:
        result.teardown.append(await _run_and_extract(prepared, test))
    result.teardown_status = combine_status((t.status for t in result.teardown), empty=Status.PASS)

    result.status = combine_status(t.status for t in (*result.setup, *result.main))
    failing = [t for t in (*result.setup, *result.main) if t.status > Status.PASS]
    if failing:
        result.error = f"{len(failing)} test(s) not passing, first: {failing[0].name!r} {failing[0].status}"
    result.full_duration = time.perf_counter() - start
    result.variables = dict(prepared.scope)
    logger.info("suite %r: %s in %.2fs", suite.name, result.status, result.full_duration)
    return result


async def run_suite(
    suite: Suite,
    variables: Mapping[str, str] | None = None,
    concurrency: int = 1,
    transport: httpx.AsyncBaseTransport | None = None,
    http2: bool = True,
) -> SuiteResult:
    """Prepare, execute and clean up a suite."""
    prepared = prepare_suite(suite, variables, transport=transport, http2=http2)
    async with prepared.pool:
        return await execute_suite(prepared, concurrency)
