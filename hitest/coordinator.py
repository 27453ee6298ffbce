"""Run many suites (or independent tests) with bounded concurrency.

Results come back in input order. One suite going wrong, even with an
unexpected exception, never stops the others.
"""

from __future__ import annotations

from typing import Mapping, Sequence

import httpx

from .engine import ClientPool, run_bounded, run_test
from .logging_config import get_logger
from .models import Status, Suite, SuiteResult, Test, TestResult, combine_status
from .suite import run_suite

logger = get_logger("coordinator")


async def run_suites(
    suites: Sequence[Suite],
    variables: Mapping[str, str] | None = None,
    concurrency: int = 1,
    main_concurrency: int = 1,
    transport: httpx.AsyncBaseTransport | None = None,
    http2: bool = True,
) -> list[SuiteResult]:
    """Execute suites, at most concurrency at a time.

    Every suite gets its own scope and client pool. An unexpected exception
    while running a suite is reported as a Bogus suite result.
    """

    async def one(_idx: int, suite: Suite) -> SuiteResult:
        try:
            return await run_suite(suite, variables, main_concurrency, transport=transport, http2=http2)
        except Exception as e:  # noqa: BLE001
            logger.exception("suite %r crashed", suite.name)
            return SuiteResult(name=suite.name, description=suite.description, status=Status.BOGUS,
                               error=f"{type(e).__name__}: {e}")

    logger.info("running %d suite(s), concurrency=%d", len(suites), concurrency)
    return await run_bounded(suites, one, concurrency)


async def run_tests(
    tests: Sequence[Test],
    variables: Mapping[str, str] | None = None,
    concurrency: int = 1,
    keep_cookies: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
    http2: bool = True,
) -> list[TestResult]:
    """Execute independent tests on one shared client pool; no extraction chaining."""
    scope = dict(variables or {})
    async with ClientPool(keep_cookies=keep_cookies, http2=http2, transport=transport) as pool:
        return await run_bounded(tests, lambda _i, t: run_test(t, scope, pool), concurrency)


def overall_status(results: Sequence[SuiteResult | TestResult]) -> Status:
    """Worst status of all results; NotRun for no results."""
    return combine_status((r.status for r in results), empty=Status.NOT_RUN)
