"""Load generation: throughput (arrival rate) and concurrency (N in flight) modes.

The Main tests of all suites are interleaved round robin into an endless
stream; disabled tests are skipped. Dispatch stops at the request count
cap, the wall-clock duration or when the error rate exceeds the limit.
In-flight executions are always allowed to finish and are recorded.

A single consumer drains the result queue, keeps the records, writes one
CSV row per completed execution and trips the error-rate circuit breaker.
"""

from __future__ import annotations

import asyncio
import csv
import random
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterator, Sequence, TextIO

import httpx

from .config import validate_options
from .engine import run_test
from .exceptions import HitestRunnerError, LoadTestAborted
from .logging_config import get_logger
from .models import (
    LoadRecord,
    LoadTestOptions,
    LoadTestResult,
    LoadType,
    Status,
    Suite,
    Test,
    TestResult,
)
from .suite import PreparedSuite, prepare_suite

logger = get_logger("loadtest")

# Error rate is only judged once this many executions completed
MIN_ERROR_RATE_SAMPLES = 20
# Result queue maximum size
RESULT_QUEUE_MAXSIZE = 50_000
# Lowest fraction of the target rate used at the very start of a ramp
MIN_RAMP_FRACTION = 0.05
CSV_HEADER = ["ID", "Started", "ReqDuration", "Status", "Elapsed", "ConcTot", "ConcOwn", "Error"]

# elapsed seconds since start -> seconds until the next dispatch
IntervalGenerator = Callable[[float], float]


def uniform_intervals(rate: float) -> IntervalGenerator:
    interval = 1.0 / rate
    return lambda _elapsed: interval


def exponential_intervals(rate: float, rng: random.Random | None = None) -> IntervalGenerator:
    """Poisson arrivals with mean rate."""
    rng = rng or random.Random()
    return lambda _elapsed: rng.expovariate(rate)


def ramped_intervals(rate: float, ramp: float, uniform: bool = False, rng: random.Random | None = None) -> IntervalGenerator:
    """Rate grows linearly from MIN_RAMP_FRACTION*rate to rate during the first ramp seconds."""
    rng = rng or random.Random()

    def gen(elapsed: float) -> float:
        r = rate if elapsed >= ramp else rate * max(elapsed / ramp, MIN_RAMP_FRACTION)
        return 1.0 / r if uniform else rng.expovariate(r)

    return gen


def interval_generator(options: LoadTestOptions, rng: random.Random | None = None) -> IntervalGenerator:
    if options.ramp > 0:
        return ramped_intervals(options.rate, options.ramp, options.uniform, rng)
    if options.uniform:
        return uniform_intervals(options.rate)
    return exponential_intervals(options.rate, rng)


@dataclass(slots=True)
class LoadItem:
    """One scheduled execution."""

    suite_no: int  # 1-based
    test_no: int  # 1-based, counting Setup, Main and Teardown
    test: Test
    seq: int

    @property
    def key(self) -> str:
        return f"{self.suite_no}.{self.test_no}"

    @property
    def id(self) -> str:
        return f"{self.key}#{self.seq}"


def interleave(suites: Sequence[Suite]) -> Iterator[LoadItem]:
    """Endless round robin over the enabled Main tests of all suites.

    Each turn takes the next enabled test of one suite, then moves to the
    next suite. Raises HitestRunnerError if there is no enabled Main test.
    """
    lanes: list[tuple[int, list[tuple[int, Test]]]] = []
    for s_idx, suite in enumerate(suites):
        offset = len(suite.setup)
        enabled = [(offset + i + 1, t) for i, t in enumerate(suite.main) if not t.disabled]
        if enabled:
            lanes.append((s_idx + 1, enabled))
    if not lanes:
        raise HitestRunnerError("no suite has an enabled Main test")
    return _cycle(lanes)


def _cycle(lanes: list[tuple[int, list[tuple[int, Test]]]]) -> Iterator[LoadItem]:
    positions = [0] * len(lanes)
    seq = 0
    while True:
        for k, (suite_no, tests) in enumerate(lanes):
            test_no, test = tests[positions[k] % len(tests)]
            positions[k] += 1
            seq += 1
            yield LoadItem(suite_no, test_no, test, seq)


class LoadTest:
    """One load test run over already prepared suites.

    Usage: result = await LoadTest(prepared, options, csv_out).run()
    """

    def __init__(
        self,
        prepared: Sequence[PreparedSuite],
        options: LoadTestOptions,
        csv_out: TextIO | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.prepared = list(prepared)
        self.options = options
        self.csv_out = csv_out
        self.rng = rng
        self.result = LoadTestResult(options=options)
        self.stop_event = asyncio.Event()
        self.in_flight: set[asyncio.Task] = set()
        self.conc_tot = 0
        self.conc_own: dict[str, int] = {}
        self.dispatched = 0
        self.bad = 0
        self._t0 = 0.0
        self._queue: asyncio.Queue[tuple[LoadRecord, TestResult] | None] = asyncio.Queue(
            maxsize=RESULT_QUEUE_MAXSIZE
        )

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self._t0 if self._t0 else 0.0

    @property
    def finished(self) -> bool:
        return self.result.finished > 0

    # --- execution ---

    async def _execute(self, item: LoadItem) -> None:
        ps = self.prepared[item.suite_no - 1]
        self.conc_tot += 1
        self.conc_own[item.key] = self.conc_own.get(item.key, 0) + 1
        conc_tot, conc_own = self.conc_tot, self.conc_own[item.key]
        started = time.perf_counter()
        try:
            tr = await run_test(item.test, ps.scope, ps.pool)
        finally:
            self.conc_tot -= 1
            self.conc_own[item.key] -= 1
        record = LoadRecord(
            id=item.id,
            started=started - self._t0,
            req_duration=tr.duration,
            status=tr.status,
            elapsed=time.perf_counter() - self._t0,
            conc_tot=conc_tot,
            conc_own=conc_own,
            error=tr.error,
        )
        await self._queue.put((record, tr))

    def _spawn(self, item: LoadItem) -> None:
        task = asyncio.create_task(self._execute(item))
        self.in_flight.add(task)
        task.add_done_callback(self.in_flight.discard)

    def _may_dispatch(self) -> bool:
        if self.stop_event.is_set():
            return False
        if self.options.count > 0 and self.dispatched >= self.options.count:
            return False
        return time.perf_counter() - self._t0 < self.options.duration

    async def _throughput(self, source: Iterator[LoadItem]) -> None:
        intervals = interval_generator(self.options, self.rng)
        overage = 0.0
        t0 = time.perf_counter()
        for item in source:
            if not self._may_dispatch():
                return
            now = time.perf_counter()
            overage += now - t0
            wait = intervals(now - self._t0) - overage
            if wait >= 0:
                before = time.perf_counter()
                try:
                    await asyncio.wait_for(self.stop_event.wait(), timeout=wait)
                    return
                except asyncio.TimeoutError:
                    pass
                # oversleeping counts against the next interval
                overage = max(0.0, time.perf_counter() - before - wait)
            else:
                overage = -wait
            t0 = time.perf_counter()
            if not self._may_dispatch():
                return
            self.dispatched += 1
            self._spawn(item)

    async def _concurrency(self, source: Iterator[LoadItem]) -> None:
        n = self.options.concurrency

        async def worker(delay: float) -> None:
            if delay > 0:
                try:
                    await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
                    return
                except asyncio.TimeoutError:
                    pass
            while self._may_dispatch():
                self.dispatched += 1
                await self._execute(next(source))

        step = self.options.ramp / n if self.options.ramp > 0 else 0.0
        await asyncio.gather(*(worker(i * step) for i in range(n)))

    # --- recording ---

    async def _consume(self) -> None:
        writer = None
        if self.csv_out is not None:
            writer = csv.writer(self.csv_out)
            writer.writerow(CSV_HEADER)
            self.csv_out.flush()
        opts = self.options
        while True:
            item = await self._queue.get()
            if item is None:
                break
            record, tr = item
            self.result.records.append(record)
            if tr.status >= opts.collect_from:
                self.result.collected.append(tr)
            if writer is not None:
                writer.writerow([
                    record.id,
                    f"{record.started:.4f}",
                    f"{record.req_duration * 1000:.2f}",
                    str(record.status),
                    f"{record.elapsed:.4f}",
                    record.conc_tot,
                    record.conc_own,
                    record.error or "",
                ])
                self.csv_out.flush()  # type: ignore[union-attr]
            if record.status >= Status.FAIL:
                self.bad += 1
            total = len(self.result.records)
            if (
                opts.max_error_rate >= 0
                and not self.result.aborted
                and total >= MIN_ERROR_RATE_SAMPLES
                and self.bad / total > opts.max_error_rate
            ):
                self.result.aborted = True
                self.stop_event.set()
                logger.warning("error rate %.2f exceeds %.2f after %d requests, stopping",
                               self.bad / total, opts.max_error_rate, total)

    async def run(self) -> LoadTestResult:
        """Generate load until a cap is reached. Raises LoadTestAborted."""
        source = interleave([replace(ps.suite, setup=ps.setup, main=ps.main, teardown=ps.teardown) for ps in self.prepared])
        self._t0 = time.perf_counter()
        self.result.started = time.time()
        consumer = asyncio.create_task(self._consume())
        logger.info("load test: %s", self.options)
        try:
            if self.options.type is LoadType.THROUGHPUT:
                await self._throughput(source)
            else:
                await self._concurrency(source)
            if self.in_flight:
                logger.info("draining %d in-flight requests", len(self.in_flight))
                await asyncio.gather(*list(self.in_flight), return_exceptions=True)
        finally:
            await self._queue.put(None)
            await consumer
            self.result.finished = time.time()
        logger.info("load test done: %d requests in %.1fs", len(self.result.records), self.result.elapsed)
        if self.result.aborted:
            raise LoadTestAborted(
                "error rate exceeded",
                context={"max_error_rate": self.options.max_error_rate, "requests": len(self.result.records)},
                result=self.result,
            )
        return self.result


async def run_setup(ps: PreparedSuite) -> list[TestResult]:
    """Sequential Setup of one suite; stops at the first test worse than Pass."""
    results: list[TestResult] = []
    for test in ps.setup:
        tr = await run_test(test, ps.scope, ps.pool)
        ps.scope.update(tr.extracted_values())
        results.append(tr)
        if tr.status > Status.PASS:
            raise HitestRunnerError(
                f"setup of suite {ps.suite.name!r} failed",
                context={"test": tr.name, "status": str(tr.status), "error": tr.error},
            )
    return results


async def run_teardown(ps: PreparedSuite) -> list[TestResult]:
    results = []
    for test in ps.teardown:
        results.append(await run_test(test, ps.scope, ps.pool))
    return results


async def run_load_test(
    suites: Sequence[Suite],
    options: LoadTestOptions,
    variables: dict[str, str] | None = None,
    csv_out: TextIO | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    http2: bool = True,
    rng: random.Random | None = None,
    live: bool = False,
) -> LoadTestResult:
    """Setup every suite, generate load over their Main tests, then Teardown.

    live shows a rich panel with the running counters.

    Raises HitestRunnerError if a Setup fails or no Main test is enabled,
    LoadTestAborted (with the partial result) when the error rate is exceeded.
    Teardown runs for every suite whose Setup passed, even after an abort.
    """
    validate_options(options)
    prepared = [prepare_suite(s, variables, transport=transport, http2=http2) for s in suites]
    interleave(suites)  # fail early when nothing is enabled
    ready: list[PreparedSuite] = []
    try:
        for ps in prepared:
            logger.info("suite %r: running setup", ps.suite.name)
            await run_setup(ps)
            ready.append(ps)
        load = LoadTest(prepared, options, csv_out, rng)
        if not live:
            return await load.run()
        from .dashboard import run_live_dashboard

        panel = asyncio.create_task(run_live_dashboard(load))
        try:
            return await load.run()
        finally:
            if not load.finished:
                panel.cancel()
            await asyncio.gather(panel, return_exceptions=True)
    finally:
        for ps in ready:
            if ps.teardown:
                logger.info("suite %r: running teardown", ps.suite.name)
                try:
                    await run_teardown(ps)
                except Exception:
                    logger.exception("teardown of suite %r crashed", ps.suite.name)
        for ps in prepared:
            await ps.pool.aclose()
