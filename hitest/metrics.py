"""Result aggregation: status counts and latency histograms.

Latencies are recorded in integer milliseconds into three LogHist
instances (all, Pass, Fail). Memory is bounded by the histogram size,
independent of the number of results. Aggregation is deterministic for a
given multiset of (status, duration) pairs.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Iterable

from .logging_config import get_logger
from .loghist import DEFAULT_BITS, DEFAULT_MAX, LogHist
from .models import AggregateMetrics, LoadRecord, LoadTestResult, Status, SuiteResult, TestResult

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger("metrics")

QUANTILES = (0.5, 0.9, 0.95, 0.99)


def to_ms(seconds: float) -> int:
    return int(seconds * 1000)


class Aggregator:
    """Streaming aggregation of (status, duration) pairs."""

    __slots__ = ("counts", "hist_all", "hist_pass", "hist_fail", "sum_ms", "max_ms")

    def __init__(self, bits: int = DEFAULT_BITS, max_ms: int = DEFAULT_MAX) -> None:
        self.counts: dict[Status, int] = {s: 0 for s in Status}
        self.hist_all = LogHist(bits, max_ms)
        self.hist_pass = LogHist(bits, max_ms)
        self.hist_fail = LogHist(bits, max_ms)
        self.sum_ms = 0.0
        self.max_ms = 0.0

    def add(self, status: Status, duration: float) -> None:
        """Count one execution; duration in seconds."""
        self.counts[status] += 1
        if status in (Status.NOT_RUN, Status.SKIPPED):
            # no request was made
            return
        ms = duration * 1000
        self.sum_ms += ms
        if ms > self.max_ms:
            self.max_ms = ms
        v = to_ms(duration)
        self.hist_all.add(v)
        if status == Status.PASS:
            self.hist_pass.add(v)
        elif status == Status.FAIL:
            self.hist_fail.add(v)

    def add_results(self, results: Iterable[TestResult]) -> "Aggregator":
        for r in results:
            self.add(r.status, r.duration)
        return self

    def add_records(self, records: Iterable[LoadRecord]) -> "Aggregator":
        for r in records:
            self.add(r.status, r.req_duration)
        return self

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def aggregate(self) -> AggregateMetrics:
        timed = self.hist_all.total + self.hist_all.overflow
        p50, p90, p95, p99 = self.hist_all.quantiles(QUANTILES)
        pass_p50, pass_p95 = self.hist_pass.quantiles((0.5, 0.95))
        fail_p50, fail_p95 = self.hist_fail.quantiles((0.5, 0.95))
        if self.hist_all.overflow:
            logger.warning("%d durations beyond %dms not in percentiles", self.hist_all.overflow, self.hist_all.max)
        return AggregateMetrics(
            total=self.total,
            passed=self.counts[Status.PASS],
            failed=self.counts[Status.FAIL],
            errored=self.counts[Status.ERROR],
            bogus=self.counts[Status.BOGUS],
            skipped=self.counts[Status.SKIPPED],
            not_run=self.counts[Status.NOT_RUN],
            avg_ms=self.sum_ms / timed if timed else 0.0,
            max_ms=self.max_ms,
            p50_ms=float(p50),
            p90_ms=float(p90),
            p95_ms=float(p95),
            p99_ms=float(p99),
            pass_p50_ms=float(pass_p50),
            pass_p95_ms=float(pass_p95),
            fail_p50_ms=float(fail_p50),
            fail_p95_ms=float(fail_p95),
        )


def analyse_results(results: Iterable[TestResult]) -> AggregateMetrics:
    return Aggregator().add_results(results).aggregate()


def analyse_suites(results: "Sequence[SuiteResult]") -> AggregateMetrics:
    """Aggregate every test of every suite (Setup, Main and Teardown)."""
    agg = Aggregator()
    for sr in results:
        agg.add_results(sr.elements)
    metrics = agg.aggregate()
    metrics.extra["suites"] = len(results)
    metrics.extra["suites_passed"] = sum(1 for sr in results if sr.status <= Status.PASS)
    return metrics


def analyse_load_test(result: LoadTestResult) -> AggregateMetrics:
    """Overall load test metrics plus achieved rate and a per-test breakdown."""
    metrics = Aggregator().add_records(result.records).aggregate()
    elapsed = result.elapsed
    metrics.extra["elapsed_s"] = elapsed
    metrics.extra["rate"] = len(result.records) / elapsed if elapsed > 0 else 0.0
    metrics.extra["aborted"] = result.aborted
    metrics.extra["per_test"] = per_test(result.records)
    return metrics


def per_test(records: Iterable[LoadRecord]) -> dict[str, AggregateMetrics]:
    """Metrics per test key ("<suite>.<test>"), keys sorted."""
    groups: dict[str, Aggregator] = defaultdict(Aggregator)
    for r in records:
        key = r.id.split("#", 1)[0]
        groups[key].add(r.status, r.req_duration)
    return {k: groups[k].aggregate() for k in sorted(groups)}
