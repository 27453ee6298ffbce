"""Rich console output: suite and load test summaries and a live load test panel."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Sequence

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .logging_config import get_logger
from .models import AggregateMetrics, Status, SuiteResult, TestResult

if TYPE_CHECKING:
    from .loadtest import LoadTest

logger = get_logger("dashboard")

STATUS_STYLES = {
    Status.NOT_RUN: "dim",
    Status.SKIPPED: "yellow",
    Status.PASS: "green",
    Status.FAIL: "red",
    Status.ERROR: "bold red",
    Status.BOGUS: "magenta",
}


def status_text(status: Status) -> Text:
    return Text(str(status), style=STATUS_STYLES[status])


def _duration_cell(tr: TestResult) -> str:
    if tr.status in (Status.NOT_RUN, Status.SKIPPED):
        return "-"
    return f"{tr.duration * 1000:.1f}"


def suite_table(results: Sequence[SuiteResult]) -> Table:
    """One row per test, grouped by suite; IDs are <suite>.<test>."""
    table = Table(title="Test results", show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Suite")
    table.add_column("Test")
    table.add_column("Status")
    table.add_column("ms", justify="right")
    table.add_column("Tries", justify="right")
    table.add_column("Error", overflow="fold")
    for s_no, sr in enumerate(results, 1):
        for t_no, tr in enumerate(sr.elements, 1):
            table.add_row(
                f"{s_no}.{t_no}",
                sr.name,
                tr.name,
                status_text(tr.status),
                _duration_cell(tr),
                str(tr.tries),
                tr.error or "",
            )
    return table


def metrics_table(agg: AggregateMetrics, title: str = "Summary") -> Table:
    """Counts and latency figures as a two column grid."""
    table = Table(title=title, show_header=False)
    table.add_column(style="cyan")
    table.add_column(style="green", justify="right")
    table.add_row("Total", str(agg.total))
    for status, count in (
        (Status.PASS, agg.passed),
        (Status.FAIL, agg.failed),
        (Status.ERROR, agg.errored),
        (Status.BOGUS, agg.bogus),
        (Status.SKIPPED, agg.skipped),
        (Status.NOT_RUN, agg.not_run),
    ):
        if count:
            table.add_row(status_text(status), str(count))
    table.add_row("Error rate %", f"{agg.error_rate * 100:.2f}%")
    table.add_row("Avg (ms)", f"{agg.avg_ms:.1f}")
    table.add_row("P50 (ms)", f"{agg.p50_ms:.0f}")
    table.add_row("P90 (ms)", f"{agg.p90_ms:.0f}")
    table.add_row("P95 (ms)", f"{agg.p95_ms:.0f}")
    table.add_row("P99 (ms)", f"{agg.p99_ms:.0f}")
    table.add_row("Max (ms)", f"{agg.max_ms:.1f}")
    if "rate" in agg.extra:
        table.add_row("Achieved rate (req/s)", f"{agg.extra['rate']:.2f}")
    if "elapsed_s" in agg.extra:
        table.add_row("Elapsed (s)", f"{agg.extra['elapsed_s']:.1f}")
    return table


def per_test_table(per_test: dict[str, AggregateMetrics]) -> Table:
    table = Table(title="Per test")
    table.add_column("Test", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Pass", justify="right")
    table.add_column("Not pass", justify="right")
    table.add_column("P50 ms", justify="right")
    table.add_column("P95 ms", justify="right")
    for key, m in per_test.items():
        table.add_row(key, str(m.total), str(m.passed), str(m.failed + m.errored + m.bogus),
                      f"{m.p50_ms:.0f}", f"{m.p95_ms:.0f}")
    return table


def print_suite_summary(results: Sequence[SuiteResult], agg: AggregateMetrics, console: Console | None = None) -> None:
    console = console or Console()
    console.print(suite_table(results))
    console.print(metrics_table(agg))


def print_load_summary(agg: AggregateMetrics, console: Console | None = None) -> None:
    console = console or Console()
    console.print(metrics_table(agg, title="Load test"))
    per_test = agg.extra.get("per_test")
    if per_test:
        console.print(per_test_table(per_test))


def _format_remaining(seconds: float) -> str:
    """Format remaining time as Xs or Xm Ys."""
    s = max(0, int(round(seconds)))
    if s >= 60:
        m, s = divmod(s, 60)
        return f"{m}m {s}s"
    return f"{s}s"


def create_live_panel(load: "LoadTest") -> Panel:
    """Current counters of a running load test; no aggregation per frame."""
    opts = load.options
    elapsed = load.elapsed
    done = len(load.result.records)
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")
    table.add_row("Dispatched", str(load.dispatched))
    table.add_row("Completed", str(done))
    table.add_row("In flight", str(load.conc_tot))
    table.add_row("Not passing", str(load.bad))
    table.add_row("Error rate %", f"{(load.bad / done * 100) if done else 0.0:.2f}%")
    table.add_row("Rate (req/s)", f"{done / elapsed if elapsed > 0 else 0.0:.1f}")
    title = Text()
    title.append("hitest ", style="bold magenta")
    title.append(f"| {opts.type.value} | {elapsed:.1f}s / {opts.duration:.0f}s", style="dim")
    title.append(f" | ETA: {_format_remaining(opts.duration - elapsed)}", style="bold yellow")
    return Panel(table, title=title, border_style="blue")


async def run_live_dashboard(load: "LoadTest", refresh_interval: float = 0.5) -> None:
    """Refresh the live panel until the load test has finished. Cancel to stop early."""
    console = Console()
    try:
        with Live(
            create_live_panel(load),
            console=console,
            refresh_per_second=min(4, 1.0 / refresh_interval),
        ) as live:
            while not load.finished:
                live.update(create_live_panel(load))
                await asyncio.sleep(refresh_interval)
            live.update(create_live_panel(load))
    except Exception as e:  # noqa: BLE001
        logger.debug("Live dashboard stopped: %s", e)
