"""Plain text reports (jinja2 templates) and JSON result export (orjson)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import orjson
from jinja2 import Environment, PackageLoader

from . import __version__ as hitest_version
from .coordinator import overall_status
from .metrics import analyse_load_test, analyse_suites
from .models import AggregateMetrics, CheckResult, LoadTestResult, Status, SuiteResult, TestResult

# Collected load test results shown in the text report; the JSON export has all
MAX_COLLECTED_SHOWN = 50
# Response bodies in the JSON export are cut to this many characters
MAX_BODY_CHARS = 2048


def _seconds(value: float) -> str:
    if value < 1:
        return f"{value * 1000:.0f}ms"
    return f"{value:.2f}s"


def _ms(value: float) -> str:
    return f"{value * 1000:.1f}ms"


def _environment() -> Environment:
    env = Environment(
        loader=PackageLoader("hitest", "templates"),
        autoescape=False,
        keep_trailing_newline=True,
    )
    env.filters["seconds"] = _seconds
    env.filters["ms"] = _ms
    return env


def render_suite_report(results: Sequence[SuiteResult], verbose: bool = False) -> str:
    """Text report of suite runs; verbose adds check and extraction lines."""
    template = _environment().get_template("suite.txt.j2")
    return template.render(
        suites=results,
        metrics=analyse_suites(results),
        status=overall_status(results),
        verbose=verbose,
        NOT_RUN=Status.NOT_RUN,
        SKIPPED=Status.SKIPPED,
    )


def render_load_report(result: LoadTestResult, metrics: AggregateMetrics | None = None) -> str:
    template = _environment().get_template("load.txt.j2")
    return template.render(
        options=result.options,
        metrics=metrics or analyse_load_test(result),
        collected=result.collected[:MAX_COLLECTED_SHOWN],
    )


# --- JSON export ---

def _check_dict(c: CheckResult) -> dict[str, Any]:
    return {
        "name": c.name,
        "status": str(c.status),
        "duration_ms": round(c.duration * 1000, 4),
        "error": c.error,
    }


def result_dict(tr: TestResult, include_body: bool = False) -> dict[str, Any]:
    out: dict[str, Any] = {
        "name": tr.name,
        "description": tr.description,
        "status": str(tr.status),
        "error": tr.error,
        "started": datetime.fromtimestamp(tr.started, timezone.utc).isoformat() if tr.started else None,
        "duration_ms": round(tr.duration * 1000, 4),
        "full_duration_ms": round(tr.full_duration * 1000, 4),
        "tries": tr.tries,
        "checks": [_check_dict(c) for c in tr.checks],
        "extractions": {k: {"value": e.value, "error": e.error} for k, e in tr.extractions.items()},
    }
    if tr.response is not None:
        out["response"] = {
            "status_code": tr.response.status_code,
            "url": tr.response.url,
            "http_version": tr.response.http_version,
            "redirections": tr.response.redirections,
        }
        if include_body:
            out["response"]["body"] = tr.response.text[:MAX_BODY_CHARS]
    return out


def suite_result_dict(sr: SuiteResult, include_body: bool = False) -> dict[str, Any]:
    return {
        "name": sr.name,
        "description": sr.description,
        "status": str(sr.status),
        "error": sr.error,
        "started": datetime.fromtimestamp(sr.started, timezone.utc).isoformat() if sr.started else None,
        "full_duration_ms": round(sr.full_duration * 1000, 4),
        "setup": [result_dict(t, include_body) for t in sr.setup],
        "main": [result_dict(t, include_body) for t in sr.main],
        "teardown": [result_dict(t, include_body) for t in sr.teardown],
        "teardown_status": str(sr.teardown_status),
        "variables": sr.variables,
    }


def metrics_dict(agg: AggregateMetrics) -> dict[str, Any]:
    out: dict[str, Any] = {
        "total": agg.total,
        "passed": agg.passed,
        "failed": agg.failed,
        "errored": agg.errored,
        "bogus": agg.bogus,
        "skipped": agg.skipped,
        "not_run": agg.not_run,
        "error_rate": round(agg.error_rate, 6),
        "avg_ms": round(agg.avg_ms, 4),
        "max_ms": round(agg.max_ms, 4),
        "p50_ms": agg.p50_ms,
        "p90_ms": agg.p90_ms,
        "p95_ms": agg.p95_ms,
        "p99_ms": agg.p99_ms,
        "pass_p50_ms": agg.pass_p50_ms,
        "pass_p95_ms": agg.pass_p95_ms,
        "fail_p50_ms": agg.fail_p50_ms,
        "fail_p95_ms": agg.fail_p95_ms,
    }
    for k, v in agg.extra.items():
        if k == "per_test":
            out[k] = {key: metrics_dict(m) for key, m in v.items()}
        else:
            out[k] = v
    return out


def _write(path: str | Path, payload: dict[str, Any]) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
    return out


def write_suite_json(path: str | Path, results: Sequence[SuiteResult], include_body: bool = False) -> Path:
    """Write suite results plus aggregate metrics as JSON."""
    payload = {
        "hitest_version": hitest_version,
        "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "status": str(overall_status(results)),
        "metrics": metrics_dict(analyse_suites(results)),
        "suites": [suite_result_dict(sr, include_body) for sr in results],
    }
    return _write(path, payload)


def write_load_json(path: str | Path, result: LoadTestResult, metrics: AggregateMetrics | None = None) -> Path:
    """Write load test options, metrics and the collected results as JSON."""
    opts = result.options
    payload = {
        "hitest_version": hitest_version,
        "options": {
            "type": opts.type.value,
            "rate": opts.rate,
            "concurrency": opts.concurrency,
            "duration": opts.duration,
            "count": opts.count,
            "ramp": opts.ramp,
            "uniform": opts.uniform,
            "max_error_rate": opts.max_error_rate,
            "collect_from": str(opts.collect_from),
        },
        "started": datetime.fromtimestamp(result.started, timezone.utc).isoformat() if result.started else None,
        "finished": datetime.fromtimestamp(result.finished, timezone.utc).isoformat() if result.finished else None,
        "aborted": result.aborted,
        "metrics": metrics_dict(metrics or analyse_load_test(result)),
        "collected": [result_dict(tr) for tr in result.collected],
    }
    return _write(path, payload)
