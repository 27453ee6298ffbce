"""CLI entry point: hitest run | exec | list | load.

Exit codes: 0 all tests passed (or were skipped), 1 a test failed,
2 a request errored, 3 a test was bogus, 7 hitest itself could not run
(bad files, bad options), 130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import gc
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Coroutine, Sequence

# Try to use uvloop for faster async performance
_HAS_UVLOOP = False
try:
    import uvloop
    _HAS_UVLOOP = True
except ImportError:
    pass

from . import __version__
from .config import load_options, load_variables, options_from_dict, parse_definitions, parse_duration
from .coordinator import overall_status, run_suites, run_tests
from .dashboard import print_load_summary, print_suite_summary
from .exceptions import HitestConfigError, HitestError, LoadTestAborted
from .loader import load_suite, load_test
from .loadtest import run_load_test
from .logging_config import get_logger
from .metrics import analyse_load_test, analyse_suites
from .models import LoadTestOptions, LoadTestResult, Poll, Status, Suite, SuiteResult, combine_status
from .report import render_load_report, render_suite_report, write_load_json, write_suite_json

logger = get_logger("cli")

EXIT_CODES = {
    Status.NOT_RUN: 0,
    Status.SKIPPED: 0,
    Status.PASS: 0,
    Status.FAIL: 1,
    Status.ERROR: 2,
    Status.BOGUS: 3,
}
EXIT_INTERNAL = 7
EXIT_INTERRUPTED = 130
DEFAULT_CSV = "live.csv"


def _run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run coroutine on uvloop when available; GC is paused for steadier latencies."""
    gc_was_enabled = gc.isenabled()
    gc.disable()
    try:
        if _HAS_UVLOOP:
            return uvloop.run(coro)
        return asyncio.run(coro)
    finally:
        if gc_was_enabled:
            gc.enable()
        gc.collect()


def exit_code(status: Status) -> int:
    return EXIT_CODES[status]


# --- test selection ---

def parse_selection(value: str | None) -> set[str]:
    """"1.2,3" -> {"1.2", "3"}. Raises HitestConfigError for malformed IDs."""
    out: set[str] = set()
    if not value:
        return out
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        pieces = part.split(".")
        if len(pieces) > 2 or not all(p.isdigit() and int(p) > 0 for p in pieces):
            raise HitestConfigError(f"bad test ID {part!r}, want <suite> or <suite>.<test>")
        out.add(".".join(str(int(p)) for p in pieces))
    return out


def _selected(ids: set[str], s_no: int, t_no: int) -> bool:
    return str(s_no) in ids or f"{s_no}.{t_no}" in ids


def select_tests(suites: Sequence[Suite], only: set[str], skip: set[str]) -> list[Suite]:
    """Disable tests not in only (when given) and tests in skip.

    Test numbers count Setup, Main and Teardown tests in that order,
    starting at 1; disabled tests are reported as Skipped.
    """
    if not only and not skip:
        return list(suites)
    out = []
    for s_no, suite in enumerate(suites, 1):
        t_no = 0

        def pick(tests: list) -> list:
            nonlocal t_no
            picked = []
            for test in tests:
                t_no += 1
                off = (only and not _selected(only, s_no, t_no)) or _selected(skip, s_no, t_no)
                picked.append(replace(test, poll=Poll(max=-1, sleep=test.poll.sleep)) if off else test)
            return picked

        setup, main, teardown = pick(suite.setup), pick(suite.main), pick(suite.teardown)
        out.append(replace(suite, setup=setup, main=main, teardown=teardown))
    return out


def _variables(args: argparse.Namespace) -> dict[str, str]:
    """Variables file values, overridden by -D definitions."""
    variables: dict[str, str] = {}
    for path in args.vars_file or ():
        for k, v in load_variables(path).items():
            variables.setdefault(k, v)
    variables.update(parse_definitions(args.define))
    return variables


def _load_suites(args: argparse.Namespace) -> list[Suite]:
    suites = [load_suite(p) for p in args.suites]
    return select_tests(suites, parse_selection(args.only), parse_selection(args.skip))


# --- commands ---

def _report_suites(results: list[SuiteResult], args: argparse.Namespace) -> int:
    if args.text:
        print(render_suite_report(results, verbose=args.verbose), end="")
    else:
        print_suite_summary(results, analyse_suites(results))
    if args.output:
        out = write_suite_json(args.output, results, include_body=args.verbose)
        logger.info("JSON report written to %s", out)
    return exit_code(overall_status(results))


def cmd_run(args: argparse.Namespace) -> int:
    suites = _load_suites(args)
    variables = _variables(args)
    results = _run_async(run_suites(
        suites,
        variables,
        concurrency=args.concurrency,
        main_concurrency=args.main_concurrency,
        http2=not args.http1,
    ))
    return _report_suites(results, args)


def cmd_exec(args: argparse.Namespace) -> int:
    tests = [t for p in args.tests for t in load_test(p)]
    variables = _variables(args)
    results = _run_async(run_tests(
        tests,
        variables,
        concurrency=args.concurrency,
        keep_cookies=args.keep_cookies,
        http2=not args.http1,
    ))
    status = combine_status((r.status for r in results), empty=Status.NOT_RUN)
    sr = SuiteResult(name="exec", status=status, main=results)
    return _report_suites([sr], args)


def cmd_list(args: argparse.Namespace) -> int:
    suites = _load_suites(args)
    for s_no, suite in enumerate(suites, 1):
        print(f"{s_no}: {suite.name}" + (f" ({suite.description})" if suite.description else ""))
        t_no = 0
        for phase, tests in (("Setup", suite.setup), ("Main", suite.main), ("Teardown", suite.teardown)):
            for test in tests:
                t_no += 1
                state = "  [disabled]" if test.disabled else ""
                print(f"  {s_no}.{t_no:<4} {phase:<9} {test.name}{state}")
    return 0


def _load_options(args: argparse.Namespace) -> LoadTestOptions:
    raw: dict[str, Any] = {}
    if args.config:
        base = load_options(args.config)
        raw = {
            "type": base.type.value, "rate": base.rate, "concurrency": base.concurrency,
            "duration": base.duration, "count": base.count, "ramp": base.ramp,
            "uniform": base.uniform, "max_error_rate": base.max_error_rate,
            "collect_from": str(base.collect_from),
        }
    overrides = {
        "type": args.type, "rate": args.rate, "concurrency": args.load_concurrency,
        "duration": args.duration, "count": args.count, "ramp": args.ramp,
        "max_error_rate": args.max_error_rate, "collect_from": args.collect_from,
    }
    raw.update({k: v for k, v in overrides.items() if v is not None})
    if args.uniform:
        raw["uniform"] = True
    return options_from_dict(raw)


def cmd_load(args: argparse.Namespace) -> int:
    suites = _load_suites(args)
    variables = _variables(args)
    options = _load_options(args)
    csv_path = Path(args.csv)
    csv_path.parent.mkdir(parents=True, exist_ok=True)
    result: LoadTestResult
    with csv_path.open("w", newline="", encoding="utf-8") as csv_out:
        try:
            result = _run_async(run_load_test(
                suites, options, variables, csv_out=csv_out,
                http2=not args.http1, live=not args.no_live,
            ))
        except LoadTestAborted as e:
            print(f"Aborted: {e.message}", file=sys.stderr)
            result = e.result
    metrics = analyse_load_test(result)
    if args.text:
        print(render_load_report(result, metrics), end="")
    else:
        print_load_summary(metrics)
    if args.output:
        out = write_load_json(args.output, result, metrics)
        logger.info("JSON report written to %s", out)
    code = exit_code(metrics.status)
    if result.aborted:
        code = max(code, EXIT_CODES[Status.FAIL])
    return code


def _duration_arg(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hitest",
        description="Run declarative HTTP tests and suites, and load test with them.",
    )
    parser.add_argument("-v", "--version", action="version", version=f"hitest {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-D", "--define", action="append", metavar="NAME=VALUE",
        help="Set variable NAME to VALUE (can be repeated). Overrides --vars-file.",
    )
    common.add_argument("--vars-file", action="append", metavar="PATH", help="YAML/JSON file with variables")
    common.add_argument("--output", "-o", metavar="PATH", help="Also write a JSON report to PATH")
    common.add_argument("--text", action="store_true", help="Plain text report instead of tables")
    common.add_argument("--verbose", action="store_true", help="Show checks and extracted variables")
    common.add_argument("--http1", action="store_true", help="Disable HTTP/2")

    selection = argparse.ArgumentParser(add_help=False)
    selection.add_argument("--only", metavar="IDS", help="Run only these tests, e.g. 1.2,1.5,3")
    selection.add_argument("--skip", metavar="IDS", help="Skip these tests, e.g. 2.1,4")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", parents=[common, selection], help="Run suites")
    p.add_argument("suites", nargs="+", metavar="SUITE")
    p.add_argument("--concurrency", type=int, default=1, help="Suites run in parallel (default 1)")
    p.add_argument("--main-concurrency", type=int, default=1,
                   help="Main tests of one suite run in parallel (default 1, sequential)")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("exec", parents=[common], help="Execute single tests")
    p.add_argument("tests", nargs="+", metavar="TEST")
    p.add_argument("--concurrency", type=int, default=1, help="Tests run in parallel (default 1)")
    p.add_argument("--keep-cookies", action="store_true", help="Share received cookies between tests")
    p.set_defaults(func=cmd_exec)

    p = sub.add_parser("list", parents=[selection], help="List suites and test IDs")
    p.add_argument("suites", nargs="+", metavar="SUITE")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("load", parents=[common, selection], help="Load test with the Main tests of suites")
    p.add_argument("suites", nargs="+", metavar="SUITE")
    p.add_argument("-f", "--config", metavar="PATH", help="YAML load test options")
    p.add_argument("--type", choices=["throughput", "concurrency"], default=None)
    p.add_argument("--rate", type=float, default=None, help="Requests per second (throughput, default 20)")
    p.add_argument("--concurrency", type=int, default=None, dest="load_concurrency",
                   help="Tests in flight (concurrency mode)")
    p.add_argument("--duration", type=_duration_arg, default=None, metavar="DUR", help="e.g. 30s, 2m (default 30s)")
    p.add_argument("--count", type=int, default=None, help="Stop after this many requests (0 = no cap)")
    p.add_argument("--ramp", type=_duration_arg, default=None, metavar="DUR", help="Ramp up time")
    p.add_argument("--uniform", action="store_true", help="Uniform instead of exponential intervals")
    p.add_argument("--max-error-rate", type=float, default=None,
                   help="Abort above this fraction of non passing tests (default 0.9, negative disables)")
    p.add_argument("--collect-from", default=None, metavar="STATUS",
                   help="Keep full results with at least this status (default Fail)")
    p.add_argument("--csv", default=DEFAULT_CSV, metavar="PATH", help=f"Per request CSV (default {DEFAULT_CSV})")
    p.add_argument("--no-live", action="store_true", help="Disable the live panel")
    p.set_defaults(func=cmd_load)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except HitestError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INTERNAL
    except Exception:
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return EXIT_INTERNAL


if __name__ == "__main__":
    sys.exit(main())
