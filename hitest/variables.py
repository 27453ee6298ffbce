"""Variable substitution: {{NAME}} placeholders, NOW expressions and scopes.

Substitution is purely textual: every "{{name}}" whose name is defined is
replaced by its value, unknown placeholders stay untouched and replaced
values are not scanned again.
"""

from __future__ import annotations

import itertools
import math
import random
import re
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import Callable, Mapping

from .models import Cookie, Request, Test

StrFn = Callable[[str], str]

# {{NOW}}, {{NOW + 30s}}, {{NOW - 2d | "2006-Jan-02"}}
NOW_RE = re.compile(r'\{\{NOW *([+-] *[1-9][0-9]*[smhd])? *(\| *"(.*?)")?\}\}')

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

# Seed for the RANDOM variable; reproducible runs
RANDOM_SEED = 34


class Replacer:
    """Replace {{name}} with variables[name] in a single pass."""

    __slots__ = ("variables", "_re")

    def __init__(self, variables: Mapping[str, str]) -> None:
        self.variables = dict(variables)
        if self.variables:
            keys = sorted(self.variables, key=len, reverse=True)
            self._re: re.Pattern[str] | None = re.compile(
                "|".join(re.escape("{{" + k + "}}") for k in keys)
            )
        else:
            self._re = None

    def replace(self, s: str) -> str:
        if self._re is None or "{{" not in s:
            return s
        return self._re.sub(lambda m: self.variables[m.group(0)[2:-2]], s)

    __call__ = replace


# --- Automatic variables ---

_counter = itertools.count(1)
_counter_lock = threading.Lock()
_random = random.Random(RANDOM_SEED)
_random_lock = threading.Lock()


def next_counter() -> int:
    """Strictly increasing, process-wide counter starting at 1."""
    with _counter_lock:
        return next(_counter)


def random_intn(n: int) -> int:
    """Random int in [0, n) from the shared, seeded generator."""
    with _random_lock:
        return _random.randrange(n)


def new_scope(outer: Mapping[str, str], inner: Mapping[str, str], auto: bool = False) -> dict[str, str]:
    """Merge inner defaults into a copy of outer.

    Outer definitions always win. Inner values may reference outer ones
    (they are substituted with the outer scope). With auto the scope gets
    fresh COUNTER and RANDOM values.
    """
    scope = dict(outer)
    if auto:
        scope["COUNTER"] = str(next_counter())
        scope["RANDOM"] = str(100000 + random_intn(900000))
    replacer = Replacer(scope)
    for name, value in inner.items():
        if name in scope:
            continue
        scope[name] = replacer(value)
    return scope


def merge_variables(*layers: Mapping[str, str]) -> dict[str, str]:
    """Merge variable layers ordered from highest to lowest priority.

    The first definition of a name wins; each lower layer only fills gaps
    and may reference everything defined above it.
    """
    scope: dict[str, str] = {}
    for layer in layers:
        scope = new_scope(scope, layer)
    return scope


# --- Applying a string function to a whole test ---

def map_request(req: Request, fn: StrFn) -> Request:
    return replace(
        req,
        url=fn(req.url),
        method=fn(req.method),
        params={k: [fn(v) for v in vals] for k, vals in req.params.items()},
        header={k: [fn(v) for v in vals] for k, vals in req.header.items()},
        cookies=[Cookie(c.name, fn(c.value)) for c in req.cookies],
        body=fn(req.body),
        basic_auth_user=fn(req.basic_auth_user),
        basic_auth_pass=fn(req.basic_auth_pass),
    )


def map_test(test: Test, fn: StrFn) -> Test:
    """Return a copy of test with fn applied to every substitutable string.

    Covers name, description, the request and every string inside checks
    and extractors. Variable names and the template are left unchanged.
    """
    return replace(
        test,
        name=fn(test.name),
        description=fn(test.description),
        request=map_request(test.request, fn),
        checks=[c.visit_strings(fn) for c in test.checks],
        extract={k: e.visit_strings(fn) for k, e in test.extract.items()},
    )


def substitute(test: Test, variables: Mapping[str, str]) -> Test:
    return map_test(test, Replacer(variables))


# --- NOW ---

_GO_LAYOUT_TOKENS = (
    "January", "Monday", "Z07:00", "-07:00", "-0700", ".000000", ".000",
    "2006", "Jan", "Mon", "MST", "01", "02", "03", "04", "05", "06", "15", "PM",
)
_GO_STRFTIME = {
    "January": "%B",
    "Monday": "%A",
    "-0700": "%z",
    "2006": "%Y",
    "Jan": "%b",
    "Mon": "%a",
    "MST": "%Z",
    "01": "%m",
    "02": "%d",
    "03": "%I",
    "04": "%M",
    "05": "%S",
    "06": "%y",
    "15": "%H",
    "PM": "%p",
}


def _offset(dt: datetime, zulu: bool) -> str:
    off = dt.utcoffset() or timedelta(0)
    if zulu and off == timedelta(0):
        return "Z"
    sign = "-" if off < timedelta(0) else "+"
    minutes = abs(int(off.total_seconds())) // 60
    return f"{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def format_time(dt: datetime, layout: str) -> str:
    """Format dt with a Go style reference layout such as "2006-Jan-02".

    Layouts containing '%' are taken as strftime formats.
    """
    if "%" in layout:
        return dt.strftime(layout)
    out: list[str] = []
    i = 0
    while i < len(layout):
        for tok in _GO_LAYOUT_TOKENS:
            if layout.startswith(tok, i):
                if tok in ("Z07:00", "-07:00"):
                    out.append(_offset(dt, tok == "Z07:00"))
                elif tok == ".000":
                    out.append(f".{dt.microsecond // 1000:03d}")
                elif tok == ".000000":
                    out.append(f".{dt.microsecond:06d}")
                else:
                    out.append(dt.strftime(_GO_STRFTIME[tok]))
                i += len(tok)
                break
        else:
            out.append(layout[i])
            i += 1
    return "".join(out)


def format_rfc1123(dt: datetime) -> str:
    """HTTP date, e.g. "Mon, 02 Jan 2006 15:04:05 GMT"."""
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)


def find_now_expressions(test: Test) -> list[str]:
    """All distinct NOW expressions (without braces) used anywhere in test."""
    found: dict[str, None] = {}

    def collect(s: str) -> str:
        for m in NOW_RE.finditer(s):
            found.setdefault(m.group(0)[2:-2], None)
        return s

    map_test(test, collect)
    return list(found)


def now_variables(test: Test, now: datetime | None = None) -> dict[str, str]:
    """Evaluate every NOW expression in test against a single instant.

    Keys are the expression text between the braces so the result can be
    merged into the ordinary variables.
    """
    if now is None:
        now = datetime.now().astimezone()
    out: dict[str, str] = {}
    for expr in find_now_expressions(test):
        m = NOW_RE.fullmatch("{{" + expr + "}}")
        if m is None:
            continue
        t = now
        delta = m.group(1)
        if delta:
            sign = -1 if delta[0] == "-" else 1
            n = int(delta[1:-1].strip())
            t = now + timedelta(seconds=sign * n * _UNIT_SECONDS[delta[-1]])
        fmt = m.group(3)
        out[expr] = format_time(t, fmt) if fmt else format_rfc1123(t)
    return out


# --- Repetition ---

def lcm_of(values: Mapping[str, list[str]]) -> int:
    """Least common multiple of the lengths of all value lists (0 if none)."""
    n = 0
    for vals in values.values():
        n = len(vals) if n == 0 else math.lcm(n, len(vals))
    return n


def repeat(test: Test, count: int, values: Mapping[str, list[str]]) -> list[Test]:
    """count copies of test; copy r uses values[v][r % len(values[v])] for each v."""
    copies: list[Test] = []
    for r in range(count):
        scope = {k: v[r % len(v)] for k, v in values.items() if v}
        copies.append(substitute(test, scope))
    return copies


def unroll(test: Test, values: Mapping[str, list[str]]) -> list[Test]:
    """Repeat test often enough to use every combination of the cycles once."""
    return repeat(test, lcm_of(values) or 1, values)
