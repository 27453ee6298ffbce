"""Response checks.

A check is a dataclass with two operations:

- prepare(): validate and compile the check, raising MalformedCheck
- execute(response): raise CheckFailure if the response is not okay,
  MalformedCheck if the check turns out to be unusable

plus visit_strings(fn) which returns a copy with every string field mapped
through fn; this is how variable substitution reaches into checks.
Checks are registered by their class name (see registry.py).
"""

from __future__ import annotations

import dataclasses
import re
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from http.cookies import CookieError, SimpleCookie
from typing import Any, Callable, TypeVar

import orjson

from .config import parse_duration
from .models import Response

C = TypeVar("C", bound="Check")


class CheckFailure(Exception):
    """The response did not satisfy the check (status Fail)."""


class MalformedCheck(Exception):
    """The check itself is unusable, e.g. a bad regexp (status Bogus)."""

    def __init__(self, message: str) -> None:
        super().__init__(f"malformed check: {message}")


NOT_FOUND = "not found"
FOUND_FORBIDDEN = "found forbidden"
BAD_BODY = "skipped due to bad body"


def _visit(value: Any, fn: Callable[[str], str]) -> Any:
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, list):
        return [_visit(v, fn) for v in value]
    if isinstance(value, dict):
        return {k: _visit(v, fn) for k, v in value.items()}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return visit_dataclass_strings(value, fn)
    return value


def visit_dataclass_strings(obj: Any, fn: Callable[[str], str]) -> Any:
    """Copy of a dataclass instance with fn applied to every string in its init fields.

    Non-init fields (compiled state) are reset by construction. Numeric and
    boolean fields given as text (e.g. "{{CODE}}") are converted afterwards.
    """
    kwargs = {f.name: _visit(getattr(obj, f.name), fn) for f in dataclasses.fields(obj) if f.init}
    return coerce_fields(type(obj)(**kwargs))


def _parse_bool(s: str) -> bool:
    low = s.lower()
    if low in ("true", "yes", "1"):
        return True
    if low in ("false", "no", "0", ""):
        return False
    raise ValueError(f"not a boolean: {s!r}")


# field annotation -> converter for values that arrive as text
_CONVERTERS: dict[str, Callable[[str], Any]] = {
    "int": lambda s: int(s.strip()),
    "float": parse_duration,
    "bool": lambda s: _parse_bool(s.strip()),
}


def coerce_fields(obj: Any, keep_placeholders: bool = False) -> Any:
    """Convert text values of int, float and bool fields of obj in place.

    float fields accept durations ("250ms"). With keep_placeholders, values
    still containing "{{" are left for substitution. Raises MalformedCheck.
    """
    for f in dataclasses.fields(obj):
        value = getattr(obj, f.name)
        conv = _CONVERTERS.get(f.type) if isinstance(f.type, str) else None
        if not f.init or conv is None or not isinstance(value, str):
            continue
        if keep_placeholders and "{{" in value:
            continue
        try:
            setattr(obj, f.name, conv(value))
        except ValueError as e:
            raise MalformedCheck(f"{f.name}: {value!r} is not a valid {f.type}") from e
    return obj


@dataclass
class Check:
    """Base class of all checks."""

    @property
    def name(self) -> str:
        return type(self).__name__

    def prepare(self) -> None:
        """Validate and compile. Raises MalformedCheck."""

    def execute(self, response: Response) -> None:
        raise NotImplementedError

    def visit_strings(self: C, fn: Callable[[str], str]) -> C:
        return visit_dataclass_strings(self, fn)


@dataclass
class Condition:
    """Conjunction of tests against a string.

    count applies to contains and regexp:
        0: any positive number of matches is okay
      > 0: exactly that many matches required
      < 0: no match allowed
    min/max bound the length of the string; 0 disables them.
    """

    prefix: str = ""
    suffix: str = ""
    contains: str = ""
    regexp: str = ""
    count: int = 0
    min: int = 0
    max: int = 0

    _re: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def compile(self) -> re.Pattern[str] | None:
        if self.regexp and self._re is None:
            try:
                self._re = re.compile(self.regexp)
            except re.error as e:
                raise MalformedCheck(f"bad regexp {self.regexp!r}: {e}") from e
        return self._re

    @property
    def has_condition(self) -> bool:
        return bool(self.prefix or self.suffix or self.contains or self.regexp or self.min or self.max)

    def fulfilled(self, s: str) -> None:
        """Raise CheckFailure unless s meets every requirement."""
        if self.prefix and not s.startswith(self.prefix):
            raise CheckFailure(f"bad prefix, got {s[:len(self.prefix)]!r}")
        if self.suffix and not s.endswith(self.suffix):
            got = s[-len(self.suffix):] if s else ""
            raise CheckFailure(f"bad suffix, got {got!r}")
        if self.contains:
            _count_matches(s.count(self.contains), self.count)
        pattern = self.compile()
        if pattern is not None:
            _count_matches(sum(1 for _ in pattern.finditer(s)), self.count)
        if self.min > 0 and len(s) < self.min:
            raise CheckFailure(f"too short, was {len(s)}")
        if self.max > 0 and len(s) > self.max:
            raise CheckFailure(f"too long, was {len(s)}")


def _count_matches(got: int, want: int) -> None:
    if want == 0 and got == 0:
        raise CheckFailure(NOT_FOUND)
    if want < 0 and got > 0:
        raise CheckFailure(FOUND_FORBIDDEN)
    if want > 0 and got != want:
        raise CheckFailure(f"found {got}, want {want}")


# --- Built-in checks ---

@dataclass
class StatusCode(Check):
    """The HTTP status code equals expect."""

    expect: int = 200

    def prepare(self) -> None:
        if not 100 <= self.expect <= 999:
            raise MalformedCheck(f"status code {self.expect} out of range")

    def execute(self, response: Response) -> None:
        if response.status_code != self.expect:
            raise CheckFailure(f"got {response.status_code}, want {self.expect}")


@dataclass
class Body(Condition, Check):
    """The response body fulfills the condition."""

    def prepare(self) -> None:
        self.compile()

    def execute(self, response: Response) -> None:
        if response.body_error is not None:
            raise CheckFailure(BAD_BODY)
        self.fulfilled(response.text)


@dataclass
class UTF8Encoded(Check):
    """The response body is valid UTF-8."""

    def execute(self, response: Response) -> None:
        if response.body_error is not None:
            raise CheckFailure(BAD_BODY)
        try:
            response.body.decode("utf-8", errors="strict")
        except UnicodeDecodeError as e:
            raise CheckFailure(f"invalid UTF-8 at byte {e.start}") from e


@dataclass
class Header(Condition, Check):
    """The first value of header fulfills the condition; with absent the header must be missing."""

    header: str = ""
    absent: bool = False

    def prepare(self) -> None:
        if not self.header:
            raise MalformedCheck("missing header name")
        self.compile()

    def execute(self, response: Response) -> None:
        values = response.headers.get_list(self.header)
        if self.absent:
            if values:
                raise CheckFailure(f"header {self.header} received")
            return
        if not values:
            raise CheckFailure(f"header {self.header} not received")
        try:
            self.fulfilled(values[0])
        except CheckFailure as e:
            raise CheckFailure(f"header {self.header}: {e}") from None


@dataclass
class ContentType(Check):
    """The Content-Type matches is_ ("json", "html" or a full type) and optionally charset."""

    is_: str = ""
    charset: str = ""

    def prepare(self) -> None:
        if not self.is_:
            raise MalformedCheck("missing content type")

    def execute(self, response: Response) -> None:
        raw = response.headers.get("content-type")
        if raw is None:
            raise CheckFailure("missing Content-Type header")
        parts = [p.strip() for p in raw.split(";")]
        mime = parts[0].lower()
        want = self.is_.lower()
        if "/" in want:
            ok = mime == want
        else:
            ok = mime.split("/", 1)[-1] == want or mime.endswith("+" + want)
        if not ok:
            raise CheckFailure(f"Content-Type is {parts[0]}, want {self.is_}")
        if self.charset:
            got = ""
            for p in parts[1:]:
                k, _, v = p.partition("=")
                if k.strip().lower() == "charset":
                    got = v.strip().strip('"')
            if got.lower() != self.charset.lower():
                raise CheckFailure(f"charset is {got!r}, want {self.charset!r}")


@dataclass
class ResponseTime(Check):
    """The response duration is below lower and above higher (seconds; 0 disables)."""

    lower: float = 0.0
    higher: float = 0.0

    def prepare(self) -> None:
        if self.lower and self.higher and self.higher >= self.lower:
            raise MalformedCheck(f"{self.higher}s < RT < {self.lower}s unfulfillable")

    def execute(self, response: Response) -> None:
        d = response.duration
        if self.lower > 0 and d > self.lower:
            raise CheckFailure(f"response took {d:.3f}s (allowed max {self.lower}s)")
        if self.higher > 0 and d < self.higher:
            raise CheckFailure(f"response took {d:.3f}s (required min {self.higher}s)")


@dataclass
class SetCookie(Condition, Check):
    """A cookie named name is set, its value fulfilling the condition.

    min_lifetime (seconds) requires a persistent cookie living at least
    that long; absent requires that the cookie is not set.
    """

    name_: str = ""
    absent: bool = False
    min_lifetime: float = 0.0

    def prepare(self) -> None:
        if not self.name_:
            raise MalformedCheck("missing cookie name")
        self.compile()

    def execute(self, response: Response) -> None:
        morsel = None
        for raw in response.headers.get_list("set-cookie"):
            jar: SimpleCookie = SimpleCookie()
            try:
                jar.load(raw)
            except CookieError:
                continue
            if self.name_ in jar:
                morsel = jar[self.name_]
                break
        if self.absent:
            if morsel is not None:
                raise CheckFailure(f"found cookie {self.name_}={morsel.value}")
            return
        if morsel is None:
            raise CheckFailure(f"missing cookie {self.name_}")
        try:
            self.fulfilled(morsel.value)
        except CheckFailure as e:
            raise CheckFailure(f"cookie {self.name_}: {e}") from None
        if self.min_lifetime > 0:
            self._check_lifetime(morsel["max-age"], morsel["expires"])

    def _check_lifetime(self, max_age: str, expires: str) -> None:
        if max_age:
            try:
                seconds = int(max_age)
            except ValueError:
                raise CheckFailure(f"bad Max-Age {max_age!r} of cookie {self.name_}") from None
            if seconds < self.min_lifetime:
                raise CheckFailure(f"Max-Age {max_age}s of cookie {self.name_} too short")
            return
        if expires:
            try:
                exp = parsedate_to_datetime(expires).timestamp()
            except (TypeError, ValueError) as e:
                raise CheckFailure(f"bad Expires {expires!r} of cookie {self.name_}") from e
            if exp < time.time() + self.min_lifetime:
                raise CheckFailure(f"Expires {expires} of cookie {self.name_} too early")
            return
        raise CheckFailure(f"cookie {self.name_} is a session cookie")


def json_element(doc: Any, path: str, sep: str = ".") -> Any:
    """Walk path (e.g. "data.items.0.id") into a decoded JSON document.

    Raises KeyError if the element does not exist.
    """
    if path == "":
        return doc
    cur = doc
    for part in path.split(sep):
        if isinstance(cur, dict):
            if part not in cur:
                raise KeyError(path)
            cur = cur[part]
        elif isinstance(cur, list):
            try:
                idx = int(part)
            except ValueError:
                raise KeyError(path) from None
            if not -len(cur) <= idx < len(cur):
                raise KeyError(path)
            cur = cur[idx]
        else:
            raise KeyError(path)
    return cur


def json_text(value: Any) -> str:
    """Strings verbatim, everything else as compact JSON."""
    if isinstance(value, str):
        return value
    return orjson.dumps(value).decode("utf-8")


@dataclass
class JSON(Condition, Check):
    """The JSON body contains element; optionally equal to equals (JSON text) and fulfilling the condition."""

    element: str = ""
    equals: str = ""
    sep: str = "."

    def prepare(self) -> None:
        if not self.sep:
            raise MalformedCheck("empty separator")
        if self.equals:
            try:
                orjson.loads(self.equals)
            except orjson.JSONDecodeError as e:
                raise MalformedCheck(f"equals is not JSON: {e}") from e
        self.compile()

    def execute(self, response: Response) -> None:
        if response.body_error is not None:
            raise CheckFailure(BAD_BODY)
        try:
            doc = orjson.loads(response.body)
        except orjson.JSONDecodeError as e:
            raise CheckFailure(f"invalid JSON: {e}") from e
        try:
            value = json_element(doc, self.element, self.sep)
        except KeyError:
            raise CheckFailure(f"element {self.element} not found") from None
        if self.equals and value != orjson.loads(self.equals):
            raise CheckFailure(f"element {self.element}: got {json_text(value)}, want {self.equals}")
        if self.has_condition:
            self.fulfilled(json_text(value))


BUILTIN_CHECKS: dict[str, type[Check]] = {
    "StatusCode": StatusCode,
    "Body": Body,
    "UTF8Encoded": UTF8Encoded,
    "Header": Header,
    "ContentType": ContentType,
    "ResponseTime": ResponseTime,
    "SetCookie": SetCookie,
    "JSON": JSON,
}


def is_status_ok_first(checks: list[Check]) -> bool:
    """True if the first check is StatusCode(expect=200)."""
    return bool(checks) and isinstance(checks[0], StatusCode) and checks[0].expect == 200
