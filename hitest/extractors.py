"""Variable extractors: pull values out of a passing response.

Extracted values become variables for the following tests of a suite.
Like checks, extractors are dataclasses registered by class name and
support visit_strings for variable substitution.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from http.cookies import CookieError, SimpleCookie
from typing import Callable, TypeVar

import orjson

from .checks import BAD_BODY, json_element, json_text, visit_dataclass_strings
from .models import Response
from .variables import format_time

E = TypeVar("E", bound="Extractor")

RFC3339 = "2006-01-02T15:04:05Z07:00"


class ExtractionError(Exception):
    """The value could not be extracted."""


@dataclass
class Extractor:
    """Base class of all extractors."""

    @property
    def name(self) -> str:
        return type(self).__name__

    def extract(self, response: Response) -> str:
        raise NotImplementedError

    def visit_strings(self: E, fn: Callable[[str], str]) -> E:
        return visit_dataclass_strings(self, fn)


@dataclass
class BodyExtractor(Extractor):
    """Match regexp against the body and return submatch (0 is the whole match)."""

    regexp: str = ""
    submatch: int = 0

    def extract(self, response: Response) -> str:
        if response.body_error is not None:
            raise ExtractionError(BAD_BODY)
        if self.submatch < 0:
            raise ExtractionError("submatch < 0")
        try:
            rx = re.compile(self.regexp)
        except re.error as e:
            raise ExtractionError(f"bad regexp {self.regexp!r}: {e}") from e
        m = rx.search(response.text)
        if m is None:
            raise ExtractionError(f"no match for {self.regexp!r}")
        if self.submatch > (rx.groups or 0):
            raise ExtractionError(f"got only {rx.groups} submatches")
        return m.group(self.submatch) or ""


@dataclass
class HeaderExtractor(Extractor):
    """First value of a response header."""

    header: str = ""

    def extract(self, response: Response) -> str:
        value = response.headers.get(self.header)
        if value is None:
            raise ExtractionError(f"header {self.header} not received")
        return value


@dataclass
class CookieExtractor(Extractor):
    """Value of the first cookie called name_ set by the response."""

    name_: str = ""

    def extract(self, response: Response) -> str:
        for raw in response.headers.get_list("set-cookie"):
            jar: SimpleCookie = SimpleCookie()
            try:
                jar.load(raw)
            except CookieError:
                continue
            if self.name_ in jar:
                return jar[self.name_].value
        raise ExtractionError(f"cookie {self.name_} not received")


@dataclass
class JSONExtractor(Extractor):
    """Element of a JSON body; strings unquoted, null as "", others as JSON text."""

    element: str = ""
    sep: str = "."

    def extract(self, response: Response) -> str:
        if response.body_error is not None:
            raise ExtractionError(BAD_BODY)
        try:
            doc = orjson.loads(response.body)
        except orjson.JSONDecodeError as e:
            raise ExtractionError(f"invalid JSON: {e}") from e
        try:
            value = json_element(doc, self.element, self.sep or ".")
        except KeyError:
            raise ExtractionError(f"element {self.element} not found") from None
        if value is None:
            return ""
        return json_text(value)


@dataclass
class SetVariable(Extractor):
    """Sets the variable to a constant (after substitution)."""

    to: str = ""

    def extract(self, response: Response) -> str:
        return self.to


@dataclass
class SetTimestamp(Extractor):
    """Current time shifted by delta_t seconds, formatted with a Go style layout."""

    format: str = RFC3339
    delta_t: float = 0.0

    def extract(self, response: Response) -> str:
        t = datetime.now().astimezone() + timedelta(seconds=self.delta_t)
        return format_time(t, self.format or RFC3339)


BUILTIN_EXTRACTORS: dict[str, type[Extractor]] = {
    "BodyExtractor": BodyExtractor,
    "HeaderExtractor": HeaderExtractor,
    "CookieExtractor": CookieExtractor,
    "JSONExtractor": JSONExtractor,
    "SetVariable": SetVariable,
    "SetTimestamp": SetTimestamp,
}
