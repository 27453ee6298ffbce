"""Declarative test and suite files (YAML or JSON) to the data model.

Keys may be written CamelCase ("FollowRedirects") or snake_case
("follow_redirects"). Checks are mappings with a "Check" tag and extractors
mappings with an "Extractor" tag; the tag selects the class from a
registry. Suite elements are inline test mappings, "@path" references or
{"File": path, "Variables": {...}} mappings; paths are relative to the
suite file. A test may list "Mixin" files, partial tests merged into it
(see merge_tests).
"""

from __future__ import annotations

import dataclasses
import re
from pathlib import Path
from typing import Any, Callable

import orjson
import yaml

from .checks import Check, MalformedCheck, coerce_fields
from .config import parse_duration
from .exceptions import HitestLoadError
from .extractors import Extractor
from .logging_config import get_logger
from .models import Cookie, Poll, Request, Suite, Test
from .registry import Registry, default_check_registry, default_extractor_registry
from .variables import unroll

logger = get_logger("loader")

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")

# Keys holding durations; numbers are seconds, strings like "250ms" are parsed
DURATION_KEYS = frozenset({"timeout", "sleep", "lower", "higher", "min_lifetime", "delta_t"})
CHECK_TAG = "Check"
EXTRACTOR_TAG = "Extractor"

_TEST_KEYS = frozenset({
    "name", "description", "request", "checks", "poll", "timeout", "variables", "extract", "mixin",
})
_REQUEST_KEYS = frozenset(f.name for f in dataclasses.fields(Request))
_SUITE_KEYS = frozenset({"name", "description", "setup", "main", "teardown", "keep_cookies", "omit_checks", "variables"})
_KEY_ALIASES = {"var_ex": "extract", "data_extraction": "extract"}


def snake(key: str) -> str:
    """FollowRedirects -> follow_redirects; URL -> url."""
    return _CAMEL_RE.sub(r"_\1", key).lower()


def _normalize(raw: Any, allowed: frozenset[str], what: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise HitestLoadError(f"{what} must be a mapping", context={"actual_type": type(raw).__name__})
    out: dict[str, Any] = {}
    for key, value in raw.items():
        k = snake(str(key))
        k = _KEY_ALIASES.get(k, k)
        if k not in allowed:
            raise HitestLoadError(f"unknown field {key!r} in {what}")
        out[k] = value
    return out


def _strings(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, dict):
        raise HitestLoadError(f"{what} must be a string or a list of strings")
    return [str(value)]


def _multimap(raw: Any, what: str) -> dict[str, list[str]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise HitestLoadError(f"{what} must be a mapping")
    return {str(k): _strings(v, f"{what}[{k}]") for k, v in raw.items()}


def _str_map(raw: Any, what: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise HitestLoadError(f"{what} must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}


def _duration(value: Any, what: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise HitestLoadError(f"{what}: {e}", original_error=e) from e


def _cookies(raw: Any) -> list[Cookie]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [Cookie(str(k), "" if v is None else str(v)) for k, v in raw.items()]
    if not isinstance(raw, list):
        raise HitestLoadError("cookies must be a list or a mapping")
    cookies = []
    for c in raw:
        fields = _normalize(c, frozenset({"name", "value"}), "cookie")
        if not fields.get("name"):
            raise HitestLoadError("cookie without name")
        cookies.append(Cookie(str(fields["name"]), str(fields.get("value", ""))))
    return cookies


def _poll(raw: Any) -> Poll:
    if raw is None:
        return Poll()
    p = _normalize(raw, frozenset({"max", "sleep"}), "poll")
    return Poll(max=int(p.get("max", 0)), sleep=_duration(p.get("sleep", 0), "poll sleep"))


def _located(e: HitestLoadError, **context: Any) -> HitestLoadError:
    """Add context keys not already set by a nested error."""
    for k, v in context.items():
        e.context.setdefault(k, v)
    return e


def request_from_dict(raw: Any) -> Request:
    f = _normalize(raw, _REQUEST_KEYS, "request")
    try:
        return Request(
            url=str(f.get("url", "")),
            method=str(f.get("method", "")),
            params=_multimap(f.get("params"), "params"),
            params_as=str(f.get("params_as") or ""),
            header=_multimap(f.get("header"), "header"),
            cookies=_cookies(f.get("cookies")),
            body=str(f.get("body") or ""),
            follow_redirects=bool(f.get("follow_redirects", False)),
            timeout=_duration(f["timeout"], "request timeout") if f.get("timeout") is not None else None,
            basic_auth_user=str(f.get("basic_auth_user") or ""),
            basic_auth_pass=str(f.get("basic_auth_pass") or ""),
        )
    except (TypeError, ValueError) as e:
        raise HitestLoadError(f"invalid request: {e}", original_error=e) from e


def _plugin_kwargs(factory: Callable[..., Any], raw: dict[str, Any], tag_key: str, what: str) -> dict[str, Any]:
    """Map file keys to constructor fields: CamelCase to snake_case, name/is to name_/is_."""
    names = {f.name for f in dataclasses.fields(factory)} if dataclasses.is_dataclass(factory) else None
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        if key == tag_key:
            continue
        k = snake(str(key))
        if names is not None and k not in names:
            if k + "_" in names:
                k = k + "_"
            else:
                raise HitestLoadError(f"unknown field {key!r} in {what}")
        if k in DURATION_KEYS and value is not None and not (isinstance(value, str) and "{{" in value):
            value = _duration(value, f"{what} {key}")
        kwargs[k] = value
    return kwargs


def _mixin_refs(raw: Any) -> list[str]:
    """Mixin file names, relative to the test file; a leading "@" is optional."""
    refs = _strings(raw, "mixin")
    if any(not r.lstrip("@") for r in refs):
        raise HitestLoadError("empty mixin file name")
    return [r[1:] if r.startswith("@") else r for r in refs]


def _only_one(what: str, values: list[str]) -> str:
    set_values = [v for v in values if v]
    if len(set_values) > 1:
        raise HitestLoadError(f"cannot merge: {what} set more than once", context={what: set_values})
    return set_values[0] if set_values else ""


def _all_same(what: str, values: list[str]) -> str:
    distinct = sorted({v for v in values if v})
    if len(distinct) > 1:
        raise HitestLoadError(f"cannot merge: conflicting {what}", context={what: distinct})
    return distinct[0] if distinct else ""


def _largest(values: list[float | None]) -> float | None:
    given = [v for v in values if v is not None]
    return max(given) if given else None


def merge_tests(base: Test, *mixins: Test) -> Test:
    """Merge mixins into base.

    Name, description and base_dir are those of base; variables of base win
    over those of the mixins. Method and params_as must agree where set,
    URL, body and basic auth may be set by one test only. Params and header
    values are appended per key, cookies merged by name (the later value
    wins) and redirects are followed if any test asks for it. Checks are
    appended; poll max, poll sleep and timeouts take the largest value.
    Extractors for the same variable must be equal.
    Raises HitestLoadError on conflicts.
    """
    tests = [base, *mixins]
    reqs = [t.request for t in tests]
    params: dict[str, list[str]] = {}
    header: dict[str, list[str]] = {}
    cookies: dict[str, Cookie] = {}
    for r in reqs:
        for k, vals in r.params.items():
            params.setdefault(k, []).extend(vals)
        for k, vals in r.header.items():
            header.setdefault(k, []).extend(vals)
        for c in r.cookies:
            cookies[c.name] = c
    users = [r.basic_auth_user for r in reqs]
    auth = _only_one("basic auth", users)
    request = Request(
        url=_only_one("url", [r.url for r in reqs]),
        method=_all_same("method", [r.method.upper() for r in reqs]),
        params=params,
        params_as=_all_same("params_as", [r.params_as for r in reqs]),
        header=header,
        cookies=list(cookies.values()),
        body=_only_one("body", [r.body for r in reqs]),
        follow_redirects=any(r.follow_redirects for r in reqs),
        timeout=_largest([r.timeout for r in reqs]),
        basic_auth_user=auth,
        basic_auth_pass=reqs[users.index(auth)].basic_auth_pass if auth else "",
    )
    extract: dict[str, Extractor] = {}
    for t in tests:
        for var, ex in t.extract.items():
            if var in extract and extract[var] != ex:
                raise HitestLoadError(f"cannot merge: two different extractors for {var}")
            extract[var] = ex
    variables: dict[str, str] = {}
    for t in tests:
        for k, v in t.variables.items():
            variables.setdefault(k, v)
    return Test(
        name=base.name,
        description=base.description,
        request=request,
        checks=[c for t in tests for c in t.checks],
        poll=Poll(max=max(t.poll.max for t in tests), sleep=max(t.poll.sleep for t in tests)),
        timeout=_largest([t.timeout for t in tests]),
        variables=variables,
        extract=extract,
        base_dir=base.base_dir,
    )


class Loader:
    """Builds tests and suites using the given check and extractor registries."""

    def __init__(
        self,
        checks: Registry[Any] | None = None,
        extractors: Registry[Any] | None = None,
    ) -> None:
        self.checks = checks if checks is not None else default_check_registry()
        self.extractors = extractors if extractors is not None else default_extractor_registry()
        self._mixin_stack: list[Path] = []

    def _plugin(self, registry: Registry[Any], tag_key: str, raw: Any) -> Any:
        if not isinstance(raw, dict):
            raise HitestLoadError(f"{registry.kind} must be a mapping with a {tag_key!r} key")
        tag = raw.get(tag_key)
        if not isinstance(tag, str) or not tag:
            raise HitestLoadError(f"{registry.kind} without {tag_key!r} key", context={"fields": sorted(raw)})
        try:
            factory = registry.factory(tag)
        except KeyError as e:
            raise HitestLoadError(str(e.args[0]), context={"known": list(registry)}) from None
        kwargs = _plugin_kwargs(factory, raw, tag_key, f"{registry.kind} {tag}")
        try:
            plugin = factory(**kwargs)
            if dataclasses.is_dataclass(plugin):
                coerce_fields(plugin, keep_placeholders=True)
            return plugin
        except (TypeError, ValueError, MalformedCheck) as e:
            raise HitestLoadError(f"bad {registry.kind} {tag}: {e}", original_error=e) from e

    def check(self, raw: Any) -> Check:
        return self._plugin(self.checks, CHECK_TAG, raw)

    def extractor(self, raw: Any) -> Extractor:
        return self._plugin(self.extractors, EXTRACTOR_TAG, raw)

    def test_from_dict(self, raw: Any, base_dir: str | Path = ".", default_name: str = "") -> Test:
        f = _normalize(raw, _TEST_KEYS, "test")
        name = str(f.get("name") or default_name)
        if not name:
            raise HitestLoadError("test without name")
        checks = f.get("checks") or []
        if not isinstance(checks, list):
            raise HitestLoadError("checks must be a list", context={"test": name})
        extract = f.get("extract") or {}
        if not isinstance(extract, dict):
            raise HitestLoadError("extract must be a mapping", context={"test": name})
        try:
            test = Test(
                name=name,
                description=str(f.get("description") or ""),
                request=request_from_dict(f.get("request") or {}),
                checks=[self.check(c) for c in checks],
                poll=_poll(f.get("poll")),
                timeout=_duration(f["timeout"], "timeout") if f.get("timeout") is not None else None,
                variables=_str_map(f.get("variables"), "variables"),
                extract={str(k): self.extractor(v) for k, v in extract.items()},
                base_dir=str(base_dir),
            )
            mixins = [self.load_mixin(Path(base_dir) / ref) for ref in _mixin_refs(f.get("mixin"))]
            return merge_tests(test, *mixins) if mixins else test
        except (TypeError, ValueError) as e:
            raise HitestLoadError(f"invalid test: {e}", context={"test": name}, original_error=e) from e
        except HitestLoadError as e:
            raise _located(e, test=name)

    def load_mixin(self, path: Path) -> Test:
        """A mixin is a partial test file merged into the tests that list it."""
        key = path.resolve()
        if key in self._mixin_stack:
            raise HitestLoadError("mixin includes itself", context={"mixin": str(path)})
        self._mixin_stack.append(key)
        try:
            raw = read_file(path)
            return self.test_from_dict(raw, base_dir=path.parent, default_name=path.stem)
        except HitestLoadError as e:
            raise _located(e, mixin=str(path))
        finally:
            self._mixin_stack.pop()

    def tests_from_dict(self, raw: Any, base_dir: str | Path = ".", default_name: str = "") -> list[Test]:
        """Like test_from_dict but honours an Unroll mapping (variable -> value list)."""
        if not isinstance(raw, dict):
            raise HitestLoadError("test must be a mapping")
        raw = dict(raw)
        values = None
        for key in ("Unroll", "unroll"):
            if key in raw:
                values = raw.pop(key)
        test = self.test_from_dict(raw, base_dir, default_name)
        if not values:
            return [test]
        if not isinstance(values, dict):
            raise HitestLoadError("unroll must be a mapping", context={"test": test.name})
        lists = {str(k): _strings(v, f"unroll[{k}]") for k, v in values.items()}
        if any(not v for v in lists.values()):
            raise HitestLoadError("unroll value lists must not be empty", context={"test": test.name})
        tests = unroll(test, lists)
        logger.debug("unrolled %r into %d tests", test.name, len(tests))
        return tests

    def load_tests(self, path: str | Path) -> list[Test]:
        p = Path(path)
        raw = read_file(p)
        try:
            return self.tests_from_dict(raw, base_dir=p.parent, default_name=p.stem)
        except HitestLoadError as e:
            raise _located(e, path=str(p))

    def _elements(self, raw: Any, base_dir: Path, phase: str, suite: str) -> list[Test]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise HitestLoadError(f"{phase} must be a list", context={"suite": suite})
        tests: list[Test] = []
        for i, elem in enumerate(raw, 1):
            if isinstance(elem, str):
                if not elem.startswith("@"):
                    raise HitestLoadError(f"{phase} element {i}: file references start with '@'", context={"suite": suite})
                tests.extend(self.load_tests(base_dir / elem[1:]))
            elif isinstance(elem, dict) and any(snake(str(k)) == "file" for k in elem):
                f = _normalize(elem, frozenset({"file", "variables"}), f"{phase} element")
                loaded = self.load_tests(base_dir / str(f["file"]))
                extra = _str_map(f.get("variables"), "variables")
                # element variables win over the file's defaults
                tests.extend(dataclasses.replace(t, variables={**t.variables, **extra}) for t in loaded)
            else:
                tests.extend(self.tests_from_dict(elem, base_dir, default_name=f"{suite} {phase} {i}"))
        return tests

    def suite_from_dict(self, raw: Any, base_dir: str | Path = ".", default_name: str = "") -> Suite:
        f = _normalize(raw, _SUITE_KEYS, "suite")
        name = str(f.get("name") or default_name or "suite")
        base = Path(base_dir)
        try:
            return Suite(
                name=name,
                description=str(f.get("description") or ""),
                setup=self._elements(f.get("setup"), base, "setup", name),
                main=self._elements(f.get("main"), base, "main", name),
                teardown=self._elements(f.get("teardown"), base, "teardown", name),
                keep_cookies=bool(f.get("keep_cookies", False)),
                omit_checks=bool(f.get("omit_checks", False)),
                variables=_str_map(f.get("variables"), "variables"),
            )
        except HitestLoadError as e:
            raise _located(e, suite=name)

    def load_suite(self, path: str | Path) -> Suite:
        p = Path(path)
        raw = read_file(p)
        try:
            suite = self.suite_from_dict(raw, base_dir=p.parent, default_name=p.stem)
        except HitestLoadError as e:
            raise _located(e, path=str(p))
        logger.debug("loaded suite %r from %s (%d tests)", suite.name, p, len(suite.all_tests()))
        return suite


def read_file(path: str | Path) -> Any:
    """Parse a YAML or JSON file (by extension). Raises HitestLoadError."""
    p = Path(path)
    if not p.exists():
        raise HitestLoadError(f"File not found: {path}", context={"path": str(path)})
    try:
        data = p.read_bytes()
    except OSError as e:
        logger.exception("Failed to read %s", p)
        raise HitestLoadError(f"Cannot read file: {e}", context={"path": str(p)}, original_error=e) from e
    try:
        if p.suffix.lower() == ".json":
            return orjson.loads(data)
        return yaml.safe_load(data)
    except (orjson.JSONDecodeError, yaml.YAMLError) as e:
        raise HitestLoadError(f"Invalid syntax: {e}", context={"path": str(p)}, original_error=e) from e


def test_from_dict(raw: Any, base_dir: str | Path = ".") -> Test:
    return Loader().test_from_dict(raw, base_dir)


def suite_from_dict(raw: Any, base_dir: str | Path = ".") -> Suite:
    return Loader().suite_from_dict(raw, base_dir)


def load_test(path: str | Path) -> list[Test]:
    """Load a test file; more than one test if it unrolls."""
    return Loader().load_tests(path)


def load_suite(path: str | Path) -> Suite:
    return Loader().load_suite(path)
