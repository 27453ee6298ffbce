"""Unit tests for reading declarative test and suite files."""

from __future__ import annotations

from pathlib import Path

import pytest

from hitest import loader
from hitest.checks import JSON, Body, Check, ContentType, Header, ResponseTime, SetCookie, StatusCode
from hitest.exceptions import HitestLoadError
from hitest.extractors import CookieExtractor, JSONExtractor, SetTimestamp
from hitest.loader import Loader, load_suite, merge_tests, read_file, snake
from hitest.models import Cookie, Poll, Request, Response, Test
from hitest.registry import Registry, default_check_registry


def test_snake() -> None:
    assert snake("URL") == "url"
    assert snake("ParamsAs") == "params_as"
    assert snake("FollowRedirects") == "follow_redirects"
    assert snake("MinLifetime") == "min_lifetime"
    assert snake("already_snake") == "already_snake"


def test_full_test_from_dict() -> None:
    test = loader.test_from_dict({
        "Name": "Create order",
        "Description": "POST a new order",
        "Request": {
            "Method": "POST",
            "URL": "{{HOST}}/orders",
            "Params": {"item": ["a", "b"], "qty": 2},
            "ParamsAs": "body",
            "Header": {"X-Trace": "1"},
            "Cookies": [{"Name": "sid", "Value": "{{SID}}"}],
            "FollowRedirects": True,
            "Timeout": "2s",
            "BasicAuthUser": "u",
        },
        "Checks": [
            {"Check": "StatusCode", "Expect": 201},
            {"Check": "Header", "Header": "Location", "Prefix": "/orders/"},
            {"Check": "ContentType", "Is": "json"},
            {"Check": "ResponseTime", "Lower": "500ms"},
            {"Check": "SetCookie", "Name": "sid", "MinLifetime": "1h"},
            {"Check": "JSON", "Element": "id", "Equals": "7"},
        ],
        "Poll": {"Max": 3, "Sleep": "100ms"},
        "Timeout": 5,
        "Variables": {"HOST": "http://example.org", "N": 3},
        "VarEx": {
            "ORDER": {"Extractor": "JSONExtractor", "Element": "id"},
            "SID": {"Extractor": "CookieExtractor", "Name": "sid"},
            "WHEN": {"Extractor": "SetTimestamp", "Format": "2006", "DeltaT": "1d"},
        },
    })
    assert test.name == "Create order"
    req = test.request
    assert req.method == "POST" and req.url == "{{HOST}}/orders"
    assert req.params == {"item": ["a", "b"], "qty": ["2"]}
    assert req.params_as == "body"
    assert req.header == {"X-Trace": ["1"]}
    assert req.cookies[0].name == "sid" and req.cookies[0].value == "{{SID}}"
    assert req.follow_redirects is True
    assert req.timeout == 2.0
    assert req.basic_auth_user == "u"
    assert [type(c) for c in test.checks] == [StatusCode, Header, ContentType, ResponseTime, SetCookie, JSON]
    assert test.checks[0].expect == 201
    assert test.checks[2].is_ == "json"
    assert test.checks[3].lower == 0.5
    assert test.checks[4].name_ == "sid" and test.checks[4].min_lifetime == 3600
    assert test.poll.max == 3 and test.poll.sleep == pytest.approx(0.1)
    assert test.timeout == 5.0
    assert test.variables == {"HOST": "http://example.org", "N": "3"}
    assert isinstance(test.extract["ORDER"], JSONExtractor)
    assert isinstance(test.extract["SID"], CookieExtractor) and test.extract["SID"].name_ == "sid"
    assert isinstance(test.extract["WHEN"], SetTimestamp) and test.extract["WHEN"].delta_t == 86400


def test_snake_case_keys_and_cookie_mapping() -> None:
    test = loader.test_from_dict({
        "name": "t",
        "request": {"url": "http://example.org", "cookies": {"a": "1"}},
        "checks": [{"Check": "Body", "contains": "x", "count": -1}],
        "data_extraction": {"V": {"Extractor": "SetVariable", "to": "v"}},
    })
    assert test.request.cookies[0].name == "a"
    assert isinstance(test.checks[0], Body) and test.checks[0].count == -1
    assert test.extract["V"].to == "v"


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"Request": {"URL": "x"}}, "test without name"),
        ({"Name": "t", "Bogus": 1}, "unknown field 'Bogus' in test"),
        ({"Name": "t", "Request": {"Verb": "GET"}}, "unknown field 'Verb' in request"),
        ({"Name": "t", "Checks": [{"Check": "Telepathy"}]}, "unknown check 'Telepathy'"),
        ({"Name": "t", "Checks": [{"Expect": 200}]}, "check without 'Check' key"),
        ({"Name": "t", "Checks": [{"Check": "StatusCode", "Expected": 200}]}, "unknown field 'Expected'"),
        ({"Name": "t", "Checks": {"Check": "StatusCode"}}, "checks must be a list"),
        ({"Name": "t", "VarEx": {"V": {"Extractor": "Magic"}}}, "unknown extractor 'Magic'"),
        ({"Name": "t", "Poll": {"Max": "many"}}, "invalid test"),
        ({"Name": "t", "Request": {"Params": {"a": {"b": 1}}}}, "must be a string or a list"),
        ({"Name": "t", "Checks": [{"Check": "ResponseTime", "Lower": "soon"}]}, "invalid duration"),
    ],
)
def test_invalid_tests(raw: dict, message: str) -> None:
    with pytest.raises(HitestLoadError, match=message):
        loader.test_from_dict(raw)


def test_unknown_check_lists_known_tags() -> None:
    with pytest.raises(HitestLoadError) as exc:
        Loader().check({"Check": "Nope"})
    assert "StatusCode" in exc.value.context["known"]
    assert exc.value.context.get("test") is None


def test_error_context_names_test() -> None:
    with pytest.raises(HitestLoadError) as exc:
        loader.test_from_dict({"Name": "broken", "Checks": [{"Check": "Nope"}]})
    assert exc.value.context["test"] == "broken"


def test_custom_registry() -> None:
    class AlwaysOk(Check):
        def execute(self, response: Response) -> None:
            return None

    checks: Registry = default_check_registry()
    checks.register("AlwaysOk", AlwaysOk)
    custom = Loader(checks=checks)
    test = custom.test_from_dict({"Name": "t", "Checks": [{"Check": "AlwaysOk"}]})
    assert isinstance(test.checks[0], AlwaysOk)
    with pytest.raises(HitestLoadError):
        Loader().test_from_dict({"Name": "t", "Checks": [{"Check": "AlwaysOk"}]})


def test_unroll() -> None:
    tests = Loader().tests_from_dict({
        "Name": "user {{U}} page {{P}}",
        "Request": {"URL": "http://example.org/{{U}}/{{P}}"},
        "Unroll": {"U": ["a", "b"], "P": [1, 2, 3]},
    })
    assert len(tests) == 6
    assert len({t.name for t in tests}) == 6
    with pytest.raises(HitestLoadError, match="must not be empty"):
        Loader().tests_from_dict({"Name": "t", "Unroll": {"U": []}})


def test_load_test_file_default_name_and_base_dir(tmp_path: Path) -> None:
    p = tmp_path / "health-check.yaml"
    p.write_text("Request:\n  URL: http://example.org/health\n", encoding="utf-8")
    [test] = loader.load_test(p)
    assert test.name == "health-check"
    assert test.base_dir == str(tmp_path)


def test_load_json_test(tmp_path: Path) -> None:
    p = tmp_path / "t.json"
    p.write_text('{"Name": "j", "Checks": [{"Check": "StatusCode", "Expect": 204}]}', encoding="utf-8")
    [test] = loader.load_test(p)
    assert test.checks[0].expect == 204


def test_load_suite_file(sample_suite_path: Path) -> None:
    suite = load_suite(sample_suite_path)
    assert suite.name == "Shop"
    assert suite.keep_cookies is True
    assert suite.variables == {"HOST": "http://shop.example.org"}
    assert [t.name for t in suite.setup] == ["Login"]
    assert [t.name for t in suite.main] == ["Profile", "Health"]
    assert [t.name for t in suite.teardown] == ["Logout"]
    assert isinstance(suite.setup[0].extract["TOKEN"], JSONExtractor)
    assert suite.main[0].base_dir == str(sample_suite_path.parent / "tests")


def test_suite_element_with_variables(tmp_path: Path) -> None:
    (tmp_path / "get.yaml").write_text(
        "Name: get {{ID}}\nVariables:\n  ID: '0'\n  KEEP: k\nRequest:\n  URL: http://example.org/{{ID}}\n",
        encoding="utf-8",
    )
    p = tmp_path / "suite.yaml"
    p.write_text(
        "Main:\n  - File: get.yaml\n    Variables:\n      ID: '7'\n  - Request:\n      URL: http://example.org/\n",
        encoding="utf-8",
    )
    suite = load_suite(p)
    assert suite.name == "suite"
    assert suite.main[0].variables == {"ID": "7", "KEEP": "k"}
    assert suite.main[1].name == "suite main 2"


def test_suite_errors(tmp_path: Path) -> None:
    p = tmp_path / "suite.yaml"
    p.write_text("Main:\n  - missing.yaml\n", encoding="utf-8")
    with pytest.raises(HitestLoadError, match="file references start with '@'"):
        load_suite(p)
    p.write_text("Main:\n  - '@missing.yaml'\n", encoding="utf-8")
    with pytest.raises(HitestLoadError, match="File not found"):
        load_suite(p)
    p.write_text("Main: {}\n", encoding="utf-8")
    with pytest.raises(HitestLoadError, match="main must be a list") as exc:
        load_suite(p)
    assert exc.value.context["path"] == str(p)


def test_read_file_errors(tmp_path: Path) -> None:
    with pytest.raises(HitestLoadError, match="File not found"):
        read_file(tmp_path / "nope.yaml")
    bad = tmp_path / "bad.json"
    bad.write_text("{", encoding="utf-8")
    with pytest.raises(HitestLoadError, match="Invalid syntax"):
        read_file(bad)


def test_mixins_are_merged(tmp_path: Path) -> None:
    (tmp_path / "mixins").mkdir()
    (tmp_path / "mixins" / "json-api.yaml").write_text(
        "Request:\n"
        "  Header:\n    Accept: application/json\n"
        "  Cookies:\n    lang: de\n"
        "  Timeout: 5s\n"
        "Checks:\n  - Check: ContentType\n    Is: json\n"
        "Poll:\n  Max: 3\n  Sleep: 1s\n"
        "Variables:\n  HOST: http://mixin.example.org\n  EXTRA: x\n",
        encoding="utf-8",
    )
    p = tmp_path / "get-user.yaml"
    p.write_text(
        "Name: get user\n"
        "Mixin:\n  - mixins/json-api.yaml\n"
        "Variables:\n  HOST: http://api.example.org\n"
        "Request:\n  URL: '{{HOST}}/user'\n  Header:\n    X-Trace: '1'\n  Cookies:\n    lang: en\n"
        "Checks:\n  - Check: StatusCode\n",
        encoding="utf-8",
    )
    [test] = loader.load_test(p)
    assert test.name == "get user"
    assert test.request.url == "{{HOST}}/user"
    assert test.request.header == {"X-Trace": ["1"], "Accept": ["application/json"]}
    assert [(c.name, c.value) for c in test.request.cookies] == [("lang", "de")]
    assert test.request.timeout == 5.0
    assert [type(c) for c in test.checks] == [StatusCode, ContentType]
    assert test.poll.max == 3 and test.poll.sleep == 1.0
    assert test.variables == {"HOST": "http://api.example.org", "EXTRA": "x"}
    assert test.base_dir == str(tmp_path)


def test_mixin_errors(tmp_path: Path) -> None:
    (tmp_path / "url.yaml").write_text("Request:\n  URL: http://other.example.org/\n", encoding="utf-8")
    (tmp_path / "loop.yaml").write_text("Mixin: ['@loop.yaml']\n", encoding="utf-8")
    raw = {"Name": "t", "Request": {"URL": "http://example.org/"}}
    with pytest.raises(HitestLoadError, match="url set more than once"):
        Loader().test_from_dict({**raw, "Mixin": ["url.yaml"]}, base_dir=tmp_path)
    with pytest.raises(HitestLoadError, match="File not found") as exc:
        Loader().test_from_dict({**raw, "Mixin": ["@absent.yaml"]}, base_dir=tmp_path)
    assert exc.value.context["test"] == "t"
    with pytest.raises(HitestLoadError, match="mixin includes itself"):
        Loader().test_from_dict({**raw, "Mixin": ["loop.yaml"]}, base_dir=tmp_path)


def test_merge_tests_rules() -> None:
    a = Test(name="a", request=Request(url="http://example.org/", method="post", params={"p": ["1"]}),
             checks=[StatusCode()], poll=Poll(max=2, sleep=0.5), timeout=1.0,
             extract={"T": JSONExtractor(element="token")})
    b = Test(name="b", request=Request(method="POST", params={"p": ["2"], "q": ["3"]}, body="payload",
                                       follow_redirects=True, cookies=[Cookie("c", "1")]),
             checks=[Body(contains="ok")], poll=Poll(max=1, sleep=2.0), timeout=3.0,
             extract={"T": JSONExtractor(element="token")})
    m = merge_tests(a, b)
    assert m.request.method == "POST"
    assert m.request.params == {"p": ["1", "2"], "q": ["3"]}
    assert m.request.body == "payload"
    assert m.request.follow_redirects is True
    assert [type(c) for c in m.checks] == [StatusCode, Body]
    assert (m.poll.max, m.poll.sleep, m.timeout) == (2, 2.0, 3.0)
    with pytest.raises(HitestLoadError, match="conflicting method"):
        merge_tests(a, Test(name="c", request=Request(method="GET")))
    with pytest.raises(HitestLoadError, match="two different extractors for T"):
        merge_tests(a, Test(name="d", extract={"T": JSONExtractor(element="other")}))
