"""Unit tests for engine (prepare_test, execute_checks, run_test, ClientPool, run_bounded)."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from hitest.checks import Body, Check, Header, StatusCode
from hitest import loader
from hitest.engine import ClientPool, execute_checks, prepare_test, run_bounded, run_test
from hitest.exceptions import RequestBuildError
from hitest.extractors import HeaderExtractor, JSONExtractor
from hitest.models import Poll, Request, Response, Status, Test

BASE = "http://stub.example.org"


def run(test: Test, transport: httpx.AsyncBaseTransport, variables: dict[str, str] | None = None,
        keep_cookies: bool = False):
    async def go():
        async with ClientPool(keep_cookies=keep_cookies, http2=False, transport=transport) as pool:
            return await run_test(test, variables or {}, pool)

    return asyncio.run(go())


def hello_test(**kwargs) -> Test:
    return Test(
        name="Hello",
        request=Request(url=f"{BASE}/hello"),
        checks=[StatusCode(expect=200), Body(contains="Hello")],
        **kwargs,
    )


def test_passing_test(router) -> None:
    """200 with matching body: Pass and every check Pass."""
    router.add("/hello", 200, body=b"Hello World")
    tr = run(hello_test(), router.transport)
    assert tr.status == Status.PASS
    assert [c.status for c in tr.checks] == [Status.PASS, Status.PASS]
    assert tr.tries == 1
    assert tr.response is not None and tr.response.status_code == 200
    assert tr.error is None


def test_failing_status_skips_remaining_checks(router) -> None:
    router.add("/hello", 404, body=b"Hello anyway")
    tr = run(hello_test(), router.transport)
    assert tr.status == Status.FAIL
    assert [c.status for c in tr.checks] == [Status.FAIL, Status.SKIPPED]
    assert "got 404, want 200" in tr.error


def test_non_200_first_check_does_not_short_circuit(router) -> None:
    router.add("/hello", 404, body=b"nope")
    test = Test(
        name="T",
        request=Request(url=f"{BASE}/hello"),
        checks=[StatusCode(expect=201), Body(contains="Hello")],
    )
    tr = run(test, router.transport)
    assert [c.status for c in tr.checks] == [Status.FAIL, Status.FAIL]


def test_unreachable_host_is_error(router) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    router.add("/hello", refuse)
    tr = run(hello_test(), router.transport)
    assert tr.status == Status.ERROR
    assert all(c.status == Status.SKIPPED for c in tr.checks)
    assert "ConnectError" in tr.error
    assert tr.response is None


def test_disabled_test_is_skipped_without_request(router) -> None:
    router.add("/hello", 200, body=b"Hello")
    tr = run(hello_test(poll=Poll(max=-1)), router.transport)
    assert tr.status == Status.SKIPPED
    assert tr.tries == 0
    assert router.requests == []


def test_bogus_request_makes_no_call(router) -> None:
    test = Test(name="Bad", request=Request(url="ftp://stub.example.org/x"))
    tr = run(test, router.transport)
    assert tr.status == Status.BOGUS
    assert "scheme" in tr.error
    assert router.requests == []


def test_malformed_check_is_bogus(router) -> None:
    router.add("/hello", 200, body=b"Hello")
    test = Test(name="T", request=Request(url=f"{BASE}/hello"), checks=[Body(regexp="(")])
    tr = run(test, router.transport)
    assert tr.status == Status.BOGUS
    assert "malformed check" in tr.error
    assert router.requests == []


def test_poll_retries_until_pass(router) -> None:
    calls = {"n": 0}

    def flaky(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200 if calls["n"] >= 3 else 503, content=b"Hello")

    router.add("/hello", flaky)
    tr = run(hello_test(poll=Poll(max=5, sleep=0.001)), router.transport)
    assert tr.status == Status.PASS
    assert tr.tries == 3
    assert tr.full_duration >= tr.duration


def test_poll_gives_up_after_max_tries(router) -> None:
    router.add("/hello", 500)
    tr = run(hello_test(poll=Poll(max=3)), router.transport)
    assert tr.status == Status.FAIL
    assert tr.tries == 3
    assert router.hits("/hello") == 3


def test_full_duration_covers_poll_sleeps(router) -> None:
    router.add("/hello", 500)
    tr = run(hello_test(poll=Poll(max=3, sleep=0.05)), router.transport)
    assert tr.status == Status.FAIL
    assert tr.tries == 3
    assert tr.full_duration >= 2 * 0.05
    assert tr.full_duration >= tr.duration


def test_variables_substituted_into_request(router) -> None:
    router.add("/items/42", 200, body=b"Hello")
    test = Test(
        name="Item {{ID}}",
        request=Request(url="{{HOST}}/items/{{ID}}", header={"X-Who": ["{{WHO}}"]}),
        checks=[StatusCode(expect=200)],
        variables={"WHO": "default", "ID": "1"},
    )
    tr = run(test, router.transport, {"HOST": BASE, "ID": "42"})
    assert tr.status == Status.PASS
    assert tr.name == "Item 42"
    assert router.requests[0].headers["X-Who"] == "default"


def test_extraction_only_on_pass(router) -> None:
    router.add("/ok", 200, body=b'{"token": "abc"}', headers={"X-Session": "s1"})
    router.add("/bad", 500, body=b'{"token": "abc"}')
    extract = {"TOKEN": JSONExtractor(element="token"), "SID": HeaderExtractor(header="X-Session")}
    ok = run(Test(name="ok", request=Request(url=f"{BASE}/ok"), checks=[StatusCode()], extract=extract),
             router.transport)
    assert ok.extracted_values() == {"TOKEN": "abc", "SID": "s1"}
    bad = run(Test(name="bad", request=Request(url=f"{BASE}/bad"), checks=[StatusCode()], extract=extract),
              router.transport)
    assert bad.extractions == {}


def test_failed_extraction_is_recorded(router) -> None:
    router.add("/ok", 200, body=b"not json")
    tr = run(Test(name="ok", request=Request(url=f"{BASE}/ok"), extract={"X": JSONExtractor(element="a")}),
             router.transport)
    assert tr.status == Status.PASS
    assert tr.extractions["X"].error is not None
    assert tr.extracted_values() == {}


def test_keep_cookies_shares_jar(router) -> None:
    router.add("/set", 200, headers={"Set-Cookie": "sid=xyz; Path=/"})
    router.add("/echo", lambda req: httpx.Response(200, content=req.headers.get("cookie", "").encode()))
    echo = Test(name="echo", request=Request(url=f"{BASE}/echo"), checks=[Body(contains="sid=xyz")])

    async def go(keep: bool) -> Status:
        async with ClientPool(keep_cookies=keep, http2=False, transport=router.transport) as pool:
            await run_test(Test(name="set", request=Request(url=f"{BASE}/set")), {}, pool)
            return (await run_test(echo, {}, pool)).status

    assert asyncio.run(go(True)) == Status.PASS
    assert asyncio.run(go(False)) == Status.FAIL


def test_follow_redirects_per_request(router) -> None:
    router.add("/old", 302, headers={"Location": f"{BASE}/new"})
    router.add("/new", 200, body=b"moved")
    plain = run(Test(name="r", request=Request(url=f"{BASE}/old"), checks=[StatusCode(expect=302)]),
                router.transport)
    assert plain.status == Status.PASS
    followed = run(
        Test(name="f", request=Request(url=f"{BASE}/old", follow_redirects=True), checks=[Body(contains="moved")]),
        router.transport,
    )
    assert followed.status == Status.PASS
    assert followed.response.redirections == [f"{BASE}/new"]


def test_prepare_test_does_not_mutate_template() -> None:
    test = Test(name="{{X}}", request=Request(url="http://{{X}}.example.org/"))
    prepared = prepare_test(test, {"X": "api"})
    assert prepared.request.url == "http://api.example.org/"
    assert test.request.url == "http://{{X}}.example.org/"


def test_prepare_test_raises_for_bad_request() -> None:
    with pytest.raises(RequestBuildError):
        prepare_test(Test(name="t", request=Request(url="nohost")), {})


def test_execute_checks_unexpected_exception_is_bogus() -> None:
    class Exploding(Check):
        def execute(self, response: Response) -> None:
            raise RuntimeError("boom")

    results = execute_checks([Exploding(), Header(header="X", absent=True)], Response(200))
    assert results[0].status == Status.BOGUS
    assert "RuntimeError" in results[0].error
    assert results[1].status == Status.PASS


def test_run_bounded_keeps_order_and_limits_concurrency() -> None:
    in_flight = {"now": 0, "max": 0}

    async def worker(i: int, item: int) -> int:
        in_flight["now"] += 1
        in_flight["max"] = max(in_flight["max"], in_flight["now"])
        await asyncio.sleep(0.01 * (5 - item % 5))
        in_flight["now"] -= 1
        return item * 10

    out = asyncio.run(run_bounded(list(range(10)), worker, concurrency=3))
    assert out == [i * 10 for i in range(10)]
    assert in_flight["max"] <= 3


def test_run_bounded_reraises_after_all_done() -> None:
    done: list[int] = []

    async def worker(i: int, item: int) -> int:
        if item == 1:
            raise ValueError("bad item")
        done.append(item)
        return item

    with pytest.raises(ValueError):
        asyncio.run(run_bounded([0, 1, 2, 3], worker, concurrency=2))
    assert sorted(done) == [0, 2, 3]


def test_run_bounded_empty() -> None:
    async def worker(i: int, item: int) -> int:
        return item

    assert asyncio.run(run_bounded([], worker)) == []


def test_check_field_from_variable(router) -> None:
    router.add("/hello", 200, body=b"Hello")
    test = loader.test_from_dict({
        "Name": "code from variable",
        "Request": {"URL": f"{BASE}/hello"},
        "Checks": [{"Check": "StatusCode", "Expect": "{{CODE}}"}, {"Check": "Body", "Count": "1", "Contains": "Hello"}],
    })
    tr = run(test, router.transport, {"CODE": "200"})
    assert tr.status == Status.PASS
    assert [c.status for c in tr.checks] == [Status.PASS, Status.PASS]


def test_non_numeric_check_field_is_bogus(router) -> None:
    router.add("/hello", 200)
    test = loader.test_from_dict({
        "Name": "bad code",
        "Request": {"URL": f"{BASE}/hello"},
        "Checks": [{"Check": "StatusCode", "Expect": "{{CODE}}"}],
    })
    tr = run(test, router.transport, {"CODE": "OK"})
    assert tr.status == Status.BOGUS
    assert "not a valid int" in tr.error
    assert router.requests == []


def test_check_crashing_in_prepare_is_bogus(router) -> None:
    class Fragile(Check):
        def prepare(self) -> None:
            raise TypeError("bad config")

        def execute(self, response: Response) -> None:
            pass

    router.add("/hello", 200)
    tr = run(Test(name="T", request=Request(url=f"{BASE}/hello"), checks=[Fragile()]), router.transport)
    assert tr.status == Status.BOGUS
    assert "TypeError: bad config" in tr.error
    assert router.requests == []


def test_non_ascii_header_value_is_bogus(router) -> None:
    router.add("/hello", 200)
    test = Test(name="T", request=Request(url=f"{BASE}/hello", header={"X-Name": ["{{N}}"]}),
                checks=[StatusCode()], poll=Poll(max=3))
    tr = run(test, router.transport, {"N": "Jürgen €"})
    assert tr.status == Status.BOGUS
    assert "non-ASCII" in tr.error
    assert tr.tries == 1
    assert router.requests == []
