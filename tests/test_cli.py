"""Unit tests for CLI (selection, variables, commands, exit codes)."""

from __future__ import annotations

import csv
import sys
from functools import partial
from pathlib import Path
from unittest.mock import patch

import orjson
import pytest

from hitest import __version__
from hitest.cli import (
    EXIT_INTERNAL,
    EXIT_INTERRUPTED,
    build_parser,
    exit_code,
    main,
    parse_selection,
    select_tests,
)
from hitest.coordinator import run_suites, run_tests
from hitest.exceptions import HitestConfigError
from hitest.loadtest import run_load_test
from hitest.models import Request, Status, Suite, Test


def shop_routes(router) -> None:
    router.add("/login", 200, body=b'{"token": "t-1"}')
    router.add("/profile", 200, body=b"hello alice")
    router.add("/health", 200)
    router.add("/logout", 200)


def test_main_version_exits_zero(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["--version"])
    assert exc.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_main_requires_command() -> None:
    with patch.object(sys, "argv", ["hitest"]):
        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 2


def test_exit_codes() -> None:
    assert [exit_code(s) for s in Status] == [0, 0, 0, 1, 2, 3]


def test_parse_selection() -> None:
    assert parse_selection("1.2, 3,,02.1") == {"1.2", "3", "2.1"}
    assert parse_selection(None) == set()
    for bad in ("1.2.3", "a", "0", "1.-1"):
        with pytest.raises(HitestConfigError):
            parse_selection(bad)


def test_select_tests_numbers_across_phases() -> None:
    def t(name: str) -> Test:
        return Test(name=name, request=Request(url="http://example.org/"))

    suites = [Suite(name="A", setup=[t("s")], main=[t("m1"), t("m2")], teardown=[t("d")]),
              Suite(name="B", main=[t("x")])]
    only = select_tests(suites, {"1.3", "2"}, set())
    assert [x.disabled for x in only[0].all_tests()] == [True, True, False, True]
    assert not only[1].main[0].disabled
    skipped = select_tests(suites, set(), {"1.1", "2.1"})
    assert [x.disabled for x in skipped[0].all_tests()] == [True, False, False, False]
    assert skipped[1].main[0].disabled
    assert select_tests(suites, set(), set()) == suites
    assert not suites[0].setup[0].disabled


def test_list_command(sample_suite_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["list", str(sample_suite_path), "--skip", "1.3"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0] == "1: Shop (login and browse)"
    assert "1.1" in out[1] and "Setup" in out[1] and "Login" in out[1]
    assert "Profile" in out[2]
    assert "Health" in out[3] and out[3].endswith("[disabled]")
    assert "Teardown" in out[4] and "Logout" in out[4]


def test_run_command_text_and_json(router, sample_suite_path: Path, tmp_path: Path,
                                   capsys: pytest.CaptureFixture[str]) -> None:
    shop_routes(router)
    out_json = tmp_path / "report.json"
    with patch("hitest.cli.run_suites", partial(run_suites, transport=router.transport)):
        code = main(["run", str(sample_suite_path), "--text", "--http1", "-o", str(out_json)])
    assert code == 0
    text = capsys.readouterr().out
    assert "Suite 1: Shop" in text
    assert "Overall: Pass" in text
    data = orjson.loads(out_json.read_bytes())
    assert data["status"] == "Pass"
    assert data["suites"][0]["variables"]["TOKEN"] == "t-1"


def test_run_command_failure_exit_code(router, sample_suite_path: Path) -> None:
    shop_routes(router)
    router.add("/health", 503)
    with patch("hitest.cli.run_suites", partial(run_suites, transport=router.transport)):
        assert main(["run", str(sample_suite_path), "--text"]) == 1


def test_run_command_define_overrides_vars_file(router, sample_suite_path: Path, tmp_path: Path) -> None:
    shop_routes(router)
    vars_file = tmp_path / "vars.yaml"
    vars_file.write_text("HOST: http://wrong.example.org\n", encoding="utf-8")
    with patch("hitest.cli.run_suites", partial(run_suites, transport=router.transport)):
        code = main(["run", str(sample_suite_path), "--text", "--vars-file", str(vars_file),
                     "-D", "HOST=http://shop.example.org"])
    assert code == 0
    assert all(r.url.host == "shop.example.org" for r in router.requests)


def test_run_command_skip_reports_skipped(router, sample_suite_path: Path,
                                          capsys: pytest.CaptureFixture[str]) -> None:
    shop_routes(router)
    with patch("hitest.cli.run_suites", partial(run_suites, transport=router.transport)):
        assert main(["run", str(sample_suite_path), "--text", "--skip", "1.3"]) == 0
    assert "Skipped  Health" in capsys.readouterr().out
    assert router.hits("/health") == 0


def test_exec_command(router, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    router.add("/ping", 200, body=b"pong")
    test_file = tmp_path / "ping.yaml"
    test_file.write_text(
        "Request:\n  URL: '{{HOST}}/ping'\nChecks:\n  - Check: Body\n    Contains: pong\n",
        encoding="utf-8",
    )
    with patch("hitest.cli.run_tests", partial(run_tests, transport=router.transport)):
        code = main(["exec", str(test_file), "-D", "HOST=http://api.example.org", "--text"])
    assert code == 0
    out = capsys.readouterr().out
    assert "Suite 1: exec" in out
    assert "Pass     ping" in out


def test_load_command(router, sample_suite_path: Path, tmp_path_load_config: Path, tmp_path: Path,
                      capsys: pytest.CaptureFixture[str]) -> None:
    shop_routes(router)
    csv_path = tmp_path / "out" / "live.csv"
    with patch("hitest.cli.run_load_test", partial(run_load_test, transport=router.transport)):
        code = main(["load", str(sample_suite_path), "-f", str(tmp_path_load_config), "--rate", "200",
                     "--count", "8", "--no-live", "--text", "--csv", str(csv_path)])
    assert code == 0
    rows = list(csv.reader(csv_path.read_text(encoding="utf-8").splitlines()))
    assert rows[0][0] == "ID"
    assert len(rows) == 9
    assert "Requests: 8" in capsys.readouterr().out
    assert router.hits("/login") == 1


def test_load_command_aborted_exit_code(router, sample_suite_path: Path, tmp_path: Path,
                                        capsys: pytest.CaptureFixture[str]) -> None:
    shop_routes(router)
    router.add("/profile", 500)
    router.add("/health", 500)
    with patch("hitest.cli.run_load_test", partial(run_load_test, transport=router.transport)):
        code = main(["load", str(sample_suite_path), "--rate", "500", "--duration", "5s", "--uniform",
                     "--max-error-rate", "0.2", "--no-live", "--text", "--csv", str(tmp_path / "l.csv")])
    assert code == 1
    captured = capsys.readouterr()
    assert "Aborted: error rate exceeded" in captured.err
    assert "ABORTED" in captured.out


def test_load_command_invalid_option(sample_suite_path: Path, tmp_path: Path,
                                     capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["load", str(sample_suite_path), "--rate", "-1", "--csv", str(tmp_path / "l.csv")])
    assert code == EXIT_INTERNAL
    assert "rate must be > 0" in capsys.readouterr().err


def test_missing_suite_file_is_internal_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["run", "/nonexistent/suite.yaml"]) == EXIT_INTERNAL
    assert "File not found" in capsys.readouterr().err


def test_bad_define_is_internal_error(sample_suite_path: Path) -> None:
    assert main(["list", str(sample_suite_path), "--only", "x"]) == EXIT_INTERNAL
    assert main(["run", str(sample_suite_path), "-D", "NOVALUE"]) == EXIT_INTERNAL


def test_keyboard_interrupt(sample_suite_path: Path) -> None:
    with patch("hitest.cli.cmd_run", side_effect=KeyboardInterrupt):
        assert main(["run", str(sample_suite_path)]) == EXIT_INTERRUPTED


def test_duration_argument_validated() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["load", "s.yaml", "--duration", "soon"])
