"""Tests for the command line front end."""

from __future__ import annotations

import signal
from pathlib import Path
from typing import List

import pytest
import yaml

from conftest import CATALOG_URL, FakeHttpSession, FakeRuntime, catalog_doc
from virus.cli import EXIT_ERROR, EXIT_FAILURE, EXIT_INTERRUPTED, EXIT_OK, main, make_parser

JSON_URL = "https://libs.test/json-1.2.0.vira"


@pytest.fixture
def config_file(tmp_path: Path, toolchain_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.delenv("VIRUS_CONFIG", raising=False)
    p = tmp_path / "virus.yaml"
    p.write_text(yaml.safe_dump({
        "logging": {"level": "CRITICAL", "color": False},
        "catalog": {"url": CATALOG_URL},
        "fetcher": {"cache_dir": str(tmp_path / "store")},
        "toolchain": {"bin_dir": str(toolchain_dir)},
    }), encoding="utf-8")
    return p


@pytest.fixture
def served(http: FakeHttpSession) -> FakeHttpSession:
    http.add(CATALOG_URL, catalog_doc(json=[("1.1.0", "https://libs.test/json-1.1.0.vira"), ("1.2.0", JSON_URL)]))
    http.add("https://libs.test/json-1.1.0.vira", b"fn old() {}\n")
    http.add(JSON_URL, b"fn parse() {}\n")
    return http


def _run(config_file: Path, *args: str, **kw) -> int:
    return main(["--config", str(config_file), *args], **kw)


class TestParser:
    def test_commands(self) -> None:
        ap = make_parser()
        assert ap.parse_args(["add", "json"]).spec == "*"
        assert ap.parse_args(["install", "json", "1.2.0"]).version == "1.2.0"
        assert ap.parse_args(["remove", "json", "--version", "1.2.0"]).lib_version == "1.2.0"
        assert ap.parse_args(["-vv", "list"]).verbose == 2

    def test_no_command_prints_help(self, capsys) -> None:
        assert main([]) == EXIT_OK
        assert "usage: virus" in capsys.readouterr().out


class TestProjectCommands:
    def test_init_and_add(self, config_file: Path, tmp_path: Path, capsys) -> None:
        proj = tmp_path / "p"
        assert _run(config_file, "init", "--name", "demo", "--project-dir", str(proj)) == EXIT_OK
        assert _run(config_file, "add", "json", "--spec", "^1", "--project-dir", str(proj)) == EXIT_OK
        text = (proj / "Project.toml").read_text(encoding="utf-8")
        assert 'name = "demo"' in text
        assert 'json = "^1"' in text
        assert "Dependency added: json ^1" in capsys.readouterr().out

    def test_init_twice_is_an_error(self, config_file: Path, tmp_path: Path, capsys) -> None:
        proj = tmp_path / "p"
        _run(config_file, "init", "--project-dir", str(proj))
        assert _run(config_file, "init", "--project-dir", str(proj)) == EXIT_ERROR
        assert "already exists" in capsys.readouterr().out

    def test_compile(self, config_file: Path, project: Path, runtime: FakeRuntime, served, capsys) -> None:
        _run(config_file, "add", "json", "--project-dir", str(project))
        rc = _run(config_file, "compile", "--project-dir", str(project), runtime=runtime, session=served)
        assert rc == EXIT_OK
        assert (project / "bin" / "myproject").is_file()
        out = capsys.readouterr().out
        assert "json -> 1.2.0" in out
        assert "Compilation complete" in out

    def test_compile_stage_failure_shows_diagnostic(self, config_file: Path, project: Path, capsys) -> None:
        runtime = FakeRuntime(fail=lambda argv: (1, b"line 7, column 1: bad") if argv[0] == "plsa" else None)
        rc = _run(config_file, "compile", "--project-dir", str(project), runtime=runtime)
        assert rc == EXIT_ERROR
        out = capsys.readouterr().out
        assert "Running diagnostic" in out
        assert "line 7, column 1: bad" in out

    def test_compile_unknown_library(self, config_file: Path, project: Path, runtime: FakeRuntime,
                                     served, capsys) -> None:
        _run(config_file, "add", "nope", "--project-dir", str(project))
        rc = _run(config_file, "compile", "--project-dir", str(project), runtime=runtime, session=served)
        assert rc == EXIT_ERROR
        assert "Library not found: nope" in capsys.readouterr().out
        assert runtime.calls == []


class TestExitCodes:
    def test_interrupt(self, config_file: Path, project: Path) -> None:
        runtime = FakeRuntime(fail_on={"pull": KeyboardInterrupt()})
        assert _run(config_file, "compile", "--project-dir", str(project), runtime=runtime) == EXIT_INTERRUPTED

    def test_unexpected_failure(self, config_file: Path, project: Path, capsys) -> None:
        runtime = FakeRuntime(fail_on={"pull": RuntimeError("socket closed")})
        assert _run(config_file, "compile", "--project-dir", str(project), runtime=runtime) == EXIT_FAILURE
        assert "Command failed: socket closed" in capsys.readouterr().out

    def test_sigterm_handler_is_restored(self, config_file: Path) -> None:
        before = signal.getsignal(signal.SIGTERM)
        _run(config_file, "list")
        assert signal.getsignal(signal.SIGTERM) is before


class TestStoreCommands:
    def test_install_latest_and_list(self, config_file: Path, served, tmp_path: Path, capsys) -> None:
        assert _run(config_file, "install", "json", session=served) == EXIT_OK
        assert (tmp_path / "store" / "json" / "1.2.0" / "json-1.2.0.vira").is_file()
        capsys.readouterr()
        assert _run(config_file, "list") == EXIT_OK
        out = capsys.readouterr().out
        assert "json" in out
        assert "1.2.0" in out

    def test_install_specific_version(self, config_file: Path, served, tmp_path: Path) -> None:
        assert _run(config_file, "install", "json", "1.1.0", session=served) == EXIT_OK
        assert (tmp_path / "store" / "json" / "1.1.0" / "json-1.1.0.vira").is_file()

    def test_install_unknown_version(self, config_file: Path, served, capsys) -> None:
        assert _run(config_file, "install", "json", "9.9", session=served) == EXIT_ERROR
        assert "No matching version for json 9.9" in capsys.readouterr().out

    def test_list_empty(self, config_file: Path, capsys) -> None:
        assert _run(config_file, "list") == EXIT_OK
        assert "No libraries installed" in capsys.readouterr().out

    def test_remove(self, config_file: Path, served, tmp_path: Path, capsys) -> None:
        _run(config_file, "install", "json", session=served)
        _run(config_file, "install", "json", "1.1.0", session=served)
        assert _run(config_file, "remove", "json", "--version", "1.1.0") == EXIT_OK
        remaining: List[str] = [p.name for p in (tmp_path / "store" / "json").iterdir()]
        assert remaining == ["1.2.0"]
        capsys.readouterr()
        _run(config_file, "remove", "json")
        _run(config_file, "remove", "json")
        assert "No library matching json found" in capsys.readouterr().out
