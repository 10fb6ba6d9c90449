"""Shared fixtures: fake HTTP session, fake isolation runtime, project/config helpers."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from virus.config import Config
from virus.meta import init_project
from virus.sandbox import ExecResult, Mount

CATALOG_URL = "https://catalog.test/virus.json"


# -----------------------
# HTTP
# -----------------------
class FakeResponse:
    def __init__(self, status_code: int = 200, body: bytes = b"", headers: Optional[Dict[str, str]] = None,
                 delay: float = 0.0):
        self.status_code = status_code
        self.body = body
        self.headers = {"Content-Length": str(len(body))} if headers is None else headers
        self.delay = delay
        self.closed = False

    def iter_content(self, chunk_size: int = 1024):
        for i in range(0, len(self.body), chunk_size):
            if self.delay:
                time.sleep(self.delay)
            yield self.body[i:i + chunk_size]

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))

    def close(self) -> None:
        self.closed = True


class FakeHttpSession:
    """Routes url -> FakeResponse factory; unknown urls answer 404. Records every GET."""

    def __init__(self, routes: Optional[Dict[str, Union[bytes, Any, Callable[[], FakeResponse]]]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def add(self, url: str, body: Union[bytes, Any] = b"", status: int = 200, **kw) -> None:
        if not isinstance(body, bytes):
            body = json.dumps(body).encode("utf-8")
        self.routes[url] = lambda: FakeResponse(status, body, **kw)

    def add_error(self, url: str, exc: Exception) -> None:
        def boom():
            raise exc
        self.routes[url] = boom

    def get(self, url: str, stream: bool = False, timeout: Optional[float] = None) -> FakeResponse:
        with self._lock:
            self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, b"not found")
        return route()


# -----------------------
# Isolation runtime
# -----------------------
Failure = Callable[[List[str]], Optional[Tuple[int, bytes]]]


class FakeRuntime:
    """
    Records runtime calls and emulates the toolchain by writing each stage's
    output file into the host directory behind the mount.
    """

    def __init__(self, fail: Optional[Failure] = None, fail_on: Optional[Dict[str, Exception]] = None):
        self.calls: List[Tuple[str, Any]] = []
        self.execs: List[List[str]] = []
        self.mounts: List[Mount] = []
        self.env: Dict[str, str] = {}
        self.workdir: Optional[str] = None
        self.fail = fail
        self.fail_on = fail_on or {}
        self._n = 0

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise self.fail_on[op]

    def op_count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)

    def host(self, sandbox_path: str) -> Path:
        for m in self.mounts:
            prefix = m.target.rstrip("/") + "/"
            if sandbox_path.startswith(prefix):
                return m.source.joinpath(*sandbox_path[len(prefix):].split("/"))
        raise AssertionError(f"unmapped sandbox path {sandbox_path}")

    def pull_image(self, image: str) -> None:
        self.calls.append(("pull", image))
        self._maybe_fail("pull")

    def create(self, image: str, mounts: Sequence[Mount], workdir: str, env: Dict[str, str],
               command: Sequence[str], name: Optional[str] = None) -> str:
        self.calls.append(("create", image))
        self._maybe_fail("create")
        self.mounts = list(mounts)
        self.env = dict(env)
        self.workdir = workdir
        self._n += 1
        return f"c0ffee{self._n:06d}"

    def start(self, container_id: str) -> None:
        self.calls.append(("start", container_id))
        self._maybe_fail("start")

    def exec(self, container_id: str, argv: Sequence[str], workdir: str, env: Dict[str, str]) -> ExecResult:
        argv = list(argv)
        self.calls.append(("exec", argv))
        self.execs.append(argv)
        self._maybe_fail("exec")
        if self.fail:
            failed = self.fail(argv)
            if failed is not None:
                return ExecResult(output=failed[1], exit_code=failed[0])
        self._emulate(argv)
        return ExecResult(output=b"", exit_code=0)

    def _emulate(self, argv: List[str]) -> None:
        tool = argv[0]
        out: Optional[str] = None
        if tool == "preprocessor":
            out = argv[-1]
        elif tool == "compiler":
            out = argv[2]
        elif tool in ("gcc", "g++") and "-o" in argv:
            out = argv[argv.index("-o") + 1]
        if out:
            target = self.host(out)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(f"{tool} output\n".encode("utf-8"))

    def stop(self, container_id: str) -> None:
        self.calls.append(("stop", container_id))
        self._maybe_fail("stop")

    def remove(self, container_id: str) -> None:
        self.calls.append(("remove", container_id))
        self._maybe_fail("remove")


# -----------------------
# fixtures
# -----------------------
@pytest.fixture(autouse=True)
def _reset_virus_logger():
    yield
    root = logging.getLogger("virus")
    for h in list(root.handlers):
        root.removeHandler(h)
    root.propagate = True


@pytest.fixture
def http() -> FakeHttpSession:
    return FakeHttpSession()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def toolchain_dir(tmp_path: Path) -> Path:
    d = tmp_path / "vira-bin"
    d.mkdir()
    return d


@pytest.fixture
def cfg(tmp_path: Path, toolchain_dir: Path) -> Config:
    return Config.from_overrides({
        "catalog": {"url": CATALOG_URL},
        "fetcher": {"cache_dir": str(tmp_path / "store"), "workers": 2},
        "toolchain": {"bin_dir": str(toolchain_dir)},
    }, platform="linux")


@pytest.fixture
def project(tmp_path: Path) -> Path:
    d = tmp_path / "proj"
    init_project(d)
    return d


def catalog_doc(**libraries: Sequence[Tuple[str, str]]) -> Dict[str, Any]:
    """catalog_doc(json=[("1.0.0", url), ...]) -> catalog JSON document"""
    return {"libraries": [
        {"name": name, "versions": [{"version": v, "url": u} for v, u in versions]}
        for name, versions in libraries.items()
    ]}
