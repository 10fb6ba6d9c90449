# virus/sandbox.py
"""
sandbox.py - ephemeral build sandbox for virus

One sandbox (a Podman container) per build:
- the build workspace is bind-mounted read-write at /work
- the host toolchain directory is bind-mounted read-only at /vira-bin and
  prepended to PATH
- the container idles on a keepalive command while stages are exec'd into it
- teardown (stop + remove) runs exactly once on every exit path

Lifecycle: created -> running -> stopped -> removed. exec() is only valid
while running.
"""

from __future__ import annotations

import uuid
import shutil
import posixpath
import threading
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Sequence, Union

from virus.config import Config
from virus.errors import ConfigError, SandboxError
from virus.logging import get_logger

logger = get_logger("sandbox")

# podman's own failure code for exec (as opposed to the command's exit status)
PODMAN_EXEC_FAILURE = 125

KEEPALIVE = ["/bin/sh", "-c", "while true; do sleep 100000; done"]


class SessionState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


@dataclass(frozen=True)
class Mount:
    source: Path
    target: str
    read_only: bool = False

    def mount_arg(self) -> str:
        arg = f"type=bind,source={self.source},destination={self.target}"
        return arg + (",ro=true" if self.read_only else "")


@dataclass
class ExecResult:
    output: bytes
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


# ----------------------------
# Isolation runtime
# ----------------------------
class IsolationRuntime(Protocol):
    def pull_image(self, image: str) -> None:
        ...

    def create(self, image: str, mounts: Sequence[Mount], workdir: str, env: Dict[str, str],
               command: Sequence[str], name: Optional[str] = None) -> str:
        ...

    def start(self, container_id: str) -> None:
        ...

    def exec(self, container_id: str, argv: Sequence[str], workdir: str, env: Dict[str, str]) -> ExecResult:
        ...

    def stop(self, container_id: str) -> None:
        ...

    def remove(self, container_id: str) -> None:
        ...


class PodmanRuntime:
    """Drives the podman CLI, locally or against a remote service (--url)."""

    def __init__(self, binary: str = "podman", endpoint: Optional[str] = None,
                 timeout: Optional[int] = None, stop_timeout: int = 2):
        self.binary = binary
        self.endpoint = endpoint
        self.timeout = timeout
        self.stop_timeout = stop_timeout

    def _base(self) -> List[str]:
        cmd = [self.binary]
        if self.endpoint:
            cmd += ["--url", self.endpoint]
        return cmd

    def _run(self, operation: str, args: Sequence[str], check: bool = True) -> subprocess.CompletedProcess:
        cmd = self._base() + list(args)
        logger.debug("podman: %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                  stdin=subprocess.DEVNULL, timeout=self.timeout)
        except FileNotFoundError as e:
            raise SandboxError(operation, f"{self.binary} not found") from e
        except subprocess.TimeoutExpired as e:
            raise SandboxError(operation, f"timed out after {self.timeout}s") from e
        if check and proc.returncode != 0:
            out = proc.stdout.decode("utf-8", errors="replace").strip()
            last = out.splitlines()[-1] if out else ""
            raise SandboxError(operation, f"exit {proc.returncode}: {last}", output=out)
        return proc

    def pull_image(self, image: str) -> None:
        self._run("pull", ["pull", "--quiet", image])

    def create(self, image: str, mounts: Sequence[Mount], workdir: str, env: Dict[str, str],
               command: Sequence[str], name: Optional[str] = None) -> str:
        args = ["create", "--workdir", workdir, "--label", "virus.build=1"]
        if name:
            args += ["--name", name]
        for k, v in env.items():
            args += ["--env", f"{k}={v}"]
        for m in mounts:
            args += ["--mount", m.mount_arg()]
        args += [image] + list(command)
        proc = self._run("create", args)
        lines = proc.stdout.decode("utf-8", errors="replace").strip().splitlines()
        if not lines:
            raise SandboxError("create", "podman returned no container id")
        return lines[-1].strip()

    def start(self, container_id: str) -> None:
        self._run("start", ["start", container_id])

    def exec(self, container_id: str, argv: Sequence[str], workdir: str, env: Dict[str, str]) -> ExecResult:
        args = ["exec", "--workdir", workdir]
        for k, v in env.items():
            args += ["--env", f"{k}={v}"]
        args += [container_id] + list(argv)
        proc = self._run("exec", args, check=False)
        if proc.returncode == PODMAN_EXEC_FAILURE:
            out = proc.stdout.decode("utf-8", errors="replace").strip()
            raise SandboxError("exec", f"podman could not run {argv[0] if argv else '<empty>'}", output=out)
        return ExecResult(output=proc.stdout, exit_code=proc.returncode)

    def stop(self, container_id: str) -> None:
        self._run("stop", ["stop", "--time", str(self.stop_timeout), container_id])

    def remove(self, container_id: str) -> None:
        self._run("remove", ["rm", "--force", container_id])


# ----------------------------
# Session
# ----------------------------
class SandboxSession:
    def __init__(self, runtime: IsolationRuntime, container_id: str, mounts: Sequence[Mount],
                 env: Dict[str, str], workdir: str):
        self.runtime = runtime
        self.id = container_id
        self.mounts = list(mounts)
        self.env = dict(env)
        self.workdir = workdir
        self.state = SessionState.CREATED
        self._exec_lock = threading.Lock()
        self._teardown_lock = threading.Lock()
        self._torn_down = False

    def _mark(self, state: SessionState) -> None:
        logger.debug("session %s: %s -> %s", self.id[:12], self.state.value, state.value)
        self.state = state

    def exec(self, argv: Sequence[str], workdir: Optional[str] = None) -> ExecResult:
        with self._exec_lock:
            if self.state is not SessionState.RUNNING:
                raise SandboxError("exec", f"session {self.id[:12]} is {self.state.value}, not running")
            logger.debug("exec: %s", " ".join(argv))
            return self.runtime.exec(self.id, list(argv), workdir or self.workdir, self.env)

    # ----------------------------
    # path translation
    # ----------------------------
    def to_sandbox(self, host_path: Union[str, Path]) -> str:
        p = Path(host_path).resolve()
        for m in sorted(self.mounts, key=lambda m: len(m.source.resolve().parts), reverse=True):
            try:
                rel = p.relative_to(m.source.resolve())
            except ValueError:
                continue
            return posixpath.join(m.target, *rel.parts) if rel.parts else m.target
        raise ValueError(f"{host_path} is not under any sandbox mount")

    def to_host(self, sandbox_path: str) -> Path:
        norm = posixpath.normpath(sandbox_path)
        for m in sorted(self.mounts, key=lambda m: len(m.target), reverse=True):
            if norm == m.target:
                return m.source
            if norm.startswith(m.target.rstrip("/") + "/"):
                rel = norm[len(m.target.rstrip("/")) + 1:]
                return m.source.joinpath(*rel.split("/"))
        raise ValueError(f"{sandbox_path} is not under any sandbox mount")

    # ----------------------------
    # teardown
    # ----------------------------
    def teardown(self) -> None:
        """Stop and remove the container. Idempotent; failures are logged, never raised."""
        with self._teardown_lock:
            if self._torn_down:
                return
            self._torn_down = True
        with self._exec_lock:
            if self.state is SessionState.RUNNING:
                try:
                    self.runtime.stop(self.id)
                except SandboxError as e:
                    logger.warning("teardown: %s", e)
                self._mark(SessionState.STOPPED)
            try:
                self.runtime.remove(self.id)
            except SandboxError as e:
                logger.warning("teardown: %s", e)
                return
            self._mark(SessionState.REMOVED)
        logger.info("sandbox %s removed", self.id[:12])


# ----------------------------
# Manager
# ----------------------------
@dataclass
class SandboxManager:
    runtime: IsolationRuntime
    image: str
    workspace_mount: str = "/work"
    toolchain_mount: str = "/vira-bin"
    search_path: str = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
    keepalive: List[str] = field(default_factory=lambda: list(KEEPALIVE))
    bootstrap: List[List[str]] = field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: Config, runtime: Optional[IsolationRuntime] = None) -> "SandboxManager":
        sb = cfg.section("sandbox")
        if runtime is None:
            kind = sb.get("runtime", "podman")
            if kind != "podman":
                raise ConfigError(f"unsupported sandbox runtime: {kind}")
            binary = shutil.which("podman") or "podman"
            runtime = PodmanRuntime(binary=binary, endpoint=sb.get("endpoint"))
        return cls(
            runtime=runtime,
            image=sb["image"],
            workspace_mount=sb.get("workspace_mount", "/work"),
            toolchain_mount=sb.get("toolchain_mount", "/vira-bin"),
            search_path=sb.get("search_path", cls.search_path),
            keepalive=list(sb.get("keepalive") or KEEPALIVE),
            bootstrap=[list(c) for c in (sb.get("bootstrap") or [])],
        )

    def environment(self) -> Dict[str, str]:
        return {"PATH": f"{self.toolchain_mount}:{self.search_path}"}

    @contextmanager
    def session(self, workspace: Union[str, Path], toolchain_dir: Union[str, Path]) -> Iterator[SandboxSession]:
        toolchain = Path(toolchain_dir)
        if not toolchain.is_dir():
            raise ConfigError(f"toolchain directory not found: {toolchain}")
        mounts = [
            Mount(Path(workspace), self.workspace_mount, read_only=False),
            Mount(toolchain, self.toolchain_mount, read_only=True),
        ]
        env = self.environment()
        logger.info("pulling image %s", self.image)
        self.runtime.pull_image(self.image)
        cid = self.runtime.create(self.image, mounts, self.workspace_mount, env, self.keepalive,
                                  name=f"virus-build-{uuid.uuid4().hex[:8]}")
        sess = SandboxSession(self.runtime, cid, mounts, env, self.workspace_mount)
        try:
            self.runtime.start(cid)
            sess._mark(SessionState.RUNNING)
            logger.info("sandbox %s running", cid[:12])
            self._run_bootstrap(sess)
            yield sess
        finally:
            sess.teardown()

    def _run_bootstrap(self, sess: SandboxSession) -> None:
        for argv in self.bootstrap:
            logger.info("bootstrap: %s", " ".join(argv))
            res = sess.exec(argv)
            if not res.success:
                raise SandboxError("bootstrap", f"{' '.join(argv)} exited {res.exit_code}", output=res.text)
