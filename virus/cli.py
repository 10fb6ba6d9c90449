#!/usr/bin/env python3
# virus/cli.py
"""
virus CLI - Vira package manager

Commands:
  init [--name]                 scaffold Project.toml + src/main.vira
  add <lib> [--spec]            declare a dependency ("*" by default)
  compile [--project-dir]       resolve, fetch, build in the sandbox, export bin/<name>
  install <lib> [version]       fetch one library into the artifact store
  list                          list stored artifacts
  remove <lib> [--version]      delete stored artifacts

Exit status: 0 ok, 1 virus error, 2 unexpected failure, 130 interrupted,
143 terminated.
"""

from __future__ import annotations

import sys
import signal
import argparse
from typing import Any, Callable, Dict, List, Optional

import requests
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn
from rich.table import Table

from virus import config as config_mod
from virus import __version__
from virus.buildsystem import Builder
from virus.config import Config
from virus.errors import StageError, VirusError
from virus.fetcher import ArtifactStore, FetchRequest, ProgressCallback
from virus.logging import configure_logging, get_logger
from virus.meta import add_dependency, init_project
from virus.resolver import LATEST, Resolver, open_catalog
from virus.sandbox import IsolationRuntime

logger = get_logger("cli")
console = Console(highlight=False)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FAILURE = 2
EXIT_INTERRUPTED = 130
EXIT_TERMINATED = 143


class Terminated(BaseException):
    """Raised from the SIGTERM handler so every cleanup scope unwinds."""


def _on_sigterm(signum, frame):
    raise Terminated()


# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {escape(msg)}")


def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {escape(msg)}")


def print_err(msg: str):
    console.print(f"[bold red]✖[/] {escape(msg)}")


def print_info(msg: str):
    console.print(f"[cyan]{escape(msg)}[/cyan]")


def _download_progress(progress: Progress) -> Callable[[FetchRequest], ProgressCallback]:
    """Per-request callback; a bar only appears once bytes actually flow (cache hits stay silent)."""
    def factory(req: FetchRequest) -> ProgressCallback:
        state: Dict[str, Any] = {}

        def cb(done: int, total: Optional[int]) -> None:
            if "task" not in state:
                state["task"] = progress.add_task(f"Downloading {req.name} {req.version}", total=total)
            progress.update(state["task"], completed=done, total=total)
        return cb
    return factory


# -----------------------
# CLI Implementation
# -----------------------
class VirusCLI:
    def __init__(self, cfg: Config, session: Optional[requests.Session] = None,
                 runtime: Optional[IsolationRuntime] = None):
        self.config = cfg
        self.session = session or requests.Session()
        self.runtime = runtime
        self._store: Optional[ArtifactStore] = None

    @property
    def store(self) -> ArtifactStore:
        if self._store is None:
            self._store = ArtifactStore.from_config(self.config, session=self.session)
        return self._store

    # --------------
    # project commands
    # --------------
    def init(self, name: Optional[str] = None, project_dir: Optional[str] = None):
        print_info("Initializing Vira project")
        build = self.config.section("build")
        manifest = init_project(project_dir, name=name, source_dir=build.get("source_dir", "src"),
                                main=build.get("main", "main.vira"))
        print_ok(f"Project {manifest.name} initialized")
        return manifest

    def add(self, library: str, spec: str = LATEST, project_dir: Optional[str] = None):
        print_info(f"Adding dependency: {library}")
        manifest = add_dependency(project_dir, library, spec)
        print_ok(f"Dependency added: {library} {spec}")
        return manifest

    def _on_event(self, name: str, payload: Dict[str, Any]) -> None:
        if name == "resolve.done":
            for lib, ver in payload["dependencies"].items():
                print_info(f"{lib} -> {ver}")
        elif name == "sandbox.ready":
            print_ok("Sandbox ready")
        elif name == "unit.start":
            print_info(f"Compiling source: {payload['unit']}")
        elif name == "stage.done":
            print_ok(f"{payload['stage']} done")
        elif name == "link.done":
            print_ok("Linking done")

    def compile(self, project_dir: Optional[str] = None):
        print_info("Compiling Vira project")
        builder = Builder.from_config(self.config, session=self.session, runtime=self.runtime, emit=self._on_event)
        columns = (TextColumn("{task.description}"), BarColumn(), DownloadColumn(), TransferSpeedColumn())
        try:
            with Progress(*columns, console=console, transient=True) as progress:
                result = builder.build(project_dir, progress=_download_progress(progress))
        except StageError as e:
            print_err("Error occurred. Running diagnostic...")
            if e.report is not None:
                console.print(e.report.text, markup=False)
            raise
        print_ok(f"Compilation complete: {result.executable}")
        return result

    # --------------
    # library store commands
    # --------------
    def install(self, library: str, version: Optional[str] = None):
        spec = version or LATEST
        print_info(f"Installing {library} {spec}...")
        catalog = open_catalog(self.config.get("catalog.url"), timeout=self.config.get("catalog.timeout", 30),
                               session=self.session)
        ver = Resolver().resolve(catalog, library, spec)
        columns = (TextColumn("{task.description}"), BarColumn(), DownloadColumn(), TransferSpeedColumn())
        with Progress(*columns, console=console, transient=True) as progress:
            cb = _download_progress(progress)(FetchRequest(library, ver.version, ver.url))
            path = self.store.ensure(library, ver.version, ver.url, progress=cb)
        print_ok(f"Installed {library} {ver.version}")
        logger.debug("installed at %s", path)
        return path

    def list(self):
        artifacts = self.store.list_artifacts()
        if not artifacts:
            print_info("No libraries installed")
            return artifacts
        table = Table(title="Installed libraries")
        table.add_column("name")
        table.add_column("version")
        table.add_column("file")
        table.add_column("size", justify="right")
        for a in artifacts:
            table.add_row(a.name, a.version, a.path.name, str(a.size))
        console.print(table)
        return artifacts

    def remove(self, library: str, version: Optional[str] = None):
        removed = self.store.remove(library, version)
        if not removed:
            print_warn(f"No library matching {library} found")
        for a in removed:
            print_ok(f"Removed {a.name} {a.version} ({a.path.name})")
        return removed


# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="virus", description="Vira package manager")
    ap.add_argument("--config", help="path to a virus config file (YAML or JSON)")
    ap.add_argument("-v", "--verbose", action="count", default=0, help="more logging (-vv for debug)")
    ap.add_argument("--version", action="version", version=f"virus {__version__}")
    sub = ap.add_subparsers(dest="cmd")

    p_init = sub.add_parser("init", help="Initialize a new Vira project")
    p_init.add_argument("--name", help="package name (default: myproject)")
    p_init.add_argument("--project-dir", default=None)

    p_add = sub.add_parser("add", help="Add a dependency")
    p_add.add_argument("library")
    p_add.add_argument("--spec", default=LATEST, help='version spec: "*", "^prefix" or an exact version')
    p_add.add_argument("--project-dir", default=None)

    p_compile = sub.add_parser("compile", help="Compile the project")
    p_compile.add_argument("--project-dir", default=None)

    p_install = sub.add_parser("install", help="Install a library (default: latest)")
    p_install.add_argument("library")
    p_install.add_argument("version", nargs="?")

    sub.add_parser("list", help="List installed libraries")

    p_remove = sub.add_parser("remove", help="Remove a library")
    p_remove.add_argument("library")
    p_remove.add_argument("--version", dest="lib_version", default=None)

    return ap


def _logging_cfg(cfg: Config, verbose: int) -> Dict[str, Any]:
    section = cfg.section("logging")
    if verbose >= 2:
        section["level"] = "DEBUG"
    elif verbose == 1:
        section["level"] = "INFO"
    return section


def main(argv: Optional[List[str]] = None, runtime: Optional[IsolationRuntime] = None,
         session: Optional[requests.Session] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return EXIT_OK

    previous = signal.signal(signal.SIGTERM, _on_sigterm)
    try:
        cfg = config_mod.load(args.config)
        configure_logging(_logging_cfg(cfg, args.verbose))
        cli = VirusCLI(cfg, session=session, runtime=runtime)
        if args.cmd == "init":
            cli.init(name=args.name, project_dir=args.project_dir)
        elif args.cmd == "add":
            cli.add(args.library, args.spec, project_dir=args.project_dir)
        elif args.cmd == "compile":
            cli.compile(args.project_dir)
        elif args.cmd == "install":
            cli.install(args.library, args.version)
        elif args.cmd == "list":
            cli.list()
        elif args.cmd == "remove":
            cli.remove(args.library, args.lib_version)
        return EXIT_OK
    except VirusError as e:
        print_err(str(e))
        return EXIT_ERROR
    except KeyboardInterrupt:
        print_err("Interrupted")
        return EXIT_INTERRUPTED
    except Terminated:
        print_err("Terminated")
        return EXIT_TERMINATED
    except Exception as e:
        logger.exception("unexpected failure")
        print_err(f"Command failed: {e}")
        return EXIT_FAILURE
    finally:
        signal.signal(signal.SIGTERM, previous)


if __name__ == "__main__":
    sys.exit(main())
