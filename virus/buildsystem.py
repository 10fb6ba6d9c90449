# virus/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - build engine for virus

Main API:
  builder = Builder.from_config(cfg)
  result = builder.build(project_dir, progress=...)

Flow of one build:
  manifest -> catalog -> resolve (every dependency, declaration order)
  -> fetch (artifact store, concurrent) -> workspace (temp dir)
  -> sandbox session (bootstrap) -> per-unit stages (dependencies, then main)
  -> link -> export bin/<package> to the project
  -> sandbox teardown + workspace removal, whatever happened

The first failing stage aborts the build with StageError carrying the
rendered diagnostic; nothing after it runs.
"""

from __future__ import annotations

import time
import shutil
import tempfile
import posixpath
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import requests

from virus.config import Config
from virus.diagnostic import DiagnosticReporter
from virus.errors import LinkError, ManifestError, StageError, VirusError
from virus.fetcher import ArtifactStore, FetchRequest, ProgressCallback
from virus.logging import get_logger
from virus.meta import Manifest, load_manifest
from virus.resolver import Catalog, ResolvedDependency, Resolver, open_catalog
from virus.sandbox import IsolationRuntime, SandboxManager, SandboxSession
from virus.toolchain import Toolchain, include_flags, is_compilable

logger = get_logger("buildsystem")

EventSink = Callable[[str, Dict[str, Any]], None]
DEPENDENCY_OBJECT = "lib.o"
MAIN_OBJECT = "main.o"


def _noop_event(name: str, payload: Dict[str, Any]) -> None:
    pass


@dataclass
class StageResult:
    stage: str
    exit_code: int
    output: bytes

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


@dataclass
class BuildResult:
    package: str
    executable: Path
    dependencies: List[ResolvedDependency] = field(default_factory=list)
    objects: List[str] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at


# -------------------------
# Workspace
# -------------------------
class Workspace:
    """Per-build temporary directory, mounted read-write into the sandbox."""

    def __init__(self, root: Path, deps_dir: str = ".virus_deps", output_dir: str = "bin"):
        self.root = Path(root)
        self.deps_dir = self.root / deps_dir
        self.bin_dir = self.root / output_dir
        self._destroyed = False

    @classmethod
    def create(cls, deps_dir: str = ".virus_deps", output_dir: str = "bin") -> "Workspace":
        root = Path(tempfile.mkdtemp(prefix="virus-build-"))
        logger.debug("workspace %s", root)
        return cls(root, deps_dir=deps_dir, output_dir=output_dir)

    def populate(self, manifest_path: Path, source_dir: Path) -> None:
        shutil.copy2(manifest_path, self.root / manifest_path.name)
        shutil.copytree(source_dir, self.root / source_dir.name)
        self.deps_dir.mkdir(parents=True, exist_ok=True)
        self.bin_dir.mkdir(parents=True, exist_ok=True)

    def dependency_dir(self, name: str, version: str) -> Path:
        return self.deps_dir / name / version

    def stage_dependency(self, dep: ResolvedDependency) -> Path:
        """Copy a cached artifact into .virus_deps/<name>/<version>/ and return its workspace path."""
        if dep.artifact is None:
            raise VirusError(f"{dep.name} {dep.version.version} has not been fetched")
        d = self.dependency_dir(dep.name, dep.version.version)
        d.mkdir(parents=True, exist_ok=True)
        target = d / dep.artifact.name
        shutil.copy2(dep.artifact, target)
        return target

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        shutil.rmtree(self.root, ignore_errors=True)
        logger.debug("workspace %s removed", self.root)

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc) -> None:
        self.destroy()


# -------------------------
# Pipeline
# -------------------------
class PipelineExecutor:
    """Runs the stages of each unit inside a running session, strictly in order."""

    def __init__(self, session: SandboxSession, toolchain: Toolchain, reporter: DiagnosticReporter,
                 emit: Optional[EventSink] = None):
        self.session = session
        self.toolchain = toolchain
        self.reporter = reporter
        self.emit = emit or _noop_event

    def compile_unit(self, source: str, output: str, includes: Sequence[str] = ()) -> List[StageResult]:
        plan = self.toolchain.plan_unit(source, output, includes)
        self.emit("unit.start", {"unit": source, "stages": [s.name for s in plan]})
        results: List[StageResult] = []
        for spec in plan:
            res = self.session.exec(spec.argv)
            sr = StageResult(stage=spec.name, exit_code=res.exit_code, output=res.output)
            results.append(sr)
            if not sr.success:
                host_input = self.session.to_host(spec.input)
                logger.error("%s failed for %s (exit=%d)", spec.name, source, sr.exit_code)
                report = self.reporter.report(sr.output, host_input)
                raise StageError(unit=source, result=sr, source=str(host_input), report=report)
            self.emit("stage.done", {"unit": source, "stage": spec.name})
        return results

    def link(self, objects: Sequence[str], output: str) -> StageResult:
        res = self.session.exec(self.toolchain.link_argv(objects, output))
        sr = StageResult(stage="link", exit_code=res.exit_code, output=res.output)
        if not sr.success:
            raise LinkError(sr)
        self.emit("link.done", {"output": output})
        return sr


# -------------------------
# Orchestration
# -------------------------
class Builder:
    def __init__(self, cfg: Config, store: ArtifactStore, sandbox: SandboxManager, toolchain: Toolchain,
                 resolver: Optional[Resolver] = None, reporter: Optional[DiagnosticReporter] = None,
                 catalog_loader: Optional[Callable[[], Catalog]] = None, emit: Optional[EventSink] = None):
        self.cfg = cfg
        self.store = store
        self.sandbox = sandbox
        self.toolchain = toolchain
        self.resolver = resolver or Resolver()
        self.reporter = reporter or DiagnosticReporter.from_toolchain(toolchain)
        self.emit = emit or _noop_event
        self._catalog_loader = catalog_loader
        self._build = cfg.section("build")

    @classmethod
    def from_config(cls, cfg: Config, session: Optional[requests.Session] = None,
                    runtime: Optional[IsolationRuntime] = None, **kw) -> "Builder":
        http = session or requests.Session()
        url = cfg.get("catalog.url")
        timeout = cfg.get("catalog.timeout", 30)
        kw.setdefault("catalog_loader", lambda: open_catalog(url, timeout=timeout, session=http))
        return cls(
            cfg,
            store=ArtifactStore.from_config(cfg, session=http),
            sandbox=SandboxManager.from_config(cfg, runtime=runtime),
            toolchain=Toolchain.from_config(cfg),
            **kw,
        )

    def load_catalog(self) -> Catalog:
        if self._catalog_loader is None:
            url = self.cfg.get("catalog.url")
            return open_catalog(url, timeout=self.cfg.get("catalog.timeout", 30))
        return self._catalog_loader()

    # -------------------------
    # host-side phases
    # -------------------------
    def resolve(self, manifest: Manifest, catalog: Optional[Catalog] = None) -> List[ResolvedDependency]:
        if not manifest.dependencies:
            return []
        catalog = catalog or self.load_catalog()
        resolved = self.resolver.resolve_all(catalog, manifest.dependencies)
        self.emit("resolve.done", {"dependencies": {r.name: r.version.version for r in resolved}})
        return resolved

    def fetch(self, resolved: Sequence[ResolvedDependency],
              progress: Optional[Callable[[FetchRequest], Optional[ProgressCallback]]] = None) -> List[ResolvedDependency]:
        reqs = [FetchRequest(r.name, r.version.version, r.version.url) for r in resolved]
        paths = self.store.ensure_many(reqs, progress=progress)
        return [replace(r, artifact=p) for r, p in zip(resolved, paths)]

    def _sources(self, project_dir: Path) -> Tuple[Path, str]:
        """(host source dir, main unit path relative to it)"""
        src = project_dir / self._build.get("source_dir", "src")
        main_rel = self._build.get("main", "main.vira")
        if not (src / main_rel).is_file():
            raise ManifestError(f"main unit not found: {src / main_rel}")
        return src, main_rel

    # -------------------------
    # build
    # -------------------------
    def build(self, project_dir: Union[str, Path, None] = None,
              progress: Optional[Callable[[FetchRequest], Optional[ProgressCallback]]] = None) -> BuildResult:
        started = time.time()
        project = Path(project_dir or Path.cwd()).resolve()
        manifest = load_manifest(project, self._build.get("manifest", "Project.toml"))
        src_dir, main_rel = self._sources(project)
        tool_dir = self.toolchain.require_bin_dir()
        missing = self.toolchain.missing_host_tools()
        if missing:
            logger.warning("toolchain binaries not found on host: %s", ", ".join(str(p) for p in missing.values()))
        logger.info("building %s %s", manifest.name, manifest.version)

        # everything that can fail without a sandbox happens first
        deps = self.fetch(self.resolve(manifest), progress=progress)

        with Workspace.create(self._build.get("deps_dir", ".virus_deps"),
                              self._build.get("output_dir", "bin")) as ws:
            ws.populate(manifest.path, src_dir)
            staged = [ws.stage_dependency(d) for d in deps]
            with self.sandbox.session(ws.root, tool_dir) as session:
                self.emit("sandbox.ready", {"id": session.id})
                objects = self._compile_all(session, deps, staged, ws.root / src_dir.name / main_rel)
                out_sandbox = posixpath.join(session.to_sandbox(ws.bin_dir), manifest.name)
                PipelineExecutor(session, self.toolchain, self.reporter, self.emit).link(objects, out_sandbox)
            exe = self._export(ws, manifest, project)

        result = BuildResult(package=manifest.name, executable=exe, dependencies=deps, objects=objects,
                             started_at=started, finished_at=time.time())
        logger.info("built %s in %.1fs", exe, result.duration)
        return result

    def _compile_all(self, session: SandboxSession, deps: Sequence[ResolvedDependency],
                     staged: Sequence[Path], main_unit: Path) -> List[str]:
        executor = PipelineExecutor(session, self.toolchain, self.reporter, self.emit)
        includes = include_flags([session.to_sandbox(p.parent) for p in staged])
        objects: List[str] = []
        for dep, artifact in zip(deps, staged):
            source = session.to_sandbox(artifact)
            if not is_compilable(source):
                logger.info("%s %s: %s is not compiled (include only)", dep.name, dep.version.version, artifact.name)
                continue
            obj = posixpath.join(session.to_sandbox(artifact.parent), DEPENDENCY_OBJECT)
            executor.compile_unit(source, obj, includes)
            objects.append(obj)
        main_source = session.to_sandbox(main_unit)
        main_obj = posixpath.join(session.workdir, MAIN_OBJECT)
        executor.compile_unit(main_source, main_obj, includes)
        objects.append(main_obj)
        return objects

    def _export(self, ws: Workspace, manifest: Manifest, project: Path) -> Path:
        built = ws.bin_dir / manifest.name
        if not built.is_file():
            raise VirusError(f"linker reported success but {built.name} was not produced")
        out_dir = project / self._build.get("output_dir", "bin")
        out_dir.mkdir(parents=True, exist_ok=True)
        exe = out_dir / (manifest.name + self.cfg.exe_suffix)
        shutil.copy2(built, exe)
        self.emit("export.done", {"path": str(exe)})
        return exe


def build_project(cfg: Config, project_dir: Union[str, Path, None] = None, **kw) -> BuildResult:
    progress = kw.pop("progress", None)
    return Builder.from_config(cfg, **kw).build(project_dir, progress=progress)
