# virus/meta.py
"""
meta.py - Project.toml manifest handling

The manifest is a small TOML document:

    [package]
    name = "myproject"
    version = "0.1.0"

    [dependencies]
    json = "*"
    http = "^1.2"

Features:
- locate / load / validate / save the manifest (declaration order of
  dependencies is preserved, it drives the build order)
- `init` scaffolding (manifest + src/main.vira)
- `add` a dependency with a version spec
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import toml

from virus.errors import ManifestError
from virus.logging import get_logger

logger = get_logger("meta")

MANIFEST_NAME = "Project.toml"
DEFAULT_PACKAGE = "myproject"
DEFAULT_VERSION = "0.1.0"
MAIN_TEMPLATE = "int main() {\n\treturn 0;\n}\n"


@dataclass
class Manifest:
    name: str
    version: str = DEFAULT_VERSION
    dependencies: Dict[str, str] = field(default_factory=dict)
    path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package": {"name": self.name, "version": self.version},
            "dependencies": dict(self.dependencies),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Optional[Path] = None) -> "Manifest":
        where = str(path) if path else "<manifest>"
        pkg = data.get("package")
        if not isinstance(pkg, dict):
            raise ManifestError(f"{where}: missing [package] table")
        name = pkg.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ManifestError(f"{where}: package.name must be a non-empty string")
        if os.sep in name or (os.altsep and os.altsep in name) or name in (".", ".."):
            raise ManifestError(f"{where}: package.name must not contain path separators")
        deps = data.get("dependencies") or {}
        if not isinstance(deps, dict):
            raise ManifestError(f"{where}: [dependencies] must be a table")
        for dep, spec in deps.items():
            if not isinstance(spec, str) or not spec:
                raise ManifestError(f"{where}: dependency {dep!r} needs a version spec string", {"dependency": dep})
        return cls(name=name, version=str(pkg.get("version") or DEFAULT_VERSION),
                   dependencies={str(k): v for k, v in deps.items()}, path=path)


# -----------------------
# Load / save
# -----------------------
def find_manifest(project_dir: Union[str, Path, None] = None, filename: str = MANIFEST_NAME) -> Optional[Path]:
    p = Path(project_dir or Path.cwd()) / filename
    return p if p.is_file() else None


def load_manifest(project_dir: Union[str, Path, None] = None, filename: str = MANIFEST_NAME) -> Manifest:
    path = find_manifest(project_dir, filename)
    if path is None:
        raise ManifestError(f"No project file found ({filename}) in {Path(project_dir or Path.cwd()).resolve()}")
    try:
        data = toml.load(str(path))
    except toml.TomlDecodeError as e:
        raise ManifestError(f"invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ManifestError(f"cannot read {path}: {e}") from e
    manifest = Manifest.from_dict(data, path=path.resolve())
    logger.debug("loaded manifest %s (%d dependencies)", path, len(manifest.dependencies))
    return manifest


def save_manifest(manifest: Manifest, path: Union[str, Path, None] = None) -> Path:
    out = Path(path) if path else manifest.path
    if out is None:
        out = Path.cwd() / MANIFEST_NAME
    try:
        with open(out, "w", encoding="utf-8") as fh:
            toml.dump(manifest.to_dict(), fh)
    except OSError as e:
        raise ManifestError(f"Failed to write {out}: {e}") from e
    manifest.path = Path(out).resolve()
    return manifest.path


# -----------------------
# Commands
# -----------------------
def init_project(project_dir: Union[str, Path, None] = None, name: Optional[str] = None,
                 source_dir: str = "src", main: str = "main.vira", force: bool = False) -> Manifest:
    """
    Scaffold a project: Project.toml with an empty dependency table and a
    minimal main unit. Refuses to overwrite an existing manifest unless force.
    """
    root = Path(project_dir or Path.cwd())
    root.mkdir(parents=True, exist_ok=True)
    manifest_path = root / MANIFEST_NAME
    if manifest_path.exists() and not force:
        raise ManifestError(f"{manifest_path} already exists")
    manifest = Manifest(name=name or DEFAULT_PACKAGE, version=DEFAULT_VERSION, dependencies={})
    save_manifest(manifest, manifest_path)

    src = root / source_dir
    src.mkdir(parents=True, exist_ok=True)
    main_path = src / main
    if not main_path.exists() or force:
        main_path.write_text(MAIN_TEMPLATE, encoding="utf-8")
    logger.info("initialized project %s in %s", manifest.name, root)
    return manifest


def add_dependency(project_dir: Union[str, Path, None], library: str, spec: str = "*") -> Manifest:
    if not library:
        raise ManifestError("Missing library name")
    if not spec:
        raise ManifestError(f"empty version spec for {library}")
    manifest = load_manifest(project_dir)
    previous = manifest.dependencies.get(library)
    manifest.dependencies[library] = spec
    save_manifest(manifest)
    if previous is not None and previous != spec:
        logger.info("dependency %s: %s -> %s", library, previous, spec)
    else:
        logger.info("dependency added: %s %s", library, spec)
    return manifest
