# virus/config.py
# -*- coding: utf-8 -*-
"""
virus central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize/coerce types (paths, ints, human sizes)
- Validate structure and types, warn or raise ConfigError (fatal optional)
- Typed access via Config dataclass (dotted get(), section())
- Platform defaults (toolchain directory, executable suffix) resolved once per load
  and handed to components through their constructors, never read from globals
"""

from __future__ import annotations

import os
import sys
import json
import logging
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path, PureWindowsPath
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from virus.errors import ConfigError

logger = logging.getLogger("virus.config")

CATALOG_URL = "https://raw.githubusercontent.com/vira-language/vira/main/repository/virus.json"
DEFAULT_IMAGE = "cgr.dev/chainguard/wolfi-base:latest"

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "WARNING",
        "file": None,
        "file_level": "DEBUG",
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.virus/log.jsonl"},
    },
    "catalog": {
        "url": CATALOG_URL,
        "timeout": 30,
    },
    "fetcher": {
        "cache_dir": "~/.virus/artifacts",
        "workers": 4,
        "timeout": 300,
        "chunk_size": "64K",
        "transparency_log": True,
    },
    "sandbox": {
        "runtime": "podman",
        "endpoint": None,  # e.g. unix:///run/user/1000/podman/podman.sock
        "image": DEFAULT_IMAGE,
        "workspace_mount": "/work",
        "toolchain_mount": "/vira-bin",
        "search_path": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
        "keepalive": ["/bin/sh", "-c", "while true; do sleep 100000; done"],
        "bootstrap": [
            ["apk", "update"],
            ["apk", "add", "--no-cache", "build-base", "gcc", "g++"],
        ],
    },
    "toolchain": {
        "bin_dir": None,  # platform default when unset
        "preprocessor": "preprocessor",
        "checker": "plsa",
        "compiler": "compiler",
        "cc": "gcc",
        "cxx": "g++",
        "linker": "gcc",
        "diagnostic": "diagnostic",
    },
    "build": {
        "manifest": "Project.toml",
        "source_dir": "src",
        "main": "main.vira",
        "deps_dir": ".virus_deps",
        "output_dir": "bin",
    },
}


# ----------------------------
# Platform defaults
# ----------------------------
def default_toolchain_dir(platform: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Toolchain binaries location for the host platform, None when unsupported."""
    platform = platform or sys.platform
    environ = os.environ if environ is None else environ
    if platform.startswith("linux"):
        return "/usr/lib/vira-lang/bin"
    if platform.startswith("win"):
        program_files = environ.get("ProgramFiles") or "C:\\Program Files"
        return str(PureWindowsPath(program_files, "ViraLang", "bin"))
    return None


def executable_suffix(platform: Optional[str] = None) -> str:
    return ".exe" if (platform or sys.platform).startswith("win") else ""


# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None
    platform: str = field(default_factory=lambda: sys.platform)

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def section(self, name: str) -> Dict[str, Any]:
        val = self.merged.get(name)
        return deepcopy(val) if isinstance(val, dict) else {}

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

    @property
    def exe_suffix(self) -> str:
        return executable_suffix(self.platform)

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None, platform: Optional[str] = None,
                       environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Build a Config without touching the filesystem (tests, embedding)."""
        raw = deepcopy(overrides or {})
        platform = platform or sys.platform
        merged = _normalize_and_coerce(_deep_merge(DEFAULTS, raw), platform=platform, environ=environ)
        return cls(raw=raw, merged=merged, path=None, platform=platform)


# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "K": 1024, "MB": 1024**2, "M": 1024**2, "GB": 1024**3, "G": 1024**3}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                num = float(s[: -len(suffix)].strip())
                return int(num * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None


def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res


def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("VIRUS_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "virus.yaml",
        Path.cwd() / "virus.yml",
        Path.cwd() / "virus.json",
        Path.home() / ".config" / "virus" / "config.yaml",
        Path("/etc") / "virus" / "config.yaml",
    ])
    return candidates


def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e

    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(txt)
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}") from e
    else:
        try:
            data = json.loads(txt)
        except json.JSONDecodeError as e:
            raise ConfigError(f"invalid JSON in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at top level")
    return data


def _normalize_and_coerce(cfg: Dict[str, Any], platform: Optional[str] = None,
                          environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Normalize path fields, convert human sizes and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("fetcher", "cache_dir"),
        ("toolchain", "bin_dir"),
        ("logging", "file"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str) and ref[key]:
            ref[key] = _expand_path(ref[key])

    jsonl = out.get("logging", {}).get("jsonl")
    if isinstance(jsonl, dict) and isinstance(jsonl.get("path"), str):
        jsonl["path"] = _expand_path(jsonl["path"])

    tc = out.setdefault("toolchain", {})
    if not tc.get("bin_dir"):
        tc["bin_dir"] = default_toolchain_dir(platform, environ)

    fetch = out.setdefault("fetcher", {})
    size = _human_size_to_bytes(fetch.get("chunk_size"))
    if size is not None:
        fetch["chunk_size"] = size

    log = out.setdefault("logging", {})
    max_size = _human_size_to_bytes(log.get("max_size"))
    if max_size is not None:
        log["max_size"] = max_size

    for section, key in (("fetcher", "workers"), ("fetcher", "timeout"), ("catalog", "timeout")):
        ref = out.get(section, {})
        if key in ref:
            try:
                ref[key] = int(ref[key])
            except (TypeError, ValueError):
                logger.debug("config: failed to coerce %s.%s=%r", section, key, ref[key])
    return out


def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless load() is called with fatal=True."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    workers = cfg.get("fetcher", {}).get("workers")
    if not isinstance(workers, int) or workers < 1:
        warnings.append("fetcher.workers must be integer >= 1")
    chunk = cfg.get("fetcher", {}).get("chunk_size")
    if not isinstance(chunk, int) or chunk < 1:
        warnings.append("fetcher.chunk_size must be a positive size")
    max_size = cfg.get("logging", {}).get("max_size")
    if not isinstance(max_size, int) or max_size < 1:
        warnings.append("logging.max_size must be a positive size")
    sb = cfg.get("sandbox", {})
    for key in ("workspace_mount", "toolchain_mount"):
        val = sb.get(key)
        if not isinstance(val, str) or not val.startswith("/"):
            warnings.append(f"sandbox.{key} must be an absolute in-sandbox path")
    bootstrap = sb.get("bootstrap")
    if bootstrap is not None and not (isinstance(bootstrap, list) and all(isinstance(c, list) for c in bootstrap)):
        warnings.append("sandbox.bootstrap must be a list of argv lists")
    if not cfg.get("build", {}).get("main"):
        warnings.append("build.main must name the main source file")
    return (len(warnings) == 0, warnings)


# ----------------------------
# Loading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None


def load(explicit_path: Optional[str] = None, fatal: bool = False, platform: Optional[str] = None) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    The result is returned to the caller and never kept in module state.
    """
    cfg_path = _find_path(explicit_path)
    raw: Dict[str, Any] = _load_file(cfg_path) if cfg_path else {}
    platform = platform or sys.platform
    merged = _normalize_and_coerce(_deep_merge(DEFAULTS, raw), platform=platform)
    ok, issues = _validate_structure(merged)
    if not ok:
        msg = f"config: validation issues: {issues}"
        if fatal:
            raise ConfigError(msg, {"issues": issues})
        logger.warning(msg)
    logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
    return Config(raw=raw, merged=merged, path=cfg_path, platform=platform)


def validate_config(cfg: Config) -> Tuple[bool, List[str]]:
    return _validate_structure(cfg.merged)

