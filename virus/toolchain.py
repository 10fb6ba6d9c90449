# virus/toolchain.py
"""
Toolchain description for virus builds.

Maps a translation unit to its ordered stage commands, by file extension:

    .vira             preprocess -> check -> codegen
    .c                cc
    .cpp .cc .cxx     cxx
    anything else     not compiled

All argv produced here use in-sandbox paths; the binaries are resolved
through PATH inside the sandbox (toolchain mount first).
"""

from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from virus.config import Config
from virus.errors import ConfigError
from virus.logging import get_logger

logger = get_logger("toolchain")

VIRA_EXTS = (".vira",)
C_EXTS = (".c",)
CXX_EXTS = (".cpp", ".cc", ".cxx")
PREPROCESSED_SUFFIX = ".pre"

# tools shipped in the host toolchain directory (the rest come with the image)
HOST_TOOLS = ("preprocessor", "checker", "compiler", "diagnostic")


@dataclass(frozen=True)
class StageSpec:
    name: str
    argv: List[str]
    input: str
    output: Optional[str] = None


@dataclass
class Toolchain:
    bin_dir: Optional[Path]
    preprocessor: str = "preprocessor"
    checker: str = "plsa"
    compiler: str = "compiler"
    cc: str = "gcc"
    cxx: str = "g++"
    linker: str = "gcc"
    diagnostic: str = "diagnostic"
    exe_suffix: str = ""

    @classmethod
    def from_config(cls, cfg: Config) -> "Toolchain":
        tc = cfg.section("toolchain")
        bin_dir = tc.get("bin_dir")
        return cls(
            bin_dir=Path(bin_dir) if bin_dir else None,
            preprocessor=tc.get("preprocessor", "preprocessor"),
            checker=tc.get("checker", "plsa"),
            compiler=tc.get("compiler", "compiler"),
            cc=tc.get("cc", "gcc"),
            cxx=tc.get("cxx", "g++"),
            linker=tc.get("linker", "gcc"),
            diagnostic=tc.get("diagnostic", "diagnostic"),
            exe_suffix=cfg.exe_suffix,
        )

    def require_bin_dir(self) -> Path:
        if self.bin_dir is None:
            raise ConfigError("Unsupported OS: set toolchain.bin_dir to the Vira toolchain directory")
        return self.bin_dir

    def host_tool(self, role: str) -> Path:
        """Host path of a toolchain-directory binary, e.g. host_tool('diagnostic')."""
        return self.require_bin_dir() / (getattr(self, role) + self.exe_suffix)

    def missing_host_tools(self) -> Dict[str, Path]:
        if self.bin_dir is None:
            return {}
        out = {}
        for role in HOST_TOOLS:
            p = self.host_tool(role)
            if not (p.is_file() and os.access(p, os.X_OK)):
                out[role] = p
        return out

    # -------------------------
    # stage plans
    # -------------------------
    def plan_unit(self, source: str, output: str, includes: Sequence[str] = ()) -> List[StageSpec]:
        ext = unit_extension(source)
        inc = list(includes)
        if ext in VIRA_EXTS:
            pre = source + PREPROCESSED_SUFFIX
            return [
                StageSpec("preprocess", [self.preprocessor, *inc, source, pre], source, pre),
                StageSpec("check", [self.checker, pre], pre),
                StageSpec("codegen", [self.compiler, pre, output], pre, output),
            ]
        if ext in C_EXTS:
            return [StageSpec("cc", [self.cc, "-c", *inc, source, "-o", output], source, output)]
        if ext in CXX_EXTS:
            return [StageSpec("cxx", [self.cxx, "-c", *inc, source, "-o", output], source, output)]
        return []

    def link_argv(self, objects: Sequence[str], output: str) -> List[str]:
        return [self.linker, *objects, "-o", output]


def unit_extension(path: str) -> str:
    return posixpath.splitext(path)[1].lower()


def is_compilable(path: str) -> bool:
    return unit_extension(path) in VIRA_EXTS + C_EXTS + CXX_EXTS


def include_flags(dirs: Sequence[str]) -> List[str]:
    return [f"-I{d}" for d in dirs]
