# virus/errors.py
"""
Error taxonomy for virus.

Every fatal condition of a build maps to one class here. All of them derive
from VirusError so the CLI can print a clean one-line message and pick an
exit code without a traceback.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VirusError(Exception):
    """Base class: message + free-form details for rendering."""

    kind = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ConfigError(VirusError):
    kind = "config"


class ManifestError(VirusError):
    kind = "manifest"


# ----------------------------
# Resolution
# ----------------------------
class ResolutionError(VirusError):
    """A dependency could not be matched against the catalog."""

    kind = "resolution"

    def __init__(self, name: str, spec: str, message: str):
        super().__init__(message, {"name": name, "spec": spec})
        self.name = name
        self.spec = spec


class LibraryNotFound(ResolutionError):
    def __init__(self, name: str, spec: str = "*"):
        super().__init__(name, spec, f"Library not found: {name}")


class VersionNotFound(ResolutionError):
    def __init__(self, name: str, spec: str):
        super().__init__(name, spec, f"No matching version for {name} {spec}")


class CatalogError(VirusError):
    """Catalog content could not be parsed or validated."""

    kind = "catalog"


# ----------------------------
# Fetch
# ----------------------------
class FetchError(VirusError):
    kind = "fetch"

    def __init__(self, message: str, *, name: Optional[str] = None, version: Optional[str] = None,
                 url: Optional[str] = None, status: Optional[int] = None):
        details = {k: v for k, v in (("name", name), ("version", version), ("url", url), ("status", status)) if v is not None}
        super().__init__(message, details)
        self.name = name
        self.version = version
        self.url = url
        self.status = status


# ----------------------------
# Sandbox / pipeline
# ----------------------------
class SandboxError(VirusError):
    """Isolation runtime transport failure (pull/create/start/exec/stop/remove)."""

    kind = "sandbox"

    def __init__(self, operation: str, message: str, output: str = ""):
        super().__init__(f"{operation} failed: {message}", {"operation": operation})
        self.operation = operation
        self.output = output


class StageError(VirusError):
    """A toolchain stage exited non-zero while compiling a translation unit."""

    kind = "stage"

    def __init__(self, unit: str, result: Any, source: Optional[str] = None, report: Any = None):
        super().__init__(
            f"{result.stage} failed for {unit} (exit={result.exit_code})",
            {"unit": unit, "stage": result.stage, "exit_code": result.exit_code},
        )
        self.unit = unit
        self.result = result
        self.source = source
        self.report = report


class LinkError(VirusError):
    kind = "link"

    def __init__(self, result: Any):
        super().__init__(f"Linking failed (exit={result.exit_code})", {"exit_code": result.exit_code})
        self.result = result

    @property
    def output(self) -> str:
        return self.result.text
