# virus/resolver.py
"""
resolver.py - catalog model and flat dependency resolver

Features:
- Catalog / Library / Version models (pydantic), validated on load
- Catalog download over HTTP (requests)
- Version matching behind a pluggable VersionMatcher strategy
  (default PrefixMatcher: "*" latest, "^x" textual prefix, otherwise exact)
- Single-level resolution of a whole dependency table, declaration order kept

Resolution is flat: a library's own dependencies are never looked at.
"""

from __future__ import annotations

import json
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping, Optional, Protocol

import requests
from pydantic import BaseModel, ValidationError, field_validator

from virus.errors import CatalogError, FetchError, LibraryNotFound, VersionNotFound
from virus.logging import get_logger

logger = get_logger("resolver")

LATEST = "*"
PREFIX_MARK = "^"


# -----------------------
# Catalog models
# -----------------------
class Version(BaseModel):
    version: str
    url: str

    @property
    def filename(self) -> str:
        return Path(self.url.split("?", 1)[0]).name


class Library(BaseModel):
    name: str
    versions: List[Version] = []  # oldest first, last is latest

    @field_validator("versions")
    @classmethod
    def _unique_versions(cls, v: List[Version]) -> List[Version]:
        seen = set()
        for ver in v:
            if ver.version in seen:
                raise ValueError(f"duplicate version {ver.version!r}")
            seen.add(ver.version)
        return v

    @property
    def latest(self) -> Optional[Version]:
        return self.versions[-1] if self.versions else None


class Catalog(BaseModel):
    """
    Remote index of libraries:
    - get(name) -> Library or None
    - fingerprint() -> digest of the catalog content
    """
    libraries: List[Library] = []

    def get(self, name: str) -> Optional[Library]:
        for lib in self.libraries:
            if lib.name == name:
                return lib
        return None

    def fingerprint(self) -> str:
        blob = json.dumps(self.model_dump(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    @classmethod
    def parse(cls, data: Any, source: str = "<catalog>") -> "Catalog":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise CatalogError(f"Invalid catalog from {source}: {e.error_count()} error(s)",
                               {"errors": e.errors(include_url=False)}) from e


def fetch_catalog(url: str, timeout: int = 30, session: Optional[requests.Session] = None) -> Catalog:
    """Download and validate the catalog JSON. No retry."""
    http = session or requests.Session()
    logger.info("downloading catalog %s", url)
    try:
        resp = http.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise FetchError(f"Failed to download catalog: {e}", url=url) from e
    if resp.status_code != 200:
        raise FetchError(f"Failed to download catalog: status {resp.status_code}", url=url, status=resp.status_code)
    try:
        data = resp.json()
    except ValueError as e:
        raise CatalogError(f"Invalid catalog from {url}: not JSON ({e})") from e
    catalog = Catalog.parse(data, source=url)
    logger.debug("catalog %s: %d libraries (fingerprint %s)", url, len(catalog.libraries), catalog.fingerprint()[:12])
    return catalog


def load_catalog_file(path: str) -> Catalog:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CatalogError(f"cannot read catalog {path}: {e}") from e
    return Catalog.parse(data, source=path)


def open_catalog(location: str, timeout: int = 30, session: Optional[requests.Session] = None) -> Catalog:
    """Catalog from an http(s) URL, a file:// URL or a plain local path."""
    if location.startswith(("http://", "https://")):
        return fetch_catalog(location, timeout=timeout, session=session)
    if location.startswith("file://"):
        location = location[len("file://"):]
    return load_catalog_file(location)


# -----------------------
# Matching strategy
# -----------------------
class VersionMatcher(Protocol):
    def matches(self, candidate: str, spec: str) -> bool:
        ...


class PrefixMatcher:
    """Textual matching: '^x' is a literal prefix (so '^1.2' also accepts '1.20'), anything else is exact."""

    def matches(self, candidate: str, spec: str) -> bool:
        if spec.startswith(PREFIX_MARK):
            return candidate.startswith(spec[len(PREFIX_MARK):])
        return candidate == spec


# -----------------------
# Resolver
# -----------------------
@dataclass(frozen=True)
class ResolvedDependency:
    name: str
    spec: str
    version: Version
    artifact: Optional[Path] = None  # set once the artifact store has it

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version.version}"


class Resolver:
    def __init__(self, matcher: Optional[VersionMatcher] = None):
        self.matcher = matcher or PrefixMatcher()

    def resolve(self, catalog: Catalog, name: str, spec: str = LATEST) -> Version:
        lib = catalog.get(name)
        if lib is None:
            raise LibraryNotFound(name, spec)
        if spec == LATEST:
            if lib.latest is None:
                raise VersionNotFound(name, spec)
            return lib.latest
        for ver in reversed(lib.versions):
            if self.matcher.matches(ver.version, spec):
                return ver
        raise VersionNotFound(name, spec)

    def resolve_all(self, catalog: Catalog, dependencies: Mapping[str, str]) -> List[ResolvedDependency]:
        """Resolve every declaration in order; the first failure propagates."""
        out: List[ResolvedDependency] = []
        for name, spec in dependencies.items():
            ver = self.resolve(catalog, name, spec)
            logger.debug("resolved %s %s -> %s", name, spec, ver.version)
            out.append(ResolvedDependency(name=name, spec=spec, version=ver))
        return out


def resolve(catalog: Catalog, name: str, spec: str = LATEST) -> Version:
    return Resolver().resolve(catalog, name, spec)

