# virus/fetcher.py
"""
fetcher.py - artifact store for virus

Features:
- Idempotent fetch-and-cache keyed by (name, version):
  <root>/<name>/<version>/<basename(url)>; an existing file is a cache hit
- Streaming HTTP download (requests) into a temp file in the destination
  directory, published atomically with os.replace; no partial file is ever
  visible at the canonical path
- Single flight: concurrent ensure() calls for one key serialize on a per-key lock
- Bounded parallel prefetch (ThreadPoolExecutor, fetcher.workers)
- Progress callback (done_bytes, total_bytes_or_None)
- Transparency log (JSONL) of every transfer with its sha256 (audit only)
- list / remove / clear of cached artifacts
- Metrics counters
"""

from __future__ import annotations

import os
import json
import time
import shutil
import hashlib
import tempfile
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from itertools import islice
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import requests

from virus.config import Config
from virus.errors import FetchError
from virus.logging import get_logger

logger = get_logger("fetcher")

ProgressCallback = Callable[[int, Optional[int]], None]

TRANSPARENCY_LOG = "transparency.log.jsonl"
PART_SUFFIX = ".part"


@dataclass(frozen=True)
class FetchRequest:
    name: str
    version: str
    url: str


@dataclass(frozen=True)
class CachedArtifact:
    name: str
    version: str
    path: Path
    size: int


def _check_component(value: str, what: str) -> str:
    if not value or value in (".", "..") or "/" in value or "\\" in value:
        raise FetchError(f"invalid {what} for artifact path: {value!r}")
    return value


def _url_basename(url: str) -> str:
    return os.path.basename(url.split("?", 1)[0].split("#", 1)[0])


class ArtifactStore:
    def __init__(self, root: Union[str, Path], workers: int = 4, timeout: int = 300,
                 chunk_size: int = 64 * 1024, transparency_log: bool = True,
                 session: Optional[requests.Session] = None):
        self.root = Path(root)
        self.workers = max(1, int(workers))
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.session = session or requests.Session()
        self.transparency_log_path: Optional[Path] = self.root / TRANSPARENCY_LOG if transparency_log else None
        self._locks: Dict[Tuple[str, str, str], List[Any]] = {}  # key -> [lock, holders]
        self._locks_guard = threading.Lock()
        self._log_lock = threading.Lock()
        self._metrics_lock = threading.Lock()
        self._metrics = {"fetch.total": 0, "fetch.failed": 0, "fetch.success": 0, "cache.hits": 0}

    @classmethod
    def from_config(cls, cfg: Config, session: Optional[requests.Session] = None) -> "ArtifactStore":
        f = cfg.section("fetcher")
        return cls(
            root=f["cache_dir"],
            workers=f.get("workers", 4),
            timeout=f.get("timeout", 300),
            chunk_size=f.get("chunk_size", 64 * 1024),
            transparency_log=bool(f.get("transparency_log", True)),
            session=session,
        )

    # -------------------------
    # paths / locks
    # -------------------------
    def path_for(self, name: str, version: str, url: str, dest_dir: Union[str, Path, None] = None) -> Path:
        fname = _url_basename(url)
        if not fname:
            raise FetchError(f"cannot derive a file name from {url}", name=name, version=version, url=url)
        root = Path(dest_dir) if dest_dir is not None else self.root
        return root / _check_component(name, "library name") / _check_component(version, "version") / fname

    @contextmanager
    def _key_lock(self, root: Path, name: str, version: str) -> Iterator[None]:
        """Per-(root, name, version) lock; the entry is dropped once no caller holds or waits on it."""
        key = (str(root), name, version)
        with self._locks_guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def _bump(self, *counters: str) -> None:
        with self._metrics_lock:
            for c in counters:
                self._metrics[c] += 1

    # -------------------------
    # core fetch flow
    # -------------------------
    def ensure(self, name: str, version: str, url: str, dest_dir: Union[str, Path, None] = None,
               progress: Optional[ProgressCallback] = None) -> Path:
        """
        Return the local path of name@version, downloading it only when absent.
        The existing file is trusted as-is (no checksum verification).
        """
        target = self.path_for(name, version, url, dest_dir)
        with self._key_lock(target.parents[2], name, version):
            if target.is_file():
                self._bump("cache.hits")
                logger.debug("cache hit %s %s -> %s", name, version, target)
                return target
            self._bump("fetch.total")
            try:
                size, digest = self._download(name, version, url, target, progress)
            except FetchError:
                self._bump("fetch.failed")
                raise
            self._bump("fetch.success")
        logger.info("fetched %s %s (%d bytes)", name, version, size)
        self._append_transparency_log({
            "ts": int(time.time()), "name": name, "version": version, "url": url,
            "path": str(target), "size": size, "sha256": digest,
        })
        return target

    def _download(self, name: str, version: str, url: str, target: Path,
                  progress: Optional[ProgressCallback]) -> Tuple[int, str]:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FetchError(f"cannot create {target.parent}: {e}", name=name, version=version, url=url) from e
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=PART_SUFFIX, dir=str(target.parent))
        h = hashlib.sha256()
        done = 0
        try:
            with os.fdopen(fd, "wb") as out:
                try:
                    resp = self.session.get(url, stream=True, timeout=self.timeout)
                except requests.RequestException as e:
                    raise FetchError(f"Failed to download {name} {version}: {e}", name=name, version=version, url=url) from e
                try:
                    if resp.status_code != 200:
                        raise FetchError(f"Failed to download {name} {version}: status {resp.status_code}",
                                         name=name, version=version, url=url, status=resp.status_code)
                    length = resp.headers.get("Content-Length")
                    total = int(length) if length and length.isdigit() else None
                    if progress:
                        progress(0, total)
                    for chunk in resp.iter_content(chunk_size=self.chunk_size):
                        if not chunk:
                            continue
                        out.write(chunk)
                        h.update(chunk)
                        done += len(chunk)
                        if progress:
                            progress(done, total)
                except requests.RequestException as e:
                    raise FetchError(f"Failed to download {name} {version}: {e}", name=name, version=version, url=url) from e
                finally:
                    resp.close()
                if total is not None and done != total:
                    raise FetchError(f"Failed to download {name} {version}: got {done} of {total} bytes",
                                     name=name, version=version, url=url)
            os.replace(tmp_name, target)
        except OSError as e:
            _discard(tmp_name)
            raise FetchError(f"Failed to store {name} {version}: {e}", name=name, version=version, url=url) from e
        except BaseException:
            _discard(tmp_name)
            raise
        return done, h.hexdigest()

    def ensure_many(self, requests_: Sequence[FetchRequest], dest_dir: Union[str, Path, None] = None,
                    progress: Optional[Callable[[FetchRequest], Optional[ProgressCallback]]] = None) -> List[Path]:
        """
        Ensure several artifacts concurrently (at most `workers` transfers).
        Paths come back in input order. After the first failure no further
        transfer is started; the ones already running finish, then it is raised.
        """
        if not requests_:
            return []

        def one(req: FetchRequest) -> Path:
            cb = progress(req) if progress else None
            return self.ensure(req.name, req.version, req.url, dest_dir=dest_dir, progress=cb)

        workers = min(self.workers, len(requests_))
        queue = iter(enumerate(requests_))
        paths: Dict[int, Path] = {}
        failure: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="virus-fetch") as pool:
            running = {pool.submit(one, r): i for i, r in islice(queue, workers)}
            while running:
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for fut in done:
                    i = running.pop(fut)
                    exc = fut.exception()
                    if exc is None:
                        paths[i] = fut.result()
                    elif failure is None:
                        failure = exc
                if failure is None:
                    for i, r in islice(queue, len(done)):
                        running[pool.submit(one, r)] = i
        if failure is not None:
            logger.error("fetch aborted after %d of %d artifacts", len(paths), len(requests_))
            raise failure
        return [paths[i] for i in range(len(requests_))]

    # -------------------------
    # transparency log
    # -------------------------
    def _append_transparency_log(self, event: Dict[str, object]) -> None:
        if self.transparency_log_path is None:
            return
        line = json.dumps(event, ensure_ascii=False)
        with self._log_lock:
            try:
                self.transparency_log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.transparency_log_path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError:
                logger.exception("Failed to append transparency log")

    def transparency_entries(self, name: Optional[str] = None) -> List[Dict[str, object]]:
        if self.transparency_log_path is None or not self.transparency_log_path.exists():
            return []
        out = []
        with open(self.transparency_log_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("skipping malformed transparency log line")
                    continue
                if name is None or entry.get("name") == name:
                    out.append(entry)
        return out

    # -------------------------
    # cache management
    # -------------------------
    def list_artifacts(self) -> List[CachedArtifact]:
        out: List[CachedArtifact] = []
        if not self.root.is_dir():
            return out
        for lib_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for ver_dir in sorted(p for p in lib_dir.iterdir() if p.is_dir()):
                for f in sorted(ver_dir.iterdir()):
                    if f.is_file() and not f.name.endswith(PART_SUFFIX):
                        out.append(CachedArtifact(lib_dir.name, ver_dir.name, f, f.stat().st_size))
        return out

    def remove(self, name: str, version: Optional[str] = None) -> List[CachedArtifact]:
        """Delete cached artifacts of a library (one version or all). Returns what was removed."""
        _check_component(name, "library name")
        victims = [a for a in self.list_artifacts() if a.name == name and (version is None or a.version == version)]
        target = self.root / name
        if version is not None:
            target = target / _check_component(version, "version")
        if target.is_dir():
            shutil.rmtree(target)
        lib_dir = self.root / name
        if lib_dir.is_dir() and not any(lib_dir.iterdir()):
            lib_dir.rmdir()
        for a in victims:
            logger.info("removed %s %s (%s)", a.name, a.version, a.path.name)
        return victims

    def clear(self) -> int:
        n = len(self.list_artifacts())
        if self.root.is_dir():
            for p in self.root.iterdir():
                if p.is_dir():
                    shutil.rmtree(p)
        logger.info("cleared artifact store %s (%d artifacts)", self.root, n)
        return n

    def get_metrics(self) -> Dict[str, int]:
        with self._metrics_lock:
            return dict(self._metrics)


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
