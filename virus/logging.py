# virus/logging.py
# -*- coding: utf-8 -*-
"""
virus logging

Features:
 - Console color formatter
 - Rotating file handler
 - JSONL log with one object per record
 - Module-level configurable log levels (module_levels)
 - Thread-safe (re)configuration from the `logging` config section
"""

from __future__ import annotations

import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

ROOT_LOGGER = "virus"
DEFAULT_FORMAT = "[%(asctime)s] [%(levelname)s] [%(virus_module)s] %(message)s"

_logger = logging.getLogger("virus.logging")


# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg


# ----------------------
# JSONL formatter
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "virus_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)


# ----------------------
# Filters
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Optional[Dict[str, str]] = None):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "virus_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True


class _ModuleDefaultFilter(logging.Filter):
    """Records emitted through plain loggers still need virus_module for the format string."""

    def filter(self, record):
        if not hasattr(record, "virus_module"):
            record.virus_module = record.name.rsplit(".", 1)[-1]
        return True


# ----------------------
# VirusLogger (singleton)
# ----------------------
class VirusLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger(ROOT_LOGGER)
        self._handlers: List[logging.Handler] = []
        self._filters: List[logging.Filter] = []
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._inited = True

    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            self._metrics[name] += 1
        return True

    # ----------------------
    # Configuration
    # ----------------------
    def configure(self, cfg: Dict[str, Any]) -> None:
        with self._lock:
            for h in self._handlers:
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            # handler-level filters also see records propagated from child loggers
            self._filters = [_ModuleDefaultFilter(), ModuleLevelFilter(cfg.get("module_levels") or {})]

            fmt = cfg.get("format") or DEFAULT_FORMAT
            datefmt = cfg.get("datefmt", "%H:%M:%S")
            level = getattr(logging, str(cfg.get("level", "WARNING")).upper(), logging.WARNING)

            ch = logging.StreamHandler(sys.stderr)
            ch.setLevel(level)
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True))))
            self._add_handler(ch)

            root_level = level
            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = int(cfg.get("max_size") or 10 * 1024 * 1024)  # bytes, normalized by config
                fh = logging.handlers.RotatingFileHandler(
                    str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                file_level = getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG)
                fh.setLevel(file_level)
                fh.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
                self._add_handler(fh)
                root_level = min(root_level, file_level)

            jsonl_cfg = cfg.get("jsonl") or {}
            if jsonl_cfg.get("enabled"):
                path = Path(jsonl_cfg.get("path", "~/.virus/log.jsonl")).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                jh = logging.FileHandler(str(path), encoding="utf-8")
                jh_level = getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO)
                jh.setLevel(jh_level)
                jh.setFormatter(JSONLineFormatter())
                self._add_handler(jh)
                root_level = min(root_level, jh_level)

            self._root.setLevel(root_level)
            self._root.propagate = False
            _logger.debug("logging: configuration applied")

    def _add_handler(self, handler: logging.Handler) -> None:
        for f in self._filters:
            handler.addFilter(f)
        if not self._handlers:
            handler.addFilter(self._count_levels_filter)
        self._root.addHandler(handler)
        self._handlers.append(handler)

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'virus_module' into records."""
        base = logging.getLogger(f"{ROOT_LOGGER}.{module_name}")
        return logging.LoggerAdapter(base, {"virus_module": module_name})

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)


# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = VirusLogger()


def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)


def configure_logging(cfg: Dict[str, Any]) -> None:
    _GLOBAL_LOGGER.configure(cfg)


def get_metrics() -> Dict[str, int]:
    return _GLOBAL_LOGGER.get_metrics()
