# kiln/logging.py
# -*- coding: utf-8 -*-
"""
kiln logging

Features:
 - Configured from the `logging` section of kiln.config
 - Console color formatter (stderr, so command output on stdout stays clean)
 - Rotating file handler with human readable max_size
 - Optional JSONL log for machine consumption
 - Module-level configurable log levels (module_levels)
 - Thread-safe reconfiguration (CLI verbosity flags)
"""

from __future__ import annotations
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List

from kiln.config import get_config, human_size_to_bytes

_ROOT_NAME = "kiln"

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m", # white on red
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
            "module": getattr(record, "kiln_module", record.name),
            "message": record.getMessage(),
        }
        for key in ("descriptor", "phase"):
            if hasattr(record, key):
                obj[key] = getattr(record, key)
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    """
    Applies module_levels overrides and guarantees every record carries
    `kiln_module`, so formatters can reference it even for records logged
    through plain logging.getLogger("kiln.x") loggers.
    """
    def __init__(self, module_levels: Optional[Dict[str, str]] = None):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        if not hasattr(record, "kiln_module"):
            name = record.name
            record.kiln_module = name[len(_ROOT_NAME) + 1:] if name.startswith(_ROOT_NAME + ".") else name
        mod = record.kiln_module
        if mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

# ----------------------
# KilnLogger (singleton)
# ----------------------
class KilnLogger:
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
        self._root = logging.getLogger(_ROOT_NAME)
        self._root.setLevel(logging.DEBUG)  # capture everything; handlers filter
        self._root.propagate = False
        self._handlers: List[logging.Handler] = []
        self._console: Optional[logging.Handler] = None
        self._apply_config(get_config().merged.get("logging", {}))
        self._inited = True

    # ----------------------
    # Configuration
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any], level_override: Optional[str] = None):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            module_filter = ModuleLevelFilter(cfg.get("module_levels") or {})
            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(kiln_module)s] %(message)s"
            datefmt = cfg.get("datefmt") or "%H:%M:%S"
            level_name = (level_override or cfg.get("level") or "WARNING").upper()

            ch = logging.StreamHandler(sys.stderr)
            ch.setLevel(getattr(logging, level_name, logging.WARNING))
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True)) and sys.stderr.isatty()))
            ch.addFilter(module_filter)
            self._root.addHandler(ch)
            self._handlers.append(ch)
            self._console = ch

            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = cfg.get("max_size_bytes") or human_size_to_bytes(cfg.get("max_size", "10M")) or 10 * 1024 * 1024
                fh = logging.handlers.RotatingFileHandler(
                    str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(kiln_module)s] %(message)s"))
                fh.addFilter(module_filter)
                self._root.addHandler(fh)
                self._handlers.append(fh)

            jsonl_cfg = cfg.get("jsonl") or {}
            if jsonl_cfg.get("enabled") and jsonl_cfg.get("path"):
                path = Path(jsonl_cfg["path"]).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                jh = logging.FileHandler(str(path), encoding="utf-8")
                jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                jh.setFormatter(JSONLineFormatter())
                jh.addFilter(module_filter)
                self._root.addHandler(jh)
                self._handlers.append(jh)

    def configure(self, level: Optional[str] = None):
        """Re-read the logging config section; `level` overrides the console level."""
        self._apply_config(get_config().merged.get("logging", {}), level_override=level)

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'kiln_module' into records."""
        base = logging.getLogger(f"{_ROOT_NAME}.{module_name}")
        return logging.LoggerAdapter(base, {"kiln_module": module_name})

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER: Optional[KilnLogger] = None
_GLOBAL_LOCK = threading.Lock()

def _manager() -> KilnLogger:
    global _GLOBAL_LOGGER
    with _GLOBAL_LOCK:
        if _GLOBAL_LOGGER is None:
            _GLOBAL_LOGGER = KilnLogger()
        return _GLOBAL_LOGGER

def get_logger(module: str) -> logging.LoggerAdapter:
    return _manager().get_logger(module)

def configure(level: Optional[str] = None):
    return _manager().configure(level)
