# kiln/config.py
# -*- coding: utf-8 -*-
"""
kiln central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize paths and coerce types
- Validate structure with pydantic models (unknown keys rejected), warn or raise (fatal)
- Dot-path access via the Config dataclass (get_config().get("build.jobs"))
- Thread-safe load/reload
- Helpers: parse_duration(), human_size_to_bytes(), get_build_config(), get_fetcher_config()
"""

from __future__ import annotations
import os
import re
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kiln.errors import ConfigError

# config is loaded before logging is configured, so it uses a plain stdlib logger
logger = logging.getLogger("kiln.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "WARNING",
        "color": True,
        "format": None,
        "datefmt": "%H:%M:%S",
        "file": None,
        "file_level": "DEBUG",
        "max_size": "10M",  # human readable
        "backups": 5,
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.kiln/log/kiln.jsonl", "level": "INFO"},
    },
    "build": {
        "jobs": 4,
        "make_jobs": None,  # JOBS/MAKEFLAGS inside one build, None -> cpu count
        "timeout": 3600,  # seconds per fetch/step, 0 disables
        "keep_build_dir": False,
        "work_dir": None,  # None -> system temp dir
    },
    "fetcher": {
        "cache_dir": "~/.kiln/cache/downloads",
        "http_timeout": 30,
        "user_agent": "kiln/1.0",
        "chunk_size": 65536,
    },
    "store": {
        "root": "~/.kiln/store",
    },
    "registry": {
        "paths": ["./formula"],
    },
}

# ----------------------------
# Validation schema
# ----------------------------
class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class JsonlSettings(_Section):
    enabled: bool = False
    path: Optional[str] = None
    level: str = "INFO"


class LoggingSettings(_Section):
    level: str = "WARNING"
    color: bool = True
    format: Optional[str] = None
    datefmt: str = "%H:%M:%S"
    file: Optional[str] = None
    file_level: str = "DEBUG"
    max_size: Union[str, int] = "10M"
    max_size_bytes: Optional[int] = None
    backups: int = Field(default=5, ge=0)
    module_levels: Dict[str, str] = Field(default_factory=dict)
    jsonl: JsonlSettings = Field(default_factory=JsonlSettings)


class BuildSettings(_Section):
    jobs: int = Field(default=4, ge=1)
    make_jobs: Optional[int] = Field(default=None, ge=1)
    timeout: float = Field(default=3600, ge=0)
    keep_build_dir: bool = False
    work_dir: Optional[str] = None


class FetcherSettings(_Section):
    cache_dir: Optional[str] = None
    http_timeout: float = Field(default=30, gt=0)
    user_agent: str = "kiln/1.0"
    chunk_size: int = Field(default=65536, ge=1024)


class StoreSettings(_Section):
    root: str


class RegistrySettings(_Section):
    paths: List[str] = Field(default_factory=list)


class KilnSettings(_Section):
    logging: LoggingSettings
    build: BuildSettings
    fetcher: FetcherSettings
    store: StoreSettings
    registry: RegistrySettings

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

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

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()

# ----------------------------
# Utilities
# ----------------------------
def human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "K": 1024, "MB": 1024**2, "M": 1024**2, "GB": 1024**3, "G": 1024**3, "T": 1024**4}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                num = float(s[: -len(suffix)].strip())
                return int(num * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([hms])", re.IGNORECASE)
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0}

def parse_duration(val: Union[str, int, float, None]) -> Optional[float]:
    """
    Parse '90', '30s', '5m', '1h30m' into seconds.
    None, '' and 0 mean "no timeout" and return None.
    """
    if val is None:
        return None
    if isinstance(val, (int, float)):
        return float(val) if val > 0 else None
    s = str(val).strip().lower()
    if not s:
        return None
    try:
        secs = float(s)
        return secs if secs > 0 else None
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for m in _DURATION_RE.finditer(s):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(s) or pos == 0:
        raise ValueError(f"invalid duration: {val!r}")
    return total if total > 0 else None


def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(val)))

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
    env = os.environ.get("KILN_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "kiln.yaml",
        Path.cwd() / "kiln.yml",
        Path.cwd() / "kiln.json",
        Path.home() / ".config" / "kiln" / "config.yaml",
        Path("/etc") / "kiln" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigError(f"cannot parse config file {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at top level")
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields, convert human sizes and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("build", "work_dir"),
        ("fetcher", "cache_dir"),
        ("store", "root"),
        ("logging", "file"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str) and ref[key]:
            ref[key] = _expand_path(ref[key])

    logging_cfg = out.get("logging")
    if isinstance(logging_cfg, dict):
        jsonl = logging_cfg.get("jsonl")
        if isinstance(jsonl, dict) and isinstance(jsonl.get("path"), str):
            jsonl["path"] = _expand_path(jsonl["path"])
        if "max_size" in logging_cfg:
            ms = human_size_to_bytes(logging_cfg["max_size"])
            if ms is not None:
                logging_cfg["max_size_bytes"] = ms

    registry = out.get("registry")
    if isinstance(registry, dict):
        paths = registry.get("paths")
        if isinstance(paths, str):
            paths = [paths]
        if isinstance(paths, list):
            registry["paths"] = [_expand_path(p) if isinstance(p, str) else p for p in paths]

    # Coerce numbers given as strings ("4", "30")
    build = out.get("build")
    if isinstance(build, dict):
        if isinstance(build.get("jobs"), str) and build["jobs"].strip().isdigit():
            build["jobs"] = int(build["jobs"])
        if isinstance(build.get("timeout"), str):
            try:
                build["timeout"] = parse_duration(build["timeout"]) or 0
            except ValueError:
                logger.debug("config: cannot coerce build.timeout %r", build["timeout"])
    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list)."""
    try:
        KilnSettings.model_validate(cfg)
    except ValidationError as e:
        issues = []
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            issues.append(f"{loc}: {err.get('msg')}")
        return False, issues
    return True, []

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False, overrides: Optional[Dict[str, Any]] = None) -> Config:
    """
    Load and merge config. With fatal=True validation failures raise ConfigError,
    otherwise they are logged as warnings and the merged values are kept. A
    discovered file that cannot be parsed is skipped with a warning unless fatal.
    `overrides` is merged last (used by the CLI for command-line flags).
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            try:
                raw = _load_file(cfg_path)
            except ConfigError as e:
                # an explicitly named file is the caller's problem
                if fatal or explicit_path:
                    raise
                logger.warning("%s; using defaults", e.message)
        merged = _deep_merge(DEFAULTS, raw)
        if overrides:
            merged = _deep_merge(merged, overrides)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = "config: validation issues: " + "; ".join(issues)
            if fatal:
                raise ConfigError(msg, output="\n".join(issues))
            logger.warning(msg)
        cfg_obj = Config(raw=raw, merged=normalized, path=cfg_path)
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return cfg_obj

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def reload(explicit_path: Optional[str] = None) -> Config:
    return load(explicit_path)

# ----------------------------
# Section helpers
# ----------------------------
def get_build_config() -> Dict[str, Any]:
    return dict(get_config().get("build", {}) or {})

def get_fetcher_config() -> Dict[str, Any]:
    return dict(get_config().get("fetcher", {}) or {})
