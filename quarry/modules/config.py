# quarry/modules/config.py
# -*- coding: utf-8 -*-
"""
Quarry central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit path, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize/coerce types (human sizes to bytes, paths expanded)
- Validate structure and types, warn or error (fatal optional)
- Dotted access via Config dataclass (get_config(), helpers)
- Thread-safe load/reload, lazily performed on first access
- Helpers for the core components: get_directories(), get_db_path(), get_fetcher_config(), get_build_config()
"""

from __future__ import annotations
import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple, Union

import yaml

# plain stdlib logger: quarry.modules.logging reads its settings from here
logger = logging.getLogger("quarry.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",  # human readable
        "backups": 5,
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.quarry/logs/quarry.jsonl"},
    },
    "db": {
        "path": "~/.quarry/packages.sqlite3",
        "timeout": 30.0,
        "journal_mode": "WAL",
        "busy_timeout_ms": 5000,
        "synchronous": "NORMAL",
    },
    "directories": {
        "sources": "~/.quarry/sources",
        "builds": "~/.quarry/builds",
        "binaries": "~/.quarry/binaries",
    },
    "fetcher": {
        "workers": 4,
        "retries": 3,
        "backoff": 0.5,
        "timeout": 30,
        "chunk_size": "64K",
    },
    "build": {
        "jobs": 4,
        "timeout": 3600,
        "keep_build_dirs": False,
    },
}

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

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()

# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "MB": 1024**2, "GB": 1024**3, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
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
    env = os.environ.get("QUARRY_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "quarry.yaml",
        Path.cwd() / "quarry.yml",
        Path.cwd() / "quarry.json",
        Path.home() / ".config" / "quarry" / "config.yaml",
        Path("/etc") / "quarry" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("config: failed reading %s: %s", path, e, exc_info=True)
        return None

    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(txt)
            return data if isinstance(data, dict) else {}
        except yaml.YAMLError as e:
            logger.debug("config: yaml parse fail %s: %s", path, e, exc_info=True)

    try:
        data = json.loads(txt)
        return data if isinstance(data, dict) else {}
    except ValueError as e:
        logger.debug("config: json parse fail %s: %s", path, e, exc_info=True)
    return None

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields, convert human sizes and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("db", "path"),
        ("logging", "file"),
        ("logging", "jsonl", "path"),
        ("directories", "sources"),
        ("directories", "builds"),
        ("directories", "binaries"),
    ]
    for keys in path_keys:
        ref = out
        for k in keys[:-1]:
            ref = ref.get(k, {}) if isinstance(ref, dict) else {}
        last = keys[-1]
        if isinstance(ref, dict) and isinstance(ref.get(last), str) and ref[last]:
            # sqlite in-memory databases keep their magic name
            if ref[last] != ":memory:":
                ref[last] = _expand_path(ref[last])

    # Convert human sizes
    if isinstance(out.get("logging"), dict) and "max_size" in out["logging"]:
        ms = _human_size_to_bytes(out["logging"]["max_size"])
        if ms is not None:
            out["logging"]["max_size_bytes"] = ms
    if isinstance(out.get("fetcher"), dict) and "chunk_size" in out["fetcher"]:
        cs = _human_size_to_bytes(out["fetcher"]["chunk_size"])
        if cs is not None:
            out["fetcher"]["chunk_size"] = cs

    # Coerce numbers
    for section, key, kind in (
        ("build", "jobs", int),
        ("build", "timeout", int),
        ("fetcher", "workers", int),
        ("fetcher", "retries", int),
        ("fetcher", "backoff", float),
        ("fetcher", "timeout", float),
        ("db", "timeout", float),
        ("db", "busy_timeout_ms", int),
    ):
        sect = out.get(section)
        if isinstance(sect, dict) and key in sect:
            try:
                sect[key] = kind(sect[key])
            except (TypeError, ValueError):
                logger.debug("config: failed to coerce %s.%s", section, key, exc_info=True)
    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless called with fatal=True in load."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    bj = cfg.get("build", {}).get("jobs")
    if not isinstance(bj, int) or bj < 1:
        warnings.append("build.jobs must be integer >= 1")
    fw = cfg.get("fetcher", {}).get("workers")
    if not isinstance(fw, int) or fw < 1:
        warnings.append("fetcher.workers must be integer >= 1")
    fr = cfg.get("fetcher", {}).get("retries")
    if not isinstance(fr, int) or fr < 0:
        warnings.append("fetcher.retries must be integer >= 0")
    p = cfg.get("db", {}).get("path")
    if p and not isinstance(p, str):
        warnings.append("db.path must be a string")
    dirs = cfg.get("directories")
    if not isinstance(dirs, dict):
        warnings.append("directories must be a mapping")
    else:
        for name in ("sources", "builds", "binaries"):
            if not isinstance(dirs.get(name), str):
                warnings.append(f"directories.{name} must be a string path")
    return (len(warnings) == 0, warnings)

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    for p in _find_candidates(explicit):
        if p and p.exists():
            return p
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False,
         overrides: Optional[Dict[str, Any]] = None) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    `overrides` is merged last (used by tests and embedding applications).
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            data = _load_file(cfg_path)
            if data is None:
                logger.warning("config: file found but could not be parsed: %s", str(cfg_path))
            else:
                raw = data
        merged = _deep_merge(DEFAULTS, raw)
        if overrides:
            merged = _deep_merge(merged, overrides)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                logger.error(msg)
                raise ValueError(msg)
            logger.warning(msg)
        _CONFIG = Config(raw=raw, merged=normalized, path=cfg_path)
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return _CONFIG

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def reload(explicit_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Config:
    return load(explicit_path, overrides=overrides)

# ----------------------------
# Convenience helpers for modules
# ----------------------------
def get_db_path() -> str:
    p = get_config().get("db.path")
    return p if p == ":memory:" else _expand_path(p)

def get_db_config() -> Dict[str, Any]:
    return deepcopy(get_config().merged.get("db", {}))

def get_directories() -> Dict[str, Path]:
    dirs = get_config().merged.get("directories", {})
    return {k: Path(_expand_path(v)) for k, v in dirs.items() if isinstance(v, str)}

def get_build_config() -> Dict[str, Any]:
    return deepcopy(get_config().merged.get("build", {}))

def get_fetcher_config() -> Dict[str, Any]:
    return deepcopy(get_config().merged.get("fetcher", {}))
