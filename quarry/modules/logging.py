# quarry/modules/logging.py
# -*- coding: utf-8 -*-
"""
Quarry logging

Features:
 - Settings taken from quarry.modules.config (`logging` section), applied lazily
 - Console color formatter
 - Rotating file handler
 - JSONL log for machine consumption
 - Module-level configurable log levels (module_levels)
 - Build command output routed per stream (stderr as warnings, stdout as debug)
 - Thread-safe reconfiguration
"""

from __future__ import annotations
import sys
import json
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, List

from quarry.modules import config as qconfig

# Logger for this module
_logger = logging.getLogger("quarry.logging")

MODULE_ATTR = "quarry_module"

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

    def __init__(self, fmt: str = None, datefmt: str = None, color: bool = True):
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
            "timestamp": record.created,
            "level": record.levelname,
            "module": getattr(record, MODULE_ATTR, record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Filters
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        # convert level names to numeric
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, MODULE_ATTR, None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

class _DefaultModuleFilter(logging.Filter):
    """Records from plain `quarry.*` loggers carry no module tag; derive one."""

    def filter(self, record):
        if not hasattr(record, MODULE_ATTR):
            setattr(record, MODULE_ATTR, record.name.rsplit(".", 1)[-1])
        return True

# ----------------------
# QuarryLogger (singleton)
# ----------------------
class QuarryLogger:
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
        self._root = logging.getLogger("quarry")
        self._handlers: List[logging.Handler] = []
        self._module_filter = ModuleLevelFilter({})
        self._configured = False
        self._inited = True

    # ----------------------
    # Configuration
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            self._root.removeFilter(self._module_filter)
            self._module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            self._root.addFilter(self._module_filter)
            default_module = _DefaultModuleFilter()

            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(quarry_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")
            level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)

            # console handler
            console_cfg = cfg.get("console", {"enabled": True})
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(level)
                ch.addFilter(default_module)
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True))))
                self._root.addHandler(ch)
                self._handlers.append(ch)

            # rotating file handler
            if cfg.get("file"):
                try:
                    file_path = Path(cfg["file"]).expanduser()
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    max_bytes = cfg.get("max_size_bytes") or 10 * 1024 * 1024
                    fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=int(max_bytes), backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                    fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                    fh.addFilter(default_module)
                    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(quarry_module)s] %(message)s"))
                    self._root.addHandler(fh)
                    self._handlers.append(fh)
                except OSError:
                    _logger.exception("logging: failed to configure file handler")

            jsonl_cfg = cfg.get("jsonl", {}) or {}
            if jsonl_cfg.get("enabled"):
                try:
                    path = Path(jsonl_cfg.get("path", "~/.quarry/logs/quarry.jsonl")).expanduser()
                    path.parent.mkdir(parents=True, exist_ok=True)
                    jh = logging.FileHandler(str(path), encoding="utf-8")
                    jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                    jh.addFilter(default_module)
                    jh.setFormatter(JSONLineFormatter())
                    self._root.addHandler(jh)
                    self._handlers.append(jh)
                except OSError:
                    _logger.exception("logging: failed to configure jsonl handler")

            # handlers filter by level; the logger itself lets everything through
            self._root.setLevel(logging.DEBUG)
            self._configured = True

    def ensure_configured(self):
        if self._configured:
            return
        with self._lock:
            if not self._configured:
                self._apply_config(qconfig.get_config().merged.get("logging", {}))

    def reload_config(self):
        """Re-read the `logging` section and re-apply handlers."""
        self._apply_config(qconfig.get_config().merged.get("logging", {}))
        _logger.debug("logging: reloaded configuration from central config")

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'quarry_module' into records."""
        self.ensure_configured()
        return logging.LoggerAdapter(self._root, {MODULE_ATTR: module_name})

    def log_command_output(self, module: str, stdout: str, stderr: str):
        """Log captured build command output, one record per line."""
        adapter = self.get_logger(module)
        for line in (stdout or "").splitlines():
            adapter.debug(line)
        for line in (stderr or "").splitlines():
            adapter.warning(line)

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = QuarryLogger()

def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)

def log_command_output(module: str, stdout: str, stderr: str):
    return _GLOBAL_LOGGER.log_command_output(module, stdout, stderr)

def reload_config():
    return _GLOBAL_LOGGER.reload_config()
