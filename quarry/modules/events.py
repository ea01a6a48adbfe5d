# quarry/modules/events.py
# -*- coding: utf-8 -*-
"""
Event registry for progress reporting and state transitions.

Callbacks are registered per event name with a priority (lower runs first).
The core only emits; rendering is up to whoever registers.

Events:
 - "progress": ProgressEvent(package, downloaded, total)
 - "state":    StateChange(package, old, new, timestamp)
"""

from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from quarry.modules.logging import get_logger

logger = get_logger("events")

PROGRESS = "progress"
STATE = "state"


@dataclass(frozen=True)
class ProgressEvent:
    package: str
    downloaded: int
    total: Optional[int]  # None when the server sent no Content-Length


@dataclass(frozen=True)
class StateChange:
    package: str
    old: Any
    new: Any
    timestamp: float


class EventHub:
    def __init__(self):
        self.hooks: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    # -----------------------------
    # Registration
    # -----------------------------
    def register(self, event: str, callback: Callable[[Any], None], priority: int = 10,
                 name: Optional[str] = None) -> str:
        name = name or getattr(callback, "__name__", repr(callback))
        with self._lock:
            entries = self.hooks.setdefault(event, [])
            entries.append({"name": name, "callback": callback, "priority": priority})
            entries.sort(key=lambda h: h["priority"])
        return name

    def unregister(self, event: str, name: str):
        with self._lock:
            if event in self.hooks:
                self.hooks[event] = [h for h in self.hooks[event] if h["name"] != name]

    def list(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if event:
                return list(self.hooks.get(event, []))
            all_hooks = []
            for entries in self.hooks.values():
                all_hooks.extend(entries)
            return all_hooks

    # -----------------------------
    # Dispatch
    # -----------------------------
    def emit(self, event: str, payload: Any = None) -> int:
        """Call every callback for `event`; returns how many ran without raising."""
        with self._lock:
            hooks = list(self.hooks.get(event, []))
        ok = 0
        for hook in hooks:
            try:
                hook["callback"](payload)
                ok += 1
            except Exception:
                logger.exception("events: callback %s failed for event '%s'", hook["name"], event)
        return ok
