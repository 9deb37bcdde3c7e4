# kiln/hooks.py
"""
In-process event hooks.

Events fired by the orchestrator (context keys in parentheses):
  pre-resolve (target), post-resolve (target, order),
  pre-fetch / post-fetch (name, descriptor), pre-build / post-build (name, session),
  pre-install / post-install (name, prefix), post-test (name, result),
  skipped (name, reason), failed (name, error)
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional

from kiln.logging import get_logger

logger = get_logger("hooks")

HookCallback = Callable[[str, Dict[str, Any]], Any]


class HookManager:
    def __init__(self):
        self.hooks: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    # -----------------------------
    # Registration
    # -----------------------------
    def register(self, event: str, callback: HookCallback, name: Optional[str] = None, priority: int = 10):
        """Register callback for event ('*' receives every event). Lower priority runs first."""
        with self._lock:
            entries = self.hooks.setdefault(event, [])
            entries.append({
                "name": name or getattr(callback, "__name__", repr(callback)),
                "callback": callback,
                "priority": priority,
                "enabled": True,
            })
            entries.sort(key=lambda h: h["priority"])

    def unregister(self, event: str, name: str):
        with self._lock:
            if event in self.hooks:
                self.hooks[event] = [h for h in self.hooks[event] if h["name"] != name]

    def list(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if event:
                return list(self.hooks.get(event, []))
            return [h for entries in self.hooks.values() for h in entries]

    # -----------------------------
    # Execution
    # -----------------------------
    def run(self, event: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Call every hook for event. A failing hook is logged with its traceback
        and does not stop the others; returns False if any hook raised.
        """
        with self._lock:
            hooks = sorted(self.hooks.get(event, []) + self.hooks.get("*", []), key=lambda h: h["priority"])
        ok = True
        ctx = context or {}
        for hook in hooks:
            if not hook["enabled"]:
                continue
            try:
                hook["callback"](event, ctx)
            except Exception:
                logger.exception("hook %s failed on event '%s'", hook["name"], event)
                ok = False
        return ok
