# kiln/errors.py
# -*- coding: utf-8 -*-
"""
kiln error taxonomy

Every failure raised by the pipeline derives from KilnError and carries:
 - name: the descriptor the failure originates from (None for global errors)
 - phase: load | resolve | fetch | build | install | test
 - output: captured diagnostic output (subprocess output, tracebacks, ...)

EXIT_STATUS is the process exit code the CLI maps the error to.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional


class KilnError(Exception):
    EXIT_STATUS = 1
    phase = "unknown"

    def __init__(self, message: str, *, name: Optional[str] = None, output: str = ""):
        super().__init__(message)
        self.message = message
        self.name = name
        self.output = output or ""

    def __str__(self) -> str:
        if self.name:
            return f"{self.name}: {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "name": self.name,
            "phase": self.phase,
            "message": self.message,
            "output": self.output,
            "exit_status": self.EXIT_STATUS,
        }


class ConfigError(KilnError):
    phase = "config"


class DescriptorError(KilnError):
    phase = "load"


# -----------------------
# Resolution (no side effects yet)
# -----------------------
class ResolutionError(KilnError):
    phase = "resolve"


class UnknownDependency(ResolutionError):
    def __init__(self, missing: str, required_by: Optional[str] = None):
        if required_by:
            msg = f"unknown dependency '{missing}' required by '{required_by}'"
        else:
            msg = f"unknown descriptor '{missing}'"
        super().__init__(msg, name=required_by or missing)
        self.missing = missing
        self.required_by = required_by


class CyclicDependency(ResolutionError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle), name=self.cycle[0] if self.cycle else None)


# -----------------------
# Fetch / integrity
# -----------------------
class FetchError(KilnError):
    EXIT_STATUS = 2
    phase = "fetch"


class ChecksumMismatch(FetchError):
    def __init__(self, name: str, expected: str, actual: str, url: str = ""):
        super().__init__(f"checksum mismatch for {url or 'source'}: expected {expected}, got {actual}", name=name)
        self.expected = expected
        self.actual = actual
        self.url = url


# -----------------------
# Build / install / test
# -----------------------
class StepFailure(KilnError):
    EXIT_STATUS = 3
    phase = "build"

    def __init__(self, name: Optional[str], index: int, exit_code: Optional[int], output: str = "",
                 command: Optional[List[str]] = None, timed_out: bool = False, cancelled: bool = False):
        if timed_out:
            reason = "timed out"
        elif cancelled:
            reason = "was cancelled"
        else:
            reason = f"exited with status {exit_code}"
        super().__init__(f"build step {index} {reason}", name=name, output=output)
        self.index = index
        self.exit_code = exit_code
        self.command = list(command or [])
        self.timed_out = timed_out
        self.cancelled = cancelled

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update({"index": self.index, "exit_code": self.exit_code, "command": self.command,
                  "timed_out": self.timed_out})
        return d


class InstallError(KilnError):
    EXIT_STATUS = 4
    phase = "install"


class TestFailure(KilnError):
    """Advisory: recorded in reports, never aborts an install."""
    __test__ = False
    EXIT_STATUS = 5
    phase = "test"

    def __init__(self, name: Optional[str], exit_code: Optional[int], output: str = "", timed_out: bool = False):
        reason = "timed out" if timed_out else f"exited with status {exit_code}"
        super().__init__(f"test step {reason}", name=name, output=output)
        self.exit_code = exit_code
        self.timed_out = timed_out


class DependencyFailed(KilnError):
    """A dependent that never started because something it needs failed."""
    phase = "schedule"

    def __init__(self, name: str, dependency: str, origin: KilnError):
        super().__init__(f"not started: dependency '{dependency}' failed", name=name)
        self.dependency = dependency
        self.origin = origin

    @property
    def EXIT_STATUS(self) -> int:  # type: ignore[override]
        return self.origin.EXIT_STATUS

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["dependency"] = self.dependency
        d["origin"] = self.origin.name
        return d
