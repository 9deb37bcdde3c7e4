# kiln/runner.py
# -*- coding: utf-8 -*-
"""
kiln command execution

Features:
- CancelToken: thread-safe cancellation flag with optional deadline, derivable per operation
- Executor interface with a subprocess implementation (no shell, argv only)
- stdout/stderr merged into a log file, tail kept in memory as captured output
- Cooperative timeout/cancellation: the process group is terminated, then killed
- Missing programs reported as exit status 127 instead of raising
- Build environment assembly (PREFIX, DESTDIR, JOBS, dependency search paths)
"""

from __future__ import annotations
import os
import signal
import tempfile
import threading
import time
import subprocess
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from kiln.logging import get_logger

logger = get_logger("runner")

# keep at most this much output in memory; the full log stays on disk
MAX_CAPTURED_OUTPUT = 1024 * 1024

# ----------------------------
# Cancellation
# ----------------------------
class CancelToken:
    """
    Cancellation flag shared between the orchestrator and its workers.
    A derived token expires at the earlier of its own and its parent's deadline
    and is cancelled whenever its parent is.
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self.parent = parent
        self.deadline: Optional[float] = time.monotonic() + timeout if timeout else None
        if parent is not None and parent.deadline is not None:
            if self.deadline is None or parent.deadline < self.deadline:
                self.deadline = parent.deadline

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or (self.parent is not None and self.parent.cancelled)

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def stopped(self) -> bool:
        return self.cancelled or self.expired

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def derive(self, timeout: Optional[float] = None) -> "CancelToken":
        return CancelToken(timeout=timeout, parent=self)

# ----------------------------
# Results
# ----------------------------
@dataclass
class ExecResult:
    argv: List[str]
    exit_code: Optional[int]
    output: str = ""
    timed_out: bool = False
    cancelled: bool = False
    duration: float = 0.0
    log_path: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

# ----------------------------
# Executors
# ----------------------------
class Executor:
    """Runs one command. Subclasses must not raise for a failing command."""

    def run(self, argv: Sequence[str], cwd: Optional[Path] = None, env: Optional[Dict[str, str]] = None,
            token: Optional[CancelToken] = None, log_path: Optional[Path] = None) -> ExecResult:
        raise NotImplementedError


def _read_tail(path: Path, limit: int = MAX_CAPTURED_OUTPUT) -> str:
    size = path.stat().st_size
    with open(path, "rb") as f:
        if size > limit:
            f.seek(size - limit)
        data = f.read()
    return data.decode("utf-8", errors="replace")


class SubprocessExecutor(Executor):
    def __init__(self, poll_interval: float = 0.05, kill_grace: float = 5.0):
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def _terminate(self, proc: subprocess.Popen):
        """SIGTERM the process group, SIGKILL after the grace period."""
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.warning("process %s ignored SIGTERM, killing", proc.pid)
            try:
                if hasattr(os, "killpg"):
                    os.killpg(proc.pid, signal.SIGKILL)
                else:
                    proc.kill()
            except ProcessLookupError:
                pass
            proc.wait()

    def run(self, argv, cwd=None, env=None, token=None, log_path=None) -> ExecResult:
        argv = [str(a) for a in argv]
        own_log = log_path is None
        if own_log:
            fd, tmp = tempfile.mkstemp(prefix="kiln-exec-", suffix=".log")
            os.close(fd)
            log_path = Path(tmp)
        else:
            log_path = Path(log_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.debug("RUN: %s (cwd=%s)", " ".join(argv), str(cwd) if cwd else None)
        start = time.monotonic()
        timed_out = cancelled = False
        try:
            with open(log_path, "wb") as out_f:
                try:
                    proc = subprocess.Popen(
                        argv, cwd=str(cwd) if cwd else None, env=env,
                        stdin=subprocess.DEVNULL, stdout=out_f, stderr=subprocess.STDOUT,
                        start_new_session=True,
                    )
                except (FileNotFoundError, PermissionError) as e:
                    out_f.write(f"kiln: cannot execute {argv[0]}: {e}\n".encode("utf-8"))
                    exit_code = 127 if isinstance(e, FileNotFoundError) else 126
                    return ExecResult(argv, exit_code, _flush_and_read(out_f, log_path),
                                      duration=time.monotonic() - start,
                                      log_path=None if own_log else str(log_path))
                while True:
                    try:
                        proc.wait(timeout=self.poll_interval)
                        break
                    except subprocess.TimeoutExpired:
                        pass
                    if token is not None and token.stopped:
                        cancelled = token.cancelled
                        timed_out = not cancelled
                        logger.warning("%s: terminating %s", "cancelled" if cancelled else "timed out", argv[0])
                        self._terminate(proc)
                        break
                exit_code = proc.returncode
            output = _read_tail(log_path)
        finally:
            if own_log:
                log_path.unlink(missing_ok=True)
        return ExecResult(argv, exit_code, output, timed_out=timed_out, cancelled=cancelled,
                          duration=time.monotonic() - start, log_path=None if own_log else str(log_path))


def _flush_and_read(out_f, log_path: Path) -> str:
    out_f.flush()
    return _read_tail(log_path)

# ----------------------------
# Environment
# ----------------------------
def _prepend(env: Dict[str, str], key: str, values: List[str], sep: str = os.pathsep):
    values = [v for v in values if v]
    if not values:
        return
    current = env.get(key)
    env[key] = sep.join(values + ([current] if current else []))


def build_environment(prefix: Optional[Path] = None, destdir: Optional[Path] = None, jobs: int = 1,
                      dep_prefixes: Sequence[Path] = (), base: Optional[Dict[str, str]] = None,
                      extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Environment for build and test commands.
    Dependency prefixes are searched in the given order (first wins).
    """
    env = dict(os.environ if base is None else base)
    if prefix is not None:
        env["PREFIX"] = str(prefix)
    if destdir is not None:
        env["DESTDIR"] = str(destdir)
    env["JOBS"] = str(jobs)
    env["MAKEFLAGS"] = f"-j{jobs}"
    deps = [Path(p) for p in dep_prefixes]
    _prepend(env, "PATH", [str(p / "bin") for p in deps if (p / "bin").is_dir()])
    _prepend(env, "PKG_CONFIG_PATH", [str(p / "lib" / "pkgconfig") for p in deps if (p / "lib" / "pkgconfig").is_dir()])
    _prepend(env, "CPPFLAGS", [f"-I{p / 'include'}" for p in deps if (p / "include").is_dir()], sep=" ")
    _prepend(env, "LDFLAGS", [f"-L{p / 'lib'}" for p in deps if (p / "lib").is_dir()], sep=" ")
    if extra:
        env.update({k: str(v) for k, v in extra.items()})
    return env
