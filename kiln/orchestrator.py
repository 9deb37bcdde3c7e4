# kiln/orchestrator.py
"""
orchestrator.py - per-descriptor build pipeline and parallel scheduling

Features:
- Pipeline per descriptor: begin prefix -> fetch/verify -> build steps -> install -> test
- Descriptors scheduled on a thread pool bounded by `jobs`; a descriptor starts only
  when all of its dependencies completed successfully
- Failures stay local: dependents become DependencyFailed, unrelated descriptors continue
- Already installed dependencies (same build fingerprint) are skipped
- Timeout per fetch/step/test, run-wide cancellation on KeyboardInterrupt
- Build sessions removed after success, kept on failure or with keep_build_dir
- Hook events for progress reporting, RunReport with per-descriptor outcomes and exit code
"""

from __future__ import annotations

import os
import time
import traceback
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Mapping, Optional

from kiln.config import get_build_config, parse_duration
from kiln.descriptor import Descriptor, prefix_variable
from kiln.errors import DependencyFailed, InstallError, KilnError, TestFailure, UnknownDependency
from kiln.fetcher import BuildSession, Fetcher
from kiln.hooks import HookManager
from kiln.installer import Installer, InstallPrefix, PrefixState, Store
from kiln.logging import get_logger
from kiln.resolver import Resolver
from kiln.runner import CancelToken, Executor, SubprocessExecutor, build_environment
from kiln.stages import StageRunner
from kiln.verifier import Verifier, VerifyResult, VerifyStatus

logger = get_logger("orchestrator")


class OutcomeStatus(str, Enum):
    INSTALLED = "installed"
    ALREADY_INSTALLED = "already-installed"
    TESTED = "tested"
    FAILED = "failed"
    DEPENDENCY_FAILED = "dependency-failed"


@dataclass
class Outcome:
    name: str
    version: str
    status: OutcomeStatus
    prefix: Optional[str] = None
    error: Optional[KilnError] = None
    verification: Optional[VerifyResult] = None
    session_dir: Optional[str] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.INSTALLED, OutcomeStatus.ALREADY_INSTALLED, OutcomeStatus.TESTED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "status": self.status.value,
            "prefix": self.prefix,
            "error": self.error.to_dict() if self.error else None,
            "verification": self.verification.status.value if self.verification else None,
            "session_dir": self.session_dir,
            "duration": round(self.duration, 3),
        }


@dataclass
class RunReport:
    target: str
    command: str
    order: List[str] = field(default_factory=list)
    outcomes: Dict[str, Outcome] = field(default_factory=dict)

    def ordered(self) -> List[Outcome]:
        return [self.outcomes[n] for n in self.order if n in self.outcomes]

    @property
    def origin(self) -> Optional[Outcome]:
        """First descriptor (in install order) that failed on its own."""
        for o in self.ordered():
            if o.status == OutcomeStatus.FAILED:
                return o
        return None

    @property
    def test_failures(self) -> List[TestFailure]:
        out = []
        for o in self.ordered():
            if o.verification is not None and o.verification.failure is not None:
                out.append(o.verification.failure)
        return out

    @property
    def exit_code(self) -> int:
        origin = self.origin
        if origin is not None and origin.error is not None:
            return origin.error.EXIT_STATUS
        if self.test_failures:
            return TestFailure.EXIT_STATUS
        return 0

    def to_dict(self) -> Dict[str, Any]:
        origin = self.origin
        return {
            "target": self.target,
            "command": self.command,
            "exit_code": self.exit_code,
            "origin": origin.name if origin else None,
            "outcomes": [o.to_dict() for o in self.ordered()],
        }


class Orchestrator:
    def __init__(self, registry: Mapping[str, Descriptor], store: Optional[Store] = None,
                 fetcher: Optional[Fetcher] = None, executor: Optional[Executor] = None,
                 jobs: Optional[int] = None, timeout: Optional[float] = None,
                 keep_build_dir: Optional[bool] = None, make_jobs: Optional[int] = None,
                 hooks: Optional[HookManager] = None):
        build_cfg = get_build_config()
        self.registry = registry
        self.resolver = Resolver(registry)
        self.jobs = max(1, int(jobs or build_cfg.get("jobs") or 1))
        self.make_jobs = max(1, int(make_jobs or build_cfg.get("make_jobs") or os.cpu_count() or 1))
        self.timeout = parse_duration(timeout if timeout is not None else build_cfg.get("timeout"))
        self.keep_build_dir = bool(build_cfg.get("keep_build_dir")) if keep_build_dir is None else keep_build_dir
        self.store = store or Store()
        self.fetcher = fetcher or Fetcher(work_dir=build_cfg.get("work_dir"))
        self.executor = executor or SubprocessExecutor()
        self.runner = StageRunner(self.executor, step_timeout=self.timeout)
        self.installer = Installer()
        self.verifier = Verifier(self.executor, timeout=self.timeout)
        self.hooks = hooks or HookManager()
        self.token = CancelToken()
        # (name, runtime_only) -> resolved closure
        self._closures: Dict[tuple, List[Descriptor]] = {}

    def _emit(self, event: str, **context: Any):
        self.hooks.run(event, context)

    # -----------------------
    # Context helpers
    # -----------------------
    def _closure(self, name: str, runtime_only: bool = False) -> List[Descriptor]:
        key = (name, runtime_only)
        if key not in self._closures:
            if runtime_only:
                self._closures[key] = self.resolver.runtime_closure(name)
            else:
                self._closures[key] = self.resolver.resolve(name)
        return self._closures[key]

    def _dependency_prefixes(self, desc: Descriptor, runtime_only: bool = False) -> List[Path]:
        """Prefixes of desc's transitive dependencies, nearest first."""
        closure = self._closure(desc.name, runtime_only)
        return [self.store.prefix_path(d) for d in reversed(closure) if d.name != desc.name]

    def _template_context(self, desc: Descriptor, session: Optional[BuildSession] = None) -> Dict[str, str]:
        ctx = {
            "PREFIX": str(self.store.prefix_path(desc)),
            "NAME": desc.name,
            "VERSION": desc.version,
            "JOBS": str(self._build_jobs(desc)),
        }
        if session is not None:
            ctx["DESTDIR"] = str(session.stage_dir)
            ctx["SOURCE_DIR"] = str(session.source_dir)
        for dep in self._closure(desc.name):
            if dep.name != desc.name:
                ctx[prefix_variable(dep.name)] = str(self.store.prefix_path(dep))
        return ctx

    def _build_jobs(self, desc: Descriptor) -> int:
        return self.make_jobs if desc.parallel else 1

    # -----------------------
    # Per-descriptor pipeline
    # -----------------------
    def _install_one(self, desc: Descriptor, force: bool) -> Outcome:
        start = time.monotonic()
        prefix: Optional[InstallPrefix] = None
        session: Optional[BuildSession] = None
        try:
            prefix = self.store.begin(desc, force=force)
            self._emit("pre-fetch", name=desc.name, descriptor=desc)
            session = self.fetcher.fetch(desc, token=self.token.derive(self.timeout))
            self._emit("post-fetch", name=desc.name, descriptor=desc)

            ctx = self._template_context(desc, session)
            steps = [c.render(ctx) for c in desc.build_steps]
            env = build_environment(prefix=prefix.path, destdir=session.stage_dir, jobs=self._build_jobs(desc),
                                    dep_prefixes=self._dependency_prefixes(desc))
            self._emit("pre-build", name=desc.name, session=session)
            self.runner.run(session, steps, env=env, token=self.token)
            prefix.transition(PrefixState.STAGED)
            self._emit("post-build", name=desc.name, session=session)

            self._emit("pre-install", name=desc.name, prefix=prefix)
            self.installer.install(session, prefix)
            self._emit("post-install", name=desc.name, prefix=prefix)
        except KilnError as e:
            return self._failed(desc, e, prefix, session, start)
        except Exception as e:
            logger.exception("%s: unexpected error", desc.name)
            err = KilnError(f"unexpected error: {e}", name=desc.name, output=traceback.format_exc())
            return self._failed(desc, err, prefix, session, start)

        kept = self.keep_build_dir
        try:
            session.cleanup(keep=kept)
        except OSError as e:
            # the install stands, the session stays on disk
            logger.warning("%s: could not remove build dir %s: %s", desc.name, session.root, e)
            kept = True
        outcome = Outcome(desc.name, desc.version, OutcomeStatus.INSTALLED, prefix=str(prefix.path),
                          session_dir=str(session.root) if kept else None)
        outcome.verification = self._verify(desc, prefix)
        outcome.duration = time.monotonic() - start
        return outcome

    def _failed(self, desc: Descriptor, err: KilnError, prefix: Optional[InstallPrefix],
                session: Optional[BuildSession], start: float) -> Outcome:
        if err.name is None:
            err.name = desc.name
        if prefix is not None and prefix.state != PrefixState.FAILED:
            prefix.transition(PrefixState.FAILED, err.message)
        if session is not None:
            session.mark_failed(err.message)
            logger.error("%s: %s failed; build dir kept at %s", desc.name, err.phase, session.root)
        else:
            logger.error("%s: %s failed: %s", desc.name, err.phase, err.message)
        self._emit("failed", name=desc.name, error=err)
        return Outcome(desc.name, desc.version, OutcomeStatus.FAILED,
                       prefix=str(prefix.path) if prefix else None, error=err,
                       session_dir=str(session.root) if session else None,
                       duration=time.monotonic() - start)

    def _verify(self, desc: Descriptor, prefix: InstallPrefix) -> VerifyResult:
        try:
            result = self.verifier.verify(prefix, desc.test_step,
                                          dep_prefixes=self._dependency_prefixes(desc, runtime_only=True),
                                          context=self._template_context(desc), token=self.token)
        except (KilnError, OSError) as e:
            # recorded as a failed verification, the install stands
            logger.error("%s: test could not run: %s", desc.name, e)
            result = VerifyResult(desc.name, VerifyStatus.FAILED, None, str(e))
        except Exception as e:
            logger.exception("%s: unexpected error while testing", desc.name)
            result = VerifyResult(desc.name, VerifyStatus.FAILED, None, f"unexpected error: {e}")
        self._emit("post-test", name=desc.name, result=result)
        return result

    # -----------------------
    # Scheduling
    # -----------------------
    def _blocking_failure(self, desc: Descriptor, report: RunReport) -> Optional[DependencyFailed]:
        for dep in desc.dependencies:
            o = report.outcomes.get(dep)
            if o is None or o.ok:
                continue
            origin = o.error.origin if isinstance(o.error, DependencyFailed) else o.error
            return DependencyFailed(desc.name, dep, origin)
        return None

    def _ready(self, desc: Descriptor, report: RunReport) -> bool:
        return all(dep in report.outcomes and report.outcomes[dep].ok for dep in desc.dependencies)

    def install(self, target: str, reinstall: bool = False, force: bool = False) -> RunReport:
        """
        Install target and everything it depends on. Resolution errors are raised
        before anything is touched; per-descriptor failures are recorded in the report.
        """
        self.token = CancelToken()
        self._emit("pre-resolve", target=target)
        order = self.resolver.resolve(target)
        self._emit("post-resolve", target=target, order=order)
        report = RunReport(target, "install", [d.name for d in order])

        pending: List[Descriptor] = list(order)
        running: Dict[Future, Descriptor] = {}
        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="kiln-worker") as pool:
            try:
                while pending or running:
                    waiting: List[Descriptor] = []
                    for desc in pending:
                        blocked = self._blocking_failure(desc, report)
                        if blocked is not None:
                            logger.warning("%s", blocked)
                            report.outcomes[desc.name] = Outcome(desc.name, desc.version,
                                                                 OutcomeStatus.DEPENDENCY_FAILED, error=blocked)
                            self._emit("failed", name=desc.name, error=blocked)
                        elif self._ready(desc, report) and len(running) < self.jobs:
                            if not (reinstall and desc.name == target) and self.store.is_installed(desc):
                                report.outcomes[desc.name] = Outcome(desc.name, desc.version,
                                                                     OutcomeStatus.ALREADY_INSTALLED,
                                                                     prefix=str(self.store.prefix_path(desc)))
                                self._emit("skipped", name=desc.name, reason="already installed")
                                continue
                            running[pool.submit(self._install_one, desc, force)] = desc
                        else:
                            waiting.append(desc)
                    if waiting and len(waiting) == len(pending) and not running:
                        raise RuntimeError("scheduler stalled on: " + ", ".join(d.name for d in waiting))
                    pending = waiting
                    if not running:
                        continue
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                    for fut in done:
                        desc = running.pop(fut)
                        report.outcomes[desc.name] = fut.result()
            except KeyboardInterrupt:
                logger.warning("interrupted, cancelling %d running build(s)", len(running))
                self.token.cancel()
                raise
        return report

    def test(self, target: str) -> RunReport:
        """Run the verification step of an installed descriptor."""
        if target not in self.registry:
            raise UnknownDependency(target)
        desc = self.registry[target]
        # full closure: the test context names every dependency prefix
        self._closure(target)
        self._closure(target, runtime_only=True)
        self.token = CancelToken()
        prefix = self.store.lookup(desc)
        if prefix is None or prefix.state != PrefixState.INSTALLED:
            state = prefix.state.value if prefix else "not installed"
            raise InstallError(f"cannot test {desc.name} {desc.version}: {state}", name=desc.name)
        report = RunReport(target, "test", [desc.name])
        start = time.monotonic()
        result = self._verify(desc, prefix)
        report.outcomes[desc.name] = Outcome(desc.name, desc.version, OutcomeStatus.TESTED,
                                             prefix=str(prefix.path), verification=result,
                                             duration=time.monotonic() - start)
        return report

    def plan(self, target: str) -> List[Descriptor]:
        return self.resolver.resolve(target)
