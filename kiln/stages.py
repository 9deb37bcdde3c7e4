# kiln/stages.py
"""
Stage runner: executes a descriptor's build steps inside its BuildSession.

Steps run strictly in order with the session's source directory as working
directory; the first non-zero exit stops the sequence (no retries). Output of
every step is kept in <session>/logs/step-<index>.log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from kiln.descriptor import Command
from kiln.errors import StepFailure
from kiln.fetcher import BuildSession
from kiln.logging import get_logger
from kiln.runner import CancelToken, Executor, SubprocessExecutor

logger = get_logger("stages")


@dataclass
class StepResult:
    index: int
    argv: List[str]
    exit_code: Optional[int]
    duration: float
    log_path: Optional[str] = None


@dataclass
class StageReport:
    name: str
    steps: List[StepResult] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return sum(s.duration for s in self.steps)


class StageRunner:
    def __init__(self, executor: Optional[Executor] = None, step_timeout: Optional[float] = None):
        self.executor = executor or SubprocessExecutor()
        self.step_timeout = step_timeout

    def run(self, session: BuildSession, steps: Sequence[Command], env: Optional[Dict[str, str]] = None,
            token: Optional[CancelToken] = None) -> StageReport:
        """
        Run `steps` in order. Returns a StageReport when all succeed, raises
        StepFailure (index = position of the failing step) otherwise.
        """
        report = StageReport(session.name)
        total = len(steps)
        parent = token or CancelToken()
        for index, cmd in enumerate(steps):
            if parent.stopped:
                cancelled = parent.cancelled
                session.mark_failed("cancelled" if cancelled else "timed out")
                raise StepFailure(session.name, index, None, "", command=cmd.argv(),
                                  timed_out=not cancelled, cancelled=cancelled)

            log_path = session.log_dir / f"step-{index}.log"
            logger.info("%s: [%d/%d] %s", session.name, index + 1, total, cmd)
            res = self.executor.run(cmd.argv(), cwd=session.source_dir, env=env,
                                    token=parent.derive(self.step_timeout), log_path=log_path)
            report.steps.append(StepResult(index, res.argv, res.exit_code, res.duration, res.log_path))

            if not res.ok:
                session.mark_failed(f"step {index} failed")
                logger.error("%s: step %d (%s) failed with status %s%s", session.name, index, cmd.program,
                             res.exit_code, " after timeout" if res.timed_out else "")
                raise StepFailure(session.name, index, res.exit_code, res.output, command=res.argv,
                                  timed_out=res.timed_out, cancelled=res.cancelled)
            logger.debug("%s: step %d ok in %.1fs", session.name, index, res.duration)
        return report


def run(session: BuildSession, steps: Sequence[Command], **kwargs) -> StageReport:
    env = kwargs.pop("env", None)
    token = kwargs.pop("token", None)
    return StageRunner(**kwargs).run(session, steps, env=env, token=token)
