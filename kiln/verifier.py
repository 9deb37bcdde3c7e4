# kiln/verifier.py
"""
Post-install smoke test.

The test command runs in a scratch directory with the installed prefix (and
its runtime dependencies) on PATH. The outcome is advisory: a failing test is
reported, the prefix stays installed.
"""

from __future__ import annotations

import tempfile
from enum import Enum
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from kiln.descriptor import Command
from kiln.errors import InstallError, TestFailure
from kiln.installer import InstallPrefix, PrefixState
from kiln.logging import get_logger
from kiln.runner import CancelToken, Executor, SubprocessExecutor, build_environment

logger = get_logger("verifier")


class VerifyStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class VerifyResult:
    name: str
    status: VerifyStatus
    exit_code: Optional[int] = None
    output: str = ""
    timed_out: bool = False
    duration: float = 0.0

    @property
    def failure(self) -> Optional[TestFailure]:
        if self.status != VerifyStatus.FAILED:
            return None
        return TestFailure(self.name, self.exit_code, self.output, timed_out=self.timed_out)


class Verifier:
    def __init__(self, executor: Optional[Executor] = None, timeout: Optional[float] = None):
        self.executor = executor or SubprocessExecutor()
        self.timeout = timeout

    def verify(self, prefix: InstallPrefix, test_step: Optional[Command],
               dep_prefixes: Sequence[Path] = (), context: Optional[Dict[str, str]] = None,
               token: Optional[CancelToken] = None) -> VerifyResult:
        if test_step is None:
            logger.info("%s: no test step, verification skipped", prefix.owner)
            return VerifyResult(prefix.owner, VerifyStatus.SKIPPED)
        if prefix.state != PrefixState.INSTALLED:
            raise InstallError(f"cannot test: prefix is {prefix.state.value}", name=prefix.owner)

        ctx = {"PREFIX": str(prefix.path), "NAME": prefix.owner, "VERSION": prefix.version}
        ctx.update(context or {})
        cmd = test_step.render(ctx)
        env = build_environment(prefix=prefix.path, dep_prefixes=[prefix.path, *dep_prefixes])
        parent = token or CancelToken()
        with tempfile.TemporaryDirectory(prefix=f"kiln-test-{prefix.owner}-") as scratch:
            logger.info("%s: testing: %s", prefix.owner, cmd)
            res = self.executor.run(cmd.argv(), cwd=Path(scratch), env=env, token=parent.derive(self.timeout))

        if res.ok:
            return VerifyResult(prefix.owner, VerifyStatus.PASSED, res.exit_code, res.output, duration=res.duration)
        logger.warning("%s: test failed with status %s", prefix.owner, res.exit_code)
        return VerifyResult(prefix.owner, VerifyStatus.FAILED, res.exit_code, res.output,
                            timed_out=res.timed_out, duration=res.duration)


def verify(target_prefix: InstallPrefix, test_step: Optional[Command], **kwargs) -> VerifyResult:
    executor = kwargs.pop("executor", None)
    timeout = kwargs.pop("timeout", None)
    return Verifier(executor=executor, timeout=timeout).verify(target_prefix, test_step, **kwargs)
