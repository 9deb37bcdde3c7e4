"""Advisory post-install tests."""

from __future__ import annotations

import pytest

from kiln.descriptor import Command, Descriptor
from kiln.errors import InstallError
from kiln.installer import PrefixState
from kiln.verifier import Verifier, VerifyStatus, verify

from helpers import PY, fail_step, sleep_step


def _installed(store, name="tool"):
    desc = Descriptor(name=name, source_url="x.tar", checksum="b" * 64, version="2.0")
    prefix = store.begin(desc)
    (prefix.path / "bin").mkdir(parents=True)
    (prefix.path / "bin" / "marker").write_text("ok")
    prefix.transition(PrefixState.INSTALLED)
    return prefix


def test_no_test_step_is_skipped(store):
    result = verify(_installed(store), None)
    assert result.status == VerifyStatus.SKIPPED
    assert result.failure is None


def test_passing_test_sees_prefix(store):
    prefix = _installed(store)
    step = Command.parse([PY, "-c", "import os, sys; sys.exit(0 if os.path.isfile(sys.argv[1]) else 1)",
                          "${PREFIX}/bin/marker"])
    result = Verifier().verify(prefix, step)
    assert result.status == VerifyStatus.PASSED
    assert result.exit_code == 0


def test_prefix_bin_is_on_path(store):
    prefix = _installed(store)
    step = Command.parse([PY, "-c", "import os, sys; sys.exit(0 if os.environ['PATH'].startswith(sys.argv[1]) else 1)",
                          "${PREFIX}/bin"])
    assert Verifier().verify(prefix, step).status == VerifyStatus.PASSED


def test_failing_test_keeps_install(store):
    prefix = _installed(store)
    result = Verifier().verify(prefix, Command.parse(fail_step(code=1, message="self-test failed")))
    assert result.status == VerifyStatus.FAILED
    assert result.exit_code == 1
    failure = result.failure
    assert failure.EXIT_STATUS == 5
    assert "self-test failed" in failure.output
    assert store.lookup(Descriptor(name="tool", source_url="x.tar", checksum="b" * 64, version="2.0")).state \
        == PrefixState.INSTALLED
    assert (prefix.path / "bin" / "marker").exists()


def test_test_timeout(store):
    prefix = _installed(store)
    result = Verifier(timeout=0.3).verify(prefix, Command.parse(sleep_step(30)))
    assert result.status == VerifyStatus.FAILED
    assert result.timed_out
    assert result.failure.timed_out


def test_refuses_prefix_that_is_not_installed(store):
    desc = Descriptor(name="half", source_url="x.tar", checksum="c" * 64)
    prefix = store.begin(desc)
    with pytest.raises(InstallError):
        Verifier().verify(prefix, Command("true"))
