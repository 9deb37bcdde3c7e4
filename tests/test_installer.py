"""Install prefixes: state machine, receipts, idempotent overwrite, no rollback."""

from __future__ import annotations

import json

import pytest

from kiln.descriptor import Descriptor
from kiln.errors import InstallError
from kiln.fetcher import BuildSession
from kiln.installer import Installer, InstallPrefix, PrefixState, build_manifest

DIGEST = "a" * 64


def _desc(**kw):
    data = dict(name="zlib", version="1.3", source_url="zlib.tar.gz", checksum=DIGEST)
    data.update(kw)
    return Descriptor(**data)


def _session(tmp_path, name="zlib"):
    root = tmp_path / f"session-{name}"
    for sub in ("src", "stage", "logs"):
        (root / sub).mkdir(parents=True, exist_ok=True)
    return BuildSession(name=name, root=root, source_dir=root / "src", archive_name="x.tar", digest=DIGEST)


def _stage_files(session, prefix_path, files):
    base = session.stage_dir / prefix_path.relative_to(prefix_path.anchor)
    for rel, content in files.items():
        p = base / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content)
    return base


def _install(store, tmp_path, desc, files, force=False):
    prefix = store.begin(desc, force=force)
    session = _session(tmp_path, desc.name)
    _stage_files(session, prefix.path, files)
    prefix.transition(PrefixState.STAGED)
    Installer().install(session, prefix)
    session.cleanup()
    return prefix


def test_install_copies_staged_tree_and_writes_receipt(store, tmp_path):
    desc = _desc()
    prefix = _install(store, tmp_path, desc, {"lib/libz.a": "archive", "include/zlib.h": "/* h */"})
    assert prefix.path == store.root / "zlib" / "1.3"
    assert (prefix.path / "lib" / "libz.a").read_text() == "archive"
    assert prefix.state == PrefixState.INSTALLED

    receipt = json.loads(prefix.receipt_path.read_text())
    assert receipt["state"] == "installed"
    assert receipt["fingerprint"] == desc.fingerprint()
    assert sorted(receipt["files"]) == ["include", "include/zlib.h", "lib", "lib/libz.a"]
    assert store.is_installed(desc)


def test_reinstall_is_idempotent(store, tmp_path):
    desc = _desc()
    files = {"bin/tool": "#!/bin/sh\n", "share/doc/README": "doc"}
    first = _install(store, tmp_path, desc, files)
    manifest = build_manifest(first.path)
    receipt = first.receipt_path.read_text()

    (first.path / "stale.txt").write_text("left over")
    second = _install(store, tmp_path, desc, files)
    assert build_manifest(second.path) == manifest
    assert second.receipt_path.read_text() == receipt
    assert not (second.path / "stale.txt").exists()


def test_stage_root_used_when_build_ignores_prefix_layout(store, tmp_path):
    desc = _desc()
    prefix = store.begin(desc)
    session = _session(tmp_path)
    (session.stage_dir / "bin").mkdir()
    (session.stage_dir / "bin" / "flat").write_text("x")
    prefix.transition(PrefixState.STAGED)
    Installer().install(session, prefix)
    assert (prefix.path / "bin" / "flat").is_file()


def test_no_outputs_fails_without_rollback(store, tmp_path):
    desc = _desc()
    prefix = store.begin(desc)
    session = _session(tmp_path)
    prefix.transition(PrefixState.STAGED)
    with pytest.raises(InstallError) as ei:
        Installer().install(session, prefix)
    assert ei.value.EXIT_STATUS == 4
    loaded = store.lookup(desc)
    assert loaded.state == PrefixState.FAILED
    assert "no files" in loaded.error
    assert not store.is_installed(desc)


def test_install_requires_staged_state(store, tmp_path):
    prefix = store.begin(_desc())
    with pytest.raises(InstallError):
        Installer().install(_session(tmp_path), prefix)


def test_different_build_refused_unless_forced(store, tmp_path):
    _install(store, tmp_path, _desc(), {"lib/a": "1"})
    other = _desc(build_steps=(), parallel=False)
    assert other.fingerprint() != _desc().fingerprint()
    with pytest.raises(InstallError) as ei:
        store.begin(other)
    assert "--force" in ei.value.message
    assert store.lookup(_desc()).state == PrefixState.INSTALLED

    prefix = _install(store, tmp_path, other, {"lib/b": "2"}, force=True)
    assert not (prefix.path / "lib" / "a").exists()
    assert store.is_installed(other)


def test_failed_prefix_can_be_retried(store, tmp_path):
    desc = _desc()
    prefix = store.begin(desc)
    prefix.transition(PrefixState.FAILED, "step 0 failed")
    retried = _install(store, tmp_path, desc, {"lib/a": "1"})
    assert retried.state == PrefixState.INSTALLED


def test_corrupt_receipt(store, tmp_path):
    desc = _desc()
    path = store.prefix_path(desc)
    path.parent.mkdir(parents=True)
    (path.parent / "1.3.receipt.json").write_text("{not json")
    with pytest.raises(InstallError):
        InstallPrefix.load(path)


def test_manifest_records_symlinks(tmp_path):
    root = tmp_path / "tree"
    (root / "lib").mkdir(parents=True)
    (root / "lib" / "libz.so.1").write_text("so")
    (root / "lib" / "libz.so").symlink_to("libz.so.1")
    m = build_manifest(root)
    assert m["lib/libz.so"] == {"type": "symlink", "target": "libz.so.1"}
    assert m["lib/libz.so.1"]["type"] == "file"
    assert list(m) == sorted(m)
