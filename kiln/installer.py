# kiln/installer.py
"""
installer.py - isolated install prefixes for kiln

Features:
- One prefix per descriptor name + version: <store>/<name>/<version>/
- Prefix state machine (empty -> staged -> installed, failed from any state)
  persisted in a receipt next to the prefix: <store>/<name>/<version>.receipt.json
- DESTDIR convention: the build installs into <session>/stage/<prefix path>
- Deterministic overwrite on re-install; a differing build is refused unless forced
- No rollback: a failed copy leaves the prefix on disk in the failed state
- Receipt manifest (sorted paths, sha256, mode, symlink targets) with no timestamps
"""

from __future__ import annotations

import os
import json
import stat
import shutil
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from kiln.config import get_config
from kiln.descriptor import Descriptor
from kiln.errors import InstallError
from kiln.fetcher import BuildSession, file_digest
from kiln.logging import get_logger

logger = get_logger("installer")

RECEIPT_SUFFIX = ".receipt.json"


class PrefixState(str, Enum):
    EMPTY = "empty"
    STAGED = "staged"
    INSTALLED = "installed"
    FAILED = "failed"


def build_manifest(root: Path) -> Dict[str, Dict[str, Any]]:
    """Deterministic description of everything below root (paths relative, POSIX style)."""
    entries: Dict[str, Dict[str, Any]] = {}
    for dirpath, dirnames, filenames in os.walk(root, topdown=True, followlinks=False):
        dirnames.sort()
        base = Path(dirpath)
        for name in sorted(dirnames + filenames):
            p = base / name
            rel = p.relative_to(root).as_posix()
            st = p.lstat()
            if stat.S_ISLNK(st.st_mode):
                entries[rel] = {"type": "symlink", "target": os.readlink(p)}
            elif stat.S_ISDIR(st.st_mode):
                entries[rel] = {"type": "dir", "mode": stat.S_IMODE(st.st_mode)}
            elif stat.S_ISREG(st.st_mode):
                entries[rel] = {"type": "file", "mode": stat.S_IMODE(st.st_mode), "sha256": file_digest(p)}
            else:
                entries[rel] = {"type": "special"}
    return dict(sorted(entries.items()))


@dataclass
class InstallPrefix:
    owner: str
    version: str
    path: Path
    state: PrefixState = PrefixState.EMPTY
    fingerprint: str = ""
    files: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    error: str = ""

    @property
    def receipt_path(self) -> Path:
        return self.path.parent / (self.path.name + RECEIPT_SUFFIX)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "version": self.version,
            "path": str(self.path),
            "state": self.state.value,
            "fingerprint": self.fingerprint,
            "error": self.error,
            "files": self.files,
        }

    def save(self):
        self.receipt_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.receipt_path.with_name(self.receipt_path.name + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(tmp, self.receipt_path)

    def transition(self, state: PrefixState, error: str = ""):
        logger.debug("%s %s: %s -> %s", self.owner, self.version, self.state.value, state.value)
        self.state = state
        self.error = error
        if state != PrefixState.INSTALLED:
            self.files = {}
        self.save()

    @classmethod
    def load(cls, path: Path) -> Optional["InstallPrefix"]:
        receipt = path.parent / (path.name + RECEIPT_SUFFIX)
        if not receipt.is_file():
            return None
        try:
            data = json.loads(receipt.read_text(encoding="utf-8"))
            return cls(owner=data["owner"], version=data["version"], path=path,
                       state=PrefixState(data["state"]), fingerprint=data.get("fingerprint", ""),
                       files=data.get("files") or {}, error=data.get("error", ""))
        except (ValueError, KeyError) as e:
            raise InstallError(f"corrupt receipt {receipt}: {e}", name=path.parent.name)

# -----------------------
# Store
# -----------------------
class Store:
    """Root of all install prefixes. Prefixes are never shared between descriptors."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or get_config().get("store.root")).expanduser().absolute()

    def prefix_path(self, descriptor: Descriptor) -> Path:
        return self.root / descriptor.name / descriptor.version

    def lookup(self, descriptor: Descriptor) -> Optional[InstallPrefix]:
        return InstallPrefix.load(self.prefix_path(descriptor))

    def is_installed(self, descriptor: Descriptor) -> bool:
        """True when the prefix holds exactly this build."""
        existing = self.lookup(descriptor)
        return (existing is not None and existing.state == PrefixState.INSTALLED
                and existing.fingerprint == descriptor.fingerprint())

    def begin(self, descriptor: Descriptor, force: bool = False) -> InstallPrefix:
        """Start an install: the prefix enters the empty state."""
        path = self.prefix_path(descriptor)
        fp = descriptor.fingerprint()
        existing = InstallPrefix.load(path)
        if existing is not None and existing.state == PrefixState.INSTALLED and existing.fingerprint != fp and not force:
            raise InstallError(
                f"{path} already holds a different build of {descriptor.name} {descriptor.version} (use --force to replace it)",
                name=descriptor.name)
        prefix = InstallPrefix(owner=descriptor.name, version=descriptor.version, path=path, fingerprint=fp)
        prefix.save()
        return prefix

# -----------------------
# Installer
# -----------------------
class Installer:
    def staged_tree(self, session: BuildSession, prefix: InstallPrefix) -> Path:
        """Directory whose contents become the prefix."""
        stage = session.stage_dir
        nested = stage / prefix.path.relative_to(prefix.path.anchor)
        if nested.is_dir():
            top = prefix.path.relative_to(prefix.path.anchor).parts[0]
            stray = sorted(p.name for p in stage.iterdir() if p.name != top)
            if stray:
                logger.warning("%s: ignoring files staged outside the prefix: %s", prefix.owner, ", ".join(stray))
            return nested
        if stage.is_dir() and any(stage.iterdir()):
            return stage
        raise InstallError("build produced no files in DESTDIR", name=prefix.owner)

    def install(self, session: BuildSession, prefix: InstallPrefix) -> InstallPrefix:
        """Copy the staged build outputs into prefix. Raises InstallError; the prefix is then failed."""
        if prefix.state != PrefixState.STAGED:
            raise InstallError(f"prefix is {prefix.state.value}, expected staged", name=prefix.owner)
        try:
            tree = self.staged_tree(session, prefix)
        except InstallError as e:
            prefix.transition(PrefixState.FAILED, e.message)
            raise

        logger.info("%s: installing into %s", prefix.owner, prefix.path)
        try:
            if prefix.path.is_symlink() or prefix.path.is_file():
                prefix.path.unlink()
            elif prefix.path.exists():
                shutil.rmtree(prefix.path)
            shutil.copytree(tree, prefix.path, symlinks=True)
            manifest = build_manifest(prefix.path)
        except (OSError, shutil.Error) as e:
            prefix.transition(PrefixState.FAILED, str(e))
            logger.error("%s: install into %s failed: %s", prefix.owner, prefix.path, e)
            raise InstallError(f"copy into {prefix.path} failed: {e}", name=prefix.owner, output=str(e))

        prefix.files = manifest
        prefix.transition(PrefixState.INSTALLED)
        logger.info("%s: installed %d entries", prefix.owner, len(manifest))
        return prefix


def install(session: BuildSession, target_prefix: InstallPrefix) -> InstallPrefix:
    return Installer().install(session, target_prefix)
