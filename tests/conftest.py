"""Shared fixtures: isolated config, source tarballs and descriptor factories."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest
import yaml

from kiln import config as kiln_config
from kiln.descriptor import Descriptor
from kiln.installer import Store

from helpers import install_step, sha256_of


@pytest.fixture(autouse=True)
def kiln_env(tmp_path: Path):
    """Point config (store, cache, work dir, registry) at a private temp tree."""
    cfg = {
        "build": {"jobs": 2, "timeout": 60, "work_dir": str(tmp_path / "work")},
        "fetcher": {"cache_dir": str(tmp_path / "cache")},
        "store": {"root": str(tmp_path / "store")},
        "registry": {"paths": [str(tmp_path / "formula")]},
    }
    cfg_dir = tmp_path / "cfg"
    cfg_dir.mkdir()
    path = cfg_dir / "kiln.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    kiln_config.load(str(path), fatal=True)
    yield path


@pytest.fixture
def store(tmp_path: Path) -> Store:
    return Store(str(tmp_path / "store"))


@pytest.fixture
def make_tarball(tmp_path: Path):
    """make_tarball(name, files) -> (archive path, sha256); files live under <name>-1.0/."""
    def _make(name: str, files: Optional[Dict[str, str]] = None, top: Optional[str] = None) -> tuple:
        files = files if files is not None else {"README": f"{name} sources\n"}
        dist = tmp_path / "dist"
        dist.mkdir(exist_ok=True)
        archive = dist / f"{name}-1.0.tar"
        prefix = top if top is not None else f"{name}-1.0/"
        with tarfile.open(archive, "w") as tf:
            for rel, content in files.items():
                data = content.encode("utf-8")
                info = tarfile.TarInfo(prefix + rel)
                info.size = len(data)
                info.mode = 0o644
                tf.addfile(info, io.BytesIO(data))
        return archive, sha256_of(archive)
    return _make


@pytest.fixture
def make_descriptor(make_tarball):
    """Descriptor with a real file:// source; steps default to installing README."""
    def _make(name: str, build_deps: Sequence[str] = (), runtime_deps: Sequence[str] = (),
              steps: Optional[List] = None, test=None, checksum: Optional[str] = None, **extra) -> Descriptor:
        archive, digest = make_tarball(name)
        data = {
            "name": name,
            "version": "1.0",
            "source_url": archive.as_uri(),
            "checksum": checksum or digest,
            "build_deps": list(build_deps),
            "runtime_deps": list(runtime_deps),
            "build_steps": steps if steps is not None else [install_step(name)],
        }
        if test is not None:
            data["test_step"] = test
        data.update(extra)
        return Descriptor.from_dict(data)
    return _make


@pytest.fixture
def write_formula(tmp_path: Path):
    """Write descriptor dicts as YAML files into the configured registry directory."""
    formula_dir = tmp_path / "formula"

    def _write(desc: Descriptor) -> Path:
        formula_dir.mkdir(exist_ok=True)
        path = formula_dir / f"{desc.name}.yaml"
        path.write_text(yaml.safe_dump(desc.to_dict()), encoding="utf-8")
        return path
    return _write
