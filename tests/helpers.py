"""Plain helpers shared by the test modules (build step commands, digests)."""

from __future__ import annotations

import hashlib
import sys
from pathlib import Path
from typing import List

from kiln.descriptor import Descriptor, Registry

PY = sys.executable


def install_step(name: str) -> List[str]:
    """Copy README from the source tree into <DESTDIR><PREFIX>/share/<name>/README."""
    script = (
        "import os, pathlib, shutil; "
        "d = pathlib.Path(os.environ['DESTDIR'] + os.environ['PREFIX']) / 'share' / %r; "
        "d.mkdir(parents=True, exist_ok=True); shutil.copy('README', d / 'README')" % name
    )
    return [PY, "-c", script]


def fail_step(code: int = 3, message: str = "boom") -> List[str]:
    return [PY, "-c", f"import sys; print({message!r}); sys.exit({code})"]


def sleep_step(seconds: float) -> List[str]:
    return [PY, "-c", f"import time; time.sleep({seconds})"]


def touch_step(path: Path) -> List[str]:
    return [PY, "-c", f"import pathlib; pathlib.Path({str(path)!r}).touch()"]


def sha256_of(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def registry_of(*descriptors: Descriptor) -> Registry:
    return Registry(descriptors)
