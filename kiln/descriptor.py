# kiln/descriptor.py
# -*- coding: utf-8 -*-
"""
kiln descriptors (formulae)

Features:
 - Immutable Descriptor / Command models (frozen dataclasses)
 - Loading from YAML, TOML or JSON documents, with a few accepted field aliases
   (url, sha256, install, test, desc)
 - Commands written as lists, shell-like strings (split, never run through a shell)
   or {program, args} mappings
 - ${VAR} placeholder expansion in command arguments
 - Checksums as "<algo>:<hex>" or bare hex (sha256)
 - Registry: read-only name -> Descriptor mapping loaded from formula directories
"""

from __future__ import annotations
import re
import json
import shlex
import hashlib
from pathlib import Path
from dataclasses import dataclass, field
from collections.abc import Mapping
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import toml
import yaml

from kiln.errors import DescriptorError
from kiln.logging import get_logger

logger = get_logger("descriptor")

NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
TEMPLATE_RE = re.compile(r"\$\{([A-Za-z0-9_]+)\}")
HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

DESCRIPTOR_SUFFIXES = (".yaml", ".yml", ".toml", ".json")

# digest length (hex chars) per supported algorithm
CHECKSUM_ALGORITHMS = {
    "md5": 32,
    "sha1": 40,
    "sha256": 64,
    "sha384": 96,
    "sha512": 128,
    "blake2b": 128,
}

_ALIASES = {
    "url": "source_url",
    "sha256": "checksum",
    "install": "build_steps",
    "test": "test_step",
    "desc": "description",
    "build_depends": "build_deps",
    "runtime_depends": "runtime_deps",
    "depends": "runtime_deps",
}

_KNOWN_FIELDS = {
    "name", "version", "source_url", "checksum", "license", "description", "homepage",
    "build_deps", "runtime_deps", "build_steps", "test_step", "parallel",
}


def expand_template(s: str, ctx: Dict[str, str]) -> str:
    """Replace ${VAR} with ctx values; unknown placeholders stay as written."""
    def repl(m):
        return ctx.get(m.group(1), m.group(0))
    return TEMPLATE_RE.sub(repl, s)


def prefix_variable(dep_name: str) -> str:
    """Placeholder name for a dependency prefix: pkg-config -> PREFIX_PKG_CONFIG."""
    return "PREFIX_" + re.sub(r"[^A-Za-z0-9]", "_", dep_name).upper()


def split_checksum(checksum: str) -> Tuple[str, str]:
    """'sha256:ABCD' -> ('sha256', 'abcd'); a bare digest is sha256."""
    if ":" in checksum:
        algo, digest = checksum.split(":", 1)
        return algo.strip().lower(), digest.strip().lower()
    return "sha256", checksum.strip().lower()

# -----------------------
# Models
# -----------------------
@dataclass(frozen=True)
class Command:
    program: str
    args: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, value: Any, where: str = "command") -> "Command":
        if isinstance(value, Command):
            return value
        if isinstance(value, str):
            try:
                parts = shlex.split(value)
            except ValueError as e:
                raise DescriptorError(f"{where}: cannot split {value!r}: {e}")
        elif isinstance(value, (list, tuple)):
            parts = value
        elif isinstance(value, dict):
            program = value.get("program")
            args = value.get("args") or []
            if not isinstance(args, (list, tuple)):
                raise DescriptorError(f"{where}: args must be a list")
            parts = [program] + list(args)
        else:
            raise DescriptorError(f"{where}: unsupported command form {type(value).__name__}")
        if not parts or not isinstance(parts[0], str) or not parts[0]:
            raise DescriptorError(f"{where}: missing program")
        bad = [p for p in parts if not isinstance(p, (str, int, float))]
        if bad:
            raise DescriptorError(f"{where}: arguments must be strings, got {bad!r}")
        return cls(program=parts[0], args=tuple(str(p) for p in parts[1:]))

    def argv(self) -> List[str]:
        return [self.program, *self.args]

    def render(self, ctx: Dict[str, str]) -> "Command":
        return Command(expand_template(self.program, ctx), tuple(expand_template(a, ctx) for a in self.args))

    def __str__(self) -> str:
        return " ".join(shlex.quote(a) for a in self.argv())


@dataclass(frozen=True)
class Descriptor:
    name: str
    source_url: str
    checksum: str
    version: str = "0"
    license: str = ""
    description: str = ""
    homepage: str = ""
    build_deps: Tuple[str, ...] = ()
    runtime_deps: Tuple[str, ...] = ()
    build_steps: Tuple[Command, ...] = ()
    test_step: Optional[Command] = None
    parallel: bool = True
    source_path: Optional[str] = field(default=None, compare=False)

    @property
    def dependencies(self) -> Tuple[str, ...]:
        """Build deps then runtime deps, declared order, no duplicates."""
        return _unique(self.build_deps + self.runtime_deps)

    @property
    def checksum_algorithm(self) -> str:
        return split_checksum(self.checksum)[0]

    @property
    def checksum_digest(self) -> str:
        return split_checksum(self.checksum)[1]

    def fingerprint(self) -> str:
        """Stable digest of everything that determines the build output."""
        payload = {
            "name": self.name,
            "version": self.version,
            "source_url": self.source_url,
            "checksum": self.checksum.lower(),
            "build_deps": list(self.build_deps),
            "runtime_deps": list(self.runtime_deps),
            "build_steps": [c.argv() for c in self.build_steps],
            "parallel": self.parallel,
        }
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(blob).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "source_url": self.source_url,
            "checksum": self.checksum,
            "license": self.license,
            "description": self.description,
            "homepage": self.homepage,
            "build_deps": list(self.build_deps),
            "runtime_deps": list(self.runtime_deps),
            "build_steps": [c.argv() for c in self.build_steps],
            "test_step": self.test_step.argv() if self.test_step else None,
            "parallel": self.parallel,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source_path: Optional[str] = None) -> "Descriptor":
        if not isinstance(data, dict):
            raise DescriptorError(f"descriptor must be a mapping ({source_path or '<memory>'})")
        norm: Dict[str, Any] = {}
        for k, v in data.items():
            key = _ALIASES.get(k, k)
            if key in norm:
                raise DescriptorError(f"field '{key}' given twice (as '{k}')", name=data.get("name"))
            norm[key] = v
        unknown = sorted(set(norm) - _KNOWN_FIELDS)
        if unknown:
            logger.warning("descriptor %s: ignoring unknown fields %s", norm.get("name") or source_path, ", ".join(unknown))

        errors: List[str] = []
        name = norm.get("name")
        if not isinstance(name, str) or not NAME_RE.match(name):
            errors.append(f"invalid or missing name: {name!r}")
            name = None
        version = str(norm.get("version") or "0")
        if not NAME_RE.match(version):
            errors.append(f"invalid version: {version!r}")
        for req in ("source_url", "checksum"):
            if not isinstance(norm.get(req), str) or not norm.get(req):
                errors.append(f"missing {req}")
        if isinstance(norm.get("checksum"), str) and norm.get("checksum"):
            errors.extend(_checksum_issues(norm["checksum"]))
        if errors:
            raise DescriptorError("invalid descriptor: " + "; ".join(errors), name=name)

        where = name
        build_steps = norm.get("build_steps") or []
        if not isinstance(build_steps, (list, tuple)):
            raise DescriptorError("build_steps must be a list", name=name)
        steps = tuple(Command.parse(s, where=f"{where} build step {i}") for i, s in enumerate(build_steps))
        test_raw = norm.get("test_step")
        test_step = Command.parse(test_raw, where=f"{where} test step") if test_raw else None

        build_deps = _dep_list(norm.get("build_deps"), "build_deps", name)
        runtime_deps = _dep_list(norm.get("runtime_deps"), "runtime_deps", name)
        if name in build_deps or name in runtime_deps:
            raise DescriptorError("descriptor depends on itself", name=name)

        return cls(
            name=name,
            version=version,
            source_url=norm["source_url"],
            checksum=norm["checksum"].strip(),
            license=str(norm.get("license") or ""),
            description=str(norm.get("description") or ""),
            homepage=str(norm.get("homepage") or ""),
            build_deps=build_deps,
            runtime_deps=runtime_deps,
            build_steps=steps,
            test_step=test_step,
            parallel=bool(norm.get("parallel", True)),
            source_path=source_path,
        )


def _unique(items: Iterable[str]) -> Tuple[str, ...]:
    seen = set()
    out = []
    for i in items:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return tuple(out)


def _dep_list(value: Any, field_name: str, name: Optional[str]) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise DescriptorError(f"{field_name} must be a list of names", name=name)
    for dep in value:
        if not isinstance(dep, str) or not NAME_RE.match(dep):
            raise DescriptorError(f"{field_name}: invalid dependency name {dep!r}", name=name)
    return _unique(value)


def _checksum_issues(checksum: str) -> List[str]:
    algo, digest = split_checksum(checksum)
    if algo not in CHECKSUM_ALGORITHMS:
        return [f"unsupported checksum algorithm '{algo}'"]
    if not HEX_RE.match(digest) or len(digest) != CHECKSUM_ALGORITHMS[algo]:
        return [f"checksum is not a {algo} hex digest"]
    return []

# -----------------------
# File parsing
# -----------------------
def _parse_file(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DescriptorError(f"cannot read descriptor file {path}: {e}")
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        elif suffix == ".toml":
            data = toml.loads(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            raise DescriptorError(f"unsupported descriptor format: {path}")
    except (yaml.YAMLError, toml.TomlDecodeError, ValueError) as e:
        raise DescriptorError(f"cannot parse descriptor file {path}: {e}")
    if not isinstance(data, dict):
        raise DescriptorError(f"descriptor file {path} must contain a mapping")
    return data


def load_descriptor(path) -> Descriptor:
    path = Path(path).expanduser()
    desc = Descriptor.from_dict(_parse_file(path), source_path=str(path))
    logger.debug("loaded descriptor %s %s from %s", desc.name, desc.version, path)
    return desc

# -----------------------
# Registry
# -----------------------
class Registry(Mapping):
    """Read-only name -> Descriptor mapping."""

    def __init__(self, descriptors: Iterable[Descriptor] = ()):
        entries: Dict[str, Descriptor] = {}
        for d in descriptors:
            if d.name in entries:
                other = entries[d.name].source_path or "<memory>"
                raise DescriptorError(f"duplicate descriptor name (also defined in {other})", name=d.name)
            entries[d.name] = d
        self._entries = entries

    def __getitem__(self, name: str) -> Descriptor:
        return self._entries[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"Registry({sorted(self._entries)})"

    @classmethod
    def from_paths(cls, paths: Iterable) -> "Registry":
        """Load every descriptor file found in the given files/directories (non-recursive)."""
        descriptors: List[Descriptor] = []
        for p in paths:
            p = Path(p).expanduser()
            if p.is_file():
                descriptors.append(load_descriptor(p))
            elif p.is_dir():
                for child in sorted(p.iterdir()):
                    if child.is_file() and child.suffix.lower() in DESCRIPTOR_SUFFIXES and not child.name.startswith("."):
                        descriptors.append(load_descriptor(child))
            else:
                logger.warning("registry path does not exist: %s", p)
        registry = cls(descriptors)
        logger.info("registry: %d descriptors loaded", len(registry))
        return registry
