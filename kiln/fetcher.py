# kiln/fetcher.py
"""
fetcher.py - source fetch/verify/unpack for kiln

Features:
- Protocol support: http(s)/ftp via urllib, file:// URLs, plain local paths
  (relative paths resolve against the descriptor file's directory)
- Streaming digest while downloading (md5/sha1/sha256/sha384/sha512/blake2b),
  case-insensitive comparison with the declared checksum
- Mismatch deletes the download and raises ChecksumMismatch; no session is created
- Download cache keyed by digest, re-verified before every reuse
- Safe unpacking of tar (any compression) and zip archives into a fresh BuildSession;
  members escaping the session (absolute paths, '..', outside links) are rejected
- Cancellation token / deadline checked between chunks
- Private temp paths per call, safe for concurrent fetches of different descriptors
"""

from __future__ import annotations

import os
import shutil
import tarfile
import tempfile
import zipfile
import hashlib
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Optional

from kiln.config import get_fetcher_config
from kiln.descriptor import Descriptor, split_checksum
from kiln.errors import ChecksumMismatch, FetchError
from kiln.logging import get_logger
from kiln.runner import CancelToken

logger = get_logger("fetcher")

REMOTE_SCHEMES = ("http", "https", "ftp")

# -----------------------
# Build session
# -----------------------
@dataclass
class BuildSession:
    """
    Per-install working directory:
      <root>/src/...   unpacked sources (source_dir may be a single top-level dir below it)
      <root>/stage/    DESTDIR for the build steps
      <root>/logs/     per-step output
    """
    name: str
    root: Path
    source_dir: Path
    archive_name: str
    digest: str
    failed: bool = False
    failure_reason: str = ""

    @property
    def stage_dir(self) -> Path:
        return self.root / "stage"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"

    def mark_failed(self, reason: str = ""):
        self.failed = True
        self.failure_reason = reason

    def cleanup(self, keep: bool = False) -> bool:
        """Remove the session directory unless keep is set. Returns True if removed."""
        if keep:
            logger.info("%s: keeping build dir %s", self.name, self.root)
            return False
        if self.root.exists():
            shutil.rmtree(self.root)
        return True

# -----------------------
# Helpers
# -----------------------
def _hasher(algo: str):
    try:
        return hashlib.new(algo)
    except ValueError:
        raise FetchError(f"unsupported checksum algorithm: {algo}")

def file_digest(path: Path, algo: str = "sha256", chunk_size: int = 65536) -> str:
    h = _hasher(algo)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()

def _is_within(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False

def _check_member(name: str, base: Path, link: Optional[str] = None):
    rel = name.lstrip("/")
    if name.startswith("/") or ".." in Path(rel).parts:
        raise FetchError(f"unsafe archive member: {name}")
    dest = (base / rel).resolve()
    if not _is_within(dest, base):
        raise FetchError(f"unsafe archive member (path traversal): {name}")
    if link is not None:
        if link.startswith("/"):
            raise FetchError(f"unsafe archive link (absolute target): {name} -> {link}")
        target = ((base / rel).parent / link).resolve()
        if not _is_within(target, base):
            raise FetchError(f"unsafe archive link (outside target): {name} -> {link}")

def _extract_tar(archive: Path, dest: Path):
    base = dest.resolve()
    with tarfile.open(archive, "r:*") as tf:
        members = tf.getmembers()
        for m in members:
            if m.issym():
                _check_member(m.name, base, m.linkname)
            elif m.islnk():
                # hardlink targets are archive paths, not relative to the member
                _check_member(m.name, base)
                _check_member(m.linkname, base)
            elif m.isdev():
                raise FetchError(f"unsafe archive member (device): {m.name}")
            else:
                _check_member(m.name, base)
        if hasattr(tarfile, "data_filter"):
            tf.extractall(dest, members=members, filter="data")
        else:
            tf.extractall(dest, members=members)

def _extract_zip(archive: Path, dest: Path):
    base = dest.resolve()
    with zipfile.ZipFile(archive) as zf:
        infos = zf.infolist()
        for info in infos:
            _check_member(info.filename, base)
        for info in infos:
            out = Path(zf.extract(info, dest))
            mode = (info.external_attr >> 16) & 0o777
            if mode and not info.is_dir():
                os.chmod(out, mode)

def _archive_name(url: str) -> str:
    path = urllib.parse.urlparse(url).path
    return os.path.basename(path.rstrip("/")) or "source"

# -----------------------
# Fetcher
# -----------------------
class Fetcher:
    def __init__(self, work_dir: Optional[str] = None, cache_dir: Optional[str] = None,
                 http_timeout: Optional[float] = None, user_agent: Optional[str] = None,
                 chunk_size: Optional[int] = None, use_cache: bool = True):
        cfg = get_fetcher_config()
        self.work_dir = Path(work_dir) if work_dir else None
        cache = cache_dir if cache_dir is not None else cfg.get("cache_dir")
        self.cache_dir = Path(cache) if (cache and use_cache) else None
        self.http_timeout = float(http_timeout or cfg.get("http_timeout", 30))
        self.user_agent = user_agent or cfg.get("user_agent", "kiln/1.0")
        self.chunk_size = int(chunk_size or cfg.get("chunk_size", 65536))
        self.metrics: Dict[str, int] = {"downloads": 0, "cache_hits": 0, "checksum_failures": 0}

    # -----------------------
    # location handling
    # -----------------------
    def _local_path(self, descriptor: Descriptor) -> Optional[Path]:
        url = descriptor.source_url
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme == "file":
            return Path(urllib.request.url2pathname(parsed.path))
        if parsed.scheme in REMOTE_SCHEMES:
            return None
        if parsed.scheme and len(parsed.scheme) > 1:
            raise FetchError(f"unsupported URL scheme '{parsed.scheme}' in {url}", name=descriptor.name)
        p = Path(url).expanduser()
        if not p.is_absolute() and descriptor.source_path:
            p = Path(descriptor.source_path).parent / p
        return p

    def _open(self, descriptor: Descriptor, token: Optional[CancelToken]) -> BinaryIO:
        local = self._local_path(descriptor)
        if local is not None:
            if not local.is_file():
                raise FetchError(f"source not found: {local}", name=descriptor.name)
            return open(local, "rb")
        timeout = self.http_timeout
        if token is not None and token.remaining() is not None:
            timeout = max(0.1, min(timeout, token.remaining()))
        req = urllib.request.Request(descriptor.source_url, headers={"User-Agent": self.user_agent})
        return urllib.request.urlopen(req, timeout=timeout)

    def _download(self, descriptor: Descriptor, dest: Path, algo: str,
                  token: Optional[CancelToken]) -> str:
        """Stream the source into dest, returning its hex digest."""
        h = _hasher(algo)
        try:
            with self._open(descriptor, token) as src, open(dest, "wb") as out:
                while True:
                    if token is not None and token.stopped:
                        reason = "cancelled" if token.cancelled else "timed out"
                        raise FetchError(f"download {reason}: {descriptor.source_url}", name=descriptor.name)
                    chunk = src.read(self.chunk_size)
                    if not chunk:
                        break
                    h.update(chunk)
                    out.write(chunk)
        except urllib.error.HTTPError as e:
            raise FetchError(f"HTTP {e.code} fetching {descriptor.source_url}: {e.reason}", name=descriptor.name)
        except urllib.error.URLError as e:
            raise FetchError(f"cannot fetch {descriptor.source_url}: {e.reason}", name=descriptor.name)
        except OSError as e:
            raise FetchError(f"I/O error fetching {descriptor.source_url}: {e}", name=descriptor.name)
        self.metrics["downloads"] += 1
        return h.hexdigest()

    # -----------------------
    # cache
    # -----------------------
    def _cache_path(self, descriptor: Descriptor) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        algo, digest = split_checksum(descriptor.checksum)
        return self.cache_dir / f"{algo}-{digest}--{_archive_name(descriptor.source_url)}"

    def _cached(self, descriptor: Descriptor) -> Optional[Path]:
        path = self._cache_path(descriptor)
        if path is None or not path.is_file():
            return None
        algo, expected = split_checksum(descriptor.checksum)
        actual = file_digest(path, algo, self.chunk_size)
        if actual.lower() != expected:
            logger.warning("%s: cached archive %s is corrupt, discarding", descriptor.name, path)
            path.unlink(missing_ok=True)
            return None
        self.metrics["cache_hits"] += 1
        logger.debug("%s: cache hit %s", descriptor.name, path)
        return path

    # -----------------------
    # public API
    # -----------------------
    def fetch(self, descriptor: Descriptor, token: Optional[CancelToken] = None) -> BuildSession:
        """
        Download, verify and unpack `descriptor`'s source.
        Raises FetchError or ChecksumMismatch; on failure nothing is left behind.
        """
        algo, expected = split_checksum(descriptor.checksum)
        archive = self._cached(descriptor)
        tmpdir: Optional[str] = None
        try:
            if archive is None:
                scratch = self.cache_dir or self.work_dir
                if scratch is not None:
                    scratch.mkdir(parents=True, exist_ok=True)
                tmpdir = tempfile.mkdtemp(prefix=f"kiln-fetch-{descriptor.name}-", dir=str(scratch) if scratch else None)
                tmp_file = Path(tmpdir) / _archive_name(descriptor.source_url)
                logger.info("%s: fetching %s", descriptor.name, descriptor.source_url)
                actual = self._download(descriptor, tmp_file, algo, token)
                if actual.lower() != expected.lower():
                    self.metrics["checksum_failures"] += 1
                    tmp_file.unlink(missing_ok=True)
                    logger.warning("%s: checksum mismatch for %s (expected %s, got %s)",
                                   descriptor.name, descriptor.source_url, expected, actual)
                    raise ChecksumMismatch(descriptor.name, expected, actual, descriptor.source_url)
                cache_path = self._cache_path(descriptor)
                if cache_path is not None:
                    os.replace(tmp_file, cache_path)
                    archive = cache_path
                else:
                    archive = tmp_file
            return self._unpack(descriptor, archive, expected)
        finally:
            if tmpdir is not None:
                shutil.rmtree(tmpdir, ignore_errors=True)

    def _unpack(self, descriptor: Descriptor, archive: Path, digest: str) -> BuildSession:
        if self.work_dir is not None:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=f"kiln-{descriptor.name}-", dir=str(self.work_dir) if self.work_dir else None))
        src = root / "src"
        try:
            src.mkdir()
            (root / "stage").mkdir()
            (root / "logs").mkdir()
            if tarfile.is_tarfile(archive):
                _extract_tar(archive, src)
            elif zipfile.is_zipfile(archive):
                _extract_zip(archive, src)
            else:
                shutil.copy2(archive, src / _archive_name(descriptor.source_url))
        except FetchError as e:
            shutil.rmtree(root, ignore_errors=True)
            e.name = e.name or descriptor.name
            raise
        except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
            shutil.rmtree(root, ignore_errors=True)
            raise FetchError(f"cannot unpack {archive.name}: {e}", name=descriptor.name)

        entries = list(src.iterdir())
        source_dir = entries[0] if len(entries) == 1 and entries[0].is_dir() else src
        logger.debug("%s: unpacked into %s", descriptor.name, source_dir)
        return BuildSession(name=descriptor.name, root=root, source_dir=source_dir,
                            archive_name=_archive_name(descriptor.source_url), digest=digest)


def fetch(descriptor: Descriptor, token: Optional[CancelToken] = None, **kwargs: Any) -> BuildSession:
    return Fetcher(**kwargs).fetch(descriptor, token=token)
