"""Fetch, checksum verification and unpacking into build sessions."""

from __future__ import annotations

import io
import tarfile
import zipfile

import pytest

from kiln.descriptor import Descriptor
from kiln.errors import ChecksumMismatch, FetchError
from kiln.fetcher import Fetcher, file_digest
from kiln.runner import CancelToken

from helpers import sha256_of


def _desc(url, checksum, **kw):
    return Descriptor(name="pkg", source_url=url, checksum=checksum, version="1.0", **kw)


@pytest.fixture
def fetcher(tmp_path):
    return Fetcher(work_dir=str(tmp_path / "work"), cache_dir=str(tmp_path / "cache"))


def test_fetch_unpacks_single_top_level_dir(fetcher, make_tarball):
    archive, digest = make_tarball("pkg", {"README": "hello\n", "src/main.c": "int main(){}\n"})
    session = fetcher.fetch(_desc(archive.as_uri(), digest))
    try:
        assert session.source_dir.name == "pkg-1.0"
        assert (session.source_dir / "README").read_text() == "hello\n"
        assert (session.source_dir / "src" / "main.c").is_file()
        assert session.stage_dir.is_dir() and session.log_dir.is_dir()
        assert session.digest == digest
    finally:
        session.cleanup()
    assert not session.root.exists()


def test_checksum_is_case_insensitive(fetcher, make_tarball):
    archive, digest = make_tarball("pkg")
    session = fetcher.fetch(_desc(str(archive), "sha256:" + digest.upper()))
    session.cleanup()


def test_other_algorithms(fetcher, make_tarball):
    archive, _ = make_tarball("pkg")
    session = fetcher.fetch(_desc(archive.as_uri(), "sha512:" + file_digest(archive, "sha512")))
    session.cleanup()


def test_mismatch_leaves_nothing_behind(tmp_path, fetcher, make_tarball):
    archive, digest = make_tarball("pkg")
    wrong = "f" * 64
    with pytest.raises(ChecksumMismatch) as ei:
        fetcher.fetch(_desc(archive.as_uri(), wrong))
    err = ei.value
    assert err.expected == wrong and err.actual == digest
    assert err.EXIT_STATUS == 2
    work = tmp_path / "work"
    assert not work.exists() or not any(work.iterdir())
    assert not any((tmp_path / "cache").iterdir())
    assert fetcher.metrics["checksum_failures"] == 1


def test_missing_source(fetcher, tmp_path):
    with pytest.raises(FetchError) as ei:
        fetcher.fetch(_desc((tmp_path / "absent.tar.gz").as_uri(), "0" * 64))
    assert "not found" in ei.value.message


def test_relative_path_resolves_against_descriptor_file(tmp_path, fetcher, make_tarball):
    archive, digest = make_tarball("pkg")
    desc = _desc(archive.name, digest, source_path=str(archive.parent / "pkg.yaml"))
    session = fetcher.fetch(desc)
    session.cleanup()


def test_unsupported_scheme(fetcher):
    with pytest.raises(FetchError):
        fetcher.fetch(_desc("gopher://example.org/x.tar", "0" * 64))


def test_cache_is_reused_and_reverified(tmp_path, fetcher, make_tarball):
    archive, digest = make_tarball("pkg")
    desc = _desc(archive.as_uri(), digest)
    fetcher.fetch(desc).cleanup()
    assert fetcher.metrics["downloads"] == 1

    archive.unlink()
    fetcher.fetch(desc).cleanup()
    assert fetcher.metrics["cache_hits"] == 1

    cached = next((tmp_path / "cache").iterdir())
    cached.write_bytes(b"corrupted")
    with pytest.raises(FetchError):
        fetcher.fetch(desc)
    assert not cached.exists()


def test_path_traversal_rejected(tmp_path, fetcher):
    archive = tmp_path / "evil.tar"
    with tarfile.open(archive, "w") as tf:
        data = b"pwned"
        info = tarfile.TarInfo("../escape.txt")
        info.size = len(data)
        tf.addfile(info, io.BytesIO(data))
    with pytest.raises(FetchError) as ei:
        fetcher.fetch(_desc(str(archive), sha256_of(archive)))
    assert "unsafe" in ei.value.message
    assert not (tmp_path / "work" / "escape.txt").exists()
    assert not any((tmp_path / "work").glob("kiln-pkg-*"))


def test_symlink_escape_rejected(tmp_path, fetcher):
    archive = tmp_path / "link.tar"
    with tarfile.open(archive, "w") as tf:
        info = tarfile.TarInfo("pkg/etc")
        info.type = tarfile.SYMTYPE
        info.linkname = "../../../../etc"
        tf.addfile(info)
    with pytest.raises(FetchError):
        fetcher.fetch(_desc(str(archive), sha256_of(archive)))


def test_zip_archives(tmp_path, fetcher):
    archive = tmp_path / "pkg.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("pkg-1.0/README", "zipped\n")
        zf.writestr("pkg-1.0/configure", "#!/bin/sh\n")
    session = fetcher.fetch(_desc(str(archive), sha256_of(archive)))
    try:
        assert (session.source_dir / "README").read_text() == "zipped\n"
    finally:
        session.cleanup()


def test_plain_file_is_copied_into_source_dir(tmp_path, fetcher):
    src = tmp_path / "script.sh"
    src.write_text("echo hi\n")
    session = fetcher.fetch(_desc(str(src), sha256_of(src)))
    try:
        assert (session.source_dir / "script.sh").read_text() == "echo hi\n"
    finally:
        session.cleanup()


def test_cancelled_token_stops_download(fetcher, make_tarball):
    archive, digest = make_tarball("pkg")
    token = CancelToken()
    token.cancel()
    with pytest.raises(FetchError) as ei:
        fetcher.fetch(_desc(archive.as_uri(), digest), token=token)
    assert "cancelled" in ei.value.message


def test_failed_session_kept_on_request(fetcher, make_tarball):
    archive, digest = make_tarball("pkg")
    session = fetcher.fetch(_desc(archive.as_uri(), digest))
    session.mark_failed("step 0 failed")
    assert session.cleanup(keep=True) is False
    assert session.root.exists() and session.failed
    session.cleanup()
