"""End-to-end self-test of the backup pipeline against disposable inputs."""
from __future__ import annotations

import os
import secrets
import shutil
import sqlite3
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from core.fsutil import sha256_file

from .envelope import DEFAULT_ITERATIONS, Passphrase, envelope_path_for, open_envelope, seal
from .errors import (
    BackupError,
    RunCancelledError,
    VerificationError,
    WrongPassphraseError,
)
from .logs import BackupLogger
from .package import pack_directory, unpack_archive
from .snapshot import MANIFEST_NAME, capture_snapshot, load_manifest, staging_directory, verify_manifest_files
from .sources import ComponentSource, ConfigSnapshotSource, FileTreeSource, SqliteDatabaseSource
from .types import VerificationReport

SELF_TEST_CONTEXT = "selftest"
STAGES = ("extract", "package", "seal", "open", "wrong-passphrase", "unpack")


def _build_fixtures(root: Path) -> List[ComponentSource]:
    """Create a small SQLite database, three upload files and a config file."""

    db_path = root / "live" / "app.sqlite"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("CREATE TABLE products (id INTEGER PRIMARY KEY, name TEXT NOT NULL, price_cents INTEGER)")
        conn.executemany(
            "INSERT INTO products(name, price_cents) VALUES(?, ?)",
            [(f"item-{index}", index * 100) for index in range(1, 51)],
        )
        conn.commit()
    finally:
        conn.close()

    uploads = root / "live" / "uploads"
    (uploads / "products").mkdir(parents=True, exist_ok=True)
    for index in range(3):
        (uploads / "products" / f"image-{index}.bin").write_bytes(os.urandom(4096))

    config_dir = root / "live" / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / ".env").write_text("NODE_ENV=production\nAPI_URL=http://localhost:3000\n", encoding="utf-8")

    return [
        SqliteDatabaseSource(db_path),
        FileTreeSource(uploads),
        ConfigSnapshotSource(config_dir, [".env"]),
    ]


def _fail(stage: str, message: str, logger: BackupLogger) -> VerificationError:
    logger.event(event="self_test_failed", phase="verify", ok=False, stage=stage, error=message)
    return VerificationError(stage, message)


def _capture(sources: Sequence[ComponentSource], staging: Path, logger: BackupLogger):
    try:
        return capture_snapshot(sources, staging, context=SELF_TEST_CONTEXT, logger=logger)
    except RunCancelledError:
        raise
    except BackupError as exc:
        raise _fail("extract", str(exc), logger) from exc


def _with_fixtures(
    sources: Sequence[ComponentSource],
    empty: Sequence[str],
    fixture_root: Path,
) -> Tuple[List[ComponentSource], List[str]]:
    """Swap each empty live source for the generated source of the same kind."""

    fixtures = {fixture.kind: fixture for fixture in _build_fixtures(fixture_root)}
    swapped: List[ComponentSource] = []
    replaced: List[str] = []
    for source in sources:
        fixture = fixtures.get(source.kind)
        if source.name in empty and fixture is not None:
            fixture.name = source.name
            swapped.append(fixture)
            replaced.append(source.name)
        else:
            swapped.append(source)
    return swapped, replaced


def run_self_test(
    work_root: Path,
    *,
    logger: BackupLogger,
    passphrase: Optional[Passphrase] = None,
    sources: Optional[Sequence[ComponentSource]] = None,
    kdf_iterations: int = DEFAULT_ITERATIONS,
) -> VerificationReport:
    """Run extract, package, seal, open and unpack, asserting each stage.

    ``sources`` defaults to synthetic fixtures; pass the configured sources
    for a live run (extraction only reads from them). A live source with
    nothing to capture is replaced by the generated source of its kind. A
    random passphrase is used unless one is given. Every artifact lives under
    a private directory in ``work_root`` that is removed on every exit path.
    """

    own_passphrase = passphrase is None
    secret = passphrase or Passphrase(secrets.token_urlsafe(24))
    passed: List[str] = []
    substituted: List[str] = []
    logger.event(event="self_test_start", phase="verify", ok=True, live=sources is not None)
    try:
        with staging_directory(work_root, logger=logger, prefix="selftest-") as scratch:
            active_sources = list(sources) if sources is not None else _build_fixtures(scratch / "fixtures")
            staging = scratch / "staging"
            staging.mkdir()
            out_dir = scratch / "out"

            # (a) every component produced output
            snapshot = _capture(active_sources, staging, logger)
            empty = [record.name for record in snapshot.components if record.empty]
            if empty and sources is not None:
                active_sources, substituted = _with_fixtures(active_sources, empty, scratch / "fixtures")
                if substituted:
                    logger.warning("self_test_fixture_substituted", components=substituted)
                    shutil.rmtree(staging)
                    staging.mkdir()
                    snapshot = _capture(active_sources, staging, logger)
                    empty = [record.name for record in snapshot.components if record.empty]
            if empty:
                raise _fail("extract", f"component(s) produced no output: {', '.join(empty)}", logger)
            passed.append("extract")

            # (b) non-empty archive
            try:
                archive = pack_directory(staging, out_dir, context=SELF_TEST_CONTEXT, logger=logger)
            except BackupError as exc:
                raise _fail("package", str(exc), logger) from exc
            archive_bytes = archive.stat().st_size
            if archive_bytes <= 0:
                raise _fail("package", "archive is empty", logger)
            archive_digest = sha256_file(archive)
            passed.append("package")

            # (c) envelope exists and plaintext is gone
            try:
                envelope = seal(archive, secret, iterations=kdf_iterations, logger=logger)
            except BackupError as exc:
                raise _fail("seal", str(exc), logger) from exc
            if envelope != envelope_path_for(archive) or not envelope.is_file():
                raise _fail("seal", "envelope file missing after seal", logger)
            if archive.exists():
                raise _fail("seal", "plaintext archive still present after seal", logger)
            envelope_bytes = envelope.stat().st_size
            passed.append("seal")

            # (d) byte-identical round trip
            restored = out_dir / "roundtrip.tar.gz"
            try:
                open_envelope(envelope, secret, output_path=restored, logger=logger)
            except BackupError as exc:
                raise _fail("open", str(exc), logger) from exc
            if sha256_file(restored) != archive_digest:
                raise _fail("open", "decrypted archive differs from the original", logger)
            passed.append("open")

            # (f) a different passphrase must be rejected without output
            wrong_target = out_dir / "wrong.tar.gz"
            with Passphrase(secrets.token_urlsafe(24)) as wrong:
                try:
                    open_envelope(envelope, wrong, output_path=wrong_target)
                except WrongPassphraseError:
                    pass
                except BackupError as exc:
                    raise _fail("wrong-passphrase", f"unexpected {type(exc).__name__}: {exc}", logger) from exc
                else:
                    raise _fail("wrong-passphrase", "a wrong passphrase was accepted", logger)
            if wrong_target.exists():
                raise _fail("wrong-passphrase", "output written for a wrong passphrase", logger)
            passed.append("wrong-passphrase")

            # (e) expected entries and checksums
            try:
                content = unpack_archive(restored, scratch / "unpacked")
                manifest = load_manifest(content / MANIFEST_NAME)
                verify_manifest_files(content, manifest)
            except BackupError as exc:
                raise _fail("unpack", str(exc), logger) from exc
            missing = [source.name for source in active_sources if not (content / source.name).is_dir()]
            if missing:
                raise _fail("unpack", f"missing component entries: {', '.join(missing)}", logger)
            passed.append("unpack")
    finally:
        if own_passphrase:
            secret.wipe()

    logger.event(event="self_test_passed", phase="verify", ok=True, stages=passed)
    return VerificationReport(
        passed=passed,
        archive_bytes=archive_bytes,
        envelope_bytes=envelope_bytes,
        components=list(snapshot.components),
        substituted=substituted,
    )


def cleanup_leftovers(work_root: Path) -> int:
    """Remove self-test scratch directories left by a killed process."""

    removed = 0
    if not work_root.is_dir():
        return 0
    for child in work_root.glob("selftest-*"):
        shutil.rmtree(child, ignore_errors=True)
        removed += 1
    return removed


__all__ = ["SELF_TEST_CONTEXT", "STAGES", "cleanup_leftovers", "run_self_test"]
