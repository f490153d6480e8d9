from pathlib import Path

import pytest

from backup.envelope import Passphrase
from backup.errors import CipherError, VerificationError
from backup.sources import FileTreeSource, SqliteDatabaseSource
from backup.verify import STAGES, cleanup_leftovers, run_self_test
from conftest import TEST_ITERATIONS, TEST_PASSPHRASE, FailingSource, tree_digest


def test_self_test_passes_every_stage(tmp_path, stub_logger):
    work_root = tmp_path / "selftest"

    report = run_self_test(work_root, logger=stub_logger, kdf_iterations=TEST_ITERATIONS)

    assert report.passed == list(STAGES)
    assert report.archive_bytes > 0
    assert report.envelope_bytes > report.archive_bytes
    assert [record.name for record in report.components] == ["database", "uploads", "config"]
    assert all(not record.empty for record in report.components)
    assert list(work_root.iterdir()) == []
    assert "self_test_passed" in stub_logger.names("event")


def test_live_self_test_only_reads_sources(tmp_path, live_env, stub_logger):
    before = tree_digest(live_env.root)
    secret = Passphrase(TEST_PASSPHRASE)

    report = run_self_test(
        tmp_path / "selftest",
        logger=stub_logger,
        passphrase=secret,
        sources=live_env.sources(),
        kdf_iterations=TEST_ITERATIONS,
    )

    assert report.passed == list(STAGES)
    assert tree_digest(live_env.root) == before
    assert secret


def test_live_self_test_generates_data_for_absent_sources(tmp_path, live_env, stub_logger):
    missing = tmp_path / "missing-uploads"
    sources = [SqliteDatabaseSource(live_env.db_path), FileTreeSource(missing)]
    work_root = tmp_path / "selftest"

    report = run_self_test(work_root, logger=stub_logger, sources=sources, kdf_iterations=TEST_ITERATIONS)

    assert report.passed == list(STAGES)
    assert report.substituted == ["uploads"]
    assert [record.name for record in report.components] == ["database", "uploads"]
    assert all(not record.empty for record in report.components)
    assert "self_test_fixture_substituted" in stub_logger.names("warning")
    assert not missing.exists()
    assert list(work_root.iterdir()) == []


def test_failing_source_fails_extract_stage(tmp_path, live_env, stub_logger):
    sources = [SqliteDatabaseSource(live_env.db_path), FailingSource("uploads")]
    work_root = tmp_path / "selftest"

    with pytest.raises(VerificationError) as excinfo:
        run_self_test(work_root, logger=stub_logger, sources=sources, kdf_iterations=TEST_ITERATIONS)

    assert excinfo.value.failed_stage == "extract"
    assert "uploads" in str(excinfo.value)
    assert list(work_root.iterdir()) == []


def test_failing_stage_is_named_and_scratch_removed(tmp_path, stub_logger, monkeypatch):
    def broken_seal(*args, **kwargs):
        raise CipherError("cipher backend unavailable")

    monkeypatch.setattr("backup.verify.seal", broken_seal)
    work_root = tmp_path / "selftest"

    with pytest.raises(VerificationError) as excinfo:
        run_self_test(work_root, logger=stub_logger, kdf_iterations=TEST_ITERATIONS)

    assert excinfo.value.failed_stage == "seal"
    assert list(work_root.iterdir()) == []
    assert "self_test_failed" in stub_logger.names("event")


def test_cleanup_leftovers(tmp_path: Path):
    work_root = tmp_path / "selftest"
    (work_root / "selftest-abc" / "staging").mkdir(parents=True)
    (work_root / "keep-me").mkdir()

    assert cleanup_leftovers(work_root) == 1
    assert [path.name for path in work_root.iterdir()] == ["keep-me"]
    assert cleanup_leftovers(tmp_path / "absent") == 0
