from __future__ import annotations

from pathlib import Path

import pytest

from backup.errors import BackupError, SourceExtractionError
from backup.snapshot import (
    MANIFEST_NAME,
    capture_snapshot,
    load_manifest,
    staging_directory,
    verify_manifest_files,
)
from backup.sources import SqliteDatabaseSource
from backup.types import ComponentKind
from conftest import FailingSource, RecordingSource


def test_capture_live_sources(tmp_path: Path, live_env, stub_logger) -> None:
    with staging_directory(tmp_path / "staging", logger=stub_logger) as staging:
        snapshot = capture_snapshot(live_env.sources(), staging, context="shop", logger=stub_logger)

        assert [record.name for record in snapshot.components] == ["database", "uploads", "config"]
        assert (staging / "database" / "database.sqlite").is_file()
        assert (staging / "uploads" / "products" / "photo-2.jpg").stat().st_size == 4096
        assert (staging / "config" / ".env").is_file()
        assert not list(staging.glob("*.partial"))

        manifest = load_manifest(staging / MANIFEST_NAME)
        assert manifest["context"] == "shop"
        assert verify_manifest_files(staging, manifest) == len(snapshot.artifacts)

    assert not staging.exists()
    assert "component_extracted" in stub_logger.names("event")


def test_missing_source_is_an_empty_component(tmp_path: Path, stub_logger) -> None:
    source = SqliteDatabaseSource(tmp_path / "absent.sqlite")

    with staging_directory(tmp_path / "staging", logger=stub_logger) as staging:
        snapshot = capture_snapshot([source], staging, context="shop", logger=stub_logger)

    record = snapshot.components[0]
    assert record.empty
    assert record.file_count == 0
    assert snapshot.manifest.components[0]["empty"] is True


def test_first_failure_stops_the_run_and_staging_is_removed(tmp_path: Path, stub_logger) -> None:
    journal: list = []
    first = RecordingSource("database", ComponentKind.DATABASE, journal)
    third = RecordingSource("config", ComponentKind.CONFIG, journal)
    staging_root = tmp_path / "staging"

    with pytest.raises(SourceExtractionError) as excinfo:
        with staging_directory(staging_root, logger=stub_logger) as staging:
            capture_snapshot([first, FailingSource("uploads"), third], staging, context="shop", logger=stub_logger)

    assert excinfo.value.component == "uploads"
    assert "disk unplugged" in str(excinfo.value)
    assert first.extracted
    assert not third.extracted
    assert list(staging_root.iterdir()) == []
    assert "component_failed" in stub_logger.names("event")


def test_component_names_must_be_unique(tmp_path: Path, stub_logger) -> None:
    journal: list = []
    sources = [
        RecordingSource("data", ComponentKind.DATABASE, journal),
        RecordingSource("data", ComponentKind.FILE_TREE, journal),
    ]

    with staging_directory(tmp_path / "staging", logger=stub_logger) as staging:
        with pytest.raises(BackupError):
            capture_snapshot(sources, staging, context="shop", logger=stub_logger)

    assert not any(source.extracted for source in sources)


def test_manifest_detects_modified_files(tmp_path: Path, live_env, stub_logger) -> None:
    with staging_directory(tmp_path / "staging", logger=stub_logger) as staging:
        capture_snapshot(live_env.sources(), staging, context="shop", logger=stub_logger)
        manifest = load_manifest(staging / MANIFEST_NAME)
        target = staging / "uploads" / "products" / "photo-0.jpg"
        target.write_bytes(b"x" * target.stat().st_size)

        with pytest.raises(BackupError):
            verify_manifest_files(staging, manifest)


def test_missing_manifest_is_reported(tmp_path: Path) -> None:
    with pytest.raises(BackupError):
        load_manifest(tmp_path / MANIFEST_NAME)
