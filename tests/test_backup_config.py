from pathlib import Path

import pytest

from backup.config import config_from_settings, load_config
from backup.errors import ConfigurationError
from backup.sources import ConfigSnapshotSource, FileTreeSource, MongoDumpSource, SqliteDatabaseSource, default_sources
from core.settings import merge_defaults


def test_paths_resolve_against_the_working_dir(tmp_path: Path):
    settings = merge_defaults(
        {
            "backup": {"context": "Shop EU", "backup_dir": "archives"},
            "sources": {"database_url": "sqlite:///data/app.sqlite"},
        }
    )

    config = config_from_settings(settings, tmp_path)

    assert config.context == "Shop-EU"
    assert config.backups_dir == tmp_path / "archives" / "Shop-EU"
    assert config.uploads_dir == tmp_path / "storage" / "uploads"
    assert config.state_dir == tmp_path / "storage" / "state"
    assert config.encrypt is True
    assert config.passphrase is None


def test_weak_iteration_counts_are_rejected(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        config_from_settings(merge_defaults({"backup": {"kdf_iterations": 10}}), tmp_path)
    with pytest.raises(ConfigurationError):
        config_from_settings(merge_defaults({"backup": {"kdf_iterations": "many"}}), tmp_path)


def test_flags_written_as_text_are_parsed(tmp_path: Path):
    settings = merge_defaults({"backup": {"encrypt": "false", "rotate_after_backup": "0"}})

    config = config_from_settings(settings, tmp_path)

    assert config.encrypt is False
    assert config.rotate_after_backup is False

    enabled = config_from_settings(merge_defaults({"backup": {"encrypt": "Yes", "rotate_after_backup": True}}), tmp_path)
    assert enabled.encrypt is True
    assert enabled.rotate_after_backup is True


def test_for_context_switches_archive_directory(tmp_path: Path):
    config = config_from_settings(merge_defaults({"backup": {"context": "shop"}}), tmp_path)

    staging = config.for_context("staging")

    assert staging.context == "staging"
    assert staging.backups_dir == tmp_path / "storage" / "backups" / "staging"
    assert config.backups_dir == tmp_path / "storage" / "backups" / "shop"


def test_load_config_reads_passphrase_from_dotenv(tmp_path: Path):
    (tmp_path / ".env").write_text("BACKUP_PASSPHRASE=from-dotenv\nBACKUP_CONTEXT=shop\n", encoding="utf-8")

    config = load_config(tmp_path, environ={"DATABASE_URL": "mongodb://db:27017/shop"})

    assert config.context == "shop"
    assert bytes(config.passphrase.buffer) == b"from-dotenv"
    assert "from-dotenv" not in repr(config)


def test_default_sources_follow_the_database_scheme(tmp_path: Path):
    sqlite = config_from_settings(merge_defaults({"sources": {"database_url": "sqlite:///data/app.sqlite"}}), tmp_path)
    mongo = config_from_settings(merge_defaults({"sources": {"database_url": "mongodb://db:27017/shop"}}), tmp_path)

    database, uploads, configs = default_sources(sqlite)
    assert isinstance(database, SqliteDatabaseSource)
    assert database.db_path == tmp_path / "data" / "app.sqlite"
    assert isinstance(uploads, FileTreeSource)
    assert isinstance(configs, ConfigSnapshotSource)
    assert configs.files == [".env", "docker-compose.yml"]
    assert isinstance(default_sources(mongo)[0], MongoDumpSource)


def test_unconfigured_or_unknown_database_is_an_error(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        default_sources(config_from_settings(merge_defaults({}), tmp_path))
    with pytest.raises(ConfigurationError):
        default_sources(config_from_settings(merge_defaults({"sources": {"database_url": "postgres://db/shop"}}), tmp_path))
