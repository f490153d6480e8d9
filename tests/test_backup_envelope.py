from __future__ import annotations

import os
from pathlib import Path

import pytest

from backup.envelope import ENVELOPE_SUFFIX, Passphrase, open_envelope, read_header, seal
from backup.errors import (
    CipherError,
    CorruptEnvelopeError,
    MissingPassphraseError,
    WrongPassphraseError,
)
from conftest import TEST_ITERATIONS, TEST_PASSPHRASE

HEADER_SIZE = 78


def _archive(tmp_path: Path, size: int = 70_000) -> Path:
    path = tmp_path / "shop_20240101_020000.tar.gz"
    path.write_bytes(os.urandom(size))
    return path


def test_seal_then_open_reproduces_archive(tmp_path: Path) -> None:
    archive = _archive(tmp_path)
    original = archive.read_bytes()

    envelope = seal(archive, Passphrase(TEST_PASSPHRASE), iterations=TEST_ITERATIONS)

    assert envelope.name == archive.name + ENVELOPE_SUFFIX
    assert envelope.exists()
    assert not archive.exists()
    assert envelope.stat().st_size > len(original)

    restored = open_envelope(envelope, Passphrase(TEST_PASSPHRASE))
    assert restored == archive
    assert restored.read_bytes() == original
    assert envelope.exists()


def test_header_is_self_describing(tmp_path: Path) -> None:
    envelope = seal(_archive(tmp_path, 100), Passphrase(TEST_PASSPHRASE), iterations=TEST_ITERATIONS)

    header = read_header(envelope)

    assert header["iterations"] == TEST_ITERATIONS
    assert header["version"] == 1
    assert len(header["salt"]) == 16
    assert len(header["iv"]) == 16


def test_each_envelope_uses_fresh_salt(tmp_path: Path) -> None:
    first_dir = tmp_path / "a"
    second_dir = tmp_path / "b"
    first_dir.mkdir()
    second_dir.mkdir()
    payload = os.urandom(512)
    (first_dir / "x.tar.gz").write_bytes(payload)
    (second_dir / "x.tar.gz").write_bytes(payload)

    one = seal(first_dir / "x.tar.gz", Passphrase(TEST_PASSPHRASE), iterations=TEST_ITERATIONS)
    two = seal(second_dir / "x.tar.gz", Passphrase(TEST_PASSPHRASE), iterations=TEST_ITERATIONS)

    assert read_header(one)["salt"] != read_header(two)["salt"]
    assert one.read_bytes() != two.read_bytes()


def test_wrong_passphrase_is_detected_without_output(tmp_path: Path) -> None:
    envelope = seal(_archive(tmp_path), Passphrase(TEST_PASSPHRASE), iterations=TEST_ITERATIONS)
    target = tmp_path / "out.tar.gz"

    with pytest.raises(WrongPassphraseError):
        open_envelope(envelope, Passphrase("not the passphrase"), output_path=target)

    assert not target.exists()
    assert not (tmp_path / "out.tar.gz.partial").exists()


def test_tampered_ciphertext_is_corrupt_not_wrong_passphrase(tmp_path: Path) -> None:
    envelope = seal(_archive(tmp_path), Passphrase(TEST_PASSPHRASE), iterations=TEST_ITERATIONS)
    data = bytearray(envelope.read_bytes())
    data[HEADER_SIZE + 100] ^= 0xFF
    envelope.write_bytes(bytes(data))
    target = tmp_path / "out.tar.gz"

    with pytest.raises(CorruptEnvelopeError):
        open_envelope(envelope, Passphrase(TEST_PASSPHRASE), output_path=target)

    assert not target.exists()


def test_truncated_and_foreign_files_are_corrupt(tmp_path: Path) -> None:
    envelope = seal(_archive(tmp_path), Passphrase(TEST_PASSPHRASE), iterations=TEST_ITERATIONS)
    truncated = tmp_path / "truncated.enc"
    truncated.write_bytes(envelope.read_bytes()[:40])
    foreign = tmp_path / "foreign.enc"
    foreign.write_bytes(b"PK\x03\x04" + os.urandom(200))
    short_body = tmp_path / "short.enc"
    short_body.write_bytes(envelope.read_bytes()[: HEADER_SIZE + 40])

    for path in (truncated, foreign, short_body):
        with pytest.raises(CorruptEnvelopeError):
            open_envelope(path, Passphrase(TEST_PASSPHRASE))


def test_missing_envelope_is_distinguishable(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        open_envelope(tmp_path / "nope.tar.gz.enc", Passphrase(TEST_PASSPHRASE))


def test_missing_passphrase_keeps_plaintext(tmp_path: Path) -> None:
    archive = _archive(tmp_path)

    with pytest.raises(MissingPassphraseError):
        seal(archive, None, iterations=TEST_ITERATIONS)
    with pytest.raises(MissingPassphraseError):
        seal(archive, Passphrase(""), iterations=TEST_ITERATIONS)

    assert archive.exists()
    assert not (tmp_path / (archive.name + ENVELOPE_SUFFIX)).exists()


def test_seal_failure_keeps_plaintext(tmp_path: Path) -> None:
    archive = _archive(tmp_path)
    original = archive.read_bytes()
    existing = tmp_path / (archive.name + ENVELOPE_SUFFIX)
    existing.write_bytes(b"older envelope")

    with pytest.raises(CipherError):
        seal(archive, Passphrase(TEST_PASSPHRASE), iterations=TEST_ITERATIONS)
    with pytest.raises(CipherError):
        seal(archive, Passphrase(TEST_PASSPHRASE), iterations=10)

    assert archive.read_bytes() == original
    assert existing.read_bytes() == b"older envelope"


def test_passphrase_is_masked_and_wipeable() -> None:
    secret = Passphrase("hunter2")
    view = secret.buffer

    assert "hunter2" not in repr(secret)
    secret.wipe()

    assert not secret
    assert all(byte == 0 for byte in view)


def test_passphrase_from_env() -> None:
    assert Passphrase.from_env({}) is None
    assert Passphrase.from_env({"BACKUP_PASSPHRASE": ""}) is None
    assert len(Passphrase.from_env({"BACKUP_PASSPHRASE": "abc"})) == 3
