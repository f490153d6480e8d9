"""Passphrase based encryption envelope for backup archives.

Envelope layout (all integers big endian)::

    magic       8 bytes   b"SFBKENV1"
    version     1 byte    format version
    algorithm   1 byte    1 = AES-256-CBC/PKCS7 + HMAC-SHA256, keys from PBKDF2-SHA256
    iterations  4 bytes   PBKDF2 iteration count
    salt       16 bytes   random per envelope
    iv         16 bytes   random per envelope
    check      32 bytes   passphrase check value derived with the keys
    ciphertext  n bytes   multiple of the AES block size
    tag        32 bytes   HMAC-SHA256 over header and ciphertext

The check value lets :func:`open_envelope` tell a wrong passphrase apart from
a damaged file before any plaintext is written.
"""
from __future__ import annotations

import hmac
import os
import secrets
import struct
from pathlib import Path
from typing import Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import (
    CipherError,
    CorruptEnvelopeError,
    MissingPassphraseError,
    RunCancelledError,
    WrongPassphraseError,
)
from .logs import BackupLogger

MAGIC = b"SFBKENV1"
FORMAT_VERSION = 1
ALGORITHM_ID = 1
ALGORITHM_NAME = "aes-256-cbc+hmac-sha256/pbkdf2-sha256"
DEFAULT_ITERATIONS = 600_000
MIN_ITERATIONS = 1_000
ENVELOPE_SUFFIX = ".enc"
PASSPHRASE_ENV = "BACKUP_PASSPHRASE"

_HEADER = struct.Struct(">8sBBI16s16s32s")
_TAG_SIZE = 32
_BLOCK_BYTES = algorithms.AES.block_size // 8
_CHUNK = 1024 * 1024


class Passphrase:
    """Mutable passphrase buffer that can be zeroed once a run is over."""

    __slots__ = ("_buffer",)

    def __init__(self, value: Union[str, bytes, bytearray]) -> None:
        if isinstance(value, str):
            value = value.encode("utf-8")
        self._buffer = bytearray(value)

    @classmethod
    def from_env(cls, environ: Mapping[str, str], key: str = PASSPHRASE_ENV) -> Optional["Passphrase"]:
        raw = environ.get(key)
        if not raw:
            return None
        return cls(raw)

    def __len__(self) -> int:
        return len(self._buffer)

    def __bool__(self) -> bool:
        return len(self._buffer) > 0

    def __repr__(self) -> str:
        return "Passphrase(***)"

    def __enter__(self) -> "Passphrase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    @property
    def buffer(self) -> bytearray:
        return self._buffer

    def wipe(self) -> None:
        for index in range(len(self._buffer)):
            self._buffer[index] = 0
        self._buffer = bytearray()


class _DerivedKeys:
    __slots__ = ("material",)

    def __init__(self, passphrase: Passphrase, salt: bytes, iterations: int) -> None:
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=96, salt=salt, iterations=iterations)
        self.material = bytearray(kdf.derive(passphrase.buffer))

    @property
    def cipher_key(self) -> bytes:
        return bytes(self.material[:32])

    @property
    def mac_key(self) -> bytes:
        return bytes(self.material[32:64])

    @property
    def check(self) -> bytes:
        return bytes(self.material[64:96])

    def wipe(self) -> None:
        for index in range(len(self.material)):
            self.material[index] = 0


def _require_passphrase(passphrase: Optional[Passphrase]) -> Passphrase:
    if passphrase is None or not passphrase:
        raise MissingPassphraseError(f"no passphrase configured (set {PASSPHRASE_ENV})")
    return passphrase


def envelope_path_for(archive_path: Path) -> Path:
    return archive_path.with_name(archive_path.name + ENVELOPE_SUFFIX)


def default_output_for(envelope_path: Path) -> Path:
    if envelope_path.name.endswith(ENVELOPE_SUFFIX):
        return envelope_path.with_name(envelope_path.name[: -len(ENVELOPE_SUFFIX)])
    return envelope_path.with_name(envelope_path.name + ".decrypted")


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        pass


def seal(
    archive_path: Path,
    passphrase: Optional[Passphrase],
    *,
    iterations: int = DEFAULT_ITERATIONS,
    logger: Optional[BackupLogger] = None,
) -> Path:
    """Encrypt ``archive_path`` into ``<archive>.enc`` and remove the plaintext.

    The plaintext is only deleted after the envelope has been fully written
    and synced; on any failure it is left untouched.
    """

    archive_path = Path(archive_path)
    secret = _require_passphrase(passphrase)
    if not archive_path.is_file():
        raise FileNotFoundError(f"archive not found: {archive_path}")
    if iterations < MIN_ITERATIONS:
        raise CipherError(f"iteration count {iterations} is below the minimum of {MIN_ITERATIONS}")
    envelope_path = envelope_path_for(archive_path)
    if envelope_path.exists():
        raise CipherError(f"envelope already exists: {envelope_path}")
    partial = envelope_path.with_name(envelope_path.name + ".partial")

    salt = secrets.token_bytes(16)
    iv = secrets.token_bytes(16)
    keys = _DerivedKeys(secret, salt, iterations)
    try:
        header = _HEADER.pack(MAGIC, FORMAT_VERSION, ALGORITHM_ID, iterations, salt, iv, keys.check)
        encryptor = Cipher(algorithms.AES(keys.cipher_key), modes.CBC(iv)).encryptor()
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        mac = crypto_hmac.HMAC(keys.mac_key, hashes.SHA256())
        with archive_path.open("rb") as src, open(partial, "xb") as dst:
            dst.write(header)
            mac.update(header)
            for chunk in iter(lambda: src.read(_CHUNK), b""):
                block = encryptor.update(padder.update(chunk))
                mac.update(block)
                dst.write(block)
            block = encryptor.update(padder.finalize()) + encryptor.finalize()
            mac.update(block)
            dst.write(block)
            dst.write(mac.finalize())
            dst.flush()
            os.fsync(dst.fileno())
        os.replace(partial, envelope_path)
    except RunCancelledError:
        _discard(partial)
        raise
    except Exception as exc:
        _discard(partial)
        if logger:
            logger.event(event="encrypt_failed", phase="encrypt", ok=False, path=str(archive_path), error=str(exc))
        raise CipherError(f"encryption of {archive_path.name} failed: {exc}") from exc
    finally:
        keys.wipe()

    archive_path.unlink()
    if logger:
        logger.event(
            event="archive_encrypted",
            phase="encrypt",
            ok=True,
            path=str(envelope_path),
            size=envelope_path.stat().st_size,
            algorithm=ALGORITHM_NAME,
        )
    return envelope_path


def read_header(envelope_path: Path) -> dict:
    """Return the envelope metadata without touching the ciphertext."""

    envelope_path = Path(envelope_path)
    with envelope_path.open("rb") as handle:
        raw = handle.read(_HEADER.size)
    if len(raw) < _HEADER.size:
        raise CorruptEnvelopeError(f"{envelope_path.name}: truncated header")
    magic, version, algorithm, iterations, salt, iv, check = _HEADER.unpack(raw)
    if magic != MAGIC:
        raise CorruptEnvelopeError(f"{envelope_path.name}: not a backup envelope")
    if version != FORMAT_VERSION or algorithm != ALGORITHM_ID:
        raise CorruptEnvelopeError(
            f"{envelope_path.name}: unsupported envelope version {version} / algorithm {algorithm}"
        )
    if iterations < MIN_ITERATIONS:
        raise CorruptEnvelopeError(f"{envelope_path.name}: implausible iteration count {iterations}")
    return {
        "version": version,
        "algorithm": ALGORITHM_NAME,
        "iterations": iterations,
        "salt": salt,
        "iv": iv,
        "check": check,
        "raw": raw,
    }


def _verify_tag(envelope_path: Path, header_raw: bytes, mac_key: bytes, payload_size: int) -> None:
    mac = crypto_hmac.HMAC(mac_key, hashes.SHA256())
    mac.update(header_raw)
    with envelope_path.open("rb") as handle:
        handle.seek(_HEADER.size)
        remaining = payload_size
        while remaining > 0:
            chunk = handle.read(min(_CHUNK, remaining))
            if not chunk:
                raise CorruptEnvelopeError(f"{envelope_path.name}: truncated ciphertext")
            mac.update(chunk)
            remaining -= len(chunk)
        tag = handle.read(_TAG_SIZE)
    try:
        mac.verify(tag)
    except InvalidSignature as exc:
        raise CorruptEnvelopeError(f"{envelope_path.name}: integrity check failed") from exc


def open_envelope(
    envelope_path: Path,
    passphrase: Optional[Passphrase],
    *,
    output_path: Optional[Path] = None,
    logger: Optional[BackupLogger] = None,
) -> Path:
    """Decrypt ``envelope_path`` and return the recovered archive path.

    Raises :class:`FileNotFoundError` when the envelope does not exist,
    :class:`WrongPassphraseError` when the passphrase does not match and
    :class:`CorruptEnvelopeError` when the file is damaged. No output file is
    left behind on any of these failures.
    """

    envelope_path = Path(envelope_path)
    secret = _require_passphrase(passphrase)
    if not envelope_path.is_file():
        raise FileNotFoundError(f"envelope not found: {envelope_path}")
    header = read_header(envelope_path)
    payload_size = envelope_path.stat().st_size - _HEADER.size - _TAG_SIZE
    if payload_size <= 0 or payload_size % _BLOCK_BYTES:
        raise CorruptEnvelopeError(f"{envelope_path.name}: ciphertext length {payload_size} is invalid")

    output = Path(output_path) if output_path else default_output_for(envelope_path)
    partial = output.with_name(output.name + ".partial")
    keys = _DerivedKeys(secret, header["salt"], header["iterations"])
    try:
        if not hmac.compare_digest(keys.check, header["check"]):
            if logger:
                logger.event(event="decrypt_failed", phase="decrypt", ok=False, path=str(envelope_path), reason="passphrase")
            raise WrongPassphraseError(f"{envelope_path.name}: wrong passphrase")
        _verify_tag(envelope_path, header["raw"], keys.mac_key, payload_size)

        decryptor = Cipher(algorithms.AES(keys.cipher_key), modes.CBC(header["iv"])).decryptor()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        output.parent.mkdir(parents=True, exist_ok=True)
        try:
            with envelope_path.open("rb") as src, open(partial, "wb") as dst:
                src.seek(_HEADER.size)
                remaining = payload_size
                while remaining > 0:
                    chunk = src.read(min(_CHUNK, remaining))
                    remaining -= len(chunk)
                    dst.write(unpadder.update(decryptor.update(chunk)))
                dst.write(unpadder.update(decryptor.finalize()) + unpadder.finalize())
                dst.flush()
                os.fsync(dst.fileno())
        except ValueError as exc:
            _discard(partial)
            raise CorruptEnvelopeError(f"{envelope_path.name}: invalid padding") from exc
        except BaseException:
            _discard(partial)
            raise
        os.replace(partial, output)
    finally:
        keys.wipe()

    if logger:
        logger.event(event="archive_decrypted", phase="decrypt", ok=True, path=str(output), size=output.stat().st_size)
    return output


__all__ = [
    "ALGORITHM_NAME",
    "DEFAULT_ITERATIONS",
    "ENVELOPE_SUFFIX",
    "PASSPHRASE_ENV",
    "Passphrase",
    "default_output_for",
    "envelope_path_for",
    "open_envelope",
    "read_header",
    "seal",
]
