"""
Compression and Encryption Codecs

Reversible file transforms applied between dump and upload. Each encode or
decode writes a new file and removes its input, so a pipeline only ever
holds one intermediate artifact. On failure the partial output is removed
and the input is left untouched.
"""
from __future__ import annotations

import asyncio
import bz2
import gzip
import lzma
import os
import shutil
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from datavault_dr.backup.models import CompressionAlgorithm, EncryptionAlgorithm, EncryptionConfig
from datavault_dr.exceptions import CompressionFailed, EncryptionFailed
from datavault_dr.logging import get_logger

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024

MAGIC = b"DVDR"
FORMAT_VERSION = 1
SALT_SIZE = 16
GCM_NONCE_SIZE = 12
GCM_TAG_SIZE = 16
CBC_IV_SIZE = 16
KDF_ITERATIONS = 200_000

_ALGORITHM_IDS = {
    EncryptionAlgorithm.AES_256_GCM: 1,
    EncryptionAlgorithm.AES_256_CBC: 2,
}
_ALGORITHMS_BY_ID = {v: k for k, v in _ALGORITHM_IDS.items()}

_COMPRESSION_SUFFIXES = {
    CompressionAlgorithm.GZIP: ".gz",
    CompressionAlgorithm.BZIP2: ".bz2",
    CompressionAlgorithm.XZ: ".xz",
}
ENCRYPTED_SUFFIX = ".enc"


def _strip_suffix(path: Path, suffix: str) -> Path:
    if path.name.endswith(suffix):
        return path.with_name(path.name[: -len(suffix)])
    return path.with_name(path.name + ".out")


def _replace_input(source: Path, destination: Path) -> Path:
    source.unlink(missing_ok=True)
    return destination


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove partial artifact {path}: {e}")


class CompressionCodec:
    """gzip / bz2 / xz file compression."""

    @staticmethod
    def _open_compressed(path: Path, algorithm: CompressionAlgorithm, mode: str):
        if algorithm == CompressionAlgorithm.GZIP:
            return gzip.open(path, mode)
        if algorithm == CompressionAlgorithm.BZIP2:
            return bz2.open(path, mode)
        return lzma.open(path, mode)

    def _encode_sync(self, source: Path, algorithm: CompressionAlgorithm) -> Path:
        destination = source.with_name(source.name + _COMPRESSION_SUFFIXES[algorithm])
        try:
            with open(source, "rb") as f_in:
                if algorithm == CompressionAlgorithm.GZIP:
                    # Empty filename and mtime=0 keep the header identical across runs
                    with open(destination, "wb") as raw, \
                            gzip.GzipFile(filename="", fileobj=raw, mode="wb", mtime=0) as f_out:
                        shutil.copyfileobj(f_in, f_out, CHUNK_SIZE)
                else:
                    with self._open_compressed(destination, algorithm, "wb") as f_out:
                        shutil.copyfileobj(f_in, f_out, CHUNK_SIZE)
        except (OSError, EOFError, lzma.LZMAError) as e:
            _discard(destination)
            raise CompressionFailed(f"Compression ({algorithm.value}) of {source.name} failed: {e}") from e
        return _replace_input(source, destination)

    def _decode_sync(self, source: Path, algorithm: CompressionAlgorithm) -> Path:
        destination = _strip_suffix(source, _COMPRESSION_SUFFIXES[algorithm])
        try:
            with self._open_compressed(source, algorithm, "rb") as f_in, open(destination, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out, CHUNK_SIZE)
        except (OSError, EOFError, lzma.LZMAError) as e:
            _discard(destination)
            raise CompressionFailed(f"Decompression ({algorithm.value}) of {source.name} failed: {e}") from e
        return _replace_input(source, destination)

    async def encode(self, path: Path, algorithm: CompressionAlgorithm | str) -> Path:
        algorithm = CompressionAlgorithm(algorithm)
        return await asyncio.to_thread(self._encode_sync, Path(path), algorithm)

    async def decode(self, path: Path, algorithm: CompressionAlgorithm | str) -> Path:
        algorithm = CompressionAlgorithm(algorithm)
        return await asyncio.to_thread(self._decode_sync, Path(path), algorithm)


class EncryptionCodec:
    """
    AES-256 file encryption.

    Layout: MAGIC | version | algorithm id | salt | nonce/iv | ciphertext [| GCM tag].
    The key is derived per artifact with PBKDF2-HMAC-SHA256 from the
    passphrase, or from the contents of the configured key file.
    """

    def __init__(self, iterations: int = KDF_ITERATIONS):
        self.iterations = iterations

    @staticmethod
    def _key_material(config: EncryptionConfig) -> bytes:
        if config.key_file:
            try:
                material = Path(config.key_file).expanduser().read_bytes().strip()
            except OSError as e:
                raise EncryptionFailed(f"Cannot read key file {config.key_file}: {e}") from e
            if not material:
                raise EncryptionFailed(f"Key file {config.key_file} is empty")
            return material
        if config.passphrase:
            return config.passphrase.encode("utf-8")
        raise EncryptionFailed("No key material configured")

    def _derive_key(self, config: EncryptionConfig, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._key_material(config))

    def _encrypt_sync(self, source: Path, config: EncryptionConfig) -> Path:
        destination = source.with_name(source.name + ENCRYPTED_SUFFIX)
        salt = os.urandom(SALT_SIZE)
        key = self._derive_key(config, salt)
        algorithm = config.algorithm
        header = MAGIC + bytes([FORMAT_VERSION, _ALGORITHM_IDS[algorithm]]) + salt

        try:
            with open(source, "rb") as f_in, open(destination, "wb") as f_out:
                if algorithm == EncryptionAlgorithm.AES_256_GCM:
                    nonce = os.urandom(GCM_NONCE_SIZE)
                    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
                    f_out.write(header + nonce)
                    for chunk in iter(lambda: f_in.read(CHUNK_SIZE), b""):
                        f_out.write(encryptor.update(chunk))
                    f_out.write(encryptor.finalize())
                    f_out.write(encryptor.tag)
                else:
                    iv = os.urandom(CBC_IV_SIZE)
                    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
                    padder = padding.PKCS7(algorithms.AES.block_size).padder()
                    f_out.write(header + iv)
                    for chunk in iter(lambda: f_in.read(CHUNK_SIZE), b""):
                        f_out.write(encryptor.update(padder.update(chunk)))
                    f_out.write(encryptor.update(padder.finalize()))
                    f_out.write(encryptor.finalize())
        except OSError as e:
            _discard(destination)
            raise EncryptionFailed(f"Encryption of {source.name} failed: {e}") from e
        return _replace_input(source, destination)

    def _decrypt_sync(self, source: Path, config: EncryptionConfig) -> Path:
        destination = _strip_suffix(source, ENCRYPTED_SUFFIX)
        prefix_size = len(MAGIC) + 2 + SALT_SIZE

        try:
            total_size = source.stat().st_size
            with open(source, "rb") as f_in:
                prefix = f_in.read(prefix_size)
                if len(prefix) < prefix_size or not prefix.startswith(MAGIC):
                    raise EncryptionFailed(f"{source.name} is not an encrypted backup artifact")
                version, algorithm_id = prefix[len(MAGIC)], prefix[len(MAGIC) + 1]
                if version != FORMAT_VERSION or algorithm_id not in _ALGORITHMS_BY_ID:
                    raise EncryptionFailed(f"Unsupported artifact format in {source.name}")
                algorithm = _ALGORITHMS_BY_ID[algorithm_id]
                salt = prefix[len(MAGIC) + 2:]
                key = self._derive_key(config, salt)

                with open(destination, "wb") as f_out:
                    if algorithm == EncryptionAlgorithm.AES_256_GCM:
                        nonce = f_in.read(GCM_NONCE_SIZE)
                        remaining = total_size - prefix_size - GCM_NONCE_SIZE - GCM_TAG_SIZE
                        if remaining < 0:
                            raise EncryptionFailed(f"{source.name} is truncated")
                        f_in.seek(total_size - GCM_TAG_SIZE)
                        tag = f_in.read(GCM_TAG_SIZE)
                        f_in.seek(prefix_size + GCM_NONCE_SIZE)
                        decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
                        while remaining > 0:
                            chunk = f_in.read(min(CHUNK_SIZE, remaining))
                            if not chunk:
                                break
                            remaining -= len(chunk)
                            f_out.write(decryptor.update(chunk))
                        f_out.write(decryptor.finalize())
                    else:
                        iv = f_in.read(CBC_IV_SIZE)
                        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
                        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
                        for chunk in iter(lambda: f_in.read(CHUNK_SIZE), b""):
                            f_out.write(unpadder.update(decryptor.update(chunk)))
                        f_out.write(unpadder.update(decryptor.finalize()))
                        f_out.write(unpadder.finalize())
        except EncryptionFailed:
            _discard(destination)
            raise
        except InvalidTag as e:
            _discard(destination)
            raise EncryptionFailed(f"Decryption of {source.name} failed: authentication tag mismatch") from e
        except (OSError, ValueError) as e:
            _discard(destination)
            raise EncryptionFailed(f"Decryption of {source.name} failed: {e}") from e
        return _replace_input(source, destination)

    async def encode(self, path: Path, config: EncryptionConfig) -> Path:
        return await asyncio.to_thread(self._encrypt_sync, Path(path), config)

    async def decode(self, path: Path, config: EncryptionConfig) -> Path:
        return await asyncio.to_thread(self._decrypt_sync, Path(path), config)
