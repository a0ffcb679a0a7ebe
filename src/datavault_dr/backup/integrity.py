"""
Checksum utilities used as the integrity anchor between backup and restore.
"""
from __future__ import annotations

import hashlib
from pathlib import Path

import aiofiles

CHUNK_SIZE = 1024 * 1024

SUPPORTED_ALGORITHMS = ("sha256", "sha512", "blake2b", "md5")


def _new_hash(algorithm: str):
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
    return hashlib.new(algorithm)


async def compute_checksum(path: str | Path, algorithm: str = "sha256") -> str:
    """Stream a file through the digest and return its hex value."""
    digest = _new_hash(algorithm)
    async with aiofiles.open(path, "rb") as f:
        while chunk := await f.read(CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


async def verify_checksum(path: str | Path, expected: str, algorithm: str = "sha256") -> bool:
    actual = await compute_checksum(path, algorithm)
    return actual.lower() == expected.lower()
