"""
Unit Tests for Artifact Codecs and Checksums
"""
import hashlib

import pytest

from datavault_dr.backup.codecs import CompressionCodec, EncryptionCodec
from datavault_dr.backup.integrity import compute_checksum, verify_checksum
from datavault_dr.backup.models import CompressionAlgorithm, EncryptionAlgorithm, EncryptionConfig
from datavault_dr.exceptions import CompressionFailed, EncryptionFailed

PAYLOAD = b"INSERT INTO customers VALUES(1,'Ada');\n" * 5000


@pytest.fixture
def artifact(temp_dir):
    path = temp_dir / "dump.sql"
    path.write_bytes(PAYLOAD)
    return path


class TestChecksums:

    @pytest.mark.asyncio
    async def test_matches_hashlib(self, artifact):
        assert await compute_checksum(artifact) == hashlib.sha256(PAYLOAD).hexdigest()
        assert await compute_checksum(artifact, "md5") == hashlib.md5(PAYLOAD).hexdigest()

    @pytest.mark.asyncio
    async def test_verify_is_case_insensitive(self, artifact):
        expected = hashlib.sha256(PAYLOAD).hexdigest().upper()
        assert await verify_checksum(artifact, expected)
        assert not await verify_checksum(artifact, "0" * 64)

    @pytest.mark.asyncio
    async def test_unknown_algorithm(self, artifact):
        with pytest.raises(ValueError):
            await compute_checksum(artifact, "crc32")


class TestCompressionCodec:
    """Test compression round trips and failure handling."""

    def setup_method(self):
        self.codec = CompressionCodec()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", list(CompressionAlgorithm))
    async def test_round_trip_replaces_input(self, artifact, algorithm):
        compressed = await self.codec.encode(artifact, algorithm)
        assert not artifact.exists()
        assert compressed.stat().st_size < len(PAYLOAD)

        restored = await self.codec.decode(compressed, algorithm)
        assert restored == artifact
        assert restored.read_bytes() == PAYLOAD
        assert not compressed.exists()

    @pytest.mark.asyncio
    async def test_gzip_output_is_deterministic(self, temp_dir):
        digests = []
        for name in ("a", "b"):
            path = temp_dir / name / "dump.sql"
            path.parent.mkdir()
            path.write_bytes(PAYLOAD)
            compressed = await self.codec.encode(path, CompressionAlgorithm.GZIP)
            digests.append(await compute_checksum(compressed))
        assert digests[0] == digests[1]

    @pytest.mark.asyncio
    async def test_corrupt_input_keeps_source(self, temp_dir):
        corrupt = temp_dir / "dump.sql.gz"
        corrupt.write_bytes(b"not gzip at all")

        with pytest.raises(CompressionFailed):
            await self.codec.decode(corrupt, CompressionAlgorithm.GZIP)
        assert corrupt.exists()
        assert not (temp_dir / "dump.sql").exists()


class TestEncryptionCodec:
    """Test AES-256 encryption of artifacts."""

    def setup_method(self):
        self.codec = EncryptionCodec(iterations=1_000)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", list(EncryptionAlgorithm))
    async def test_round_trip(self, artifact, algorithm):
        config = EncryptionConfig(algorithm=algorithm, passphrase="correct horse")

        encrypted = await self.codec.encode(artifact, config)
        assert encrypted.name == "dump.sql.enc"
        assert PAYLOAD[:64] not in encrypted.read_bytes()

        decrypted = await self.codec.decode(encrypted, config)
        assert decrypted.read_bytes() == PAYLOAD

    @pytest.mark.asyncio
    async def test_key_file(self, artifact, temp_dir):
        key_file = temp_dir / "backup.key"
        key_file.write_bytes(b"0123456789abcdef0123456789abcdef\n")
        config = EncryptionConfig(key_file=str(key_file))

        encrypted = await self.codec.encode(artifact, config)
        assert (await self.codec.decode(encrypted, config)).read_bytes() == PAYLOAD

    @pytest.mark.asyncio
    async def test_wrong_passphrase_fails_authentication(self, artifact):
        encrypted = await self.codec.encode(artifact, EncryptionConfig(passphrase="right"))

        with pytest.raises(EncryptionFailed):
            await self.codec.decode(encrypted, EncryptionConfig(passphrase="wrong"))
        assert encrypted.exists()

    @pytest.mark.asyncio
    async def test_rejects_foreign_file(self, artifact):
        with pytest.raises(EncryptionFailed):
            await self.codec.decode(artifact, EncryptionConfig(passphrase="p"))

    @pytest.mark.asyncio
    async def test_missing_key_file(self, artifact, temp_dir):
        config = EncryptionConfig(key_file=str(temp_dir / "missing.key"))
        with pytest.raises(EncryptionFailed):
            await self.codec.encode(artifact, config)
        assert artifact.exists()
