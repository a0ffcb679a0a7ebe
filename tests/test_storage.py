"""
Unit Tests for the Storage Adapter
Tests redundant fan-out, ordered fetch fallback and deletion.
"""
from pathlib import Path

import pytest

from conftest import local_destination
from datavault_dr.backup.models import StorageKind, StorageLocation
from datavault_dr.backup.storage_backends import (
    AzureBlobStorageDriver,
    LocalStorageDriver,
    S3StorageDriver,
    StorageAdapter,
    create_storage_driver,
)
from datavault_dr.exceptions import AllDestinationsFailed, NoAccessibleBackupLocation


@pytest.fixture
def artifact(temp_dir) -> Path:
    path = temp_dir / "work" / "job.sql.gz"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"artifact-bytes")
    return path


class TestStore:
    """Test fan-out to every enabled destination."""

    @pytest.mark.asyncio
    async def test_all_destinations_written_in_priority_order(self, storage, artifact, temp_dir):
        destinations = [
            local_destination(temp_dir, "offsite", priority=2),
            local_destination(temp_dir, "onsite", priority=1),
        ]

        locations = await storage.store(artifact, destinations, key="nightly/job.sql.gz")

        assert [loc.destination for loc in locations] == ["onsite", "offsite"]
        for loc in locations:
            assert Path(loc.uri).read_bytes() == b"artifact-bytes"

    @pytest.mark.asyncio
    async def test_partial_failure_still_succeeds(self, storage, artifact, temp_dir):
        destinations = [
            local_destination(temp_dir, "d1", priority=1),
            local_destination(temp_dir, "d2", priority=2, fail=True),
            local_destination(temp_dir, "d3", priority=3),
        ]

        locations = await storage.store(artifact, destinations)

        assert [loc.destination for loc in locations] == ["d1", "d3"]

    @pytest.mark.asyncio
    async def test_every_destination_failing_raises(self, storage, artifact, temp_dir):
        destinations = [
            local_destination(temp_dir, "d1", fail=True),
            local_destination(temp_dir, "d2", priority=2, fail=True),
        ]

        with pytest.raises(AllDestinationsFailed) as exc_info:
            await storage.store(artifact, destinations)
        assert set(exc_info.value.details["errors"]) == {"d1", "d2"}

    @pytest.mark.asyncio
    async def test_disabled_destinations_skipped(self, storage, artifact, temp_dir):
        disabled = local_destination(temp_dir, "off")
        disabled.enabled = False

        with pytest.raises(AllDestinationsFailed):
            await storage.store(artifact, [disabled])
        assert not (temp_dir / "off").exists()


class TestFetchAndDelete:
    """Test ordered fetch fallback and idempotent deletes."""

    @pytest.mark.asyncio
    async def test_fetch_falls_back_to_next_location(self, storage, artifact, temp_dir):
        destinations = [local_destination(temp_dir, "d1"), local_destination(temp_dir, "d2", priority=2)]
        locations = await storage.store(artifact, destinations)
        Path(locations[0].uri).unlink()

        fetched = await storage.fetch(locations, temp_dir / "restore", destinations, backup_id="job")

        assert fetched.read_bytes() == b"artifact-bytes"

    @pytest.mark.asyncio
    async def test_fetch_with_no_readable_copy(self, storage, temp_dir):
        locations = [StorageLocation("d1", StorageKind.LOCAL, str(temp_dir / "gone.gz"))]

        with pytest.raises(NoAccessibleBackupLocation) as exc_info:
            await storage.fetch(locations, temp_dir / "restore", backup_id="job-1")
        assert exc_info.value.details["backup_id"] == "job-1"

    @pytest.mark.asyncio
    async def test_delete_missing_object_is_not_an_error(self, storage, temp_dir):
        await storage.delete(StorageLocation("d1", StorageKind.LOCAL, str(temp_dir / "never-written")))

    @pytest.mark.asyncio
    async def test_check_locations(self, storage, artifact, temp_dir):
        locations = await storage.store(artifact, [local_destination(temp_dir, "d1")])
        missing = StorageLocation("d2", StorageKind.LOCAL, str(temp_dir / "missing"))

        result = await storage.check_locations([*locations, missing])

        assert result == {locations[0].uri: True, missing.uri: False}


class TestDriverFactory:

    def test_builtin_drivers(self):
        assert isinstance(create_storage_driver("local", "l", {"path": "/tmp/x"}), LocalStorageDriver)
        assert isinstance(create_storage_driver(StorageKind.S3, "s", {"bucket": "b"}), S3StorageDriver)
        assert isinstance(
            create_storage_driver("azure", "a", {"container": "c", "connection_string": "x"}),
            AzureBlobStorageDriver,
        )

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            create_storage_driver("tape", "t", {})

    def test_registered_factory_takes_precedence(self):
        adapter = StorageAdapter()

        class Custom(LocalStorageDriver):
            pass

        adapter.register_driver("local", Custom)
        assert isinstance(adapter.driver_for(local_destination(Path("/tmp"), "x")), Custom)

    @pytest.mark.asyncio
    async def test_s3_put_uses_prefix_and_storage_class(self, artifact):
        class FakeS3Client:
            def __init__(self):
                self.uploads = []

            def upload_file(self, filename, bucket, key, ExtraArgs=None):
                self.uploads.append((bucket, key, ExtraArgs))

        driver = S3StorageDriver("s3", {"bucket": "dr-backups", "prefix": "prod", "storage_class": "GLACIER"})
        driver._client = FakeS3Client()

        uri = await driver.put(artifact, "nightly/a.gz")

        assert uri == "s3://dr-backups/prod/nightly/a.gz"
        assert driver._client.uploads == [("dr-backups", "prod/nightly/a.gz", {"StorageClass": "GLACIER"})]
        assert driver._parse(uri) == ("dr-backups", "prod/nightly/a.gz")
