"""
Storage Backend Implementations

Uniform put/get/delete over heterogeneous backup destinations (local disk,
S3, Google Cloud Storage, Azure Blob Storage, FTP and rsync hosts) and the
adapter that fans artifacts out to every enabled destination of a strategy.
"""
from __future__ import annotations

import asyncio
import ftplib
import shutil
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import urlparse

from datavault_dr.backup.models import StorageConfig, StorageKind, StorageLocation
from datavault_dr.exceptions import AllDestinationsFailed, NoAccessibleBackupLocation, StorageError
from datavault_dr.logging import get_logger

logger = get_logger(__name__)


def _join_key(prefix: str, key: str) -> str:
    prefix = prefix.strip("/")
    return f"{prefix}/{key}" if prefix else key


class StorageDriver(ABC):
    """Abstract base class for one destination kind."""

    kind: StorageKind

    def __init__(self, name: str, config: dict[str, Any]):
        self.name = name
        self.config = config

    @abstractmethod
    async def put(self, path: Path, key: str) -> str:
        """Upload a local file under key and return the location URI."""
        pass

    @abstractmethod
    async def get(self, uri: str, destination: Path) -> Path:
        """Download the object at uri to destination."""
        pass

    @abstractmethod
    async def delete(self, uri: str) -> None:
        """Delete the object at uri. Deleting a missing object is not an error."""
        pass

    @abstractmethod
    async def exists(self, uri: str) -> bool:
        pass


class LocalStorageDriver(StorageDriver):
    """Local or mounted filesystem directory."""

    kind = StorageKind.LOCAL

    def __init__(self, name: str, config: dict[str, Any]):
        super().__init__(name, config)
        self.base_path = Path(config.get("path") or config.get("base_path") or "./backups")

    def _put_sync(self, path: Path, key: str) -> str:
        target = self.base_path / key
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, target)
        return str(target.resolve())

    def _get_sync(self, uri: str, destination: Path) -> Path:
        source = Path(uri)
        if not source.exists():
            raise StorageError(f"Local artifact not found: {source}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        return destination

    async def put(self, path: Path, key: str) -> str:
        try:
            return await asyncio.to_thread(self._put_sync, path, key)
        except OSError as e:
            raise StorageError(f"Local copy to {self.base_path} failed: {e}") from e

    async def get(self, uri: str, destination: Path) -> Path:
        try:
            return await asyncio.to_thread(self._get_sync, uri, destination)
        except OSError as e:
            raise StorageError(f"Local read of {uri} failed: {e}") from e

    async def delete(self, uri: str) -> None:
        try:
            await asyncio.to_thread(Path(uri).unlink, missing_ok=True)
        except OSError as e:
            raise StorageError(f"Local delete of {uri} failed: {e}") from e

    async def exists(self, uri: str) -> bool:
        return await asyncio.to_thread(Path(uri).exists)


class S3StorageDriver(StorageDriver):
    """Amazon S3 or any S3-compatible object store, via boto3."""

    kind = StorageKind.S3

    def __init__(self, name: str, config: dict[str, Any]):
        super().__init__(name, config)
        self.bucket = config.get("bucket")
        self.prefix = config.get("prefix", "")
        self.storage_class = config.get("storage_class", "STANDARD")
        self._client = None

    @property
    def client(self):
        if self._client is None:
            import boto3

            session_kwargs = {
                key: self.config[key]
                for key in ("aws_access_key_id", "aws_secret_access_key", "aws_session_token")
                if self.config.get(key)
            }
            self._client = boto3.client(
                "s3",
                region_name=self.config.get("region"),
                endpoint_url=self.config.get("endpoint_url"),
                **session_kwargs,
            )
        return self._client

    @staticmethod
    def _parse(uri: str) -> tuple[str, str]:
        parsed = urlparse(uri)
        if parsed.scheme != "s3" or not parsed.netloc:
            raise StorageError(f"Not an S3 location: {uri}")
        return parsed.netloc, parsed.path.lstrip("/")

    async def put(self, path: Path, key: str) -> str:
        if not self.bucket:
            raise StorageError(f"S3 destination '{self.name}' has no bucket configured")
        object_key = _join_key(self.prefix, key)
        try:
            await asyncio.to_thread(
                self.client.upload_file,
                str(path),
                self.bucket,
                object_key,
                ExtraArgs={"StorageClass": self.storage_class},
            )
        except Exception as e:
            raise StorageError(f"S3 upload to s3://{self.bucket}/{object_key} failed: {e}") from e
        return f"s3://{self.bucket}/{object_key}"

    async def get(self, uri: str, destination: Path) -> Path:
        bucket, key = self._parse(uri)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(self.client.download_file, bucket, key, str(destination))
        except Exception as e:
            raise StorageError(f"S3 download of {uri} failed: {e}") from e
        return destination

    async def delete(self, uri: str) -> None:
        bucket, key = self._parse(uri)
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=bucket, Key=key)
        except Exception as e:
            raise StorageError(f"S3 delete of {uri} failed: {e}") from e

    async def exists(self, uri: str) -> bool:
        from botocore.exceptions import ClientError

        bucket, key = self._parse(uri)
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=bucket, Key=key)
        except ClientError:
            return False
        return True


class GCSStorageDriver(StorageDriver):
    """Google Cloud Storage. Requires the ``gcs`` extra."""

    kind = StorageKind.GCS

    def __init__(self, name: str, config: dict[str, Any]):
        super().__init__(name, config)
        self.bucket = config.get("bucket")
        self.prefix = config.get("prefix", "")
        self._client = None

    @property
    def client(self):
        if self._client is None:
            try:
                from google.cloud import storage
            except ImportError as e:
                raise StorageError("google-cloud-storage is not installed (pip install datavault-dr[gcs])") from e
            credentials_file = self.config.get("credentials_file")
            if credentials_file:
                self._client = storage.Client.from_service_account_json(credentials_file)
            else:
                self._client = storage.Client(project=self.config.get("project"))
        return self._client

    @staticmethod
    def _parse(uri: str) -> tuple[str, str]:
        parsed = urlparse(uri)
        if parsed.scheme != "gs" or not parsed.netloc:
            raise StorageError(f"Not a GCS location: {uri}")
        return parsed.netloc, parsed.path.lstrip("/")

    def _blob(self, bucket: str, key: str):
        return self.client.bucket(bucket).blob(key)

    async def put(self, path: Path, key: str) -> str:
        if not self.bucket:
            raise StorageError(f"GCS destination '{self.name}' has no bucket configured")
        object_key = _join_key(self.prefix, key)
        try:
            await asyncio.to_thread(self._blob(self.bucket, object_key).upload_from_filename, str(path))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"GCS upload to gs://{self.bucket}/{object_key} failed: {e}") from e
        return f"gs://{self.bucket}/{object_key}"

    async def get(self, uri: str, destination: Path) -> Path:
        bucket, key = self._parse(uri)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(self._blob(bucket, key).download_to_filename, str(destination))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"GCS download of {uri} failed: {e}") from e
        return destination

    async def delete(self, uri: str) -> None:
        bucket, key = self._parse(uri)
        blob = self._blob(bucket, key)
        try:
            if await asyncio.to_thread(blob.exists):
                await asyncio.to_thread(blob.delete)
        except Exception as e:
            raise StorageError(f"GCS delete of {uri} failed: {e}") from e

    async def exists(self, uri: str) -> bool:
        bucket, key = self._parse(uri)
        return await asyncio.to_thread(self._blob(bucket, key).exists)


class AzureBlobStorageDriver(StorageDriver):
    """Azure Blob Storage. Requires the ``azure`` extra."""

    kind = StorageKind.AZURE

    def __init__(self, name: str, config: dict[str, Any]):
        super().__init__(name, config)
        self.container = config.get("container")
        self.prefix = config.get("prefix", "")
        self._service = None

    @property
    def service(self):
        if self._service is None:
            try:
                from azure.storage.blob import BlobServiceClient
            except ImportError as e:
                raise StorageError("azure-storage-blob is not installed (pip install datavault-dr[azure])") from e
            if self.config.get("connection_string"):
                self._service = BlobServiceClient.from_connection_string(self.config["connection_string"])
            else:
                account = self.config.get("account")
                self._service = BlobServiceClient(
                    account_url=f"https://{account}.blob.core.windows.net",
                    credential=self.config.get("account_key"),
                )
        return self._service

    @staticmethod
    def _parse(uri: str) -> tuple[str, str]:
        parsed = urlparse(uri)
        parts = parsed.path.lstrip("/").split("/", 1)
        if parsed.scheme != "https" or len(parts) != 2:
            raise StorageError(f"Not an Azure blob location: {uri}")
        return parts[0], parts[1]

    def _blob_client(self, container: str, blob: str):
        return self.service.get_blob_client(container=container, blob=blob)

    def _upload_sync(self, path: Path, blob: str) -> str:
        client = self._blob_client(self.container, blob)
        with open(path, "rb") as data:
            client.upload_blob(data, overwrite=True)
        return client.url

    def _download_sync(self, container: str, blob: str, destination: Path) -> None:
        stream = self._blob_client(container, blob).download_blob()
        with open(destination, "wb") as f:
            stream.readinto(f)

    async def put(self, path: Path, key: str) -> str:
        if not self.container:
            raise StorageError(f"Azure destination '{self.name}' has no container configured")
        blob = _join_key(self.prefix, key)
        try:
            return await asyncio.to_thread(self._upload_sync, path, blob)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Azure upload of {blob} to {self.container} failed: {e}") from e

    async def get(self, uri: str, destination: Path) -> Path:
        container, blob = self._parse(uri)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(self._download_sync, container, blob, destination)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Azure download of {uri} failed: {e}") from e
        return destination

    async def delete(self, uri: str) -> None:
        from azure.core.exceptions import ResourceNotFoundError

        container, blob = self._parse(uri)
        try:
            await asyncio.to_thread(self._blob_client(container, blob).delete_blob)
        except ResourceNotFoundError:
            return
        except Exception as e:
            raise StorageError(f"Azure delete of {uri} failed: {e}") from e

    async def exists(self, uri: str) -> bool:
        container, blob = self._parse(uri)
        return await asyncio.to_thread(self._blob_client(container, blob).exists)


class FTPStorageDriver(StorageDriver):
    """Plain or TLS FTP server."""

    kind = StorageKind.FTP

    def __init__(self, name: str, config: dict[str, Any]):
        super().__init__(name, config)
        self.host = config.get("host")
        self.port = int(config.get("port", 21))
        self.base_path = config.get("path", "/")

    def _connect(self) -> ftplib.FTP:
        ftp = ftplib.FTP_TLS() if self.config.get("tls") else ftplib.FTP()
        ftp.connect(self.host, self.port, timeout=self.config.get("timeout", 30))
        ftp.login(self.config.get("username", "anonymous"), self.config.get("password", ""))
        if isinstance(ftp, ftplib.FTP_TLS):
            ftp.prot_p()
        return ftp

    @staticmethod
    def _parse(uri: str) -> str:
        parsed = urlparse(uri)
        if parsed.scheme != "ftp":
            raise StorageError(f"Not an FTP location: {uri}")
        return parsed.path

    def _ensure_dirs(self, ftp: ftplib.FTP, remote_dir: PurePosixPath) -> None:
        current = PurePosixPath("/")
        for part in remote_dir.parts[1:]:
            current = current / part
            try:
                ftp.mkd(str(current))
            except ftplib.error_perm:
                pass  # already exists

    def _put_sync(self, path: Path, key: str) -> str:
        remote = PurePosixPath("/") / self.base_path.strip("/") / key
        with self._connect() as ftp, open(path, "rb") as f:
            self._ensure_dirs(ftp, remote.parent)
            ftp.storbinary(f"STOR {remote}", f)
        return f"ftp://{self.host}{remote}"

    def _get_sync(self, remote: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as ftp, open(destination, "wb") as f:
            ftp.retrbinary(f"RETR {remote}", f.write)
        return destination

    def _delete_sync(self, remote: str) -> None:
        with self._connect() as ftp:
            try:
                ftp.delete(remote)
            except ftplib.error_perm as e:
                if not str(e).startswith("550"):
                    raise

    def _exists_sync(self, remote: str) -> bool:
        with self._connect() as ftp:
            try:
                ftp.size(remote)
            except ftplib.error_perm:
                return False
        return True

    async def put(self, path: Path, key: str) -> str:
        if not self.host:
            raise StorageError(f"FTP destination '{self.name}' has no host configured")
        try:
            return await asyncio.to_thread(self._put_sync, path, key)
        except (OSError, ftplib.Error) as e:
            raise StorageError(f"FTP upload to {self.host} failed: {e}") from e

    async def get(self, uri: str, destination: Path) -> Path:
        try:
            return await asyncio.to_thread(self._get_sync, self._parse(uri), destination)
        except (OSError, ftplib.Error) as e:
            raise StorageError(f"FTP download of {uri} failed: {e}") from e

    async def delete(self, uri: str) -> None:
        try:
            await asyncio.to_thread(self._delete_sync, self._parse(uri))
        except (OSError, ftplib.Error) as e:
            raise StorageError(f"FTP delete of {uri} failed: {e}") from e

    async def exists(self, uri: str) -> bool:
        return await asyncio.to_thread(self._exists_sync, self._parse(uri))


class RsyncStorageDriver(StorageDriver):
    """Remote host reachable over rsync/ssh. Locations look like ``host:path/file``."""

    kind = StorageKind.RSYNC

    def __init__(self, name: str, config: dict[str, Any]):
        super().__init__(name, config)
        self.host = config.get("host")
        self.user = config.get("user")
        self.base_path = config.get("path", "backups")
        self.ssh_options: list[str] = list(config.get("ssh_options", []))

    @property
    def remote_host(self) -> str:
        return f"{self.user}@{self.host}" if self.user else str(self.host)

    async def _run(self, *args: str) -> tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        return process.returncode, stderr.decode(errors="replace").strip()

    def _ssh(self, *command: str) -> list[str]:
        return ["ssh", *self.ssh_options, self.remote_host, *command]

    @staticmethod
    def _parse(uri: str) -> tuple[str, str]:
        host, sep, path = uri.partition(":")
        if not sep or not path:
            raise StorageError(f"Not an rsync location: {uri}")
        return host, path

    async def put(self, path: Path, key: str) -> str:
        if not self.host:
            raise StorageError(f"rsync destination '{self.name}' has no host configured")
        remote_path = str(PurePosixPath(self.base_path) / key)
        rc, err = await self._run(*self._ssh("mkdir", "-p", str(PurePosixPath(remote_path).parent)))
        if rc != 0:
            raise StorageError(f"rsync mkdir on {self.host} failed: {err}")
        rc, err = await self._run("rsync", "-az", str(path), f"{self.remote_host}:{remote_path}")
        if rc != 0:
            raise StorageError(f"rsync upload to {self.host} failed: {err}")
        return f"{self.remote_host}:{remote_path}"

    async def get(self, uri: str, destination: Path) -> Path:
        self._parse(uri)
        destination.parent.mkdir(parents=True, exist_ok=True)
        rc, err = await self._run("rsync", "-az", uri, str(destination))
        if rc != 0:
            raise StorageError(f"rsync download of {uri} failed: {err}")
        return destination

    async def delete(self, uri: str) -> None:
        _, path = self._parse(uri)
        rc, err = await self._run(*self._ssh("rm", "-f", path))
        if rc != 0:
            raise StorageError(f"rsync delete of {uri} failed: {err}")

    async def exists(self, uri: str) -> bool:
        _, path = self._parse(uri)
        rc, _ = await self._run(*self._ssh("test", "-e", path))
        return rc == 0


DriverFactory = Callable[[str, dict[str, Any]], StorageDriver]

_DRIVERS: dict[StorageKind, DriverFactory] = {
    StorageKind.LOCAL: LocalStorageDriver,
    StorageKind.S3: S3StorageDriver,
    StorageKind.GCS: GCSStorageDriver,
    StorageKind.AZURE: AzureBlobStorageDriver,
    StorageKind.FTP: FTPStorageDriver,
    StorageKind.RSYNC: RsyncStorageDriver,
}


def create_storage_driver(kind: StorageKind | str, name: str, config: dict[str, Any]) -> StorageDriver:
    """
    Factory function to create storage driver instances.

    Args:
        kind: Destination kind (local, s3, gcs, azure, ftp, rsync)
        name: Destination name
        config: Backend-specific configuration

    Returns:
        Storage driver instance
    """
    try:
        factory = _DRIVERS[StorageKind(kind)]
    except (KeyError, ValueError) as e:
        raise ValueError(f"Unknown storage backend type: {kind}") from e
    return factory(name, config)


class StorageAdapter:
    """
    Destination-kind-agnostic fan-out/fan-in over storage drivers.

    Drivers are resolved per destination kind; factories registered with
    register_driver() take precedence over the built-in ones.
    """

    def __init__(self):
        self._factories: dict[StorageKind, DriverFactory] = {}

    def register_driver(self, kind: StorageKind | str, factory: DriverFactory) -> None:
        self._factories[StorageKind(kind)] = factory

    def driver_for(self, destination: StorageConfig) -> StorageDriver:
        factory = self._factories.get(destination.kind)
        if factory is not None:
            return factory(destination.name, destination.config)
        return create_storage_driver(destination.kind, destination.name, destination.config)

    @staticmethod
    def _destination_for(location: StorageLocation, destinations: list[StorageConfig] | None) -> StorageConfig:
        for destination in destinations or []:
            if destination.name == location.destination and destination.kind == location.kind:
                return destination
        # Destination removed from the strategy since the backup was taken
        return StorageConfig(name=location.destination, kind=location.kind)

    async def _put_one(self, artifact_path: Path, destination: StorageConfig, key: str) -> StorageLocation:
        driver = self.driver_for(destination)
        uri = await driver.put(artifact_path, key)
        logger.info(f"Stored {artifact_path.name} in destination '{destination.name}' at {uri}")
        return StorageLocation(destination=destination.name, kind=destination.kind, uri=uri)

    async def store(
        self,
        artifact_path: Path,
        destinations: list[StorageConfig],
        key: str | None = None,
    ) -> list[StorageLocation]:
        """
        Write the artifact to every enabled destination.

        All enabled destinations are attempted concurrently regardless of
        individual failures. Returns the locations written, in priority order.

        Raises:
            AllDestinationsFailed: If no destination accepted the artifact
        """
        enabled = sorted((d for d in destinations if d.enabled), key=lambda d: d.priority)
        if not enabled:
            raise AllDestinationsFailed({"<none>": "no enabled storage destinations"})

        key = key or artifact_path.name
        results = await asyncio.gather(
            *(self._put_one(artifact_path, destination, key) for destination in enabled),
            return_exceptions=True,
        )

        locations: list[StorageLocation] = []
        errors: dict[str, str] = {}
        for destination, result in zip(enabled, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                errors[destination.name] = str(result)
                logger.error(f"Storage destination '{destination.name}' failed: {result}")
            else:
                locations.append(result)

        if not locations:
            raise AllDestinationsFailed(errors)

        if errors:
            logger.warning(
                f"Artifact {artifact_path.name} stored in {len(locations)}/{len(enabled)} destinations"
            )
        return locations

    async def fetch(
        self,
        locations: list[StorageLocation],
        work_dir: Path,
        destinations: list[StorageConfig] | None = None,
        backup_id: str = "",
    ) -> Path:
        """
        Download the first readable copy into work_dir.

        Raises:
            NoAccessibleBackupLocation: If every location fails
        """
        errors: dict[str, str] = {}
        for location in locations:
            driver = self.driver_for(self._destination_for(location, destinations))
            target = Path(work_dir) / PurePosixPath(location.uri.rstrip("/")).name
            try:
                path = await driver.get(location.uri, target)
            except Exception as e:
                errors[location.uri] = str(e)
                logger.warning(f"Fetch from {location.uri} failed, trying next location: {e}")
                continue
            logger.info(f"Fetched backup {backup_id} from {location.uri}")
            return path

        raise NoAccessibleBackupLocation(backup_id, errors)

    async def delete(self, location: StorageLocation, destinations: list[StorageConfig] | None = None) -> None:
        driver = self.driver_for(self._destination_for(location, destinations))
        await driver.delete(location.uri)
        logger.info(f"Deleted {location.uri}")

    async def check_locations(
        self,
        locations: list[StorageLocation],
        destinations: list[StorageConfig] | None = None,
    ) -> dict[str, bool]:
        """Report which recorded locations still hold the artifact."""

        async def probe(location: StorageLocation) -> bool:
            driver = self.driver_for(self._destination_for(location, destinations))
            try:
                return await driver.exists(location.uri)
            except Exception as e:
                logger.warning(f"Could not check {location.uri}: {e}")
                return False

        results = await asyncio.gather(*(probe(loc) for loc in locations))
        return {loc.uri: ok for loc, ok in zip(locations, results)}
