"""
Dump/Load Executors

Database-kind-specific producers and consumers of raw backup artifacts.
The backup pipeline treats them as opaque: dump() returns a file, load()
applies one.
"""
from __future__ import annotations

import asyncio
import fnmatch
import os
import sqlite3
import tarfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from datavault_dr.exceptions import DumpFailed, LoadFailed
from datavault_dr.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DumpOptions:
    """Per-job dump parameters."""
    work_dir: Path
    job_id: str
    kind: str = "full"
    exclude_patterns: list[str] = field(default_factory=list)


@dataclass
class LoadOptions:
    """Per-restore load parameters."""
    work_dir: Path
    target_location: str | None = None
    tables: list[str] | None = None
    point_in_time: datetime | None = None


class DumpLoadExecutor(ABC):
    """Produces and applies raw backup artifacts for one database kind."""

    @abstractmethod
    async def dump(self, connection_info: dict[str, Any], options: DumpOptions) -> Path:
        pass

    @abstractmethod
    async def load(self, connection_info: dict[str, Any], artifact_path: Path, options: LoadOptions) -> None:
        pass


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class SQLiteDumpExecutor(DumpLoadExecutor):
    """
    Logical SQL dump of a SQLite database file.

    The dump is the iterdump() statement stream, which is stable for an
    unchanged database. Tables matching exclude_patterns are skipped.
    """

    def _dump_sync(self, db_path: Path, output: Path, exclude_patterns: list[str]) -> Path:
        if not db_path.exists():
            raise DumpFailed(f"SQLite database not found: {db_path}")

        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        try:
            excluded = {
                name for (name,) in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
                if any(fnmatch.fnmatch(name, pattern) for pattern in exclude_patterns)
            }
            with open(output, "w", encoding="utf-8") as f:
                for statement in conn.iterdump():
                    if excluded and self._statement_table(statement) in excluded:
                        continue
                    f.write(statement)
                    f.write("\n")
        except sqlite3.Error as e:
            output.unlink(missing_ok=True)
            raise DumpFailed(f"SQLite dump of {db_path} failed: {e}") from e
        finally:
            conn.close()
        return output

    @staticmethod
    def _statement_table(statement: str) -> str | None:
        for prefix in ('INSERT INTO "', 'CREATE TABLE "', "CREATE TABLE "):
            if statement.startswith(prefix):
                rest = statement[len(prefix):]
                return rest.split('"', 1)[0] if prefix.endswith('"') else rest.split("(", 1)[0].strip()
        return None

    def _load_sync(self, script: str, target: Path, tables: list[str] | None, staging: Path) -> None:
        staging.unlink(missing_ok=True)
        try:
            conn = sqlite3.connect(staging)
            try:
                conn.executescript(script)
            finally:
                conn.close()

            target.parent.mkdir(parents=True, exist_ok=True)
            if not tables:
                os.replace(staging, target)
                return

            conn = sqlite3.connect(target)
            try:
                conn.execute("ATTACH DATABASE ? AS restored", (str(staging),))
                for table in tables:
                    row = conn.execute(
                        "SELECT sql FROM restored.sqlite_master WHERE type='table' AND name=?",
                        (table,),
                    ).fetchone()
                    if row is None:
                        raise LoadFailed(f"Table '{table}' is not present in the backup")
                    conn.execute(f"DROP TABLE IF EXISTS main.{_quote(table)}")
                    conn.execute(row[0])
                    conn.execute(f"INSERT INTO main.{_quote(table)} SELECT * FROM restored.{_quote(table)}")
                conn.commit()
                conn.execute("DETACH DATABASE restored")
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LoadFailed(f"SQLite restore into {target} failed: {e}") from e
        finally:
            staging.unlink(missing_ok=True)

    async def dump(self, connection_info: dict[str, Any], options: DumpOptions) -> Path:
        db_path = Path(connection_info["path"])
        output = Path(options.work_dir) / f"{options.job_id}.sql"
        return await asyncio.to_thread(self._dump_sync, db_path, output, list(options.exclude_patterns))

    async def load(self, connection_info: dict[str, Any], artifact_path: Path, options: LoadOptions) -> None:
        target = Path(options.target_location or connection_info["path"])
        if options.point_in_time:
            logger.warning("SQLite restores are whole-snapshot; point_in_time is ignored")
        script = await asyncio.to_thread(Path(artifact_path).read_text, encoding="utf-8")
        staging = Path(options.work_dir) / "restore_staging.db"
        await asyncio.to_thread(self._load_sync, script, target, options.tables, staging)
        logger.info(f"Restored SQLite database {target}")


class PostgresDumpExecutor(DumpLoadExecutor):
    """pg_dump / psql based logical backups."""

    def __init__(self, pg_dump: str = "pg_dump", psql: str = "psql"):
        self.pg_dump = pg_dump
        self.psql = psql

    @staticmethod
    def _url(connection_info: dict[str, Any], override: str | None = None) -> str:
        if override:
            return override
        if connection_info.get("url"):
            return connection_info["url"]
        user = connection_info.get("user", "postgres")
        password = connection_info.get("password")
        auth = f"{user}:{password}" if password else user
        host = connection_info.get("host", "localhost")
        port = connection_info.get("port", 5432)
        return f"postgresql://{auth}@{host}:{port}/{connection_info['database']}"

    @staticmethod
    async def _run(args: list[str]) -> tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        return process.returncode, stderr.decode(errors="replace").strip()

    async def dump(self, connection_info: dict[str, Any], options: DumpOptions) -> Path:
        output = Path(options.work_dir) / f"{options.job_id}.sql"
        args = [self.pg_dump, "--no-owner", "--no-privileges", "--format=plain", "-f", str(output)]
        args += [f"--exclude-table={pattern}" for pattern in options.exclude_patterns]
        args.append(self._url(connection_info))

        try:
            rc, err = await self._run(args)
        except OSError as e:
            raise DumpFailed(f"Cannot run {self.pg_dump}: {e}") from e
        if rc != 0:
            output.unlink(missing_ok=True)
            raise DumpFailed(f"pg_dump exited with {rc}: {err}")
        return output

    async def load(self, connection_info: dict[str, Any], artifact_path: Path, options: LoadOptions) -> None:
        if options.tables:
            logger.warning("Table-subset restore is not supported for plain PostgreSQL dumps; restoring all tables")
        if options.point_in_time:
            logger.warning("Point-in-time recovery needs WAL archiving; restoring the snapshot as-is")

        url = self._url(connection_info, options.target_location)
        args = [self.psql, "-v", "ON_ERROR_STOP=1", "-q", "-f", str(artifact_path), url]
        try:
            rc, err = await self._run(args)
        except OSError as e:
            raise LoadFailed(f"Cannot run {self.psql}: {e}") from e
        if rc != 0:
            raise LoadFailed(f"psql exited with {rc}: {err}")


class DirectoryDumpExecutor(DumpLoadExecutor):
    """File-level backup of a data directory as a reproducible tar archive."""

    @staticmethod
    def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.mtime = 0
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        return info

    def _dump_sync(self, source: Path, output: Path, exclude_patterns: list[str]) -> Path:
        if not source.is_dir():
            raise DumpFailed(f"Data directory not found: {source}")
        try:
            with tarfile.open(output, "w") as tar:
                for path in sorted(source.rglob("*")):
                    relative = path.relative_to(source)
                    if any(fnmatch.fnmatch(path.name, p) or fnmatch.fnmatch(str(relative), p) for p in exclude_patterns):
                        continue
                    if path.is_file():
                        tar.add(path, arcname=str(relative), recursive=False, filter=self._normalize)
        except OSError as e:
            output.unlink(missing_ok=True)
            raise DumpFailed(f"Archiving {source} failed: {e}") from e
        return output

    def _load_sync(self, artifact: Path, target: Path) -> None:
        target.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(artifact, "r") as tar:
                tar.extractall(target, filter="data")
        except (OSError, tarfile.TarError) as e:
            raise LoadFailed(f"Extracting into {target} failed: {e}") from e

    async def dump(self, connection_info: dict[str, Any], options: DumpOptions) -> Path:
        output = Path(options.work_dir) / f"{options.job_id}.tar"
        return await asyncio.to_thread(
            self._dump_sync, Path(connection_info["path"]), output, list(options.exclude_patterns)
        )

    async def load(self, connection_info: dict[str, Any], artifact_path: Path, options: LoadOptions) -> None:
        target = Path(options.target_location or connection_info["path"])
        if options.tables:
            logger.warning("Directory backups have no tables; tables filter ignored")
        await asyncio.to_thread(self._load_sync, Path(artifact_path), target)


_EXECUTORS: dict[str, type[DumpLoadExecutor]] = {
    "sqlite": SQLiteDumpExecutor,
    "postgresql": PostgresDumpExecutor,
    "postgres": PostgresDumpExecutor,
    "directory": DirectoryDumpExecutor,
}


def create_executor(database_kind: str) -> DumpLoadExecutor:
    try:
        return _EXECUTORS[database_kind.lower()]()
    except KeyError as e:
        raise ValueError(f"No dump executor for database kind '{database_kind}'") from e


def resolve_executor(executors: dict[str, DumpLoadExecutor], connection_info: dict[str, Any]) -> DumpLoadExecutor:
    """Pick the executor registered for the database kind, or a default one."""
    kind = str(connection_info.get("kind", "sqlite")).lower()
    if kind not in executors:
        executors[kind] = create_executor(kind)
    return executors[kind]
