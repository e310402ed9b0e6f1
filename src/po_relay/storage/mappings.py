"""Persisted reference -> stored key mapping records.

A record is written once a reference has been tied to a stored key, so the
next resolve of the same reference is a single lookup. Records are keyed by
``safe_key(original_id)`` so arbitrary characters in ids are storage-safe.
Writes replace the whole record; records are never deleted here.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiosqlite
from botocore.exceptions import ClientError
from pydantic import ValidationError

from ..models import FileMappingRecord
from .backend import BlobBackend
from .references import MAPPING_PREFIX, safe_key
from .retry import describe_error, race

logger = logging.getLogger(__name__)

MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}


class MappingStore(ABC):
    """Storage for FileMappingRecord, one record per original id."""

    @abstractmethod
    async def save(self, record: FileMappingRecord) -> bool:
        """Insert or replace the record for ``record.original_id``.

        Returns:
            True if the record was persisted
        """

    @abstractmethod
    async def load(self, original_id: str) -> Optional[FileMappingRecord]:
        """Return the record for ``original_id`` or None."""


class RemoteMappingStore(MappingStore):
    """Mapping records as JSON objects in the ``mappings`` bucket.

    Each record lives at ``file-mappings/{safe_key}.json``.
    """

    def __init__(self, backend: BlobBackend, bucket: str = "mappings", timeout: float = 15.0):
        self.backend = backend
        self.bucket = bucket
        self.timeout = timeout

    def _path(self, original_id: str) -> str:
        return f"{MAPPING_PREFIX}{safe_key(original_id)}.json"

    async def save(self, record: FileMappingRecord) -> bool:
        path = self._path(record.original_id)
        try:
            await race(
                self.backend.put_object(self.bucket, path, record.to_json().encode("utf-8"), "application/json"),
                self.timeout,
                None,
                f"save mapping {path}",
            )
        except Exception as e:
            logger.error(f"Failed to save file mapping for {record.original_id!r}: {describe_error(e)}")
            return False

        logger.info(f"Saved file mapping {record.original_id!r} -> {record.actual_key}")
        return True

    async def load(self, original_id: str) -> Optional[FileMappingRecord]:
        path = self._path(original_id)
        try:
            raw = await race(self.backend.get_object(self.bucket, path), self.timeout, None, f"load mapping {path}")
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in MISSING_OBJECT_CODES:
                logger.debug(f"No file mapping for {original_id!r}")
            else:
                logger.warning(f"Failed to load file mapping for {original_id!r}: {describe_error(e)}")
            return None
        except Exception as e:
            logger.warning(f"Failed to load file mapping for {original_id!r}: {describe_error(e)}")
            return None

        try:
            return FileMappingRecord.model_validate_json(raw)
        except ValidationError as e:
            # Non-JSON bodies (e.g. an HTML error page) land here
            logger.warning(f"Ignoring unreadable file mapping for {original_id!r}: {e.error_count()} errors")
            return None


class SqliteMappingStore(MappingStore):
    """Mapping records in a local SQLite table."""

    def __init__(self, db_path: Path):
        """Initialize with path to SQLite database file.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Create tables if not exist. Called once at startup."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS file_mappings (
                safe_key        TEXT PRIMARY KEY,
                original_id     TEXT NOT NULL,
                actual_key      TEXT NOT NULL,
                bucket          TEXT NOT NULL,
                created_at      TEXT NOT NULL,
                record_json     TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_file_mappings_actual_key ON file_mappings(actual_key);
            """
        )
        await self._db.commit()
        logger.info(f"SqliteMappingStore initialized with database at {self.db_path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def save(self, record: FileMappingRecord) -> bool:
        if not self._db:
            raise RuntimeError("SqliteMappingStore not initialized")

        try:
            await self._db.execute(
                """
                INSERT OR REPLACE INTO file_mappings (
                    safe_key, original_id, actual_key, bucket, created_at, record_json
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    safe_key(record.original_id),
                    record.original_id,
                    record.actual_key,
                    record.bucket,
                    record.created_at.isoformat(),
                    record.to_json(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            logger.error(f"Failed to save file mapping for {record.original_id!r}: {e}")
            return False

        logger.info(f"Saved file mapping {record.original_id!r} -> {record.actual_key}")
        return True

    async def load(self, original_id: str) -> Optional[FileMappingRecord]:
        if not self._db:
            raise RuntimeError("SqliteMappingStore not initialized")

        async with self._db.execute(
            "SELECT record_json FROM file_mappings WHERE safe_key = ?",
            (safe_key(original_id),),
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None
        return FileMappingRecord.model_validate_json(row[0])
