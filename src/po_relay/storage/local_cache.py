"""Local cache for uploaded file bytes.

Keeps recently uploaded files (plus metadata) in a local SQLite database so
the same file is not uploaded or downloaded again. The cache is bounded by a
total quota, a per-entry size cap and a TTL. Quota and TTL are enforced
lazily: the quota when writing, the TTL when reading.

A cache is an optimization, never a source of truth: no method here raises.
Failures are logged and reported as ``False``/``None``.
"""

import hashlib
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..models import CachedFile, CacheMetadata, CacheStatEntry, CacheStats

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_ENTRY_BYTES = 10 * 1024 * 1024
DEFAULT_TTL = timedelta(days=7)

SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    id              TEXT PRIMARY KEY,
    purpose_tag     TEXT NOT NULL,
    content         BLOB NOT NULL,
    size            INTEGER NOT NULL,
    footprint       INTEGER NOT NULL,
    cached_at       TEXT NOT NULL,
    metadata_json   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_cached_at ON cache_entries(cached_at);

CREATE TABLE IF NOT EXISTS cache_state (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);
"""

# Core metadata fields callers cannot override through amend()
_FROZEN_FIELDS = {"cached_at", "purpose_tag"}


def _timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class LocalCache:
    """Size- and TTL-bounded key/value store for uploaded files.

    An entry's footprint is its content size plus its serialized metadata;
    the sum of footprints is kept within ``quota_bytes`` at write time by
    evicting the oldest entries first.

    Attributes:
        db_path: Path to the SQLite database file
        quota_bytes: Maximum total footprint
        max_entry_bytes: Maximum content size of a single entry
        ttl: Age after which an entry reads as absent
    """

    def __init__(
        self,
        db_path: Path,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
        max_entry_bytes: int = DEFAULT_MAX_ENTRY_BYTES,
        ttl: timedelta = DEFAULT_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the cache.

        Args:
            db_path: Path to the SQLite database file
            quota_bytes: Maximum total footprint
            max_entry_bytes: Maximum content size of a single entry
            ttl: Entry lifetime
            clock: Returns the current time (timezone-aware)
        """
        self.db_path = db_path
        self.quota_bytes = quota_bytes
        self.max_entry_bytes = max_entry_bytes
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._connection: Optional[sqlite3.Connection] = None

    @property
    def connection(self) -> sqlite3.Connection:
        """Get or create the database connection, creating tables on first use."""
        if self._connection is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.db_path)
            self._connection.row_factory = sqlite3.Row
            self._connection.executescript(SCHEMA)
        return self._connection

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    @staticmethod
    def derive_id(name: str, size: int, mime_type: str, purpose_tag: str) -> str:
        """Deterministic cache id for a file used in a given role.

        The purpose tag is part of the id, so one physical file cached for
        two roles yields two entries.
        """
        digest = hashlib.sha256(f"{name}|{size}|{mime_type}|{purpose_tag}".encode("utf-8")).hexdigest()[:32]
        return f"{purpose_tag}_{digest}"

    def init(self, current_version: str) -> bool:
        """Wipe the cache if it was written by a different cache version.

        Call once at startup.

        Args:
            current_version: Version of the running cache layout

        Returns:
            True if a different version was recorded and the cache was wiped
        """
        try:
            conn = self.connection
            row = conn.execute("SELECT value FROM cache_state WHERE key = 'last_seen_version'").fetchone()
            last_seen = row["value"] if row else None

            if last_seen == current_version:
                return False

            with conn:
                removed = conn.execute("DELETE FROM cache_entries").rowcount
                conn.execute(
                    "INSERT OR REPLACE INTO cache_state (key, value) VALUES ('last_seen_version', ?)",
                    (current_version,),
                )
        except Exception as e:
            logger.warning(f"Cache version check failed: {e}")
            return False

        if last_seen is not None:
            logger.info(f"Cache version changed {last_seen} -> {current_version}, removed {removed} entries")
            return True
        return False

    def _used(self) -> int:
        row = self.connection.execute("SELECT COALESCE(SUM(footprint), 0) AS used FROM cache_entries").fetchone()
        return row["used"]

    def cache(
        self,
        content: bytes,
        id: str,
        purpose_tag: str,
        *,
        display_name: str = "",
        mime_type: str = "application/octet-stream",
        last_modified: Optional[datetime] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Store content under ``id``, evicting oldest entries to make room.

        Args:
            content: File bytes
            id: Cache id (see ``derive_id``)
            purpose_tag: Logical role of the file
            display_name: Original file name
            mime_type: Content type
            last_modified: Modification time of the source file
            extra: Extension metadata (headers, preview, remote key, ...)

        Returns:
            True if the entry was written
        """
        size = len(content)
        if size > self.max_entry_bytes:
            logger.warning(
                f"Not caching {display_name or id}: {size} bytes exceeds the {self.max_entry_bytes} byte entry cap"
            )
            return False

        try:
            core = {
                "display_name": display_name,
                "size": size,
                "mime_type": mime_type,
                "last_modified": last_modified,
                "cached_at": self._clock(),
                "purpose_tag": purpose_tag,
            }
            metadata = CacheMetadata.model_validate({**(extra or {}), **core})
            metadata_json = metadata.model_dump_json()
            footprint = size + len(metadata_json.encode("utf-8"))

            conn = self.connection
            with conn:
                conn.execute("DELETE FROM cache_entries WHERE id = ?", (id,))

                used = self._used()
                while used + footprint > self.quota_bytes:
                    oldest = conn.execute(
                        "SELECT id, footprint FROM cache_entries ORDER BY cached_at ASC, rowid ASC LIMIT 1"
                    ).fetchone()
                    if oldest is None:
                        break
                    conn.execute("DELETE FROM cache_entries WHERE id = ?", (oldest["id"],))
                    used -= oldest["footprint"]
                    logger.info(f"Evicted cache entry {oldest['id']} ({oldest['footprint']} bytes)")

                conn.execute(
                    """
                    INSERT INTO cache_entries (
                        id, purpose_tag, content, size, footprint, cached_at, metadata_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (id, purpose_tag, content, size, footprint, _timestamp(metadata.cached_at), metadata_json),
                )
        except Exception as e:
            logger.warning(f"Failed to cache {display_name or id}: {e}")
            return False

        logger.debug(f"Cached {id} ({size} bytes, purpose {purpose_tag})")
        return True

    def load(self, id: str, expected_purpose_tag: str) -> Optional[CachedFile]:
        """Return the cached file, or None on a miss.

        Entries cached for another purpose, entries older than the TTL and
        unreadable entries are removed and reported as misses.
        """
        try:
            row = self.connection.execute(
                "SELECT content, metadata_json FROM cache_entries WHERE id = ?", (id,)
            ).fetchone()
            if row is None:
                return None

            try:
                metadata = CacheMetadata.model_validate_json(row["metadata_json"])
            except ValueError as e:
                logger.warning(f"Discarding corrupted cache entry {id}: {e}")
                self.remove(id)
                return None

            if metadata.purpose_tag != expected_purpose_tag:
                logger.info(
                    f"Cache entry {id} was cached as {metadata.purpose_tag!r}, not {expected_purpose_tag!r}; evicting"
                )
                self.remove(id)
                return None

            if self._clock() - metadata.cached_at > self.ttl:
                logger.info(f"Cache entry {id} expired (cached at {metadata.cached_at.isoformat()})")
                self.remove(id)
                return None

            return CachedFile(content=bytes(row["content"]), metadata=metadata)
        except Exception as e:
            logger.warning(f"Failed to read cache entry {id}: {e}")
            return None

    def amend(self, id: str, **fields: Any) -> bool:
        """Merge metadata fields into an entry, keeping id and cached_at.

        Used for details filled in after caching, such as parsed headers.

        Returns:
            True if the entry exists and was updated
        """
        try:
            row = self.connection.execute(
                "SELECT size, metadata_json FROM cache_entries WHERE id = ?", (id,)
            ).fetchone()
            if row is None:
                return False

            current = CacheMetadata.model_validate_json(row["metadata_json"])
            updates = {k: v for k, v in fields.items() if k not in _FROZEN_FIELDS}
            metadata = CacheMetadata.model_validate({**current.model_dump(), **updates})
            metadata_json = metadata.model_dump_json()

            with self.connection as conn:
                conn.execute(
                    "UPDATE cache_entries SET metadata_json = ?, footprint = ? WHERE id = ?",
                    (metadata_json, row["size"] + len(metadata_json.encode("utf-8")), id),
                )
        except Exception as e:
            logger.warning(f"Failed to amend cache entry {id}: {e}")
            return False
        return True

    def remove(self, id: str) -> bool:
        """Delete an entry unconditionally.

        Returns:
            True if an entry was deleted
        """
        try:
            with self.connection as conn:
                deleted = conn.execute("DELETE FROM cache_entries WHERE id = ?", (id,)).rowcount
        except Exception as e:
            logger.warning(f"Failed to remove cache entry {id}: {e}")
            return False
        return deleted > 0

    def clear(self) -> int:
        """Delete every entry. Returns the number removed."""
        try:
            with self.connection as conn:
                return conn.execute("DELETE FROM cache_entries").rowcount
        except Exception as e:
            logger.warning(f"Failed to clear cache: {e}")
            return 0

    def purge_expired(self) -> int:
        """Delete entries older than the TTL. Returns the number removed."""
        cutoff = _timestamp(self._clock() - self.ttl)
        try:
            with self.connection as conn:
                removed = conn.execute("DELETE FROM cache_entries WHERE cached_at < ?", (cutoff,)).rowcount
        except Exception as e:
            logger.warning(f"Failed to purge expired cache entries: {e}")
            return 0

        if removed:
            logger.info(f"Purged {removed} expired cache entries")
        return removed

    def stats(self) -> CacheStats:
        """Usage diagnostics for display."""
        entries = []
        try:
            rows = self.connection.execute(
                "SELECT id, purpose_tag, size, footprint, cached_at, metadata_json "
                "FROM cache_entries ORDER BY cached_at ASC, rowid ASC"
            ).fetchall()
            for row in rows:
                try:
                    display_name = CacheMetadata.model_validate_json(row["metadata_json"]).display_name
                except ValueError:
                    display_name = ""
                entries.append(
                    CacheStatEntry(
                        id=row["id"],
                        display_name=display_name,
                        purpose_tag=row["purpose_tag"],
                        size=row["size"],
                        footprint=row["footprint"],
                        cached_at=datetime.fromisoformat(row["cached_at"]),
                    )
                )
        except Exception as e:
            logger.warning(f"Failed to collect cache stats: {e}")

        total = sum(entry.footprint for entry in entries)
        usage = round(total / self.quota_bytes * 100, 2) if self.quota_bytes else 0.0
        return CacheStats(
            entry_count=len(entries),
            total_bytes=total,
            quota=self.quota_bytes,
            usage_percent=usage,
            entries=entries,
        )
