"""Models for stored objects, mapping records, cache entries and results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FailureKind(str, Enum):
    """Why a persistence operation did not succeed."""

    TRANSIENT = "transient"
    TERMINAL = "terminal"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


@dataclass
class ObjectInfo:
    """A listed object in a bucket.

    Attributes:
        key: Object name relative to the listed prefix
        size: Size in bytes
        last_modified: Creation/modification time reported by the backend
        content_type: Content type if the backend reports it
    """

    key: str
    size: int = 0
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None


@dataclass
class StoredObject:
    """An object as held by the backing blob service."""

    bucket: str
    key: str
    content: bytes
    content_type: str = "application/octet-stream"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class StoreResult:
    """Outcome of a put/get/delete against the remote store.

    Callers must branch on ``ok``. On success ``key`` is the object key (and
    ``content`` the bytes, for reads). On failure ``reason`` is a
    human-readable message and ``failure`` classifies it.
    """

    ok: bool
    key: Optional[str] = None
    content: Optional[bytes] = None
    reason: Optional[str] = None
    failure: Optional[FailureKind] = None
    attempts: int = 0

    @classmethod
    def success(cls, key: str, content: Optional[bytes] = None, attempts: int = 1) -> "StoreResult":
        return cls(ok=True, key=key, content=content, attempts=attempts)

    @classmethod
    def failed(cls, reason: str, failure: FailureKind, attempts: int = 0) -> "StoreResult":
        return cls(ok=False, reason=reason, failure=failure, attempts=attempts)


@dataclass
class ListResult:
    """Outcome of listing a bucket prefix, newest first."""

    ok: bool
    objects: List[ObjectInfo] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass
class ResolveResult:
    """Outcome of resolving a reference to a stored key.

    Attributes:
        ok: True if a stored key was found
        actual_key: The stored key
        source: Name of the strategy that produced the key
        reason: Explanation when nothing matched
        failure: ``FailureKind.NOT_FOUND`` when nothing matched
    """

    ok: bool
    actual_key: Optional[str] = None
    source: Optional[str] = None
    reason: Optional[str] = None
    failure: Optional[FailureKind] = None


class FileMappingRecord(BaseModel):
    """Persisted link between a client-held reference and a stored key.

    Serialised with the camelCase field names used by existing records.
    """

    model_config = ConfigDict(populate_by_name=True)

    original_id: str = Field(..., alias="originalId")
    actual_key: str = Field(..., alias="actualFileName")
    original_name: str = Field(default="", alias="originalFileName")
    bucket: str = "uploads"
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )
    size: Optional[int] = Field(default=None, alias="fileSize")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    flags: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class CacheMetadata(BaseModel):
    """Metadata stored alongside cached content.

    Core fields are fixed; callers may attach extension fields (remote
    headers, preview rows, row counts, validation results, the resolved
    remote key) which are kept in ``model_extra``.
    """

    model_config = ConfigDict(extra="allow")

    display_name: str = ""
    size: int = 0
    mime_type: str = "application/octet-stream"
    last_modified: Optional[datetime] = None
    cached_at: datetime
    purpose_tag: str

    @property
    def extensions(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


@dataclass
class CachedFile:
    """Content and metadata returned by a cache hit."""

    content: bytes
    metadata: CacheMetadata


@dataclass
class CacheStatEntry:
    """Per-entry line of the cache diagnostics."""

    id: str
    display_name: str
    purpose_tag: str
    size: int
    footprint: int
    cached_at: datetime


@dataclass
class CacheStats:
    """Cache diagnostics. Display only."""

    entry_count: int
    total_bytes: int
    quota: int
    usage_percent: float
    entries: List[CacheStatEntry] = field(default_factory=list)
