"""Upload and fetch flows over the persistence components.

Write path: bytes go to the remote store under a fresh canonical key; on
success a local copy is cached and every alias a client may hold is mapped to
the new key. Read path: local cache first; on a miss the reference is
resolved to a stored key, fetched, and written back into the cache.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from ..config import Settings
from ..models import FailureKind, StoreResult
from .backend import BlobBackend, R2Backend
from .local_cache import LocalCache
from .mappings import MappingStore, RemoteMappingStore, SqliteMappingStore
from .references import build_stored_key, guess_content_type
from .remote import RemoteObjectStore
from .resolver import FilenameResolver
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

UPLOADS_BUCKET = "uploads"
GENERATED_BUCKET = "generated"
MAPPINGS_BUCKET = "mappings"


@dataclass
class UploadOutcome:
    """Result of ``FileStorageService.store_upload``.

    Attributes:
        ok: True if the remote write succeeded
        key: Stored key assigned to the upload
        cache_id: Id the local copy was cached under; clients keep this
        cached: Whether the local copy was written
        mappings_saved: Number of alias mapping records persisted
        reason: Failure message
        failure: Failure classification
    """

    ok: bool
    key: Optional[str] = None
    cache_id: Optional[str] = None
    cached: bool = False
    mappings_saved: int = 0
    reason: Optional[str] = None
    failure: Optional[FailureKind] = None


@dataclass
class FetchOutcome:
    """Result of ``FileStorageService.fetch``.

    ``source`` is ``"cache"`` for a local hit, otherwise the resolver
    strategy that found the stored key.
    """

    ok: bool
    content: Optional[bytes] = None
    key: Optional[str] = None
    source: Optional[str] = None
    reason: Optional[str] = None
    failure: Optional[FailureKind] = None


class FileStorageService:
    """Entry point for collaborators that store and fetch spreadsheets."""

    def __init__(
        self,
        store: RemoteObjectStore,
        resolver: FilenameResolver,
        cache: LocalCache,
    ):
        self.store = store
        self.resolver = resolver
        self.cache = cache

    async def store_upload(
        self,
        data: bytes,
        original_name: str,
        purpose_tag: str,
        file_type: str = "order",
        bucket: str = UPLOADS_BUCKET,
        mime_type: Optional[str] = None,
        flags: Optional[Dict[str, Any]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> UploadOutcome:
        """Upload a client file under a new canonical key.

        Args:
            data: File bytes
            original_name: Name the client uploaded the file as
            purpose_tag: Logical role of the file (e.g. "order-upload")
            file_type: "order" or "supplier"; picks the key prefix
            bucket: Logical bucket name
            mime_type: Content type (default: guessed from the name)
            flags: Extra flags stored on the mapping records
            cancel: Optional cancellation signal

        Returns:
            UploadOutcome with the stored key and cache id
        """
        key = build_stored_key(original_name, file_type)
        mime_type = mime_type or guess_content_type(original_name)

        result = await self.store.put(data, key, bucket, content_type=mime_type, cancel=cancel)
        if not result.ok:
            logger.error(f"Upload of {original_name!r} failed: {result.reason}")
            return UploadOutcome(ok=False, reason=result.reason, failure=result.failure)

        cache_id = LocalCache.derive_id(original_name, len(data), mime_type, purpose_tag)
        cached = self.cache.cache(
            data,
            cache_id,
            purpose_tag,
            display_name=original_name,
            mime_type=mime_type,
            extra={"remote_key": key, "bucket": bucket},
        )

        saved = await self.resolver.remember_upload(
            original_name,
            key,
            bucket=bucket,
            size=len(data),
            mime_type=mime_type,
            flags=flags,
            extra_references=[cache_id],
        )

        logger.info(f"Stored {original_name!r} as {bucket}/{key} (cache id {cache_id}, {saved} mappings)")
        return UploadOutcome(ok=True, key=key, cache_id=cache_id, cached=cached, mappings_saved=saved)

    async def fetch(
        self,
        reference: str,
        purpose_tag: str,
        bucket: str = UPLOADS_BUCKET,
        expected_type: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> FetchOutcome:
        """Return the bytes a reference stands for.

        Args:
            reference: Cache id, stored key or any encoded form of a file name
            purpose_tag: Role the caller needs the file for
            bucket: Logical bucket name
            expected_type: Optional type hint ("order" or "supplier")
            cancel: Optional cancellation signal

        Returns:
            FetchOutcome with the content on success
        """
        hit = self.cache.load(reference, purpose_tag)
        if hit is not None:
            logger.info(f"Cache hit for {reference!r} ({hit.metadata.size} bytes)")
            return FetchOutcome(
                ok=True,
                content=hit.content,
                key=hit.metadata.extensions.get("remote_key"),
                source="cache",
            )

        resolved = await self.resolver.resolve(reference, bucket, expected_type)
        if not resolved.ok:
            return FetchOutcome(ok=False, reason=resolved.reason, failure=resolved.failure)

        result = await self.store.get(resolved.actual_key, bucket, cancel=cancel)
        if not result.ok:
            logger.error(f"Fetch of {reference!r} ({resolved.actual_key}) failed: {result.reason}")
            return FetchOutcome(ok=False, key=resolved.actual_key, reason=result.reason, failure=result.failure)

        self.cache.cache(
            result.content,
            reference,
            purpose_tag,
            display_name=result.key,
            mime_type=guess_content_type(result.key),
            extra={"remote_key": result.key, "bucket": bucket},
        )
        return FetchOutcome(ok=True, content=result.content, key=result.key, source=resolved.source)

    async def store_generated(
        self,
        data: bytes,
        file_name: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> StoreResult:
        """Upload a generated purchase-order file under its own name."""
        return await self.store.put(data, file_name, GENERATED_BUCKET, cancel=cancel)

    async def fetch_generated(self, file_name: str, cancel: Optional[asyncio.Event] = None) -> StoreResult:
        """Download a generated purchase-order file."""
        return await self.store.get(file_name, GENERATED_BUCKET, cancel=cancel)

    async def close(self) -> None:
        self.cache.close()
        if isinstance(self.resolver.mappings, SqliteMappingStore):
            await self.resolver.mappings.close()


async def build_mapping_store(config: Settings, backend: BlobBackend) -> MappingStore:
    """Create the mapping store selected by ``PO_MAPPING_BACKEND``.

    Raises:
        ValueError: On an unknown backend name
    """
    kind = config.PO_MAPPING_BACKEND.lower()
    if kind == "remote":
        return RemoteMappingStore(backend, bucket=MAPPINGS_BUCKET)
    if kind == "sqlite":
        store = SqliteMappingStore(config.PO_MAPPING_DB_PATH)
        await store.initialize()
        return store
    raise ValueError(f"Unknown mapping backend {config.PO_MAPPING_BACKEND!r}. Use 'remote' or 'sqlite'.")


def build_cache(config: Settings) -> LocalCache:
    """Create the local cache and apply the version gate."""
    cache = LocalCache(
        config.PO_CACHE_DB_PATH,
        quota_bytes=config.PO_CACHE_QUOTA_BYTES,
        max_entry_bytes=config.PO_CACHE_ENTRY_MAX_BYTES,
        ttl=timedelta(days=config.PO_CACHE_TTL_DAYS),
    )
    cache.init(config.PO_CACHE_VERSION)
    return cache


async def build_service(config: Settings, backend: Optional[BlobBackend] = None) -> FileStorageService:
    """Wire a FileStorageService from settings.

    Args:
        config: Loaded settings
        backend: Transport to use instead of an R2Backend built from settings

    Raises:
        ValueError: If R2 is not configured or the mapping backend is unknown
    """
    if backend is None:
        if not config.PO_R2_ENDPOINT_URL:
            raise ValueError("R2 endpoint not set. Set PO_R2_ENDPOINT_URL.")
        backend = R2Backend(
            config.PO_R2_ENDPOINT_URL,
            bucket_prefix=config.PO_R2_BUCKET_PREFIX,
            region=config.PO_R2_REGION,
            public_base_url=config.PO_PUBLIC_BASE_URL,
            access_key_id=config.PO_R2_ACCESS_KEY_ID or None,
            secret_access_key=config.PO_R2_SECRET_ACCESS_KEY or None,
        )

    store = RemoteObjectStore(
        backend,
        upload_policy=RetryPolicy(
            max_attempts=config.PO_UPLOAD_MAX_ATTEMPTS,
            attempt_timeout=config.PO_UPLOAD_TIMEOUT_SECONDS,
        ),
        download_policy=RetryPolicy(
            max_attempts=config.PO_DOWNLOAD_MAX_ATTEMPTS,
            attempt_timeout=config.PO_DOWNLOAD_TIMEOUT_SECONDS,
        ),
        list_limit=config.PO_LIST_LIMIT,
    )
    mappings = await build_mapping_store(config, backend)
    return FileStorageService(store, FilenameResolver(store, mappings), build_cache(config))
