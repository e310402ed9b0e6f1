"""Storage layer: remote object store, reference resolution and local cache."""

from .backend import BlobBackend, R2Backend
from .local_cache import LocalCache
from .mappings import MappingStore, RemoteMappingStore, SqliteMappingStore
from .remote import RemoteObjectStore
from .resolver import FilenameResolver, ResolverStrategy
from .retry import RetryPolicy, classify_error
from .service import FetchOutcome, FileStorageService, UploadOutcome, build_service

__all__ = [
    "BlobBackend",
    "FetchOutcome",
    "FileStorageService",
    "FilenameResolver",
    "LocalCache",
    "MappingStore",
    "R2Backend",
    "RemoteMappingStore",
    "RemoteObjectStore",
    "ResolverStrategy",
    "RetryPolicy",
    "SqliteMappingStore",
    "UploadOutcome",
    "build_service",
    "classify_error",
]
