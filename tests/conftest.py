"""Shared fixtures: an in-memory, fault-injecting blob backend."""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
from botocore.exceptions import ClientError

from po_relay.models import ObjectInfo, StoredObject
from po_relay.storage.backend import BlobBackend
from po_relay.storage.local_cache import LocalCache
from po_relay.storage.mappings import RemoteMappingStore
from po_relay.storage.remote import RemoteObjectStore
from po_relay.storage.resolver import FilenameResolver
from po_relay.storage.retry import RetryPolicy

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def client_error(code: str, status: int, operation: str = "GetObject") -> ClientError:
    """Build a botocore ClientError like the ones S3/R2 return."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} message"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def unavailable(operation: str = "PutObject") -> ClientError:
    return client_error("ServiceUnavailable", 503, operation)


def access_denied(operation: str = "PutObject") -> ClientError:
    return client_error("AccessDenied", 403, operation)


class FakeBackend(BlobBackend):
    """In-memory BlobBackend with scripted failures.

    ``fail_next(op, *errors)`` makes the next calls of ``op`` raise the given
    errors in order; ``fail_always(op, error)`` makes every call raise.
    ``hang(op)`` makes calls block until cancelled.
    """

    def __init__(self):
        self.objects: Dict[Tuple[str, str], StoredObject] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self._queued: Dict[str, List[BaseException]] = defaultdict(list)
        self._always: Dict[str, BaseException] = {}
        self._hanging: set = set()
        self.public_content: Dict[str, bytes] = {}
        self.public_error: Optional[BaseException] = None
        self.public_calls: List[str] = []
        self._clock = BASE_TIME

    def fail_next(self, op: str, *errors: BaseException) -> None:
        self._queued[op].extend(errors)

    def fail_always(self, op: str, error: BaseException) -> None:
        self._always[op] = error

    def hang(self, op: str) -> None:
        self._hanging.add(op)

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def seed(self, bucket: str, path: str, data: bytes, created_at: Optional[datetime] = None) -> None:
        """Place an object directly, bypassing failure injection."""
        if created_at is None:
            self._clock += timedelta(seconds=1)
            created_at = self._clock
        self.objects[(bucket, path)] = StoredObject(bucket=bucket, key=path, content=data, created_at=created_at)

    async def _enter(self, op: str, bucket: str, path: str) -> None:
        self.calls.append((op, bucket, path))
        if op in self._hanging:
            await asyncio.sleep(3600)
        if self._queued[op]:
            raise self._queued[op].pop(0)
        if op in self._always:
            raise self._always[op]

    async def put_object(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        await self._enter("put_object", bucket, path)
        self._clock += timedelta(seconds=1)
        self.objects[(bucket, path)] = StoredObject(
            bucket=bucket, key=path, content=data, content_type=content_type, created_at=self._clock
        )

    async def get_object(self, bucket: str, path: str) -> bytes:
        await self._enter("get_object", bucket, path)
        stored = self.objects.get((bucket, path))
        if stored is None:
            raise client_error("NoSuchKey", 404)
        return stored.content

    async def delete_object(self, bucket: str, path: str) -> None:
        await self._enter("delete_object", bucket, path)
        self.objects.pop((bucket, path), None)

    async def list_objects(self, bucket: str, prefix: str, limit: int) -> List[ObjectInfo]:
        await self._enter("list_objects", bucket, prefix)
        found = []
        for (obj_bucket, path), stored in self.objects.items():
            if obj_bucket != bucket or not path.startswith(prefix):
                continue
            name = path[len(prefix):]
            if not name or "/" in name:
                continue
            found.append(
                ObjectInfo(
                    key=name,
                    size=stored.size,
                    last_modified=stored.created_at,
                    content_type=stored.content_type,
                )
            )
        found.sort(key=lambda o: o.last_modified, reverse=True)
        return found[:limit]

    def public_url(self, bucket: str, path: str) -> str:
        return f"https://public.example.com/{bucket}/{path}"

    async def fetch_public(self, url: str, timeout: float) -> bytes:
        self.public_calls.append(url)
        if self.public_error is not None:
            raise self.public_error
        return self.public_content[url]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClock:
    """Settable clock for cache TTL tests."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def backend():
    """Return an empty FakeBackend."""
    return FakeBackend()


@pytest.fixture
def recording_sleep():
    """Return a RecordingSleep."""
    return RecordingSleep()


@pytest.fixture
def store(backend, recording_sleep):
    """RemoteObjectStore over the fake backend with recorded backoff waits."""
    return RemoteObjectStore(
        backend,
        upload_policy=RetryPolicy(max_attempts=5, attempt_timeout=1.0),
        download_policy=RetryPolicy(max_attempts=7, attempt_timeout=1.0),
        list_timeout=1.0,
        public_timeout=1.0,
        sleep=recording_sleep,
    )


@pytest.fixture
def mapping_store(backend):
    """RemoteMappingStore writing to the fake backend."""
    return RemoteMappingStore(backend, timeout=1.0)


@pytest.fixture
def resolver(store, mapping_store):
    """FilenameResolver with the default strategy chain."""
    return FilenameResolver(store, mapping_store)


@pytest.fixture
def clock():
    """Return a FakeClock at BASE_TIME."""
    return FakeClock()


@pytest.fixture
def local_cache(tmp_path, clock):
    """LocalCache in a temporary database with a controllable clock."""
    cache = LocalCache(tmp_path / "cache.db", clock=clock)
    yield cache
    cache.close()
