"""Tests for the retrying remote object store."""

import asyncio
import base64

import httpx
import pytest

from conftest import access_denied, client_error, unavailable
from po_relay.models import FailureKind
from po_relay.storage.remote import RemoteObjectStore
from po_relay.storage.retry import RetryPolicy


class TestPut:
    """Tests for RemoteObjectStore.put."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store, backend):
        """Bytes written by put come back unchanged from get."""
        data = b"\x00\x01order rows\xff"

        put = await store.put(data, "orderFile-1-2.xlsx")
        got = await store.get("orderFile-1-2.xlsx")

        assert put.ok and put.key == "orderFile-1-2.xlsx"
        assert got.ok and got.content == data
        assert ("uploads", "files/orderFile-1-2.xlsx") in backend.objects

    @pytest.mark.asyncio
    async def test_content_type_from_extension(self, store, backend):
        await store.put(b"a,b", "orderFile-1-2.csv")
        assert backend.objects[("uploads", "files/orderFile-1-2.csv")].content_type == "text/csv"

    @pytest.mark.asyncio
    async def test_explicit_content_type(self, store, backend):
        await store.put(b"{}", "report", "generated", content_type="application/json")
        assert backend.objects[("generated", "files/report")].content_type == "application/json"

    @pytest.mark.asyncio
    async def test_recovers_on_last_attempt(self, store, backend, recording_sleep):
        """The first max_attempts-1 calls fail, the last one succeeds."""
        backend.fail_next("put_object", *[unavailable() for _ in range(4)])

        result = await store.put(b"data", "orderFile-1-2.xlsx")

        assert result.ok
        assert result.attempts == 5
        assert backend.count("put_object") == 5

    @pytest.mark.asyncio
    async def test_backoff_respects_floor(self, store, backend, recording_sleep):
        """Each backoff wait is at least min(2**(n-1), 10) seconds."""
        backend.fail_next("put_object", *[unavailable() for _ in range(4)])

        await store.put(b"data", "orderFile-1-2.xlsx")

        policy = store.upload_policy
        backoffs = [d for d in recording_sleep.delays if d not in {policy.circuit_delay(n) for n in range(2, 6)}]
        assert len(backoffs) == 4
        for attempt, delay in enumerate(backoffs, start=1):
            assert policy.backoff_floor(attempt) <= delay <= policy.backoff_floor(attempt) + policy.max_jitter

    @pytest.mark.asyncio
    async def test_terminal_error_fails_fast(self, store, backend, recording_sleep):
        """A 4xx is returned after exactly one attempt."""
        backend.fail_always("put_object", access_denied())

        result = await store.put(b"data", "orderFile-1-2.xlsx")

        assert not result.ok
        assert result.failure == FailureKind.TERMINAL
        assert result.attempts == 1
        assert backend.count("put_object") == 1
        assert "AccessDenied" in result.reason
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausted_attempts(self, store, backend):
        backend.fail_always("put_object", unavailable())

        result = await store.put(b"data", "orderFile-1-2.xlsx", max_attempts=3)

        assert not result.ok
        assert result.failure == FailureKind.TRANSIENT
        assert result.attempts == 3
        assert "failed after 3 attempts" in result.reason
        assert "ServiceUnavailable" in result.reason

    @pytest.mark.asyncio
    async def test_attempt_timeout_counts_as_transient(self, backend, recording_sleep):
        backend.hang("put_object")
        store = RemoteObjectStore(
            backend, upload_policy=RetryPolicy(max_attempts=2, attempt_timeout=0.01), sleep=recording_sleep
        )

        result = await store.put(b"data", "orderFile-1-2.xlsx")

        assert result.failure == FailureKind.TRANSIENT
        assert result.attempts == 2
        assert "timeout" in result.reason

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, store, backend):
        cancel = asyncio.Event()
        cancel.set()

        result = await store.put(b"data", "orderFile-1-2.xlsx", cancel=cancel)

        assert result.failure == FailureKind.CANCELLED
        assert backend.count("put_object") == 0

    @pytest.mark.asyncio
    async def test_independent_calls_do_not_share_failures(self, store, backend, recording_sleep):
        """A fresh call starts without a circuit delay."""
        backend.fail_next("put_object", unavailable(), unavailable())
        await store.put(b"a", "orderFile-1-2.xlsx")
        recording_sleep.delays.clear()

        result = await store.put(b"b", "orderFile-3-4.xlsx")

        assert result.ok
        assert result.attempts == 1
        assert recording_sleep.delays == []


class TestGet:
    """Tests for RemoteObjectStore.get."""

    @pytest.mark.asyncio
    async def test_reads_legacy_flat_layout(self, store, backend):
        backend.seed("uploads", "orderFile-1-2.xlsx", b"legacy")

        result = await store.get("orderFile-1-2.xlsx")

        assert result.ok
        assert result.content == b"legacy"

    @pytest.mark.asyncio
    async def test_probes_decoded_variants(self, store, backend):
        """An encoded key finds the object stored under the decoded name."""
        name = "주문.xlsx"
        backend.seed("uploads", f"files/{name}", b"decoded")

        result = await store.get(base64.b64encode(name.encode()).decode())

        assert result.ok
        assert result.key == name
        assert result.content == b"decoded"

    @pytest.mark.asyncio
    async def test_missing_object_is_terminal_without_fallback(self, store, backend):
        result = await store.get("orderFile-9-9.xlsx")

        assert not result.ok
        assert result.failure == FailureKind.TERMINAL
        assert result.attempts == 1
        assert backend.public_calls == []

    @pytest.mark.asyncio
    async def test_transient_candidate_failure_retries(self, store, backend):
        backend.seed("uploads", "files/orderFile-1-2.xlsx", b"data")
        backend.fail_next("get_object", client_error("InternalError", 500))

        result = await store.get("orderFile-1-2.xlsx")

        assert result.ok
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_public_url_fallback_succeeds(self, store, backend):
        backend.fail_always("get_object", unavailable("GetObject"))
        url = backend.public_url("uploads", "files/orderFile-1-2.xlsx")
        backend.public_content[url] = b"from public url"

        result = await store.get("orderFile-1-2.xlsx", max_attempts=2)

        assert result.ok
        assert result.content == b"from public url"
        assert backend.public_calls == [url]

    @pytest.mark.asyncio
    async def test_public_url_fallback_failure_aggregates_reason(self, store, backend):
        """Both paths failing yields one readable message, not a traceback."""
        backend.fail_always("get_object", unavailable("GetObject"))
        backend.public_error = httpx.ConnectError("connection refused")

        result = await store.get("orderFile-1-2.xlsx", max_attempts=3)

        assert not result.ok
        assert result.failure == FailureKind.TRANSIENT
        assert result.attempts == 3
        assert "failed after 3 attempts" in result.reason
        assert "ServiceUnavailable" in result.reason
        assert "Public URL fallback also failed: connection refused" in result.reason
        assert "Traceback" not in result.reason

    @pytest.mark.asyncio
    async def test_cancelled(self, store, backend):
        cancel = asyncio.Event()
        cancel.set()

        result = await store.get("orderFile-1-2.xlsx", cancel=cancel)

        assert result.failure == FailureKind.CANCELLED
        assert backend.public_calls == []


class TestDeleteAndList:
    """Tests for delete, list and public_url."""

    @pytest.mark.asyncio
    async def test_delete(self, store, backend):
        backend.seed("uploads", "files/orderFile-1-2.xlsx", b"data")

        result = await store.delete("orderFile-1-2.xlsx")

        assert result.ok
        assert ("uploads", "files/orderFile-1-2.xlsx") not in backend.objects

    @pytest.mark.asyncio
    async def test_delete_failure_is_returned(self, store, backend):
        backend.fail_always("delete_object", access_denied("DeleteObject"))

        result = await store.delete("orderFile-1-2.xlsx")

        assert not result.ok
        assert result.failure == FailureKind.TERMINAL
        assert backend.count("delete_object") == 1

    @pytest.mark.asyncio
    async def test_list_newest_first(self, store, backend):
        backend.seed("uploads", "files/orderFile-1-1.xlsx", b"a")
        backend.seed("uploads", "files/orderFile-2-2.xlsx", b"b")
        backend.seed("uploads", "orderFile-3-3.xlsx", b"root")

        result = await store.list("uploads")

        assert result.ok
        assert [o.key for o in result.objects] == ["orderFile-2-2.xlsx", "orderFile-1-1.xlsx"]

    @pytest.mark.asyncio
    async def test_list_failure(self, store, backend):
        backend.fail_always("list_objects", unavailable("ListObjectsV2"))

        result = await store.list("uploads")

        assert not result.ok
        assert "ServiceUnavailable" in result.reason

    def test_public_url_is_namespaced(self, store):
        assert store.public_url("a.xlsx") == "https://public.example.com/uploads/files/a.xlsx"
