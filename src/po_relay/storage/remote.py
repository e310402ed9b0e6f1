"""Retrying remote object store.

Wraps a ``BlobBackend`` with bounded retries, exponential backoff, a circuit
delay after repeated failures and, for reads, a last-resort public-URL
fetch. Nothing here raises to the caller: every operation returns a result
object that must be checked with ``result.ok``.
"""

import asyncio
import logging
from dataclasses import replace
from typing import List, Optional, Tuple

from ..models import FailureKind, ListResult, StoreResult
from .backend import BlobBackend
from .references import LEGACY_PREFIX, NAMESPACE_PREFIX, decode_candidates, guess_content_type
from .retry import (
    OperationCancelled,
    RetryPolicy,
    SleepFn,
    call_with_retries,
    classify_error,
    describe_error,
    race,
)

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_POLICY = RetryPolicy(max_attempts=5, attempt_timeout=25.0)
DEFAULT_DOWNLOAD_POLICY = RetryPolicy(max_attempts=7, attempt_timeout=30.0)


class RemoteObjectStore:
    """put/get/delete of byte blobs in named buckets over an unreliable backend.

    Objects are written under the ``files/`` prefix. Reads also probe the
    legacy flat layout (objects stored at the bucket root) and every decoded
    variant of the requested key.

    Attributes:
        backend: Transport to the blob service
        upload_policy: Retry policy for ``put``
        download_policy: Retry policy for ``get``; its ``attempt_timeout``
            applies to each candidate path
        list_timeout: Timeout for ``list`` and ``delete`` in seconds
        public_timeout: Timeout for the public-URL fallback in seconds
    """

    def __init__(
        self,
        backend: BlobBackend,
        upload_policy: Optional[RetryPolicy] = None,
        download_policy: Optional[RetryPolicy] = None,
        list_timeout: float = 30.0,
        public_timeout: float = 30.0,
        list_limit: int = 100,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.backend = backend
        self.upload_policy = upload_policy or DEFAULT_UPLOAD_POLICY
        self.download_policy = download_policy or DEFAULT_DOWNLOAD_POLICY
        self.list_timeout = list_timeout
        self.public_timeout = public_timeout
        self.list_limit = list_limit
        self._sleep = sleep

    async def put(
        self,
        data: bytes,
        key: str,
        bucket: str = "uploads",
        max_attempts: Optional[int] = None,
        *,
        content_type: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> StoreResult:
        """Upload bytes to ``files/{key}`` in ``bucket``.

        Args:
            data: Object content
            key: Object key
            bucket: Logical bucket name
            max_attempts: Attempt budget (default: upload policy, 5)
            content_type: Content type (default: guessed from the extension)
            cancel: Optional cancellation signal

        Returns:
            StoreResult with ``key`` on success
        """
        policy = self.upload_policy
        if max_attempts:
            policy = replace(policy, max_attempts=max_attempts)
        path = f"{NAMESPACE_PREFIX}{key}"
        content_type = content_type or guess_content_type(key)
        label = f"upload {bucket}/{path}"

        logger.info(f"Uploading {bucket}/{path} ({len(data)} bytes, {content_type})")

        outcome = await call_with_retries(
            lambda attempt: self.backend.put_object(bucket, path, data, content_type),
            policy,
            label=label,
            cancel=cancel,
            sleep=self._sleep,
        )

        if outcome.ok:
            logger.info(f"Uploaded {bucket}/{path} on attempt {outcome.attempts}")
            return StoreResult.success(key, attempts=outcome.attempts)

        if outcome.failure == FailureKind.CANCELLED:
            return StoreResult.failed(f"Upload of '{key}' was cancelled", FailureKind.CANCELLED, outcome.attempts)

        if outcome.failure == FailureKind.TERMINAL:
            return StoreResult.failed(describe_error(outcome.last_error), FailureKind.TERMINAL, outcome.attempts)

        return StoreResult.failed(
            f"Upload of '{key}' failed after {outcome.attempts} attempts: "
            f"{describe_error(outcome.last_error)}. Check the network connection.",
            FailureKind.TRANSIENT,
            outcome.attempts,
        )

    async def get(
        self,
        key: str,
        bucket: str = "uploads",
        max_attempts: Optional[int] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> StoreResult:
        """Download an object, probing path and key-encoding variants.

        Every attempt tries ``files/{variant}`` for each decoded variant of
        ``key``, then the legacy ``{variant}`` at the bucket root. When all
        attempts fail transiently, the object's public URL is fetched once
        without credentials.

        Args:
            key: Stored key or a reference that decodes to one
            bucket: Logical bucket name
            max_attempts: Attempt budget (default: download policy, 7)
            cancel: Optional cancellation signal

        Returns:
            StoreResult with ``content`` and the matched ``key`` on success
        """
        policy = self.download_policy
        if max_attempts:
            policy = replace(policy, max_attempts=max_attempts)

        variants = decode_candidates(key)
        candidates: List[Tuple[str, str]] = [
            (prefix, variant) for prefix in (NAMESPACE_PREFIX, LEGACY_PREFIX) for variant in variants
        ]
        label = f"download {bucket}/{key}"

        logger.info(f"Downloading {bucket}/{key} ({len(candidates)} candidate paths)")

        async def _probe(attempt: int) -> Tuple[str, bytes]:
            errors: List[Exception] = []
            for prefix, variant in candidates:
                path = f"{prefix}{variant}"
                try:
                    data = await race(
                        self.backend.get_object(bucket, path),
                        policy.attempt_timeout,
                        cancel,
                        f"download {bucket}/{path}",
                    )
                except OperationCancelled:
                    raise
                except Exception as e:
                    logger.debug(f"Candidate {bucket}/{path} failed: {describe_error(e)}")
                    errors.append(e)
                    continue
                return variant, data
            raise _most_retryable(errors)

        outcome = await call_with_retries(
            _probe,
            policy,
            label=label,
            cancel=cancel,
            sleep=self._sleep,
            time_each_attempt=False,
        )

        if outcome.ok:
            variant, data = outcome.value
            logger.info(f"Downloaded {bucket}/{variant} ({len(data)} bytes) on attempt {outcome.attempts}")
            return StoreResult.success(variant, content=data, attempts=outcome.attempts)

        if outcome.failure == FailureKind.CANCELLED:
            return StoreResult.failed(f"Download of '{key}' was cancelled", FailureKind.CANCELLED, outcome.attempts)

        if outcome.failure == FailureKind.TERMINAL:
            return StoreResult.failed(describe_error(outcome.last_error), FailureKind.TERMINAL, outcome.attempts)

        return await self._public_fallback(key, bucket, outcome.attempts, outcome.last_error, cancel)

    async def _public_fallback(
        self,
        key: str,
        bucket: str,
        attempts: int,
        last_error: Optional[BaseException],
        cancel: Optional[asyncio.Event],
    ) -> StoreResult:
        url = self.backend.public_url(bucket, f"{NAMESPACE_PREFIX}{key}")
        logger.warning(f"All {attempts} download attempts failed, trying public URL {url}")

        try:
            data = await race(
                self.backend.fetch_public(url, self.public_timeout),
                self.public_timeout,
                cancel,
                f"public download {url}",
            )
        except OperationCancelled:
            return StoreResult.failed(f"Download of '{key}' was cancelled", FailureKind.CANCELLED, attempts)
        except Exception as e:
            logger.error(f"Public URL download failed for {bucket}/{key}: {describe_error(e)}")
            return StoreResult.failed(
                f"Download of '{key}' from '{bucket}' failed after {attempts} attempts: "
                f"{describe_error(last_error)}. Public URL fallback also failed: "
                f"{describe_error(e)}. Check the network connection.",
                FailureKind.TRANSIENT,
                attempts,
            )

        logger.info(f"Downloaded {bucket}/{key} over public URL ({len(data)} bytes)")
        return StoreResult.success(key, content=data, attempts=attempts)

    async def delete(self, key: str, bucket: str = "uploads") -> StoreResult:
        """Delete ``files/{key}``. Single attempt; failures are only logged."""
        path = f"{NAMESPACE_PREFIX}{key}"
        try:
            await race(self.backend.delete_object(bucket, path), self.list_timeout, None, f"delete {bucket}/{path}")
        except Exception as e:
            logger.error(f"Failed to delete {bucket}/{path}: {describe_error(e)}")
            return StoreResult.failed(describe_error(e), classify_error(e), attempts=1)

        logger.info(f"Deleted {bucket}/{path}")
        return StoreResult.success(key)

    async def list(
        self,
        bucket: str,
        prefix: str = NAMESPACE_PREFIX,
        limit: Optional[int] = None,
    ) -> ListResult:
        """List objects under ``prefix``, newest first. Single timed attempt."""
        try:
            objects = await race(
                self.backend.list_objects(bucket, prefix, limit or self.list_limit),
                self.list_timeout,
                None,
                f"list {bucket}/{prefix}",
            )
        except Exception as e:
            logger.warning(f"Failed to list {bucket}/{prefix}: {describe_error(e)}")
            return ListResult(ok=False, reason=describe_error(e))

        logger.debug(f"Listed {len(objects)} objects under {bucket}/{prefix}")
        return ListResult(ok=True, objects=objects)

    def public_url(self, key: str, bucket: str = "uploads") -> str:
        return self.backend.public_url(bucket, f"{NAMESPACE_PREFIX}{key}")


def _most_retryable(errors: List[Exception]) -> Exception:
    """Pick the error that decides whether a multi-candidate attempt is retried.

    Any transient candidate failure makes the whole attempt transient;
    otherwise the last terminal error is reported.
    """
    for error in errors:
        if classify_error(error) == FailureKind.TRANSIENT:
            return error
    return errors[-1]
