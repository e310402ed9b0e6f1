"""Backing blob service transport.

``BlobBackend`` is the narrow interface the remote store retries against.
``R2Backend`` implements it over Cloudflare R2's S3-compatible API with boto3.
Credentials are read from environment variables so they never appear in
config files.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from io import BytesIO
from typing import List, Optional
from urllib.parse import quote

import boto3
import httpx

from ..models import ObjectInfo

logger = logging.getLogger(__name__)


class BlobBackend(ABC):
    """Bytes in, bytes out. Objects are addressed by ``(bucket, path)``."""

    @abstractmethod
    async def put_object(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        """Write an object, replacing any existing object at ``path``."""

    @abstractmethod
    async def get_object(self, bucket: str, path: str) -> bytes:
        """Read an object's bytes."""

    @abstractmethod
    async def delete_object(self, bucket: str, path: str) -> None:
        """Delete an object."""

    @abstractmethod
    async def list_objects(self, bucket: str, prefix: str, limit: int) -> List[ObjectInfo]:
        """List objects directly under ``prefix``, newest first.

        Returned keys are relative to ``prefix``.
        """

    @abstractmethod
    def public_url(self, bucket: str, path: str) -> str:
        """Unauthenticated URL of an object."""

    async def fetch_public(self, url: str, timeout: float) -> bytes:
        """Fetch an object over its public URL without credentials.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response
            httpx.TransportError: On connection failures and timeouts
        """
        async with httpx.AsyncClient(follow_redirects=True) as client:
            response = await client.get(url, timeout=timeout)
            response.raise_for_status()
            return response.content


class R2Backend(BlobBackend):
    """Cloudflare R2 (S3-compatible) backend.

    Credentials are passed in or read from environment variables at
    construction time:
        PO_R2_ACCESS_KEY_ID
        PO_R2_SECRET_ACCESS_KEY

    Logical bucket names ("uploads", "generated", "mappings") are mapped to
    physical R2 buckets by prepending ``bucket_prefix``.

    Attributes:
        endpoint_url: R2 endpoint URL
        bucket_prefix: Prefix prepended to logical bucket names
        region: R2 region (typically "auto")
        public_base_url: Base URL for unauthenticated reads
    """

    def __init__(
        self,
        endpoint_url: str,
        bucket_prefix: str = "",
        region: str = "auto",
        public_base_url: str = "",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
    ):
        """Initialize the R2 backend.

        Args:
            endpoint_url: R2 endpoint URL
            bucket_prefix: Prefix prepended to logical bucket names
            region: R2 region
            public_base_url: Base URL for public reads; may contain a
                ``{bucket}`` placeholder
            access_key_id: Access key (default: PO_R2_ACCESS_KEY_ID)
            secret_access_key: Secret key (default: PO_R2_SECRET_ACCESS_KEY)

        Raises:
            ValueError: If either credential is missing
        """
        self.endpoint_url = endpoint_url
        self.bucket_prefix = bucket_prefix
        self.region = region
        self.public_base_url = public_base_url.rstrip("/")

        access_key = access_key_id or os.environ.get("PO_R2_ACCESS_KEY_ID")
        secret_key = secret_access_key or os.environ.get("PO_R2_SECRET_ACCESS_KEY")

        if not access_key or not secret_key:
            raise ValueError(
                "R2 credentials not set. "
                "Set PO_R2_ACCESS_KEY_ID and PO_R2_SECRET_ACCESS_KEY environment variables."
            )

        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    def physical_bucket(self, bucket: str) -> str:
        return f"{self.bucket_prefix}{bucket}"

    async def put_object(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            None,
            lambda: self._client.put_object(
                Bucket=self.physical_bucket(bucket),
                Key=path,
                Body=BytesIO(data),
                ContentLength=len(data),
                ContentType=content_type,
                CacheControl="max-age=3600",
            ),
        )

    async def get_object(self, bucket: str, path: str) -> bytes:
        def _read() -> bytes:
            response = self._client.get_object(Bucket=self.physical_bucket(bucket), Key=path)
            return response["Body"].read()

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, _read)

    async def delete_object(self, bucket: str, path: str) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            None,
            lambda: self._client.delete_object(Bucket=self.physical_bucket(bucket), Key=path),
        )

    async def list_objects(self, bucket: str, prefix: str, limit: int) -> List[ObjectInfo]:
        """List objects directly under ``prefix``, newest first.

        S3 listings are ordered by key, so every page under the prefix is
        read and sorted by ``LastModified`` before truncating to ``limit``.
        """

        def _list() -> List[ObjectInfo]:
            paginator = self._client.get_paginator("list_objects_v2")
            pages = paginator.paginate(
                Bucket=self.physical_bucket(bucket),
                Prefix=prefix,
                Delimiter="/",
            )
            found: List[ObjectInfo] = []
            for page in pages:
                for item in page.get("Contents", []):
                    name = item["Key"][len(prefix):]
                    if not name:
                        continue
                    found.append(
                        ObjectInfo(
                            key=name,
                            size=item.get("Size", 0),
                            last_modified=item.get("LastModified"),
                        )
                    )
            return found

        loop = asyncio.get_event_loop()
        objects = await loop.run_in_executor(None, _list)
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        objects.sort(key=lambda o: o.last_modified or epoch, reverse=True)
        return objects[:limit]

    def public_url(self, bucket: str, path: str) -> str:
        physical = self.physical_bucket(bucket)
        quoted = quote(path)
        if not self.public_base_url:
            return f"{self.endpoint_url.rstrip('/')}/{physical}/{quoted}"
        if "{bucket}" in self.public_base_url:
            return f"{self.public_base_url.format(bucket=physical)}/{quoted}"
        return f"{self.public_base_url}/{physical}/{quoted}"
