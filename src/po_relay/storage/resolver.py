"""Resolution of opaque file references to stored object keys.

Cache ids held by clients and keys assigned at upload live in different
namespaces, and references lose fidelity through repeated encoding. A
reference is resolved by running an ordered chain of strategies until one
produces a key:

1. canonical  - the reference already is a stored key (no I/O)
2. mapping    - a persisted mapping record for the reference
3. namespaced - exact match of a decoded candidate under ``files/``
4. legacy     - exact match at the bucket root (older layout)
5. type_hint  - newest object whose key starts with the hinted type prefix

Keys found by listing (3-5) are written back as mapping records so the next
resolve of the same reference takes the mapping path.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..models import FailureKind, FileMappingRecord, ListResult, ObjectInfo, ResolveResult
from .mappings import MappingStore
from .references import (
    LEGACY_PREFIX,
    NAMESPACE_PREFIX,
    decode_candidates,
    is_canonical_key,
    reference_aliases,
    type_prefix,
)
from .remote import RemoteObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ResolveContext:
    """Inputs shared by the strategies of one resolve call.

    Listings are fetched at most once per prefix per call.
    """

    reference: str
    bucket: str
    expected_type: Optional[str]
    candidates: List[str]
    store: RemoteObjectStore
    mappings: MappingStore
    _listings: Dict[str, ListResult] = field(default_factory=dict)

    async def listing(self, prefix: str) -> List[ObjectInfo]:
        if prefix not in self._listings:
            self._listings[prefix] = await self.store.list(self.bucket, prefix)
        result = self._listings[prefix]
        return result.objects if result.ok else []


StrategyFn = Callable[[ResolveContext], Awaitable[Optional[str]]]


@dataclass
class ResolverStrategy:
    """A named resolution step.

    Attributes:
        name: Reported as ``ResolveResult.source``
        run: The step itself
        persist: Write a mapping record when this step finds a key
    """

    name: str
    run: StrategyFn
    persist: bool = False


def _exact_match(objects: List[ObjectInfo], candidates: List[str]) -> Optional[str]:
    names = {obj.key for obj in objects}
    for candidate in candidates:
        if candidate in names:
            return candidate
    return None


async def canonical_key(ctx: ResolveContext) -> Optional[str]:
    return ctx.reference if is_canonical_key(ctx.reference) else None


async def persisted_mapping(ctx: ResolveContext) -> Optional[str]:
    record = await ctx.mappings.load(ctx.reference)
    return record.actual_key if record else None


async def namespaced_match(ctx: ResolveContext) -> Optional[str]:
    return _exact_match(await ctx.listing(NAMESPACE_PREFIX), ctx.candidates)


async def legacy_match(ctx: ResolveContext) -> Optional[str]:
    return _exact_match(await ctx.listing(LEGACY_PREFIX), ctx.candidates)


async def type_hint_guess(ctx: ResolveContext) -> Optional[str]:
    """Newest object of the hinted type.

    Two uploads of the same type finishing before either has a mapping
    record can make this pick the other one.
    """
    prefix = type_prefix(ctx.expected_type)
    if not prefix:
        return None

    matching = [obj for obj in await ctx.listing(NAMESPACE_PREFIX) if obj.key.startswith(f"{prefix}-")]
    if not matching:
        return None

    # Listing order breaks ties between equal or missing timestamps
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    matching.sort(key=lambda obj: obj.last_modified or epoch, reverse=True)
    return matching[0].key


DEFAULT_STRATEGIES = [
    ResolverStrategy("canonical", canonical_key),
    ResolverStrategy("mapping", persisted_mapping),
    ResolverStrategy("namespaced", namespaced_match, persist=True),
    ResolverStrategy("legacy", legacy_match, persist=True),
    ResolverStrategy("type_hint", type_hint_guess, persist=True),
]


class FilenameResolver:
    """Turns references into stored keys and records the links it finds."""

    def __init__(
        self,
        store: RemoteObjectStore,
        mappings: MappingStore,
        strategies: Optional[List[ResolverStrategy]] = None,
    ):
        self.store = store
        self.mappings = mappings
        self.strategies = strategies if strategies is not None else list(DEFAULT_STRATEGIES)

    async def resolve(
        self,
        reference: str,
        bucket: str = "uploads",
        expected_type: Optional[str] = None,
    ) -> ResolveResult:
        """Resolve ``reference`` to a stored key in ``bucket``.

        Args:
            reference: Opaque reference held by the caller
            bucket: Logical bucket name
            expected_type: Optional type hint ("order" or "supplier")

        Returns:
            ResolveResult with ``actual_key`` and the strategy ``source``, or
            a NOT_FOUND failure once every strategy came up empty
        """
        ctx = ResolveContext(
            reference=reference,
            bucket=bucket,
            expected_type=expected_type,
            candidates=decode_candidates(reference),
            store=self.store,
            mappings=self.mappings,
        )
        logger.info(f"Resolving {reference!r} in {bucket} ({len(ctx.candidates)} candidates)")

        for strategy in self.strategies:
            actual_key = await strategy.run(ctx)
            if not actual_key:
                continue

            logger.info(f"Resolved {reference!r} -> {actual_key} via {strategy.name}")
            if strategy.persist:
                await self.remember(
                    reference,
                    actual_key,
                    original_name=ctx.candidates[-1],
                    bucket=bucket,
                    flags={"resolved_by": strategy.name},
                )
            return ResolveResult(ok=True, actual_key=actual_key, source=strategy.name)

        hint = f" of type {expected_type!r}" if expected_type else ""
        logger.warning(f"Could not resolve {reference!r}{hint} in {bucket}")
        return ResolveResult(
            ok=False,
            reason=f"No stored file{hint} found for {reference!r} in {bucket}",
            failure=FailureKind.NOT_FOUND,
        )

    async def lookup(self, reference: str) -> Optional[FileMappingRecord]:
        """Return the mapping record stored for ``reference``, if any."""
        return await self.mappings.load(reference)

    async def remember(
        self,
        reference: str,
        actual_key: str,
        original_name: str = "",
        bucket: str = "uploads",
        size: Optional[int] = None,
        mime_type: Optional[str] = None,
        flags: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Persist (insert or replace) the mapping ``reference -> actual_key``."""
        record = FileMappingRecord(
            original_id=reference,
            actual_key=actual_key,
            original_name=original_name,
            bucket=bucket,
            size=size,
            mime_type=mime_type,
            flags=flags or {},
        )
        return await self.mappings.save(record)

    async def remember_upload(
        self,
        original_name: str,
        actual_key: str,
        bucket: str = "uploads",
        size: Optional[int] = None,
        mime_type: Optional[str] = None,
        flags: Optional[Dict[str, Any]] = None,
        extra_references: Optional[List[str]] = None,
    ) -> int:
        """Record every alias a client may use for a fresh upload.

        Args:
            original_name: Name of the uploaded file
            actual_key: Key it was stored under
            bucket: Logical bucket name
            size: Size in bytes
            mime_type: Content type reported by the client
            flags: Extra record flags
            extra_references: Further references to map (e.g. a cache id)

        Returns:
            Number of records persisted
        """
        references = list(dict.fromkeys(reference_aliases(original_name) + list(extra_references or [])))
        saved = 0
        for reference in references:
            if await self.remember(reference, actual_key, original_name, bucket, size, mime_type, flags):
                saved += 1

        if saved < len(references):
            logger.warning(f"Saved {saved} of {len(references)} mappings for {original_name!r}")
        return saved
