"""File reference encoding rules.

Stored keys look like ``orderFile-1718000000000-123456789.xlsx``. Clients
hold references in other shapes: the original file name, its base64 or
percent-encoded form (sometimes encoded two or three times), or a url-safe
base64 form with a ``_safe`` suffix. These helpers turn a reference into the
candidate names worth probing, and names into the keys that get stored.
"""

import base64
import binascii
import random
import re
import time
from pathlib import PurePosixPath
from typing import Callable, List, Optional
from urllib.parse import quote, unquote

NAMESPACE_PREFIX = "files/"
LEGACY_PREFIX = ""
MAPPING_PREFIX = "file-mappings/"
SAFE_SUFFIX = "_safe"

TYPE_PREFIXES = {
    "order": "orderFile",
    "supplier": "supplierFile",
}

CANONICAL_KEY_PATTERN = re.compile(r"^(orderFile|supplierFile)-\d+-\d+\.(xlsx?|csv)$")

CONTENT_TYPES = {
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".csv": "text/csv",
    ".json": "application/json",
}

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=]+$")

# Characters left alone by JavaScript's encodeURIComponent
_URI_COMPONENT_SAFE = "-_.!~*'()"


def is_canonical_key(reference: str) -> bool:
    """Check whether a reference already has the stored-key shape."""
    return bool(CANONICAL_KEY_PATTERN.match(reference))


def type_prefix(file_type: Optional[str]) -> Optional[str]:
    """Map a type hint ("order", "supplier") to its stored-key prefix."""
    if not file_type:
        return None
    return TYPE_PREFIXES.get(file_type.lower())


def guess_content_type(name: str) -> str:
    """Content type from a file name's extension."""
    return CONTENT_TYPES.get(PurePosixPath(name).suffix.lower(), "application/octet-stream")


def safe_key(original_id: str) -> str:
    """Storage-safe encoding of an arbitrary id (url-safe base64, no padding)."""
    return base64.urlsafe_b64encode(original_id.encode("utf-8")).decode("ascii").rstrip("=")


def build_stored_key(
    original_name: str,
    file_type: str = "order",
    now_ms: Optional[int] = None,
    sequence: Optional[int] = None,
) -> str:
    """Build a canonical stored key for an upload.

    Args:
        original_name: Name of the uploaded file (only its extension is kept)
        file_type: "order" or "supplier"
        now_ms: Timestamp in milliseconds (default: now)
        sequence: Random disambiguator (default: random 0..1e9)

    Returns:
        Key such as ``supplierFile-1718000000000-42.xlsx``
    """
    prefix = type_prefix(file_type) or TYPE_PREFIXES["order"]
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if sequence is None:
        sequence = random.randint(0, 10**9)
    extension = PurePosixPath(original_name).suffix.lower()
    return f"{prefix}-{now_ms}-{sequence}{extension}"


def reference_aliases(original_name: str) -> List[str]:
    """References a client may later present for an uploaded file name.

    Returns:
        Standard base64, percent-encoded (when it differs) and url-safe
        base64 + ``_safe`` forms of the name, in that order
    """
    aliases = [base64.b64encode(original_name.encode("utf-8")).decode("ascii")]
    percent = quote(original_name, safe=_URI_COMPONENT_SAFE)
    if percent != original_name:
        aliases.append(percent)
    aliases.append(safe_key(original_name) + SAFE_SUFFIX)
    return aliases


def _plausible(text: str) -> bool:
    return bool(text) and text.isprintable()


def _percent_decode(value: str) -> Optional[str]:
    if "%" not in value:
        return None
    try:
        decoded = unquote(value, errors="strict")
    except UnicodeDecodeError:
        return None
    return decoded if decoded != value and _plausible(decoded) else None


def _base64_decode(value: str) -> Optional[str]:
    if len(value) < 4 or len(value) % 4 or not _BASE64_PATTERN.match(value):
        return None
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    return decoded if decoded != value and _plausible(decoded) else None


def _safe_base64_decode(value: str) -> Optional[str]:
    if not value.endswith(SAFE_SUFFIX):
        return None
    body = value[: -len(SAFE_SUFFIX)]
    body += "=" * (-len(body) % 4)
    try:
        decoded = base64.urlsafe_b64decode(body.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, UnicodeEncodeError, ValueError):
        return None
    return decoded if _plausible(decoded) else None


DECODERS: List[Callable[[str], Optional[str]]] = [
    _percent_decode,
    _base64_decode,
    _safe_base64_decode,
]


def decode_candidates(reference: str, rounds: int = 3) -> List[str]:
    """Names a reference may stand for, most literal first.

    Applies up to ``rounds`` rounds of percent, base64 and url-safe base64
    decoding to every name found so far.

    Args:
        reference: Opaque reference held by a caller
        rounds: Maximum number of decoding rounds

    Returns:
        Deduplicated list starting with ``reference`` itself
    """
    candidates = [reference]
    seen = {reference}
    frontier = [reference]

    for _ in range(rounds):
        discovered = []
        for value in frontier:
            for decoder in DECODERS:
                decoded = decoder(value)
                if decoded and decoded not in seen:
                    seen.add(decoded)
                    candidates.append(decoded)
                    discovered.append(decoded)
        if not discovered:
            break
        frontier = discovered

    return candidates
