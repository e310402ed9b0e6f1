"""Tests for reference encoding rules."""

import base64
from urllib.parse import quote

from po_relay.storage.references import (
    build_stored_key,
    decode_candidates,
    guess_content_type,
    is_canonical_key,
    reference_aliases,
    safe_key,
    type_prefix,
)


class TestCanonicalKey:
    """Tests for is_canonical_key."""

    def test_accepts_stored_keys(self):
        assert is_canonical_key("orderFile-1718000000000-123456789.xlsx")
        assert is_canonical_key("supplierFile-17-2459.xls")
        assert is_canonical_key("orderFile-1-2.csv")

    def test_rejects_other_shapes(self):
        assert not is_canonical_key("orderFile-17")
        assert not is_canonical_key("orderFile-17-2459.pdf")
        assert not is_canonical_key("invoiceFile-17-2459.xlsx")
        assert not is_canonical_key("files/orderFile-17-2459.xlsx")


class TestBuildStoredKey:
    """Tests for build_stored_key."""

    def test_uses_type_prefix_and_extension(self):
        key = build_stored_key("주문서.XLSX", "supplier", now_ms=1718000000000, sequence=42)
        assert key == "supplierFile-1718000000000-42.xlsx"

    def test_unknown_type_defaults_to_order(self):
        key = build_stored_key("orders.csv", "other", now_ms=5, sequence=6)
        assert key == "orderFile-5-6.csv"

    def test_generated_keys_are_canonical(self):
        assert is_canonical_key(build_stored_key("orders.xls"))


class TestTypePrefix:
    """Tests for type_prefix."""

    def test_known_types(self):
        assert type_prefix("order") == "orderFile"
        assert type_prefix("Supplier") == "supplierFile"

    def test_missing_or_unknown(self):
        assert type_prefix(None) is None
        assert type_prefix("invoice") is None


class TestGuessContentType:
    """Tests for guess_content_type."""

    def test_known_extensions(self):
        assert guess_content_type("a.xlsx") == "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        assert guess_content_type("a.XLS") == "application/vnd.ms-excel"
        assert guess_content_type("a.csv") == "text/csv"
        assert guess_content_type("a.json") == "application/json"

    def test_fallback(self):
        assert guess_content_type("a.bin") == "application/octet-stream"
        assert guess_content_type("noext") == "application/octet-stream"


class TestSafeKey:
    """Tests for safe_key."""

    def test_url_safe_without_padding(self):
        key = safe_key("발주서 최종?.xlsx")
        assert "=" not in key
        assert "/" not in key
        assert "+" not in key

    def test_deterministic(self):
        assert safe_key("orders.xlsx") == safe_key("orders.xlsx")
        assert safe_key("orders.xlsx") != safe_key("orders2.xlsx")


class TestReferenceAliases:
    """Tests for reference_aliases."""

    def test_ascii_name_has_no_percent_alias(self):
        aliases = reference_aliases("orders.xlsx")
        assert aliases == [
            base64.b64encode(b"orders.xlsx").decode(),
            safe_key("orders.xlsx") + "_safe",
        ]

    def test_non_ascii_name_adds_percent_alias(self):
        name = "주문 목록.xlsx"
        aliases = reference_aliases(name)
        assert len(aliases) == 3
        assert aliases[1] == quote(name, safe="-_.!~*'()")
        assert aliases[2].endswith("_safe")


class TestDecodeCandidates:
    """Tests for decode_candidates."""

    def test_reference_first(self):
        assert decode_candidates("orderFile-1-2.xlsx") == ["orderFile-1-2.xlsx"]

    def test_base64(self):
        encoded = base64.b64encode("주문.xlsx".encode()).decode()
        assert decode_candidates(encoded) == [encoded, "주문.xlsx"]

    def test_double_percent_encoding(self):
        name = "주문 목록.xlsx"
        twice = quote(quote(name))
        candidates = decode_candidates(twice)
        assert candidates[0] == twice
        assert candidates[1] == quote(name)
        assert candidates[2] == name

    def test_safe_suffix(self):
        name = "발주서.xlsx"
        assert decode_candidates(safe_key(name) + "_safe") == [safe_key(name) + "_safe", name]

    def test_base64_of_percent_encoded_name(self):
        name = "주문.xlsx"
        encoded = base64.b64encode(quote(name).encode()).decode()
        assert decode_candidates(encoded)[-1] == name

    def test_rejects_binary_base64(self):
        """Base64 that decodes to non-text is not a candidate."""
        encoded = base64.b64encode(b"\xff\xfe\x00\x01").decode()
        assert decode_candidates(encoded) == [encoded]

    def test_deduplicated(self):
        candidates = decode_candidates(quote(quote("a b.xlsx")))
        assert len(candidates) == len(set(candidates))
