"""Unit tests for gateway_core.domains."""

from __future__ import annotations

import pytest
from gateway_core.domains import (
    display_name_from_domain,
    is_valid_tenant_domain,
    normalize_tenant_domain,
    session_id_for,
)

# ---------------------------------------------------------------------------
# normalize_tenant_domain
# ---------------------------------------------------------------------------


class TestNormalizeTenantDomain:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Example.MyShop.com/", "example.myshop.com"),
            ("  example.myshop.com  ", "example.myshop.com"),
            ("https://Example.myshop.com/admin?x=1", "example.myshop.com"),
            ("http://example.myshop.com#frag", "example.myshop.com"),
            ("example.myshop.com.", "example.myshop.com"),
            ("acme", "acme.myshopify.com"),
            ("ACME", "acme.myshopify.com"),
            ("acme.myshopify.com", "acme.myshopify.com"),
        ],
    )
    def test_canonical_forms(self, raw: str, expected: str) -> None:
        assert normalize_tenant_domain(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "https://", "/path-only"])
    def test_empty_inputs(self, raw) -> None:
        assert normalize_tenant_domain(raw) == ""

    def test_idempotent(self) -> None:
        once = normalize_tenant_domain("HTTPS://Shop.Example.com/x")
        assert normalize_tenant_domain(once) == once

    def test_custom_suffix(self) -> None:
        assert normalize_tenant_domain("acme", ".stores.test") == "acme.stores.test"

    def test_empty_suffix_leaves_bare_handle(self) -> None:
        assert normalize_tenant_domain("acme", "") == "acme"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize("domain", ["demo.myshopify.com", "a-b.example.com", "x1.y2"])
    def test_valid(self, domain: str) -> None:
        assert is_valid_tenant_domain(domain) is True

    @pytest.mark.parametrize("domain", ["", "nodot", "bad domain.com", "-lead.example.com", "a..b.com"])
    def test_invalid(self, domain: str) -> None:
        assert is_valid_tenant_domain(domain) is False


class TestDerivedNames:
    def test_display_name_strips_suffix(self) -> None:
        assert display_name_from_domain("demo.myshopify.com") == "demo"

    def test_display_name_keeps_custom_domain(self) -> None:
        assert display_name_from_domain("shop.example.com") == "shop.example.com"

    def test_session_ids(self) -> None:
        assert session_id_for("demo.myshopify.com") == "offline_demo.myshopify.com"
        assert session_id_for("demo.myshopify.com", is_online=True) == "online_demo.myshopify.com"
