"""Tests for the function-call bridge: caller authentication, credential
resolution and the catalog functions.
"""

from __future__ import annotations

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from gateway.services.function_bridge import format_product, parse_function_call
from gateway_core.state.database import StoreClient
from gateway_core.state.repository import SessionRepository

SECRET = "test-function-secret"

_PRODUCTS = [
    {
        "title": "Blue Mug",
        "body_html": "<p>Hand-thrown <strong>ceramic</strong> mug.</p>",
        "product_type": "Kitchen",
        "vendor": "Clayworks",
        "variants": [{"price": "12.50", "inventory_quantity": 3}],
    },
    {
        "title": "Red Mug",
        "body_html": "",
        "variants": [{"price": "11.00", "inventory_quantity": 0}],
    },
]


def _catalog_handler(status: int = 200):
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/products.json")
        if status != 200:
            return httpx.Response(status, json={"errors": "upstream"})
        title = request.url.params.get("title")
        products = [p for p in _PRODUCTS if title is None or title.lower() in p["title"].lower()]
        return httpx.Response(200, json={"products": products})

    return _handler


def _call(name: str, parameters=None) -> dict:
    return {"message": {"type": "function-call", "functionCall": {"name": name, "parameters": parameters or {}}}}


@pytest.fixture()
def bridge_app(make_app, make_platform):
    def _make(status: int = 200):
        platform, transport = make_platform(_catalog_handler(status))
        return make_app(platform=platform), transport

    return _make


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestCallerAuthentication:
    @pytest.mark.asyncio
    async def test_missing_secret_is_401(self, bridge_app, make_client, tenant) -> None:
        app, transport = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(f"/functions/{tenant.id}", json=_call("get_products"))

        assert resp.status_code == 401
        assert resp.json() == {"results": [{"error": "Unauthorized"}]}
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_wrong_secret_is_401(self, bridge_app, make_client, tenant) -> None:
        app, _ = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(
                f"/functions/{tenant.id}",
                json=_call("get_products"),
                headers={"X-Caller-Secret": "nope"},
            )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers",
        [
            {"X-Caller-Secret": SECRET},
            {"X-Vapi-Secret": SECRET},
            {"X-Api-Key": SECRET},
            {"Authorization": f"Bearer {SECRET}"},
        ],
    )
    async def test_accepted_header_forms(self, bridge_app, make_client, tenant, headers) -> None:
        app, _ = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(f"/functions/{tenant.id}", json=_call("get_products"), headers=headers)
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_only_first_present_header_is_compared(self, bridge_app, make_client, tenant) -> None:
        app, _ = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(
                f"/functions/{tenant.id}",
                json=_call("get_products"),
                headers={"X-Caller-Secret": "wrong", "X-Vapi-Secret": SECRET},
            )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_non_bearer_authorization_rejected(self, bridge_app, make_client, tenant) -> None:
        app, _ = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(
                f"/functions/{tenant.id}",
                json=_call("get_products"),
                headers={"Authorization": f"Basic {SECRET}"},
            )
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------


class TestFunctions:
    @pytest.mark.asyncio
    async def test_get_products_formats_results(self, bridge_app, make_client, tenant) -> None:
        app, transport = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(
                f"/functions/{tenant.id}",
                json=_call("get_products", {"limit": 2}),
                headers={"X-Caller-Secret": SECRET},
            )

        assert resp.status_code == 200
        result = resp.json()["results"][0]
        assert result["name"] == "get_products"
        assert result["result"]["count"] == 2
        first = result["result"]["products"][0]
        assert first == {
            "title": "Blue Mug",
            "description": "Hand-thrown ceramic mug.",
            "price": "12.50",
            "available": True,
            "productType": "Kitchen",
            "vendor": "Clayworks",
        }
        assert result["result"]["products"][1]["available"] is False

        request = transport.requests[0]
        assert request.url.host == tenant.tenant_domain
        assert request.url.params["limit"] == "2"
        # No offline grant exists, so the tenant record's token is used.
        assert request.headers["X-Shopify-Access-Token"] == "legacy-token"

    @pytest.mark.asyncio
    async def test_offline_grant_preferred_over_tenant_token(self, bridge_app, make_client, store, tenant) -> None:
        async with store.scope() as session:
            await SessionRepository(session).upsert(tenant_domain=tenant.tenant_domain, access_token="offline-token")
        app, transport = bridge_app()
        async with make_client(app) as client:
            await client.post(f"/functions/{tenant.id}", json=_call("get_products"), headers={"X-Api-Key": SECRET})

        assert transport.requests[0].headers["X-Shopify-Access-Token"] == "offline-token"

    @pytest.mark.asyncio
    async def test_search_products_passes_title_filter(self, bridge_app, make_client, tenant) -> None:
        app, transport = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(
                f"/functions/{tenant.id}",
                json=_call("search_products", '{"query": "red"}'),
                headers={"X-Caller-Secret": SECRET},
            )

        result = resp.json()["results"][0]["result"]
        assert result["query"] == "red"
        assert [p["title"] for p in result["products"]] == ["Red Mug"]
        assert transport.requests[0].url.params["title"] == "red"

    @pytest.mark.asyncio
    async def test_search_without_query_is_logical_error(self, bridge_app, make_client, tenant) -> None:
        app, transport = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(
                f"/functions/{tenant.id}",
                json=_call("search_products", {"query": "  "}),
                headers={"X-Caller-Secret": SECRET},
            )

        assert resp.status_code == 200
        assert resp.json() == {"results": [{"name": "search_products", "error": "A search query is required"}]}
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_unknown_function(self, bridge_app, make_client, tenant) -> None:
        app, _ = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(
                f"/functions/{tenant.id}",
                json=_call("delete_everything"),
                headers={"X-Caller-Secret": SECRET},
            )

        assert resp.status_code == 200
        assert resp.json()["results"][0]["error"] == "Unknown function: delete_everything"

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, bridge_app, make_client, store) -> None:
        app, transport = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(
                "/functions/no-such-tenant",
                json=_call("get_products"),
                headers={"X-Caller-Secret": SECRET},
            )

        assert resp.status_code == 200
        assert "Store credential not found" in resp.json()["results"][0]["error"]
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_store_outage_is_logical_error(self, make_app, make_client, make_platform, tmp_path) -> None:
        # A database without tables fails every lookup with OperationalError.
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", echo=False)
        broken = StoreClient("primary", async_sessionmaker(engine, expire_on_commit=False))
        platform, transport = make_platform(_catalog_handler())
        try:
            async with make_client(make_app(platform=platform, stores=[broken])) as client:
                resp = await client.post(
                    "/functions/some-tenant",
                    json=_call("get_products"),
                    headers={"X-Caller-Secret": SECRET},
                )
        finally:
            await engine.dispose()

        assert resp.status_code == 200
        result = resp.json()["results"][0]
        assert result["name"] == "get_products"
        assert result["error"].startswith("Store temporarily unavailable")
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_upstream_failure_is_logical_error(self, bridge_app, make_client, tenant) -> None:
        app, _ = bridge_app(status=500)
        async with make_client(app) as client:
            resp = await client.post(
                f"/functions/{tenant.id}",
                json=_call("get_products"),
                headers={"X-Caller-Secret": SECRET},
            )

        assert resp.status_code == 200
        assert resp.json()["results"][0]["error"].startswith("Catalog request failed")

    @pytest.mark.asyncio
    async def test_invalid_body(self, bridge_app, make_client, tenant) -> None:
        app, _ = bridge_app()
        async with make_client(app) as client:
            resp = await client.post(
                f"/functions/{tenant.id}",
                content=b"not json",
                headers={"X-Caller-Secret": SECRET, "Content-Type": "application/json"},
            )

        assert resp.status_code == 200
        assert resp.json() == {"results": [{"error": "Invalid request body"}]}

    @pytest.mark.asyncio
    async def test_health_lists_functions(self, bridge_app, make_client, tenant) -> None:
        app, _ = bridge_app()
        async with make_client(app) as client:
            resp = await client.get(f"/functions/{tenant.id}")

        assert resp.json() == {
            "status": "ok",
            "tenantId": tenant.id,
            "functions": ["get_products", "search_products"],
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestParsing:
    def test_top_level_function_call(self) -> None:
        assert parse_function_call({"functionCall": {"name": "get_products", "parameters": {"limit": 3}}}) == (
            "get_products",
            {"limit": 3},
        )

    def test_bad_string_parameters_become_empty(self) -> None:
        assert parse_function_call(_call("get_products", "{oops")) == ("get_products", {})

    def test_non_object_body(self) -> None:
        assert parse_function_call(["x"]) == (None, {})

    def test_format_product_truncates_description(self) -> None:
        formatted = format_product({"title": "Long", "body_html": "<p>" + "a" * 500 + "</p>"})
        assert len(formatted["description"]) == 200
        assert formatted["price"] is None
        assert formatted["available"] is True
