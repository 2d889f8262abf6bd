"""Tests for the function-call router and the tool registry."""
import json

import pytest

from bookstore_assistant.errors import ConfigurationError
from bookstore_assistant.function_router import (
    UNAVAILABLE_ANSWER,
    UNKNOWN_FUNCTION_PAYLOAD,
    FunctionCallRouter,
)
from bookstore_assistant.llm.base import ProviderResponse
from bookstore_assistant.llm.providers.mock import MockProvider, function_call_response, text_response
from bookstore_assistant.llm.schemas import FunctionCallIntent
from bookstore_assistant.tools.base import ToolParameter, ToolRegistry, ToolSpec
from bookstore_assistant.tools.business import NO_BOOKS_FOUND, build_business_tools

from conftest import FakeCatalog, FakeStore, make_gateway


def _router(provider, store=None, catalog=None, warn_chars=30_000):
    store = store or FakeStore()
    catalog = catalog or FakeCatalog()
    registry = ToolRegistry(build_business_tools(store, store, store, catalog))
    return FunctionCallRouter(make_gateway(provider), registry, catalog, warn_chars=warn_chars)


class TestToolRegistry:

    def test_business_tools_registered(self):
        store = FakeStore()
        registry = ToolRegistry(build_business_tools(store, store, store, FakeCatalog()))
        assert registry.names() == [
            "get_order_details",
            "search_customer_orders",
            "get_invoice_details",
            "search_books",
        ]
        assert "search_books" in registry
        assert len(registry) == 4

    def test_declarations_shape(self):
        store = FakeStore()
        declarations = ToolRegistry(build_business_tools(store, store, store, FakeCatalog())).declarations()
        order = declarations["functionDeclarations"][0]
        assert order["name"] == "get_order_details"
        assert order["parameters"]["type"] == "object"
        assert order["parameters"]["properties"]["order_id"]["type"] == "string"
        assert order["parameters"]["required"] == ["order_id"]

    def test_duplicate_name_rejected(self):
        async def handler(args):
            return {}

        tool = ToolSpec(name="t", description="d", handler=handler)
        registry = ToolRegistry([tool])
        with pytest.raises(ValueError):
            registry.register(tool)


class TestDispatch:

    @pytest.mark.asyncio
    async def test_unknown_function_payload(self):
        router = _router(MockProvider())

        result = await router.dispatch(FunctionCallIntent(name="unknown_tool", args={}))

        assert result == UNKNOWN_FUNCTION_PAYLOAD
        assert json.loads(result) == {"error": "Unknown function"}

    @pytest.mark.asyncio
    async def test_missing_required_args_become_empty(self):
        store = FakeStore()
        router = _router(MockProvider(), store=store)

        result = json.loads(await router.dispatch(FunctionCallIntent(name="get_order_details", args={})))

        assert store.order_calls == [""]
        assert result == {"found": False, "order_id": ""}

    @pytest.mark.asyncio
    async def test_order_found(self):
        router = _router(MockProvider())
        result = json.loads(await router.dispatch(FunctionCallIntent(name="get_order_details", args={"order_id": "1024"})))
        assert result["found"] is True
        assert result["order"]["status"] == "Delivered"

    @pytest.mark.asyncio
    async def test_search_books_without_answer(self):
        router = _router(MockProvider(), catalog=FakeCatalog(answer=None))
        result = json.loads(await router.dispatch(FunctionCallIntent(name="search_books", args={"query": "dune"})))
        assert result == {"query": "dune", "answer": NO_BOOKS_FOUND}

    @pytest.mark.asyncio
    async def test_failing_lookup_is_isolated(self):
        class BrokenStore(FakeStore):
            async def get_invoice(self, invoice_id):
                raise RuntimeError("connection reset")

        router = _router(MockProvider(), store=BrokenStore())
        result = json.loads(await router.dispatch(FunctionCallIntent(name="get_invoice_details", args={"invoice_id": "77"})))
        assert result == {"error": "Lookup failed", "function": "get_invoice_details"}

    @pytest.mark.asyncio
    async def test_configuration_error_propagates(self):
        class Unconfigured(FakeStore):
            async def get_invoice(self, invoice_id):
                raise ConfigurationError("Database connection is not configured")

        router = _router(MockProvider(), store=Unconfigured())
        with pytest.raises(ConfigurationError):
            await router.dispatch(FunctionCallIntent(name="get_invoice_details", args={"invoice_id": "77"}))

    @pytest.mark.asyncio
    async def test_large_result_is_returned_whole(self, caplog):
        async def big(args):
            return {"blob": "x" * 500}

        registry = ToolRegistry([ToolSpec(name="big", description="d", handler=big, parameters=[ToolParameter("q", "q")])])
        router = FunctionCallRouter(make_gateway(MockProvider()), registry, FakeCatalog(), warn_chars=100)

        result = await router.dispatch(FunctionCallIntent(name="big", args={}))

        assert len(result) > 500
        assert "may not fit" in caplog.text


class TestChatWithTools:

    @pytest.mark.asyncio
    async def test_function_calling_two_legs(self):
        provider = MockProvider([
            function_call_response("get_order_details", {"order_id": "1024"}),
            text_response("Order 1024 was delivered."),
        ])
        router = _router(provider)

        result = await router.chat_with_tools("Where is my order 1024?")

        assert result.method_used == "function_calling"
        assert result.function_called == "get_order_details"
        assert result.answer == "Order 1024 was delivered."
        second = provider.calls[1]["contents"]
        function_result = json.loads(second[2]["parts"][0]["functionResponse"]["response"]["content"])
        assert function_result["found"] is True

    @pytest.mark.asyncio
    async def test_unknown_tool_is_handed_back_to_model(self):
        provider = MockProvider([
            function_call_response("unknown_tool", {}),
            text_response("I can't do that, but I can look up orders."),
        ])

        result = await _router(provider).chat_with_tools("Do something odd")

        assert result.method_used == "function_calling"
        assert result.function_called == "unknown_tool"
        content = provider.calls[1]["contents"][2]["parts"][0]["functionResponse"]["response"]["content"]
        assert content == UNKNOWN_FUNCTION_PAYLOAD

    @pytest.mark.asyncio
    async def test_direct_text_answer(self):
        provider = MockProvider([text_response("We open at 8am.")])
        catalog = FakeCatalog()

        result = await _router(provider, catalog=catalog).chat_with_tools("When do you open?")

        assert result.method_used == "direct"
        assert result.answer == "We open at 8am."
        assert result.function_called is None
        assert catalog.queries == []

    @pytest.mark.asyncio
    async def test_backend_down_falls_back_to_catalog(self):
        provider = MockProvider([ProviderResponse(status_code=400, body="API_KEY_INVALID")])
        catalog = FakeCatalog()

        result = await _router(provider, catalog=catalog).chat_with_tools("Do you have Dune?")

        assert result.method_used == "rag_fallback"
        assert result.answer == "We have 3 copies of Dune in stock."
        assert catalog.queries == ["Do you have Dune?"]

    @pytest.mark.asyncio
    async def test_second_leg_failure_falls_back(self):
        provider = MockProvider([
            function_call_response("search_books", {"query": "dune"}),
            ProviderResponse(status_code=400, body="bad request"),
        ])

        result = await _router(provider).chat_with_tools("Do you have Dune?")

        assert result.method_used == "rag_fallback"
        assert result.function_called == "search_books"

    @pytest.mark.asyncio
    async def test_everything_down(self):
        provider = MockProvider([ProviderResponse(status_code=400, body="API_KEY_INVALID")])

        result = await _router(provider, catalog=FakeCatalog(answer=None)).chat_with_tools("Hello?")

        assert result.method_used == "unavailable"
        assert result.answer == UNAVAILABLE_ANSWER
