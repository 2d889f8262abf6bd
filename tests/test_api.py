"""HTTP tests for the FastAPI app, with a mock-backed assistant."""
import json

import pytest
from fastapi.testclient import TestClient

from bookstore_assistant import main
from bookstore_assistant.assistant import DataAssistant
from bookstore_assistant.config import Settings
from bookstore_assistant.errors import ConfigurationError
from bookstore_assistant.llm.base import ProviderResponse
from bookstore_assistant.llm.providers.mock import MockProvider, text_response
from bookstore_assistant.tools.sql import SqlExecutor

from conftest import FakeCatalog, FakeDatabase, FakeSnapshotSource, FakeStore, RefusingDatabase, make_gateway

client = TestClient(main.app)


@pytest.fixture
def use_provider(monkeypatch):
    """Install a DataAssistant driven by the given scripted provider."""
    def install(provider, db=None):
        store = FakeStore()
        assistant = DataAssistant(
            make_gateway(provider),
            SqlExecutor(connection_factory=(db or FakeDatabase()).connect),
            orders=store,
            customer_orders=store,
            invoices=store,
            snapshot_source=FakeSnapshotSource(),
            catalog=FakeCatalog(),
            isbn_registry=store,
        )
        monkeypatch.setattr(main, "_assistant", assistant)
        return assistant
    return install


class TestHealth:

    def test_health_database_ok(self, monkeypatch):
        async def ok(config=None):
            return True

        monkeypatch.setattr(main, "check_connection", ok)
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "database": "ok"}

    def test_health_database_not_configured(self, monkeypatch):
        async def unconfigured(config=None):
            raise ConfigurationError("Database connection is not configured")

        monkeypatch.setattr(main, "check_connection", unconfigured)
        assert client.get("/health").json()["database"] == "not_configured"

    def test_correlation_id_echoed(self, monkeypatch):
        async def down(config=None):
            return False

        monkeypatch.setattr(main, "check_connection", down)
        r = client.get("/health", headers={"X-Correlation-ID": "abc-123"})
        assert r.headers["X-Correlation-ID"] == "abc-123"
        assert r.json()["database"] == "unreachable"

    def test_metrics(self):
        r = client.get("/metrics")
        assert r.status_code == 200
        assert "assistant_requests_total" in r.text


class TestConfiguration:

    def test_missing_api_key_is_500(self, monkeypatch):
        monkeypatch.setattr(main, "_assistant", None)
        monkeypatch.setattr(main, "settings", Settings(gemini_api_key=None))

        r = client.post("/ai/chat-tools", json={"question": "Do you have Dune?"})

        assert r.status_code == 500
        assert r.json() == {
            "success": False,
            "message": "The service is not configured correctly.",
            "code": "configuration_error",
        }

    def test_validation_error(self, use_provider):
        use_provider(MockProvider())
        assert client.post("/ai/chat-tools", json={"question": ""}).status_code == 422


class TestRoutes:

    def test_chat_tools(self, use_provider):
        use_provider(MockProvider([text_response("We open at 8am.")]))

        r = client.post("/ai/chat-tools", json={"question": "When do you open?"})

        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["data"] == {"answer": "We open at 8am.", "method_used": "direct", "function_called": None}

    def test_ask(self, use_provider):
        db = FakeDatabase(lambda statement, params: [{"title": "Dune", "stock": 0}])
        use_provider(MockProvider([text_response("SELECT title, stock FROM book WHERE stock = 0"), text_response("Dune is out of stock.")]), db)

        r = client.post("/ai/ask", json={"question": "Which books are out of stock?"})

        data = r.json()["data"]
        assert data["answer"] == "Dune is out of stock."
        assert data["needs_clarification"] is False
        assert db.queries == ["SELECT title, stock FROM book WHERE stock = 0"]

    def test_admin_chat_uses_last_message(self, use_provider):
        plan = {"summary": "none", "steps": []}
        synthesis = {"overview": "Revenue grew 12%.", "metrics": [], "recommendedActions": []}
        provider = MockProvider([text_response(json.dumps(plan)), text_response(json.dumps(synthesis))])
        use_provider(provider)

        r = client.post("/ai/admin-chat", json={
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello, how can I help?"},
                {"role": "user", "content": "How did revenue do?"},
            ],
            "language": "en",
        })

        data = r.json()["data"]
        assert "Revenue grew 12%." in data["plain_text"]
        assert data["data_sources"] == ["profit_report", "category_share"]
        planning_text = provider.calls[0]["contents"][0]["parts"][0]["text"]
        assert "How did revenue do?" in planning_text

    def test_admin_chat_ignores_trailing_assistant_turn(self, use_provider):
        plan = {"summary": "none", "steps": []}
        synthesis = {"overview": "Fiction leads.", "metrics": [], "recommendedActions": []}
        provider = MockProvider([text_response(json.dumps(plan)), text_response(json.dumps(synthesis))])
        use_provider(provider)

        r = client.post("/ai/admin-chat", json={"messages": [
            {"role": "user", "content": "Which category sells best?"},
            {"role": "assistant", "content": "Let me check the numbers."},
        ]})

        assert r.json()["success"] is True
        planning = json.loads(provider.calls[0]["contents"][0]["parts"][0]["text"])
        assert planning["question"] == "Which category sells best?"
        assert planning["conversation"] == []

    @pytest.mark.parametrize("messages", [
        [{"role": "user", "content": "   "}],
        [{"role": "assistant", "content": "How can I help?"}],
        [{"role": "user", "content": "Revenue?"}, {"role": "user", "content": ""}],
    ])
    def test_admin_chat_without_question(self, use_provider, messages):
        provider = MockProvider()
        use_provider(provider)

        body = client.post("/ai/admin-chat", json={"messages": messages}).json()

        assert body["success"] is False
        assert body["code"] == "missing_question"
        assert provider.calls == []

    def test_admin_chat_requires_messages(self, use_provider):
        use_provider(MockProvider())
        assert client.post("/ai/admin-chat", json={"messages": []}).status_code == 422

    def test_admin_assistant(self, use_provider):
        insights = {"overview": "Fiction leads.", "recommendedCategories": ["Fiction"], "bookSuggestions": []}
        use_provider(MockProvider([text_response(json.dumps(insights))]))

        r = client.post("/ai/admin-assistant", json={"language": "en"})

        body = r.json()
        assert body["success"] is True
        assert body["data"]["overview"] == "Fiction leads."
        assert body["data"]["recommendedCategories"] == ["Fiction"]

    def test_admin_assistant_unavailable(self, use_provider):
        use_provider(MockProvider([ProviderResponse(status_code=400, body="API key expired")]))

        body = client.post("/ai/admin-assistant", json={}).json()

        assert body["success"] is False
        assert body["code"] == "ai_unavailable"
        assert body["data"] is None

    def test_admin_voice(self, use_provider):
        audio = {"candidates": [{"content": {"role": "model", "parts": [
            {"inlineData": {"mimeType": "audio/wav", "data": "UklGRg=="}},
            {"text": "Revenue is up."},
        ]}}]}
        use_provider(MockProvider([audio]))

        body = client.post("/ai/admin-voice", json={"audio_base64": "AAAA", "mime_type": "audio/ogg"}).json()

        assert body["success"] is True
        assert body["data"]["audio_base64"] == "UklGRg=="
        assert body["data"]["answer_text"] == "Revenue is up."

    def test_admin_voice_missing_audio(self, use_provider):
        use_provider(MockProvider([text_response("I can only answer in text.")]))

        body = client.post("/ai/admin-voice", json={"audio_base64": "AAAA"}).json()

        assert body["success"] is False
        assert body["code"] == "missing_audio"
        assert body["data"]["answer_text"] == "I can only answer in text."

    def test_admin_voice_unavailable(self, use_provider):
        use_provider(MockProvider([ProviderResponse(status_code=400, body="API_KEY_INVALID")]))

        body = client.post("/ai/admin-voice", json={"audio_base64": "AAAA"}).json()

        assert body["code"] == "ai_unavailable"


class TestRecommendBooks:

    def test_recommendations(self, use_provider):
        book = {"isbn": "9780441013593", "title": "Dune", "category": "Science Fiction", "publisher": "Ace",
                "publish_year": 1965, "average_price": 12.5, "stock": 3, "authors": "Frank Herbert"}
        db = FakeDatabase(lambda statement, params: [book] if "b.title ILIKE" in statement else [])
        answer = {"recommendations": [{"isbn": "9780441013593", "aiSummary": "A desert epic.",
                                       "aiReason": "Classic science fiction.", "score": 90}],
                  "overallSummary": "Start with Dune."}
        use_provider(MockProvider([text_response(json.dumps(answer))]), db)

        body = client.post("/ai/recommend-books", json={"prompt": "science fiction classics", "max_results": 5}).json()

        assert body["success"] is True
        assert body["data"]["usedAi"] is True
        assert body["data"]["summary"] == "Start with Dune."
        assert body["data"]["books"][0]["aiReason"] == "Classic science fiction."
        assert body["data"]["books"][0]["publishYear"] == 1965

    def test_catalog_unavailable(self, use_provider):
        use_provider(MockProvider(), RefusingDatabase())

        body = client.post("/ai/recommend-books", json={"prompt": "anything"}).json()

        assert body["success"] is False
        assert body["code"] == "catalog_unavailable"

    def test_blank_prompt_is_400(self, use_provider):
        use_provider(MockProvider())

        r = client.post("/ai/recommend-books", json={"prompt": "   "})

        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"

    def test_empty_prompt_is_422(self, use_provider):
        use_provider(MockProvider())
        assert client.post("/ai/recommend-books", json={"prompt": ""}).status_code == 422
