"""Tests for single-question text-to-SQL answering."""
import datetime

import pytest

from bookstore_assistant.clarification import STATIC_CLARIFICATION, ClarificationService
from bookstore_assistant.errors import SqlExecutionError
from bookstore_assistant.llm.base import ProviderResponse
from bookstore_assistant.llm.providers.mock import MockProvider, text_response
from bookstore_assistant.schemas import ChatTurn
from bookstore_assistant.text_to_sql import (
    DATA_SOURCE,
    NO_ANSWER_TEXT,
    NO_DATA_TEXT,
    TextToSqlService,
    build_table_preview,
    clamp_rows,
    format_value,
)
from bookstore_assistant.tools.sql import SqlExecutor

from conftest import FakeDatabase, RefusingDatabase, make_gateway


def _service(provider, db, default_max_rows=50):
    gateway = make_gateway(provider)
    return TextToSqlService(
        gateway,
        SqlExecutor(connection_factory=db.connect),
        ClarificationService(gateway),
        default_max_rows=default_max_rows,
    )


class TestHelpers:

    def test_clamp_rows(self):
        assert clamp_rows(None) == 50
        assert clamp_rows(0) == 1
        assert clamp_rows(-5) == 1
        assert clamp_rows(500) == 200
        assert clamp_rows(10) == 10

    def test_format_value(self):
        assert format_value(None) == "NULL"
        assert format_value(12.5) == "12.5"
        assert format_value(3.0) == "3"
        assert format_value(0.001) == "0"
        assert format_value(True) == "True"
        assert format_value("Dune") == "Dune"

    def test_table_preview(self):
        preview = build_table_preview([{"title": "Dune", "price": 99000.0}, {"title": "Emma", "price": None}])
        lines = preview.split("\n")
        assert lines[0] == "title | price"
        assert lines[1] == "-" * 80
        assert lines[2] == "Dune | 99000"
        assert lines[3] == "Emma | NULL"
        assert preview.endswith("\n")

    def test_empty_preview(self):
        assert build_table_preview([]) == NO_DATA_TEXT


class TestAskQuestion:

    @pytest.mark.asyncio
    async def test_out_of_domain_asks_for_clarification(self):
        """The sentinel never reaches the executor."""
        provider = MockProvider([text_response("INVALID"), text_response("Which book or order do you mean?")])
        db = FakeDatabase()
        service = _service(provider, db)

        envelope = await service.ask_question("What's the weather in Hanoi?")

        assert envelope.needs_clarification is True
        assert envelope.answer == "Which book or order do you mean?"
        assert envelope.data_sources == []
        assert db.connections == []

    @pytest.mark.asyncio
    async def test_sentinel_inside_fence(self):
        provider = MockProvider([text_response("```\ninvalid\n```"), text_response("Could you clarify?")])
        db = FakeDatabase()
        envelope = await _service(provider, db).ask_question("Tell me a joke")

        assert envelope.needs_clarification is True
        assert db.connections == []

    @pytest.mark.asyncio
    async def test_unsafe_sql_asks_for_clarification(self):
        provider = MockProvider([text_response("DELETE FROM book"), text_response("Could you rephrase?")])
        db = FakeDatabase()

        envelope = await _service(provider, db).ask_question("Remove all books")

        assert envelope.needs_clarification is True
        assert db.connections == []

    @pytest.mark.asyncio
    async def test_execution_error_asks_for_clarification(self):
        def responder(statement, params):
            raise SqlExecutionError("column does not exist")

        provider = MockProvider([text_response("SELECT nope FROM book"), text_response("Which field do you mean?")])
        envelope = await _service(provider, FakeDatabase(responder)).ask_question("Show nope")

        assert envelope.needs_clarification is True
        assert envelope.answer == "Which field do you mean?"

    @pytest.mark.asyncio
    async def test_unreachable_database_asks_for_clarification(self):
        db = RefusingDatabase()
        provider = MockProvider([text_response("SELECT title FROM book"), text_response("Could you try again later?")])

        envelope = await _service(provider, db).ask_question("Which books do you have?")

        assert db.attempts == 1
        assert envelope.needs_clarification is True
        assert envelope.answer == "Could you try again later?"

    @pytest.mark.asyncio
    async def test_clarification_falls_back_to_static_text(self):
        provider = MockProvider([text_response("INVALID"), {"candidates": []}])
        envelope = await _service(provider, FakeDatabase()).ask_question("??")

        assert envelope.answer == STATIC_CLARIFICATION

    @pytest.mark.asyncio
    async def test_backend_down_asks_for_clarification(self):
        provider = MockProvider([ProviderResponse(status_code=400, body="API key expired")])
        envelope = await _service(provider, FakeDatabase()).ask_question("How many books?")

        assert envelope.needs_clarification is True
        assert envelope.answer == STATIC_CLARIFICATION

    @pytest.mark.asyncio
    async def test_happy_path(self):
        db = FakeDatabase(lambda statement, params: [{"title": "Dune", "sold": 40, "last_sale": datetime.date(2024, 5, 1)}])
        provider = MockProvider([
            text_response("```sql\nSELECT b.title, SUM(ol.qty) AS sold FROM book b JOIN order_line ol USING (isbn) GROUP BY 1\n```"),
            text_response("Dune is the best seller with 40 copies."),
        ])
        service = _service(provider, db)

        envelope = await service.ask_question("Best seller?", recent_turns=[ChatTurn(role="user", content="Hi")])

        assert db.queries == ["SELECT b.title, SUM(ol.qty) AS sold FROM book b JOIN order_line ol USING (isbn) GROUP BY 1"]
        assert envelope.answer == "Dune is the best seller with 40 copies."
        assert envelope.data_sources == [DATA_SOURCE]
        assert envelope.needs_clarification is False
        answer_prompt = provider.calls[1]["contents"][0]["parts"][0]["text"]
        assert "title | sold | last_sale" in answer_prompt
        assert "Dune | 40 | 2024-05-01" in answer_prompt
        assert "user: Hi" in provider.calls[0]["contents"][0]["parts"][0]["text"]

    @pytest.mark.asyncio
    async def test_row_cap_from_max_rows(self):
        db = FakeDatabase(lambda statement, params: [{"n": i} for i in range(300)])
        provider = MockProvider([text_response("SELECT n FROM t"), text_response("ok")])

        await _service(provider, db).ask_question("q", max_rows=1000)

        assert db.connections[0].rows_fetched == 200

    @pytest.mark.asyncio
    async def test_blank_final_answer(self):
        provider = MockProvider([text_response("SELECT 1"), {"candidates": []}])
        envelope = await _service(provider, FakeDatabase()).ask_question("q")

        assert envelope.answer == NO_ANSWER_TEXT
        assert envelope.needs_clarification is False
