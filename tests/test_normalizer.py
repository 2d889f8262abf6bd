"""Tests for model-output normalization and answer rendering."""
import json

import pytest

from bookstore_assistant.llm.extract import (
    extract_first_text,
    extract_function_call,
    extract_inline_binary,
)
from bookstore_assistant.normalizer import (
    PlainText,
    StructuredAnswer,
    StructuredJson,
    Unparseable,
    extract_answer_field,
    extract_json_object,
    markdown_to_plain,
    normalize,
    parse_json_object,
    render_answer,
    render_markdown,
    strip_wrapper,
)


class TestStripWrapper:

    def test_json_fence(self):
        assert strip_wrapper('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_sql_fence(self):
        assert strip_wrapper("```sql\nSELECT 1\n```") == "SELECT 1"

    def test_bare_fence(self):
        assert strip_wrapper("```\nSELECT 1\n```") == "SELECT 1"

    def test_fence_on_one_line(self):
        assert strip_wrapper("```SELECT 1```") == "SELECT 1"

    def test_unclosed_fence(self):
        assert strip_wrapper('```json\n{"a": 1}') == '{"a": 1}'

    def test_no_fence_is_trimmed(self):
        assert strip_wrapper("  SELECT 1 \n") == "SELECT 1"

    def test_empty(self):
        assert strip_wrapper(None) == ""
        assert strip_wrapper("") == ""

    @pytest.mark.parametrize("tag", ["", "json", "python", "sql"])
    @pytest.mark.parametrize("body", ["  indented code", "value\n", "a\n  b  ", '{"a":1}'])
    def test_fenced_body_kept_verbatim(self, tag, body):
        assert strip_wrapper(f"```{tag}\n{body}\n```") == body

    def test_crlf_fence(self):
        assert strip_wrapper("```sql\r\nSELECT 1\r\n```") == "SELECT 1"


class TestExtractJsonObject:

    def test_whole_object(self):
        assert extract_json_object(' {"a": 1} ') == '{"a": 1}'

    def test_embedded_object(self):
        text = 'Here is the result: {"answer": "42"} hope it helps'
        assert extract_json_object(text) == '{"answer": "42"}'

    def test_no_object(self):
        assert extract_json_object("no braces here") is None
        assert extract_json_object("} backwards {") is None
        assert extract_json_object(None) is None


class TestNormalize:

    def test_fenced_json_is_structured(self):
        result = normalize('```json\n{"overview": "ok"}\n```')
        assert isinstance(result, StructuredJson)
        assert result.kind == "structured_json"
        assert result.data == {"overview": "ok"}

    def test_plain_text(self):
        result = normalize("Revenue grew 12% this month.")
        assert isinstance(result, PlainText)
        assert result.text == "Revenue grew 12% this month."

    def test_broken_json_is_unparseable(self):
        result = normalize('{"overview": "cut off')
        assert isinstance(result, Unparseable)
        assert result.raw == '{"overview": "cut off'

    def test_blank_is_unparseable(self):
        assert isinstance(normalize("   "), Unparseable)
        assert isinstance(normalize(None), Unparseable)

    def test_text_with_broken_braces_is_plain(self):
        result = normalize("Use the {category} filter")
        assert isinstance(result, PlainText)

    def test_json_array_is_not_structured(self):
        assert parse_json_object("[1, 2, 3]") is None


class TestRenderAnswer:

    def test_structured_answer(self):
        text = json.dumps({
            "overview": "Revenue is up.",
            "metrics": [{"label": "Revenue", "value": 1500000, "note": "30 days"}],
            "insights": ["Fiction leads"],
            "recommendedActions": ["Restock Dune", "Promote poetry"],
            "sources": ["profit_report"],
        })

        rendered = render_answer(text)

        assert "### Key metrics" in rendered.markdown
        assert "- **Revenue**: 1500000 (30 days)" in rendered.markdown
        assert "1. Restock Dune\n2. Promote poetry" in rendered.markdown
        assert "**" not in rendered.plain_text
        assert "###" not in rendered.plain_text
        assert "Revenue: 1500000 (30 days)" in rendered.plain_text

    def test_sql_examples_rendered_as_fences(self):
        answer = StructuredAnswer.model_validate({"overview": "x", "sqlExamples": ["```sql\nSELECT 1\n```"]})
        markdown = render_markdown(answer)
        assert "### Query examples\n```sql\nSELECT 1\n```" in markdown
        assert "SELECT 1" in markdown_to_plain(markdown)
        assert "```" not in markdown_to_plain(markdown)

    def test_plain_text_passes_through(self):
        rendered = render_answer("**Dune** is in stock. See [catalog](https://shop/books).")
        assert rendered.markdown == "**Dune** is in stock. See [catalog](https://shop/books)."
        assert rendered.plain_text == "Dune is in stock. See catalog."

    def test_unparseable_falls_back_to_raw(self):
        rendered = render_answer('{"overview": "cut')
        assert rendered.plain_text == '{"overview": "cut'
        assert rendered.markdown == '{"overview": "cut'

    def test_empty_structure_uses_answer_field(self):
        rendered = render_answer('{"answer": "We sold 40 books."}')
        assert rendered.plain_text == "We sold 40 books."

    def test_mistyped_fields_do_not_raise(self):
        rendered = render_answer('{"overview": 12, "metrics": "lots", "insights": {"a": 1}}')
        assert isinstance(rendered.markdown, str)
        assert isinstance(rendered.plain_text, str)


class TestExtractAnswerField:

    def test_answer_key(self):
        assert extract_answer_field('{"answer": " Yes "}') == "Yes"

    def test_text_key(self):
        assert extract_answer_field('{"text": "From text"}') == "From text"

    def test_nested_content(self):
        assert extract_answer_field('{"content": {"text": "Nested"}}') == "Nested"

    def test_fallback_to_raw(self):
        assert extract_answer_field("just words") == "just words"
        assert extract_answer_field('{"other": 1}') == '{"other": 1}'


class TestResponseExtraction:

    def test_first_text_skips_blank_and_malformed(self):
        response = {"candidates": [None, {"content": {"parts": [{"text": "  "}, "junk", {"text": "Hi"}]}}]}
        assert extract_first_text(response) == "Hi"

    def test_missing_structure(self):
        assert extract_first_text(None) is None
        assert extract_first_text({"candidates": "nope"}) is None
        assert extract_function_call({"candidates": [{"content": {}}]}) is None

    def test_function_call(self):
        response = {"candidates": [{"content": {"parts": [{"functionCall": {"name": "search_books", "args": "bad"}}]}}]}
        intent = extract_function_call(response)
        assert intent.name == "search_books"
        assert intent.args == {}

    def test_inline_binary_both_spellings(self):
        camel = {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "audio/wav", "data": "AAA="}}]}}]}
        snake = {"candidates": [{"content": {"parts": [{"inline_data": {"mime_type": "audio/L16", "data": "BBB="}}]}}]}
        assert extract_inline_binary(camel).mime_type == "audio/wav"
        assert extract_inline_binary(snake).data == "BBB="
