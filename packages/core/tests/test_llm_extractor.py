"""Tests for the LLM field extractor with a mocked Anthropic client."""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest

from qualify_core.config import LLMConfig
from qualify_core.exceptions import ConfigurationError, ExtractionError
from qualify_core.llm_extractor import (
    EXTRACTION_SCHEMAS,
    LLMFieldExtractor,
    create_llm_extractor,
)
from qualify_core.models import DocumentType


def make_response(text: str, input_tokens: int = 100, output_tokens: int = 20):
    return SimpleNamespace(
        content=[SimpleNamespace(text=text)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def extractor(client) -> LLMFieldExtractor:
    return LLMFieldExtractor(client=client, config=LLMConfig(api_key="test-key"))


class TestLLMFieldExtractor:
    def test_extract_fields(self, client, extractor):
        client.messages.create.return_value = make_response(
            '{"wages": 60000, "tax_year": 2023, "employer_name": null, "bogus": 1}'
        )

        outcome = extractor.extract("Form W-2 ...", DocumentType.W2)

        assert outcome.method == "llm"
        assert outcome.fields == {"wages": 60000, "tax_year": 2023}
        assert outcome.tokens_used == 120
        assert "employer_name" in outcome.missing_fields
        assert "wages" not in outcome.missing_fields
        assert outcome.confidence == pytest.approx(0.65)

    def test_request_uses_config(self, client, extractor):
        client.messages.create.return_value = make_response('{"wages": 1}')

        extractor.extract("Form W-2 ...", DocumentType.W2)

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == extractor.config.model
        assert kwargs["max_tokens"] == 2000
        prompt = kwargs["messages"][0]["content"]
        assert "W-2 document" in prompt
        assert "- wages:" in prompt
        assert prompt.rstrip().endswith("JSON:")

    def test_existing_extractions_raise_confidence(self, client, extractor):
        client.messages.create.return_value = make_response('{"wages": "60000", "tax_year": 2023}')

        outcome = extractor.extract_with_context(
            "Form W-2 ...", DocumentType.W2, {"wages": Decimal("60000.00")}
        )

        prompt = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "already been extracted" in prompt
        assert outcome.confidence == pytest.approx(0.75)

    def test_fenced_json(self, client, extractor):
        client.messages.create.return_value = make_response(
            'Here is the data:\n```json\n{"net_profit": -1200.5}\n```'
        )

        outcome = extractor.extract("Schedule C", DocumentType.SCHEDULE_C)

        assert outcome.fields == {"net_profit": -1200.5}

    def test_json_in_prose(self, client, extractor):
        client.messages.create.return_value = make_response('Sure. {"rents_received": 24000} Done.')

        outcome = extractor.extract("Schedule E", DocumentType.SCHEDULE_E)

        assert outcome.fields == {"rents_received": 24000}

    def test_unparseable_response(self, client, extractor):
        client.messages.create.return_value = make_response("I could not read this document.")

        with pytest.raises(ExtractionError, match="Failed to parse JSON"):
            extractor.extract("???", DocumentType.VOE)

    def test_empty_response_content(self, client, extractor):
        client.messages.create.return_value = SimpleNamespace(
            content=[],
            usage=SimpleNamespace(input_tokens=10, output_tokens=0),
        )

        with pytest.raises(ExtractionError, match="Failed to parse JSON"):
            extractor.extract("Form W-2 ...", DocumentType.W2)

    def test_api_error(self, client, extractor):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client.messages.create.side_effect = anthropic.APIConnectionError(request=request)

        with pytest.raises(ExtractionError, match="API call failed"):
            extractor.extract("Form W-2 ...", DocumentType.W2)

    def test_other_documents_have_no_schema(self, client, extractor):
        with pytest.raises(ExtractionError, match="No extraction schema"):
            extractor.extract("alimony", DocumentType.OTHER)
        client.messages.create.assert_not_called()

    def test_fields_needed_limits_schema(self, client, extractor):
        client.messages.create.return_value = make_response('{"wages": 1, "tax_year": 2023}')

        result = extractor.extract_from_document("W-2", DocumentType.W2, fields_needed=["wages"])

        assert result.success
        assert result.extracted_data == {"wages": 1}

    def test_schemas_cover_typed_documents(self):
        assert set(EXTRACTION_SCHEMAS) == set(DocumentType) - {DocumentType.OTHER}


class TestClientConfiguration:
    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("QUALIFY_LLM_API_KEY", raising=False)

        with pytest.raises(ConfigurationError):
            LLMFieldExtractor(config=LLMConfig())

    def test_factory_returns_none_without_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("QUALIFY_LLM_API_KEY", raising=False)

        assert create_llm_extractor(LLMConfig()) is None

    def test_factory_builds_client(self):
        extractor = create_llm_extractor(LLMConfig(api_key="test-key"))

        assert isinstance(extractor, LLMFieldExtractor)
        assert isinstance(extractor.client, anthropic.Anthropic)
