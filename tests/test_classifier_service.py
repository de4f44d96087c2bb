from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from app.config import Settings
from app.models import FlowOption
from app.services.classifier_service import (
    NO_MATCH,
    LLMOptionClassifier,
    NullClassifier,
    build_classifier,
    parse_classification,
)
from app.services.llm import LLMError, LLMResponse, OpenAIProvider

OPTIONS = [
    FlowOption(option_order=1, option_code="web", label_text="Página web"),
    FlowOption(option_order=2, option_code="ads", label_text="Publicidad"),
]


class TestParseClassification:
    def test_valid_json(self):
        result = parse_classification('{"matched_code": "web", "out_of_scope": false, "summary": "Quiere web"}')
        assert result.matched_code == "web"
        assert result.out_of_scope is False
        assert result.summary == "Quiere web"

    def test_null_code(self):
        result = parse_classification('{"matched_code": null, "out_of_scope": true}')
        assert result.matched_code is None
        assert result.out_of_scope is True

    def test_invalid_json_is_no_match(self):
        assert parse_classification("no es json") == NO_MATCH

    def test_list_is_no_match(self):
        assert parse_classification("[1, 2]") == NO_MATCH


class TestLLMOptionClassifier:
    def test_classifies_with_prompt_context(self):
        provider = Mock()
        provider.generate.return_value = LLMResponse(content='{"matched_code": "ads", "out_of_scope": false}', model="m")
        classifier = LLMOptionClassifier(provider, model="m", timeout_seconds=3)

        result = classifier.classify("quiero anuncios", OPTIONS, {"client_name": "Acme", "step_prompt": "¿Qué buscas?"})

        assert result.matched_code == "ads"
        kwargs = provider.generate.call_args[1]
        assert kwargs["json_mode"] is True
        assert kwargs["timeout_seconds"] == 3
        prompt = provider.generate.call_args[0][0][1]["content"]
        assert "Acme" in prompt
        assert "- web: Página web" in prompt

    def test_provider_error_is_no_match(self):
        provider = Mock()
        provider.generate.side_effect = LLMError("timeout")

        assert LLMOptionClassifier(provider).classify("algo", OPTIONS, {}) == NO_MATCH

    def test_empty_text_skips_provider(self):
        provider = Mock()

        assert LLMOptionClassifier(provider).classify("  ", OPTIONS, {}) == NO_MATCH
        provider.generate.assert_not_called()

    def test_null_classifier(self):
        assert NullClassifier().classify("algo", OPTIONS, {}) == NO_MATCH


class TestBuildClassifier:
    def test_without_key(self):
        assert isinstance(build_classifier(Settings(openai_api_key=None)), NullClassifier)

    def test_with_key(self):
        classifier = build_classifier(Settings(openai_api_key="sk-test"))
        assert isinstance(classifier, LLMOptionClassifier)
        assert isinstance(classifier.provider, OpenAIProvider)


class TestOpenAIProvider:
    @patch("app.services.llm.openai_provider.httpx.Client")
    def test_json_mode_request(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"model": "gpt-4o-mini", "choices": [{"message": {"content": "{}"}}]}
        mock_client.post.return_value = mock_response

        response = OpenAIProvider("sk-test").generate([{"role": "user", "content": "hi"}], json_mode=True)

        assert response.content == "{}"
        payload = mock_client.post.call_args[1]["json"]
        assert payload["response_format"] == {"type": "json_object"}

    @patch("app.services.llm.openai_provider.httpx.Client")
    def test_http_error_raises_llm_error(self, mock_client_class):
        mock_client_class.return_value.__enter__.return_value.post.side_effect = httpx.ConnectTimeout("timeout")

        with pytest.raises(LLMError):
            OpenAIProvider("sk-test").generate([{"role": "user", "content": "hi"}])

    @patch("app.services.llm.openai_provider.httpx.Client")
    def test_non_200_raises_llm_error(self, mock_client_class):
        mock_response = Mock()
        mock_response.status_code = 429
        mock_response.text = "rate limited"
        mock_client_class.return_value.__enter__.return_value.post.return_value = mock_response

        with pytest.raises(LLMError):
            OpenAIProvider("sk-test").generate([{"role": "user", "content": "hi"}])
