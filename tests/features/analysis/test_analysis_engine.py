import json
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from app.features.analysis.models.analysis_job import AnalysisKind
from app.features.analysis.schemas.analysis_result import LegalAnalysis, WebsiteAnalysis
from app.features.analysis.services.analysis_engine import (
    AnalysisEngine,
    normalize_newlines,
    parse_analysis_response,
    strip_code_fences,
    truncate_content,
)
from app.platform.exceptions import AnalysisEngineError, MalformedResponseError, ProviderConfigError
from conftest import make_legal_analysis, make_website_analysis

REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


def _completion(text, total_tokens=321):
    completion = MagicMock()
    completion.choices = [MagicMock()]
    completion.choices[0].message.content = text
    completion.usage.total_tokens = total_tokens
    return completion


def _engine(client, **kwargs):
    return AnalysisEngine(api_key="test-key", model="test/model", client=client, **kwargs)


def _legal_json(**overrides):
    data = make_legal_analysis().model_dump(mode="json", exclude_none=True)
    data.update(overrides)
    return json.dumps(data)


class TestResponseHygiene:
    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('```\n{"a": 1}```') == '{"a": 1}'
        assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'

    def test_normalize_newlines_recurses(self):
        value = {"a": "one\n\n\ntwo", "b": ["x\r\n\r\ny"], "c": 3}
        assert normalize_newlines(value) == {"a": "one\ntwo", "b": ["x\ny"], "c": 3}

    def test_truncate_content(self):
        assert truncate_content("abcd", 1) == "abcd"
        truncated = truncate_content("a" * 10, 2)
        assert truncated.startswith("a" * 8 + "\n\n")
        assert truncated.endswith("[Content truncated due to length limits]")


class TestParseAnalysisResponse:
    def test_website_analysis(self):
        text = json.dumps(make_website_analysis().model_dump(mode="json"))
        assert isinstance(parse_analysis_response(text, AnalysisKind.seo), WebsiteAnalysis)

    def test_missing_risk_ids_are_filled_in(self):
        risks = [
            {"category": "arbitration", "severity": "high", "title": "Arbitration", "description": "No court"},
            {"id": "keep-me", "category": "other", "severity": "low", "title": "Other", "description": "Minor"},
            {"id": "", "category": "other", "severity": "low", "title": "Blank", "description": "Blank id"},
        ]

        analysis = parse_analysis_response(f"```json\n{_legal_json(risks=risks)}\n```", AnalysisKind.legal)

        assert isinstance(analysis, LegalAnalysis)
        assert [risk.id for risk in analysis.risks] == ["risk-1", "keep-me", "risk-3"]

    def test_invalid_json(self):
        with pytest.raises(MalformedResponseError):
            parse_analysis_response("Sure! Here is your analysis:", AnalysisKind.comprehensive)

    def test_json_array_rejected(self):
        with pytest.raises(MalformedResponseError):
            parse_analysis_response("[1, 2]", AnalysisKind.legal)

    def test_schema_mismatch(self):
        bad = json.loads(_legal_json())
        bad["risks"] = [{"id": "r1", "severity": "catastrophic", "title": "x", "description": "y"}]

        with pytest.raises(MalformedResponseError) as exc_info:
            parse_analysis_response(json.dumps(bad), AnalysisKind.legal)

        assert exc_info.value.retryable is False

    def test_content_score_out_of_range(self):
        data = make_website_analysis().model_dump(mode="json")
        data["content_quality"]["score"] = 42
        with pytest.raises(MalformedResponseError):
            parse_analysis_response(json.dumps(data), AnalysisKind.content)


class TestAnalysisEngine:
    def test_analyze_returns_validated_result_and_tokens(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _completion(_legal_json(), total_tokens=555)

        result = _engine(client).analyze("https://example.com/terms", "# Terms", AnalysisKind.legal, {"title": "Terms"})

        assert isinstance(result.analysis, LegalAnalysis)
        assert result.tokens_used == 555
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test/model"
        prompt = kwargs["messages"][0]["content"]
        assert "https://example.com/terms" in prompt
        assert "- Title: Terms" in prompt

    def test_website_prompt_names_the_kind(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _completion(
            json.dumps(make_website_analysis().model_dump(mode="json"))
        )

        _engine(client).analyze("https://example.com", "content", AnalysisKind.technical)

        prompt = client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert "Analysis Type: technical" in prompt

    def test_long_content_is_truncated_before_sending(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _completion(
            json.dumps(make_website_analysis().model_dump(mode="json"))
        )

        _engine(client, max_input_tokens=10).analyze("https://example.com", "x" * 1000, AnalysisKind.seo)

        prompt = client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert "x" * 41 not in prompt
        assert "[Content truncated due to length limits]" in prompt

    def test_missing_usage_counts_zero_tokens(self):
        client = MagicMock()
        completion = _completion(json.dumps(make_website_analysis().model_dump(mode="json")))
        completion.usage = None
        client.chat.completions.create.return_value = completion

        assert _engine(client).analyze("https://example.com", "c", AnalysisKind.seo).tokens_used == 0

    def test_empty_response_is_malformed(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _completion("   ")

        with pytest.raises(MalformedResponseError):
            _engine(client).analyze("https://example.com", "c", AnalysisKind.seo)

    def test_missing_api_key_is_a_config_error(self):
        engine = AnalysisEngine(api_key=None)
        with pytest.raises(ProviderConfigError):
            engine.analyze("https://example.com", "c", AnalysisKind.seo)

    def test_rate_limit_is_retryable_and_flagged(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.RateLimitError(
            "Rate limit exceeded", response=httpx.Response(429, request=REQUEST), body=None
        )

        with pytest.raises(AnalysisEngineError) as exc_info:
            _engine(client).analyze("https://example.com", "c", AnalysisKind.seo)

        assert exc_info.value.retryable is True
        assert exc_info.value.rate_limited is True

    def test_timeout_is_retryable(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.APITimeoutError(request=REQUEST)

        with pytest.raises(AnalysisEngineError) as exc_info:
            _engine(client).analyze("https://example.com", "c", AnalysisKind.seo)

        assert exc_info.value.retryable is True

    def test_server_error_is_retryable(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.InternalServerError(
            "upstream error", response=httpx.Response(503, request=REQUEST), body=None
        )

        with pytest.raises(AnalysisEngineError) as exc_info:
            _engine(client).analyze("https://example.com", "c", AnalysisKind.seo)

        assert exc_info.value.retryable is True

    def test_bad_request_is_terminal(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.BadRequestError(
            "context too long", response=httpx.Response(400, request=REQUEST), body=None
        )

        with pytest.raises(AnalysisEngineError) as exc_info:
            _engine(client).analyze("https://example.com", "c", AnalysisKind.seo)

        assert exc_info.value.retryable is False

    def test_rejected_credentials_are_a_config_error(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.AuthenticationError(
            "invalid key", response=httpx.Response(401, request=REQUEST), body=None
        )

        with pytest.raises(ProviderConfigError):
            _engine(client).analyze("https://example.com", "c", AnalysisKind.seo)
