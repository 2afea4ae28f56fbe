import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import openai
from openai import OpenAI
from pydantic import ValidationError as PydanticValidationError

from app.features.analysis.models.analysis_job import AnalysisKind
from app.features.analysis.schemas.analysis_result import LegalAnalysis, WebsiteAnalysis
from app.platform.config import settings
from app.platform.exceptions import (
    AnalysisEngineError,
    MalformedResponseError,
    ProviderConfigError,
)

logger = logging.getLogger(__name__)

PROVIDER = "analysis_engine"

WEBSITE_ANALYSIS_SCHEMA = {
    "summary": "string",
    "business_type": "string",
    "target_audience": "string",
    "key_services": "array of strings",
    "unique_selling_points": "array of strings",
    "tone_and_voice": "string",
    "seo_analysis": {
        "strengths": "array of strings",
        "weaknesses": "array of strings",
        "recommendations": "array of strings",
    },
    "content_quality": {
        "score": "number (1-10)",
        "feedback": "string",
    },
    "technical_observations": "array of strings",
    "competitor_insights": "array of strings",
    "actionable_recommendations": "array of strings",
}

LEGAL_ANALYSIS_SCHEMA = {
    "consent_moment": {
        "page_type": "string (one of: signup, checkout, subscription, agreement, other)",
        "action_description": "string (what user is about to do)",
        "documents_referenced": "number",
        "quick_summary": "string (1 sentence plain language summary)",
    },
    "documents": "array of { type: string (terms_of_service|privacy_policy|user_agreement|cookie_policy|other), "
                 "url: string, title: string, detected_at: string (ISO8601), confidence: number (0.0-1.0) }",
    "consent_scope": {
        "primary_actions": "array of strings",
        "data_collected": "array of strings",
        "services_covered": "array of strings",
        "summary": "string (plain language, 2-3 sentences)",
    },
    "risks": "array of { id: string, category: string (data_sharing|arbitration|liability_limitation|"
             "auto_renewal|data_retention|other), severity: string (low|medium|high), title: string, "
             "description: string (plain language), location: string (optional section reference), "
             "icon: string (optional Lucide icon name) }",
    "risk_summary": {
        "total_risks": "number",
        "high_severity_count": "number",
        "overall_assessment": "string (low_concern|moderate_concern|high_concern)",
    },
    "explanations": "optional array of { term: string, plain_language: string, context: string }",
    "key_points": "optional array of strings (summary bullets)",
}

AnalysisModel = Union[WebsiteAnalysis, LegalAnalysis]


@dataclass
class EngineResult:
    analysis: AnalysisModel
    tokens_used: int

    def analysis_dict(self) -> Dict[str, Any]:
        return self.analysis.model_dump(mode="json", exclude_none=True)


def normalize_newlines(value: Any) -> Any:
    """Collapse runs of newlines in every string of a JSON-like structure."""
    if isinstance(value, str):
        text = value.replace("\r\n", "\n").replace("\r", "\n")
        return re.sub(r"\n{2,}", "\n", text)
    if isinstance(value, list):
        return [normalize_newlines(item) for item in value]
    if isinstance(value, dict):
        return {key: normalize_newlines(item) for key, item in value.items()}
    return value


def truncate_content(content: str, max_tokens: int) -> str:
    """Rough budget of 4 characters per token."""
    max_chars = max_tokens * 4
    if len(content) <= max_chars:
        return content
    logger.warning(f"Content truncated from {len(content)} to {max_chars} characters to fit token limits")
    return content[:max_chars] + "\n\n[Content truncated due to length limits]"


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z]*\s*", "", cleaned)
        cleaned = re.sub(r"\s*```$", "", cleaned)
    return cleaned


def parse_analysis_response(text: str, kind: AnalysisKind) -> AnalysisModel:
    """
    Validate raw engine output against the schema for `kind`.

    Raises:
        MalformedResponseError: body is not JSON or does not match the schema
    """
    try:
        parsed = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        logger.error(f"Analysis engine returned invalid JSON: {e}")
        raise MalformedResponseError(
            "Failed to parse analysis response", {"error": str(e)}, provider=PROVIDER
        ) from e

    if not isinstance(parsed, dict):
        raise MalformedResponseError("Analysis response is not a JSON object", provider=PROVIDER)

    parsed = normalize_newlines(parsed)

    try:
        if kind is AnalysisKind.legal:
            risks = parsed.get("risks")
            if isinstance(risks, list):
                parsed["risks"] = [
                    {**risk, "id": risk.get("id") or f"risk-{index}"} if isinstance(risk, dict) else risk
                    for index, risk in enumerate(risks, start=1)
                ]
            return LegalAnalysis.model_validate(parsed)
        return WebsiteAnalysis.model_validate(parsed)
    except PydanticValidationError as e:
        logger.error(f"Analysis response failed schema validation ({kind.value}): {e.error_count()} errors")
        raise MalformedResponseError(
            f"Invalid {kind.value} analysis structure",
            {"errors": e.errors(include_url=False, include_context=False)},
            provider=PROVIDER,
        ) from e


def build_website_prompt(url: str, content: str, kind: AnalysisKind) -> str:
    schema_description = json.dumps(WEBSITE_ANALYSIS_SCHEMA, indent=2)
    return f"""You are an expert website analyst. Analyze the following website content and provide a comprehensive assessment.

Website URL: {url}
Analysis Type: {kind.value}

Website Content:
---
{content}
---

Provide your analysis in the following JSON structure:
{schema_description}

Be specific, actionable, and back up observations with evidence from the content.

For the analysis type "{kind.value}":
- comprehensive: Full analysis of all aspects
- seo: Focus on SEO strengths, weaknesses, and recommendations
- content: Focus on content quality, tone, and messaging
- technical: Focus on technical observations and technical recommendations

Return ONLY valid JSON matching the schema above. Do not include markdown code blocks or any other formatting."""


def build_legal_prompt(url: str, content: str, context: Optional[Dict[str, str]] = None) -> str:
    schema_description = json.dumps(LEGAL_ANALYSIS_SCHEMA, indent=2)
    context_info = ""
    if context:
        context_info = (
            "\nPage Context:"
            f"\n- Title: {context.get('title') or 'Unknown'}"
            f"\n- Button Text: {context.get('button_text') or 'Unknown'}"
            f"\n- Page Type: {context.get('page_type') or 'Unknown'}"
        )

    return f"""You are an expert at analyzing legal documents to help users understand what they're agreeing to. Analyze the following legal document and provide a structured analysis.

Document URL: {url}{context_info}

Legal Document Content:
---
{content}
---

CRITICAL RULES:
1. Use plain, non-technical language that anyone can understand
2. Do NOT provide legal advice - only explain what the document says
3. Use "you" and "your" to make it user-focused
4. Be factual and neutral - don't use alarmist language
5. Only include risks that are clearly present in the document, each with a unique id

Provide your analysis in the following JSON structure:
{schema_description}

Return ONLY valid JSON matching the schema above. Do not include markdown code blocks or any other formatting."""


class AnalysisEngine:
    """
    Turns page text into a structured analysis through an OpenAI-compatible
    chat completion endpoint. One request per call; retries are the caller's job.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_input_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        client: Optional[OpenAI] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url or settings.LLM_BASE_URL
        self.model = model or settings.LLM_MODEL
        self.max_input_tokens = max_input_tokens or settings.LLM_MAX_INPUT_TOKENS
        self.timeout = timeout or settings.LLM_TIMEOUT_SECONDS
        self._client = client

    @classmethod
    def from_settings(cls) -> "AnalysisEngine":
        return cls(
            api_key=settings.OPENROUTER_API_KEY,
            base_url=settings.LLM_BASE_URL,
            model=settings.LLM_MODEL,
            max_input_tokens=settings.LLM_MAX_INPUT_TOKENS,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise ProviderConfigError("OPENROUTER_API_KEY is not configured", provider=PROVIDER)
            # SDK-level retries off: backoff is applied around this call
            self._client = OpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def analyze(
        self,
        url: str,
        text: str,
        kind: AnalysisKind,
        context: Optional[Dict[str, str]] = None,
    ) -> EngineResult:
        content = truncate_content(text or "", self.max_input_tokens)
        if kind is AnalysisKind.legal:
            prompt = build_legal_prompt(url, content, context)
        else:
            prompt = build_website_prompt(url, content, kind)

        raw_text, tokens_used = self._complete(url, prompt)
        analysis = parse_analysis_response(raw_text, kind)

        logger.info(f"Received {kind.value} analysis for {url} ({tokens_used} tokens)")
        return EngineResult(analysis=analysis, tokens_used=tokens_used)

    def _complete(self, url: str, prompt: str):
        client = self._get_client()
        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.RateLimitError as e:
            raise AnalysisEngineError(
                f"Analysis engine rate limit hit: {e}", {"url": url}, provider=PROVIDER, rate_limited=True
            ) from e
        except openai.APIConnectionError as e:
            # includes APITimeoutError
            raise AnalysisEngineError(f"Analysis engine unreachable: {e}", {"url": url}, provider=PROVIDER) from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ProviderConfigError(f"Analysis engine rejected credentials: {e}", provider=PROVIDER) from e
        except openai.APIStatusError as e:
            raise AnalysisEngineError(
                f"Analysis engine error {e.status_code}: {e.message}",
                {"url": url, "status": e.status_code},
                provider=PROVIDER,
                retryable=e.status_code >= 500,
            ) from e

        if not completion.choices:
            raise MalformedResponseError("Analysis engine returned no choices", provider=PROVIDER)

        text = completion.choices[0].message.content or ""
        if not text.strip():
            raise MalformedResponseError("Analysis engine returned an empty response", provider=PROVIDER)

        tokens_used = completion.usage.total_tokens if completion.usage else 0
        return text, tokens_used
