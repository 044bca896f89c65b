from __future__ import annotations

import http.client
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, request

from .config import Settings
from .content import MediaReference
from .errors import (
    ModelAuthError,
    ModelError,
    ModelRateLimitedError,
    ModelUnavailableError,
    ModelUnsupportedMediaError,
)

logger = logging.getLogger(__name__)

# Matched against lowercased provider error text when the HTTP status alone is ambiguous
# (Gemini answers an invalid key with 400 API_KEY_INVALID, for example).
_AUTH_PATTERNS = ("api_key", "api key", "unauthenticated", "permission denied", "unauthorized")
_RATE_LIMIT_PATTERNS = ("quota", "rate limit", "rate_limit", "resource_exhausted", "too many")


@dataclass(frozen=True)
class GenerationParams:
    temperature: float
    top_p: float = 0.9
    max_output_tokens: int = 3000


class ModelClient(Protocol):
    """Interface for free-form text generation, optionally with an attached video."""

    model: str

    def generate(
        self,
        *,
        text: str,
        media: MediaReference | None,
        params: GenerationParams,
        timeout_s: float,
    ) -> str: ...


class GeminiGenerateContentAdapter:
    """Gemini adapter using the generateContent REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")

    def generate(
        self,
        *,
        text: str,
        media: MediaReference | None,
        params: GenerationParams,
        timeout_s: float,
    ) -> str:
        parts: list[dict[str, Any]] = [{"text": text}]
        if media is not None:
            parts.append({"fileData": {"mimeType": media.mime_type, "fileUri": media.uri}})
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": params.temperature,
                "topP": params.top_p,
                "maxOutputTokens": params.max_output_tokens,
            },
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"
        response_json = _post_json(
            url,
            payload,
            headers={"x-goog-api-key": self.api_key},
            timeout_s=timeout_s,
            provider="gemini",
            model=self.model,
        )
        return self._extract_text(response_json)

    @staticmethod
    def _extract_text(response_json: dict[str, Any]) -> str:
        candidates = response_json.get("candidates") or []
        if not isinstance(candidates, list) or not candidates:
            feedback = response_json.get("promptFeedback", {})
            raise ModelError(f"Gemini response did not contain candidates: {feedback}")
        first = candidates[0] if isinstance(candidates[0], dict) else {}
        content = first.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        segments = [
            part["text"]
            for part in (parts if isinstance(parts, list) else [])
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        merged = "".join(segments).strip()
        if not merged:
            reason = first.get("finishReason", "unknown")
            raise ModelError(f"Gemini response had no text (finishReason={reason})")
        return merged


class OpenAIChatCompletionsAdapter:
    """Small OpenAI adapter using the chat completions REST API.

    Text only: a media reference raises ModelUnsupportedMediaError so the
    invoker falls back to the text prompt, which already names the URL.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")

    def generate(
        self,
        *,
        text: str,
        media: MediaReference | None,
        params: GenerationParams,
        timeout_s: float,
    ) -> str:
        if media is not None:
            raise ModelUnsupportedMediaError(f"{self.model} cannot attach media {media.uri}")
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": text}],
            "temperature": params.temperature,
            "top_p": params.top_p,
            "max_tokens": params.max_output_tokens,
        }
        response_json = _post_json(
            f"{self.base_url}/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout_s=timeout_s,
            provider="openai",
            model=self.model,
        )
        return self._extract_content(response_json)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not isinstance(choices, list) or not choices:
            raise ModelError("OpenAI response did not contain choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content", "") if isinstance(message, dict) else ""
        if isinstance(content, str) and content.strip():
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise ModelError("OpenAI response content could not be parsed as text")


def build_model_client(settings: Settings) -> ModelClient | None:
    """Return the configured adapter, or None when no API key is available."""
    provider = settings.llm_provider.lower()
    api_key = settings.resolved_api_key()
    if not api_key:
        return None
    if provider == "openai":
        model = settings.llm_model
        if model.startswith("gemini"):
            model = "gpt-4o-mini"
        return OpenAIChatCompletionsAdapter(
            api_key=api_key, model=model, base_url=settings.openai_base_url
        )
    if provider == "gemini":
        return GeminiGenerateContentAdapter(
            api_key=api_key, model=settings.llm_model, base_url=settings.gemini_base_url
        )
    logger.warning("Unknown llm provider=%s; backend disabled", provider)
    return None


def classify_http_failure(status: int, message: str) -> ModelError:
    """Turn an HTTP failure into a typed model error (status first, then text)."""
    lowered = message.lower()
    if status in (401, 403):
        return ModelAuthError(message)
    if status == 429:
        return ModelRateLimitedError(message)
    if status >= 500:
        return ModelUnavailableError(message)
    if any(pattern in lowered for pattern in _AUTH_PATTERNS):
        return ModelAuthError(message)
    if any(pattern in lowered for pattern in _RATE_LIMIT_PATTERNS):
        return ModelRateLimitedError(message)
    return ModelError(message)


def _post_json(
    url: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str],
    timeout_s: float,
    provider: str,
    model: str,
) -> dict[str, Any]:
    if _trace_enabled():
        logger.warning(
            "LLM trace request provider=%s model=%s url=%s timeout_s=%s",
            provider,
            model,
            url,
            timeout_s,
        )
    req = request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json", **headers},
    )
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            body = response.read().decode("utf-8")
    except error.HTTPError as exc:
        raw_error = exc.read().decode("utf-8", errors="replace")
        raise classify_http_failure(
            exc.code, f"{provider} API request failed ({exc.code}): {raw_error}"
        ) from exc
    except (OSError, http.client.HTTPException) as exc:
        # URLError, timeouts and connection resets mid-read all land here.
        raise ModelUnavailableError(f"{provider} API unreachable: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ModelError(f"{provider} API returned undecodable body") from exc
    if _trace_enabled():
        logger.warning("LLM trace response provider=%s model=%s status=ok", provider, model)
    try:
        parsed = json.loads(body)
    except ValueError as exc:
        raise ModelError(f"{provider} API returned invalid JSON") from exc
    if not isinstance(parsed, dict):
        raise ModelError(f"{provider} API returned a non-object JSON body")
    return parsed


def _trace_enabled() -> bool:
    return os.getenv("DISPATCH_LLM_TRACE", "0").strip() == "1"
