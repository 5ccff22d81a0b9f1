from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

import requests

from modules.errors import MalformedResponseError, ProviderError, ProviderTimeoutError

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_MODELS = {
    "text": "gemini-2.5-flash",
    "script": "gemini-2.5-flash",
    "tts": "gemini-2.5-flash-preview-tts",
    "image": "gemini-2.5-flash-image",
}

_MODEL_ENV = {
    "text": "GEMINI_TEXT_MODEL",
    "script": "GEMINI_SCRIPT_MODEL",
    "tts": "GEMINI_TTS_MODEL",
    "image": "GEMINI_IMAGE_MODEL",
}


def _candidate_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        feedback = payload.get("promptFeedback") or {}
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        raise MalformedResponseError(
            f"Gemini response missing candidates (blockReason={reason})."
        )
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    if not isinstance(content, dict):
        raise MalformedResponseError("Gemini response missing content.")
    parts = content.get("parts")
    if not isinstance(parts, list):
        raise MalformedResponseError("Gemini response missing parts.")
    return [p for p in parts if isinstance(p, dict)]


def extract_text(payload: dict[str, Any]) -> str:
    texts = [
        str(p["text"]).strip()
        for p in _candidate_parts(payload)
        if isinstance(p.get("text"), str) and p["text"].strip()
    ]
    if not texts:
        raise MalformedResponseError("Gemini response does not contain text content.")
    return "\n".join(texts)


def extract_inline_data(payload: dict[str, Any]) -> tuple[str, str] | None:
    """Return (mime_type, base64 data) of the first inline part, if any."""
    for part in _candidate_parts(payload):
        inline = part.get("inlineData") or part.get("inline_data")
        if isinstance(inline, dict) and inline.get("data"):
            mime = inline.get("mimeType") or inline.get("mime_type") or ""
            return str(mime), str(inline["data"])
    return None


def extract_grounding_links(payload: dict[str, Any]) -> list[dict[str, str]]:
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return []
    metadata = candidates[0].get("groundingMetadata") if isinstance(candidates[0], dict) else None
    if not isinstance(metadata, dict):
        return []
    links: list[dict[str, str]] = []
    for chunk in metadata.get("groundingChunks") or []:
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if isinstance(web, dict) and web.get("uri"):
            links.append({"url": str(web["uri"]), "title": str(web.get("title") or web["uri"])})
    return links


def _error_details(response: requests.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500], None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or response.text[:500]), error.get("status")
    return response.text[:500], None


class GeminiClient:
    def __init__(self, api_key: str, base_url: str, timeout_seconds: float = 90.0) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._session = requests.Session()

    def generate_content(
        self,
        *,
        model: str,
        contents: str | list[dict[str, Any]],
        generation_config: dict[str, Any] | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/models/{model}:generateContent"
        if isinstance(contents, str):
            contents = [{"role": "user", "parts": [{"text": contents}]}]
        payload: dict[str, Any] = {"contents": contents}
        if generation_config:
            payload["generationConfig"] = generation_config
        if tools:
            payload["tools"] = tools
        headers = {
            "x-goog-api-key": self._api_key,
            "Content-Type": "application/json",
        }
        try:
            response = self._session.post(
                url,
                json=payload,
                headers=headers,
                timeout=self._timeout_seconds,
            )
        except requests.Timeout as exc:
            raise ProviderTimeoutError(f"Gemini request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"Gemini request failed: {exc}") from exc

        if response.status_code != 200:
            message, provider_status = _error_details(response)
            raise ProviderError(
                f"Gemini HTTP {response.status_code}: {message}",
                status_code=response.status_code,
                provider_status=provider_status,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError("Gemini response is not valid JSON.") from exc
        if not isinstance(data, dict):
            raise MalformedResponseError("Gemini response is not a JSON object.")
        return data


def get_client() -> GeminiClient:
    api_key = (os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY") or "").strip()
    if not api_key:
        raise ProviderError("GEMINI_API_KEY is not set.", status_code=401)
    base_url = os.environ.get("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL).strip()
    if not base_url:
        base_url = DEFAULT_GEMINI_BASE_URL
    try:
        timeout_seconds = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "90"))
    except ValueError:
        timeout_seconds = 90.0
    return GeminiClient(api_key=api_key, base_url=base_url, timeout_seconds=timeout_seconds)


@lru_cache(maxsize=None)
def resolve_model_name(kind: str = "text") -> str:
    preferred = os.environ.get(_MODEL_ENV.get(kind, ""), "").strip()
    if preferred:
        return preferred
    return DEFAULT_MODELS.get(kind, DEFAULT_MODELS["text"])
