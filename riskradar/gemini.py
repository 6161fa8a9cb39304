from typing import Any, Dict, List, Optional

import httpx

from .config import AppSettings
from .schemas import GenerationResult, Source

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash"
PLACEHOLDER_TITLE = "Quelle"
PLACEHOLDER_URI = "#"


class ProviderError(RuntimeError):
    """Raised for provider problems detected before or outside an HTTP status."""


def extract_text(data: Dict[str, Any]) -> str:
    """Join the first candidate's answer parts, skipping "thought" parts."""
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    content = candidates[0].get("content") or {}
    parts = content.get("parts") or []
    texts = [
        part.get("text")
        for part in parts
        if isinstance(part, dict) and part.get("text") and not part.get("thought")
    ]
    return "".join(texts)


def extract_grounding_sources(data: Dict[str, Any]) -> List[Source]:
    candidates = data.get("candidates") or []
    if not candidates:
        return []
    meta = candidates[0].get("groundingMetadata") or {}
    sources: List[Source] = []
    for chunk in meta.get("groundingChunks") or []:
        if not isinstance(chunk, dict):
            continue
        web = chunk.get("web") or {}
        sources.append(
            Source(
                title=web.get("title") or PLACEHOLDER_TITLE,
                uri=web.get("uri") or PLACEHOLDER_URI,
            )
        )
    return sources


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _url(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def build_payload(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        enable_web_search: bool = True,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if enable_web_search:
            payload["tools"] = [{"googleSearch": {}}]
        if response_schema is not None:
            payload["generationConfig"] = {
                "responseMimeType": "application/json",
                "responseSchema": response_schema,
            }
        return payload

    async def generate(
        self,
        prompt: str,
        *,
        system_instruction: Optional[str] = None,
        enable_web_search: bool = True,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        if not self.enabled:
            raise ProviderError("missing_api_key")
        payload = self.build_payload(
            prompt,
            system_instruction=system_instruction,
            enable_web_search=enable_web_search,
            response_schema=response_schema,
        )
        headers = {"Content-Type": "application/json", "x-goog-api-key": self.api_key}
        resp = await self.client.post(self._url(), json=payload, headers=headers)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ProviderError("unexpected response shape")
        return GenerationResult(
            text=extract_text(data),
            sources=extract_grounding_sources(data),
            model_used=data.get("modelVersion") or self.model,
        )

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()


def build_gemini_client(settings: AppSettings) -> GeminiClient:
    return GeminiClient(
        settings.gemini_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
        timeout=settings.request_timeout_s,
    )
