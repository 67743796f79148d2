from typing import Optional

import httpx

from spin_agent.logging_config import get_logger
from spin_agent.services.errors import InferenceError
from spin_agent.services.llm.base import LLMProvider, LLMResponse, join_fragments

logger = get_logger("llm.gemini")


class GeminiProvider(LLMProvider):
    """Google Gemini ``generateContent`` REST provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gemini-2.0-flash",
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://generativelanguage.googleapis.com/v1beta/models"
        self._transport = transport

    async def complete(self, prompt: str) -> LLMResponse:
        model = self.default_model
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
            },
        }
        logger.debug(f"Gemini request: model={model}, prompt_chars={len(prompt)}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/{model}:generateContent",
                    params={"key": self.api_key},
                    json=payload,
                )
        except httpx.HTTPError as exc:
            logger.error(f"Gemini request failed: {exc}")
            raise InferenceError(f"Gemini request failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(f"Gemini error: {response.text}")
            raise InferenceError(f"Gemini API error: {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()
            candidates = data.get("candidates") or []
            parts = []
            if candidates:
                parts = (candidates[0].get("content") or {}).get("parts") or []
            fragments = [part.get("text") or "" for part in parts if isinstance(part, dict)]
        except (ValueError, AttributeError, TypeError, IndexError) as exc:
            logger.error(f"Gemini response unreadable: {response.text[:200]}")
            raise InferenceError(f"Gemini returned an unreadable response: {exc}") from exc

        content = join_fragments(fragments)
        return LLMResponse(
            content=content,
            model=data.get("modelVersion", model),
            usage=data.get("usageMetadata"),
            fragments=fragments,
        )
