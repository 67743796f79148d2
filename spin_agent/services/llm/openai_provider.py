from typing import Optional

import httpx

from spin_agent.logging_config import get_logger
from spin_agent.services.errors import InferenceError
from spin_agent.services.llm.base import LLMProvider, LLMResponse, join_fragments

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI API provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
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
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self._transport = transport

    async def complete(self, prompt: str) -> LLMResponse:
        model = self.default_model
        payload = {
            "model": model,
            "messages": [{"role": "system", "content": prompt}],
            "temperature": self.temperature,
            "max_completion_tokens": self.max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, prompt_chars={len(prompt)}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            logger.error(f"OpenAI request failed: {exc}")
            raise InferenceError(f"OpenAI request failed: {exc}") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise InferenceError(f"OpenAI API error: {response.status_code} - {response.text[:200]}")

        fragments: list[str] = []
        try:
            data = response.json()
            if data.get("choices"):
                content = (data["choices"][0].get("message") or {}).get("content") or ""
                if isinstance(content, list):
                    fragments = [part.get("text") or "" for part in content if isinstance(part, dict)]
                else:
                    fragments = [content]
        except (ValueError, AttributeError, TypeError, IndexError, KeyError) as exc:
            logger.error(f"OpenAI response unreadable: {response.text[:200]}")
            raise InferenceError(f"OpenAI returned an unreadable response: {exc}") from exc

        return LLMResponse(
            content=join_fragments(fragments),
            model=data.get("model", model),
            usage=data.get("usage"),
            fragments=fragments,
        )
