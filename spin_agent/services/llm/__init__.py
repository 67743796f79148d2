from spin_agent.services.llm.base import LLMProvider, LLMResponse, join_fragments
from spin_agent.services.llm.gemini_provider import GeminiProvider
from spin_agent.services.llm.openai_provider import OpenAIProvider


def build_llm_provider(settings) -> LLMProvider:
    provider = (settings.llm_provider or "gemini").strip().lower()
    common = {
        "temperature": settings.llm_temperature,
        "max_tokens": settings.llm_max_tokens,
        "timeout_seconds": settings.llm_timeout_seconds,
    }
    if provider == "gemini":
        return GeminiProvider(settings.gemini_api_key or "", default_model=settings.gemini_model, **common)
    if provider == "openai":
        return OpenAIProvider(settings.openai_api_key or "", default_model=settings.openai_model, **common)
    raise ValueError(f"Unknown LLM provider: {settings.llm_provider}")


__all__ = [
    "LLMProvider",
    "LLMResponse",
    "GeminiProvider",
    "OpenAIProvider",
    "build_llm_provider",
    "join_fragments",
]
