import json

import httpx
import pytest

from spin_agent.services.errors import InferenceError
from spin_agent.services.llm import GeminiProvider, OpenAIProvider, build_llm_provider, join_fragments


def gemini_body(*texts):
    return {
        "candidates": [{"content": {"parts": [{"text": text} for text in texts]}}],
        "usageMetadata": {"totalTokenCount": 42},
        "modelVersion": "gemini-2.0-flash",
    }


class TestJoinFragments:
    def test_concatenates_without_separator(self):
        assert join_fragments(["Olá ", "João!"]) == "Olá João!"

    def test_skips_missing_parts(self):
        assert join_fragments(["a", None, "", "b"]) == "ab"

    @pytest.mark.parametrize("parts", [[], [""], ["  ", "\n"]])
    def test_empty_raises(self, parts):
        with pytest.raises(InferenceError):
            join_fragments(parts)


class TestGeminiProvider:
    @pytest.mark.asyncio
    async def test_joins_candidate_parts(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=gemini_body("Olá ", "João!"))

        provider = GeminiProvider("secret", transport=httpx.MockTransport(handler))
        response = await provider.complete("prompt text")

        assert response.content == "Olá João!"
        assert response.fragments == ["Olá ", "João!"]
        assert response.usage == {"totalTokenCount": 42}
        assert "gemini-2.0-flash:generateContent" in captured["url"]
        assert "key=secret" in captured["url"]
        assert captured["body"]["contents"][0]["parts"][0]["text"] == "prompt text"

    @pytest.mark.asyncio
    async def test_http_error_raises_inference_error(self):
        provider = GeminiProvider(
            "secret",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
        )
        with pytest.raises(InferenceError):
            await provider.complete("prompt")

    @pytest.mark.asyncio
    async def test_empty_candidates_raise(self):
        provider = GeminiProvider(
            "secret",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"candidates": []})),
        )
        with pytest.raises(InferenceError):
            await provider.complete("prompt")

    @pytest.mark.asyncio
    async def test_network_error_raises_inference_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        provider = GeminiProvider("secret", transport=httpx.MockTransport(handler))
        with pytest.raises(InferenceError):
            await provider.complete("prompt")

    @pytest.mark.asyncio
    async def test_non_json_body_raises_inference_error(self):
        provider = GeminiProvider(
            "secret",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>")),
        )
        with pytest.raises(InferenceError):
            await provider.complete("prompt")

    @pytest.mark.asyncio
    async def test_unexpected_shape_raises_inference_error(self):
        provider = GeminiProvider(
            "secret",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["not", "an", "object"])),
        )
        with pytest.raises(InferenceError):
            await provider.complete("prompt")


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_string_content(self):
        captured = {}

        def handler(request):
            captured["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={"model": "gpt-4o-mini", "choices": [{"message": {"content": "Oi!"}}]})

        provider = OpenAIProvider("sk-test", transport=httpx.MockTransport(handler))
        response = await provider.complete("prompt")

        assert response.content == "Oi!"
        assert captured["auth"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_list_content_is_joined(self):
        body = {"choices": [{"message": {"content": [{"type": "text", "text": "Olá "}, {"type": "text", "text": "Ana"}]}}]}
        provider = OpenAIProvider("sk-test", transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))
        assert (await provider.complete("prompt")).content == "Olá Ana"

    @pytest.mark.asyncio
    async def test_empty_content_raises(self):
        body = {"choices": [{"message": {"content": ""}}]}
        provider = OpenAIProvider("sk-test", transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))
        with pytest.raises(InferenceError):
            await provider.complete("prompt")

    @pytest.mark.asyncio
    async def test_non_json_body_raises_inference_error(self):
        provider = OpenAIProvider(
            "sk-test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="upstream timeout")),
        )
        with pytest.raises(InferenceError):
            await provider.complete("prompt")


class TestBuildLLMProvider:
    def test_gemini(self, test_settings):
        provider = build_llm_provider(test_settings)
        assert isinstance(provider, GeminiProvider)
        assert provider.api_key == "test-key"

    def test_openai(self, test_settings):
        settings = test_settings.model_copy(update={"llm_provider": "openai", "openai_api_key": "sk"})
        assert isinstance(build_llm_provider(settings), OpenAIProvider)

    def test_unknown(self, test_settings):
        with pytest.raises(ValueError):
            build_llm_provider(test_settings.model_copy(update={"llm_provider": "other"}))
