"""Tests for the Ollama generation client."""
import json

import httpx
import pytest

from ragcore.llm_client import GenerationResult, OllamaClient


def _client(handler):
    return OllamaClient(base_url="http://ollama.test/", timeout=5.0, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_generate_posts_chat_request_and_counts_tokens():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "message": {"role": "assistant", "content": "Two years."},
                "prompt_eval_count": 120,
                "eval_count": 8,
            },
        )

    result = await _client(handler).generate(
        system_prompt="Use the context.",
        user_prompt="Question: warranty?",
        model="gemma3:12b",
        temperature=0.3,
        max_tokens=800,
    )

    assert result == GenerationResult(text="Two years.", token_usage=128)
    assert seen["path"] == "/api/chat"
    assert seen["body"]["model"] == "gemma3:12b"
    assert seen["body"]["stream"] is False
    assert seen["body"]["options"] == {"temperature": 0.3, "num_predict": 800}
    assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_generate_tolerates_missing_token_counts():
    def handler(request):
        return httpx.Response(200, json={"message": {"content": "ok"}})

    result = await _client(handler).generate("s", "u", model="m", temperature=0.0, max_tokens=10)

    assert result.token_usage == 0


@pytest.mark.asyncio
async def test_http_errors_propagate():
    def handler(request):
        return httpx.Response(500, json={"error": "boom"})

    with pytest.raises(httpx.HTTPStatusError):
        await _client(handler).generate("s", "u", model="m", temperature=0.3, max_tokens=10)


@pytest.mark.asyncio
async def test_connection_errors_propagate():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(httpx.ConnectError):
        await _client(handler).chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_list_models():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "gemma3:12b"}, {"name": "llama3"}]})

    assert await _client(handler).list_models() == ["gemma3:12b", "llama3"]
