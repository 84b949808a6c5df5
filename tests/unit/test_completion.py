"""Unit tests for the chat completion client."""

import httpx
import pytest

from governor.completion import CompletionClient
from governor.config import CompletionConfig


class TestCompletionClient:
    @pytest.mark.asyncio
    async def test_network_disabled(self, monkeypatch):
        monkeypatch.setenv("GOVERNOR_DISABLE_NETWORK", "1")
        client = CompletionClient(CompletionConfig())
        with pytest.raises(RuntimeError, match="Network access disabled"):
            await client.complete("hi")

    def test_auth_header(self):
        assert CompletionClient(CompletionConfig())._headers() == {}
        client = CompletionClient(CompletionConfig(api_key="k"))
        assert client._headers() == {"Authorization": "Bearer k"}

    @pytest.mark.asyncio
    async def test_complete_extracts_content(self, monkeypatch):
        monkeypatch.delenv("GOVERNOR_DISABLE_NETWORK", raising=False)
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]})

        transport = httpx.MockTransport(handler)
        real_client = httpx.AsyncClient

        def patched(*args, **kwargs):
            kwargs["transport"] = transport
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", patched)
        client = CompletionClient(CompletionConfig(base_url="http://llm.test/v1"))

        assert await client.complete("hi", system_prompt="be brief") == "hello"
        assert seen["url"] == "http://llm.test/v1/chat/completions"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, monkeypatch):
        monkeypatch.delenv("GOVERNOR_DISABLE_NETWORK", raising=False)
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401, json={"error": "nope"})

        transport = httpx.MockTransport(handler)
        real_client = httpx.AsyncClient
        monkeypatch.setattr(httpx, "AsyncClient", lambda *a, **kw: real_client(*a, transport=transport, **kw))

        with pytest.raises(httpx.HTTPStatusError):
            await CompletionClient(CompletionConfig()).complete("hi")
        assert len(calls) == 1
