from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from careerflow.llm.providers import LLMProvider, ProviderConfig, ProviderNotConfiguredError, parse_json


class FakeChatPayload:
    def __init__(self, *, content: str | None, usage=None, raw: dict | None = None):
        self.choices = [SimpleNamespace(message=SimpleNamespace(content=content))]
        self.usage = usage
        self._raw = raw or {}

    def model_dump(self) -> dict:
        return self._raw


class FakeChatCompletionsAPI:
    def __init__(self, fn):
        self._fn = fn
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return self._fn(**kwargs)


class FakeClient:
    def __init__(self, chat_fn):
        self.chat = SimpleNamespace(completions=FakeChatCompletionsAPI(chat_fn))


def _provider_with_fake_client(fake_client: FakeClient, *, name: str = "deepseek", api_key: str = "dummy") -> LLMProvider:
    provider = LLMProvider(
        ProviderConfig(
            name=name,
            base_url="http://localhost:9999/v1",
            api_key=api_key,
            model="test-model",
            timeout_sec=5,
        )
    )
    provider.client = fake_client
    return provider


def test_complete_text_reads_deepseek_cache_usage() -> None:
    usage = SimpleNamespace(prompt_tokens=120, completion_tokens=30, prompt_cache_hit_tokens=100)
    client = FakeClient(lambda **kwargs: FakeChatPayload(content="OK", usage=usage, raw={"id": "chat_1"}))
    provider = _provider_with_fake_client(client)

    result = asyncio.run(provider.complete_text(prompt="ping", system="be brief"))

    assert result.content == "OK"
    assert result.raw["id"] == "chat_1"
    assert result.usage.provider == "deepseek"
    assert (result.usage.prompt_tokens, result.usage.completion_tokens, result.usage.cached_tokens) == (120, 30, 100)
    sent = client.chat.completions.calls[0]
    assert sent["model"] == "test-model"
    assert [message["role"] for message in sent["messages"]] == ["system", "user"]


def test_complete_text_reads_openai_style_cached_tokens() -> None:
    usage = SimpleNamespace(
        prompt_tokens=50,
        completion_tokens=10,
        prompt_tokens_details=SimpleNamespace(cached_tokens=20),
    )
    provider = _provider_with_fake_client(
        FakeClient(lambda **kwargs: FakeChatPayload(content=None, usage=usage)), name="gemini"
    )

    result = asyncio.run(provider.complete_text(prompt="ping"))

    assert result.content == ""
    assert result.usage.provider == "gemini"
    assert result.usage.cached_tokens == 20


def test_complete_json_requests_json_mode_and_parses() -> None:
    client = FakeClient(lambda **kwargs: FakeChatPayload(content='{"status":"ok","source":"chat"}'))
    provider = _provider_with_fake_client(client)

    payload, usage = asyncio.run(provider.complete_json(prompt="json please"))

    assert payload == {"status": "ok", "source": "chat"}
    assert usage.prompt_tokens == 0
    assert client.chat.completions.calls[0]["response_format"] == {"type": "json_object"}


def test_errors_from_client_propagate() -> None:
    def chat_fn(**kwargs):
        raise RuntimeError("chat path failed")

    provider = _provider_with_fake_client(FakeClient(chat_fn))
    with pytest.raises(RuntimeError, match="chat path failed"):
        asyncio.run(provider.complete_text(prompt="ping"))


def test_missing_api_key_raises_before_calling() -> None:
    client = FakeClient(lambda **kwargs: FakeChatPayload(content="never"))
    provider = _provider_with_fake_client(client, api_key="")

    with pytest.raises(ProviderNotConfiguredError):
        asyncio.run(provider.complete_text(prompt="ping"))
    assert client.chat.completions.calls == []


def test_parse_json_handles_fences_and_garbage() -> None:
    assert parse_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json("[1, 2]") == {}
    assert parse_json("not json") == {}
    assert parse_json("   ") == {}
