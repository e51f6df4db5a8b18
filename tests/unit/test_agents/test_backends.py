"""
Tests for LLM backends and the backend factory.
"""

import json

import httpx
import pytest

from rmri.agents.backends import (
    AnthropicBackend,
    BackendAuthenticationError,
    OpenRouterBackend,
    create_backend,
    extract_json_from_text,
)
from rmri.config import BackendConfig
from rmri.errors import BackendUnavailableError, TransientAgentError


def _backend(handler) -> OpenRouterBackend:
    return OpenRouterBackend(
        model="test/model",
        api_key="sk-test",
        max_retries=1,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_openrouter_complete_parses_reply():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": '{"gaps": []}'}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            },
        )

    response = await _backend(handler).complete("system", "user")

    assert response.text == '{"gaps": []}'
    assert response.model == "test/model"
    assert response.input_tokens == 12
    assert response.output_tokens == 3
    assert seen["auth"] == "Bearer sk-test"
    assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_openrouter_missing_content_is_empty_text():
    response = await _backend(lambda request: httpx.Response(200, json={})).complete("s", "u")

    assert response.text == ""


@pytest.mark.asyncio
async def test_openrouter_auth_failure():
    backend = _backend(lambda request: httpx.Response(401, json={"error": "bad key"}))

    with pytest.raises(BackendAuthenticationError) as exc_info:
        await backend.complete("s", "u")
    assert "OPENROUTER_API_KEY" in str(exc_info.value)

    with pytest.raises(BackendAuthenticationError):
        await backend.verify()


@pytest.mark.asyncio
async def test_openrouter_rate_limit_surfaces_as_unavailable_after_retries():
    backend = _backend(lambda request: httpx.Response(429, text="slow down"))

    with pytest.raises(BackendUnavailableError) as exc_info:
        await backend.complete("s", "u")
    assert isinstance(exc_info.value.__cause__, TransientAgentError)
    assert not isinstance(exc_info.value, TransientAgentError)


@pytest.mark.asyncio
async def test_openrouter_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text="bad request")

    backend = OpenRouterBackend(
        model="test/model", api_key="sk-test", max_retries=3, transport=httpx.MockTransport(handler)
    )

    with pytest.raises(RuntimeError):
        await backend.complete("s", "u")
    assert len(calls) == 1


def test_create_backend_heuristic_returns_none():
    assert create_backend(BackendConfig()) is None
    assert create_backend(BackendConfig(provider="anthropic"), provider="heuristic") is None


def test_create_backend_unknown_provider():
    with pytest.raises(ValueError, match="Unknown backend provider"):
        create_backend(BackendConfig(), provider="mystery")


def test_create_backend_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)

    with pytest.raises(ValueError, match="OPENROUTER_API_KEY"):
        create_backend(BackendConfig(provider="openrouter"))


def test_create_backend_provider_override(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")

    backend = create_backend(BackendConfig(), provider="anthropic")

    assert isinstance(backend, AnthropicBackend)
    assert backend.name.startswith("anthropic:")


def test_create_backend_custom_env(monkeypatch):
    monkeypatch.setenv("MY_ROUTER_KEY", "sk-or-test")

    backend = create_backend(
        BackendConfig(provider="openrouter", model="x/y", api_key_env="MY_ROUTER_KEY")
    )

    assert isinstance(backend, OpenRouterBackend)
    assert backend.name == "openrouter:x/y"
    assert backend.api_key == "sk-or-test"


@pytest.mark.parametrize(
    "text,expected",
    [
        ('```json\n{"a": 1}\n```', {"a": 1}),
        ('Here you go: {"a": {"b": 2}} thanks', {"a": {"b": 2}}),
        ("no json here", None),
        ("{not valid}", None),
    ],
)
def test_extract_json_from_text(text, expected):
    assert extract_json_from_text(text) == expected
