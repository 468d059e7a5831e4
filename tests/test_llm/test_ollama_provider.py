import json

import httpx
import pytest

from deckhand.exceptions import ConfigurationError, LLMAPIError
from deckhand.llm import (
    Message,
    OllamaProvider,
    ToolDefinition,
    create_provider,
    from_wire_name,
    get_provider,
    set_provider,
    to_wire_name,
)


def test_create_provider_supports_ollama():
    provider = create_provider(provider="ollama", model="llama3.2", base_url="http://localhost:11434/")

    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ConfigurationError):
        create_provider(provider="nope")


def test_wire_names():
    assert to_wire_name("FileEditor.write") == "FileEditor-write"
    assert from_wire_name("FileEditor-write") == "FileEditor.write"
    assert from_wire_name("plain") == "plain"
    assert from_wire_name("Already.dotted") == "Already.dotted"


@pytest.mark.asyncio
async def test_complete_maps_tool_calls_and_names():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "Echo-run", "arguments": {"text": "hi"}}}],
            },
            "prompt_eval_count": 3,
            "eval_count": 2,
        })

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OllamaProvider(base_url="http://ollama.test", client=client)
    try:
        response = await provider.complete(
            [
                Message(role="user", content="hi"),
                Message(
                    role="assistant",
                    content="",
                    tool_calls=[{"id": "c0", "function": {"name": "Echo.run", "arguments": '{"text": "a"}'}}],
                ),
                Message(role="tool", content="a", tool_call_id="c0", tool_name="Echo.run"),
            ],
            tools=[ToolDefinition(name="Echo.run", description="Echo", parameters={"type": "object"})],
        )
    finally:
        await provider.close()

    assert seen["url"] == "http://ollama.test/api/chat"
    body = seen["body"]
    assert body["tools"][0]["function"]["name"] == "Echo-run"
    assert body["messages"][1]["tool_calls"][0]["function"] == {"name": "Echo-run", "arguments": {"text": "a"}}
    assert body["messages"][2]["tool_name"] == "Echo-run"
    assert response.tool_calls[0].name == "Echo.run"
    assert response.tool_calls[0].arguments == {"text": "hi"}
    assert response.tool_calls[0].id
    assert response.usage["total_tokens"] == 5


@pytest.mark.asyncio
async def test_complete_raises_api_error_on_http_failure():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")))
    provider = OllamaProvider(client=client)
    try:
        with pytest.raises(LLMAPIError) as exc_info:
            await provider.complete([Message(role="user", content="hi")])
    finally:
        await provider.close()

    assert exc_info.value.status_code == 500


def test_get_provider_builds_from_config_once():
    first = get_provider()

    assert isinstance(first, OllamaProvider)
    assert get_provider() is first


def test_set_provider_replaces_global():
    provider = OllamaProvider(model="other")

    set_provider(provider)

    assert get_provider() is provider
