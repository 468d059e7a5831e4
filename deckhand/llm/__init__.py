"""Model collaborator interface and the Ollama reference provider."""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from deckhand.exceptions import ConfigurationError, LLMAPIError, LLMError
from deckhand.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[dict[str, Any]] | None = None


@dataclass
class ToolCall:
    """A structured function call from the LLM.

    ``arguments`` is the raw JSON string sent by the provider; some providers
    already decode it into a mapping.
    """

    id: str
    name: str
    arguments: str | dict[str, Any]


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


def to_wire_name(name: str) -> str:
    """Function-calling APIs reject dots, so ``A.b`` travels as ``A-b``."""
    return name.replace(".", "-")


def from_wire_name(name: str) -> str:
    """Inverse of :func:`to_wire_name` for ``Namespace-method`` names."""
    if "." in name or "-" not in name:
        return name
    return name.replace("-", ".", 1)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    async def close(self) -> None:
        """Release provider resources."""
        return None


def _decode_arguments(arguments: Any) -> dict[str, Any]:
    # Ollama expects an object where OpenAI-style history carries a JSON string.
    if isinstance(arguments, dict):
        return arguments
    if not isinstance(arguments, str) or not arguments.strip():
        return {}
    try:
        decoded = json.loads(arguments)
    except json.JSONDecodeError:
        return {"raw": arguments}
    return decoded if isinstance(decoded, dict) else {"raw": arguments}


class OllamaProvider(LLMProvider):
    """Chat completions against a local or remote Ollama server (``/api/chat``)."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=120.0, follow_redirects=True)

    def _wire_message(self, message: Message) -> dict[str, Any]:
        entry: dict[str, Any] = {"role": message.role, "content": message.content or ""}
        if message.role == "assistant" and message.tool_calls:
            entry["tool_calls"] = [
                {
                    "function": {
                        "name": to_wire_name(str(call.get("function", {}).get("name", ""))),
                        "arguments": _decode_arguments(call.get("function", {}).get("arguments")),
                    }
                }
                for call in message.tool_calls
            ]
        elif message.role == "tool" and message.tool_name:
            entry["tool_name"] = to_wire_name(message.tool_name)
        return entry

    @staticmethod
    def _wire_tool(tool: ToolDefinition) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": to_wire_name(tool.name),
                "description": tool.description or "",
                "parameters": tool.parameters or {},
            },
        }

    def _payload(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [self._wire_message(message) for message in messages],
            "stream": False,
            "options": {
                "temperature": self.temperature if temperature is None else temperature,
                "num_predict": max_tokens or self.max_tokens,
            },
        }
        if tools:
            payload["tools"] = [self._wire_tool(tool) for tool in tools if tool.name]
        return payload

    def _parse(self, data: dict[str, Any]) -> LLMResponse:
        message = data.get("message") or {}
        calls = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            calls.append(ToolCall(
                id=str(raw.get("id") or f"ollama_call_{uuid.uuid4().hex}"),
                name=from_wire_name(str(function.get("name", ""))),
                arguments=function.get("arguments", {}),
            ))
        prompt_tokens = int(data.get("prompt_eval_count") or 0)
        completion_tokens = int(data.get("eval_count") or 0)
        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=calls,
            model=str(data.get("model") or self.model),
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Send one non-streaming chat request.

        Raises:
            LLMAPIError: transport failure or a non-2xx status
            LLMError: the body is not JSON
        """
        url = f"{self.base_url}/api/chat"
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = self._payload(messages, tools, temperature, max_tokens)

        log.debug("Calling Ollama", model=self.model, url=url, messages=len(messages))
        try:
            response = await self.client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}") from e

        if response.is_error:
            raise LLMAPIError(
                f"Ollama API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise LLMError(f"Ollama response decode error: {e}") from e
        return self._parse(data)

    async def close(self) -> None:
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
) -> LLMProvider:
    """Build a provider by name.

    Only Ollama ships with Deckhand; other backends plug in by handing an
    ``LLMProvider`` instance to the agent.
    """
    if provider != "ollama":
        raise ConfigurationError(
            f"Provider '{provider}' not supported. Use 'ollama' or pass a provider instance."
        )
    return OllamaProvider(
        model=model,
        base_url=base_url or OLLAMA_NATIVE_BASE_URL,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=api_key,
    )


_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Process-wide provider built from ``Config.model`` on first use."""
    global _provider
    if _provider is None:
        from deckhand.config import get_config
        model_cfg = get_config().model
        _provider = create_provider(
            provider=model_cfg.provider,
            model=model_cfg.model,
            base_url=model_cfg.base_url or None,
            temperature=model_cfg.temperature,
            max_tokens=model_cfg.max_tokens,
            api_key=model_cfg.api_key or None,
        )
    return _provider


def set_provider(provider: LLMProvider) -> None:
    global _provider
    _provider = provider
