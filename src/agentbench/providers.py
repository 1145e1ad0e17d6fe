"""Model provider handles.

Each provider kind has one constructor; :func:`create_provider` picks it
from the configured ``type`` and returns the handle wrapped in a
:class:`~agentbench.ratelimit.RateLimitedModel`. Messages and tools use
the OpenAI chat-completions shape throughout; other wire formats convert
at the edge.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from agentbench.models import ProviderConfig, ProviderType
from agentbench.ratelimit import RateLimitedModel, RetryAfterTransport

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 4096
REQUEST_TIMEOUT = 120.0


class ProviderError(Exception):
    """Raised when a provider is misconfigured or an upstream call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ModelToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class ModelResponse:
    """One assistant turn."""
    content: str = ""
    tool_calls: List[ModelToolCall] = field(default_factory=list)
    tokens: int = 0


class ChatModel(ABC):
    """Abstract base class for model handles."""

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self.client = client

    @abstractmethod
    async def generate(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
    ) -> ModelResponse: ...

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.config.name}: request failed: {e}") from e
        if resp.status_code != 200:
            raise ProviderError(
                f"{self.config.name}: API returned {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{self.config.name}: invalid JSON response: {e}") from e


class OpenAIChatModel(ChatModel):
    """OpenAI chat completions, also used for Groq and Azure OpenAI."""

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient, url: str, headers: Dict[str, str]) -> None:
        super().__init__(config, client)
        self.url = url
        self.headers = headers

    async def generate(self, messages, tools=None) -> ModelResponse:
        payload: Dict[str, Any] = {"model": self.config.model, "messages": messages}
        if tools:
            payload["tools"] = tools
        data = await self._post(self.url, payload, self.headers)

        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(f"{self.config.name}: response contained no choices")
        message = choices[0].get("message") or {}

        calls = []
        for call in message.get("tool_calls") or []:
            fn = call.get("function") or {}
            raw_args = fn.get("arguments") or "{}"
            try:
                args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            except json.JSONDecodeError:
                logger.warning("Tool call %s has invalid JSON arguments: %r", fn.get("name"), raw_args)
                args = {}
            calls.append(ModelToolCall(id=call.get("id", ""), name=fn.get("name", ""), arguments=args))

        usage = data.get("usage") or {}
        return ModelResponse(
            content=message.get("content") or "",
            tool_calls=calls,
            tokens=int(usage.get("total_tokens", 0) or 0),
        )


class AnthropicChatModel(ChatModel):
    """Anthropic messages API."""

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient) -> None:
        super().__init__(config, client)
        self.url = f"{(config.base_url or ANTHROPIC_BASE_URL).rstrip('/')}/v1/messages"
        self.headers = {"x-api-key": config.token, "anthropic-version": ANTHROPIC_VERSION}

    async def generate(self, messages, tools=None) -> ModelResponse:
        system, converted = _to_anthropic_messages(messages)
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": ANTHROPIC_MAX_TOKENS,
            "messages": converted,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [
                {
                    "name": t["function"]["name"],
                    "description": t["function"].get("description", ""),
                    "input_schema": t["function"].get("parameters") or {"type": "object"},
                }
                for t in tools
            ]
        data = await self._post(self.url, payload, self.headers)

        blocks = data.get("content")
        if not blocks:
            raise ProviderError(f"{self.config.name}: response contained no content")
        text = []
        calls = []
        for block in blocks:
            if block.get("type") == "text":
                text.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                calls.append(ModelToolCall(
                    id=block.get("id", ""), name=block.get("name", ""),
                    arguments=dict(block.get("input") or {}),
                ))
        usage = data.get("usage") or {}
        return ModelResponse(
            content="".join(text),
            tool_calls=calls,
            tokens=int(usage.get("input_tokens", 0) or 0) + int(usage.get("output_tokens", 0) or 0),
        )


def _to_anthropic_messages(messages: List[Dict[str, Any]]):
    system = []
    out: List[Dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role")
        if role == "system":
            system.append(msg.get("content") or "")
        elif role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": msg.get("tool_call_id", ""),
                "content": msg.get("content") or "",
            }
            # Consecutive tool results belong to one user turn.
            if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                out[-1]["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
        elif role == "assistant" and msg.get("tool_calls"):
            content: List[Dict[str, Any]] = []
            if msg.get("content"):
                content.append({"type": "text", "text": msg["content"]})
            for call in msg["tool_calls"]:
                fn = call["function"]
                args = fn.get("arguments") or "{}"
                content.append({
                    "type": "tool_use", "id": call.get("id", ""), "name": fn["name"],
                    "input": json.loads(args) if isinstance(args, str) else args,
                })
            out.append({"role": "assistant", "content": content})
        else:
            out.append({"role": role, "content": msg.get("content") or ""})
    return "\n\n".join(system), out


# ── Construction ────────────────────────────────────────────────────────


def _require(config: ProviderConfig, *fields: str) -> None:
    for name in fields:
        if not getattr(config, name):
            raise ProviderError(f"provider '{config.name}' ({config.type}) requires '{name}'")


def _new_openai(config: ProviderConfig, client: httpx.AsyncClient) -> ChatModel:
    _require(config, "token", "model")
    base = (config.base_url or OPENAI_BASE_URL).rstrip("/")
    return OpenAIChatModel(
        config, client, f"{base}/chat/completions", {"Authorization": f"Bearer {config.token}"},
    )


def _new_groq(config: ProviderConfig, client: httpx.AsyncClient) -> ChatModel:
    _require(config, "token", "model")
    base = (config.base_url or GROQ_BASE_URL).rstrip("/")
    return OpenAIChatModel(
        config, client, f"{base}/chat/completions", {"Authorization": f"Bearer {config.token}"},
    )


def _new_azure(config: ProviderConfig, client: httpx.AsyncClient) -> ChatModel:
    _require(config, "token", "model", "version", "base_url")
    base = config.base_url.rstrip("/")
    url = f"{base}/openai/deployments/{config.model}/chat/completions?api-version={config.version}"
    if config.auth_type == "entra_id":
        headers = {"Authorization": f"Bearer {config.token}"}
    else:
        headers = {"api-key": config.token}
    return OpenAIChatModel(config, client, url, headers)


def _new_anthropic(config: ProviderConfig, client: httpx.AsyncClient) -> ChatModel:
    _require(config, "token", "model")
    return AnthropicChatModel(config, client)


_PROVIDER_CONSTRUCTORS: Dict[str, Callable[[ProviderConfig, httpx.AsyncClient], ChatModel]] = {
    ProviderType.OPENAI.value: _new_openai,
    ProviderType.GROQ.value: _new_groq,
    ProviderType.AZURE.value: _new_azure,
    ProviderType.ANTHROPIC.value: _new_anthropic,
}


def create_provider(
    config: ProviderConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RateLimitedModel:
    """Build a ready-to-call model handle for *config*.

    Args:
        config: A provider configuration with templates already rendered.
        transport: Underlying httpx transport; defaults to a real network
            transport.

    Raises:
        ProviderError: If the kind is unknown or required fields are missing.
    """
    constructor = _PROVIDER_CONSTRUCTORS.get(config.type)
    if constructor is None:
        raise ProviderError(
            f"Unknown provider type: {config.type!r}. Available: {sorted(_PROVIDER_CONSTRUCTORS)}"
        )
    tracker = RetryAfterTransport(transport)
    # An unused client holds no connections, so a constructor failure leaks nothing.
    client = httpx.AsyncClient(transport=tracker, timeout=REQUEST_TIMEOUT)
    model = constructor(config, client)
    return RateLimitedModel(model, config, tracker=tracker)
