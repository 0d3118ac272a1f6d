"""Chat completer adapters over httpx.

Each adapter turns a message list plus tool definitions into one provider
request and normalizes the reply to TextResponse or ToolCallResponse.
Anything that goes wrong on the wire surfaces as UpstreamError; retrying is
left to the job queue.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from orchestra.agents.schemas import Message, ProviderConfig, ToolCall, ToolSpec
from orchestra.config import Settings
from orchestra.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class TextResponse:
    text: str
    usage: dict[str, Any] | None = None


@dataclass
class ToolCallResponse:
    call: ToolCall
    text: str = ""
    usage: dict[str, Any] | None = None


CompletionResponse = TextResponse | ToolCallResponse


class ChatCompleter(Protocol):
    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        tool_choice: str = "auto",
    ) -> CompletionResponse: ...


def _decode_arguments(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            return raw
    return raw


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
        err = body.get("error", body)
        if isinstance(err, dict):
            return str(err.get("message") or err)
        return str(err)
    except (ValueError, AttributeError):
        return response.text[:500]


class _HttpCompleter:
    provider = "http"

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        model: str,
        temperature: float | None = None,
        top_p: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._http = http
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.max_tokens = max_tokens

    async def _post(self, path: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._http.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"{self.provider} request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.provider} request failed: {e}") from e

        if response.status_code >= 300:
            raise UpstreamError(f"{self.provider} API error ({response.status_code}): {_error_detail(response)}")
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(f"{self.provider} returned a malformed body") from e
        if not isinstance(data, dict):
            raise UpstreamError(f"{self.provider} returned a malformed body")
        return data


# ---------------------------------------------------------------------------
# OpenAI (and OpenAI-compatible: Ollama)
# ---------------------------------------------------------------------------


class OpenAICompleter(_HttpCompleter):
    """Chat Completions API."""

    provider = "openai"

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
        return headers

    @staticmethod
    def _message(m: Message) -> dict[str, Any]:
        if m.role == "assistant" and m.tool_call is not None:
            return {
                "role": "assistant",
                "content": m.content or None,
                "tool_calls": [
                    {
                        "id": m.tool_call.id,
                        "type": "function",
                        "function": {"name": m.tool_call.name, "arguments": m.tool_call.arguments_json()},
                    }
                ],
            }
        if m.role == "tool":
            return {"role": "tool", "tool_call_id": m.tool_call_id or "", "content": m.content}
        out: dict[str, Any] = {"role": m.role, "content": m.content}
        if m.name and m.role == "user":
            out["name"] = m.name
        return out

    def build_payload(self, messages: list[Message], tools: list[ToolSpec], tool_choice: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [self._message(m) for m in messages],
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in tools
            ]
            payload["tool_choice"] = tool_choice
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.top_p is not None:
            payload["top_p"] = self.top_p
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        return payload

    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        tool_choice: str = "auto",
    ) -> CompletionResponse:
        data = await self._post("/chat/completions", self.build_payload(messages, tools, tool_choice), self._headers())
        try:
            message = data["choices"][0]["message"]
            tool_calls = message.get("tool_calls") or []
            text = message.get("content") or ""
            if tool_calls:
                if len(tool_calls) > 1:
                    logger.warning("%s returned %d tool calls, using the first", self.provider, len(tool_calls))
                fn = tool_calls[0]["function"]
                call = ToolCall(
                    id=tool_calls[0].get("id") or f"call_{uuid.uuid4().hex[:12]}",
                    name=fn["name"],
                    arguments=_decode_arguments(fn.get("arguments")),
                )
                return ToolCallResponse(call=call, text=text, usage=data.get("usage"))
            return TextResponse(text=text, usage=data.get("usage"))
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise UpstreamError(f"{self.provider} returned a malformed body: {e!r}") from e


class OllamaCompleter(OpenAICompleter):
    provider = "ollama"


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicCompleter(_HttpCompleter):
    """Messages API."""

    provider = "anthropic"

    def _headers(self) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    @staticmethod
    def _blocks(m: Message) -> tuple[str, list[dict[str, Any]]]:
        if m.role == "assistant" and m.tool_call is not None:
            blocks: list[dict[str, Any]] = []
            if m.content:
                blocks.append({"type": "text", "text": m.content})
            args = m.tool_call.arguments
            blocks.append(
                {
                    "type": "tool_use",
                    "id": m.tool_call.id,
                    "name": m.tool_call.name,
                    "input": args if isinstance(args, dict) else {},
                }
            )
            return "assistant", blocks
        if m.role == "tool":
            return "user", [{"type": "tool_result", "tool_use_id": m.tool_call_id or "", "content": m.content}]
        return m.role, [{"type": "text", "text": m.content}]

    def build_payload(self, messages: list[Message], tools: list[ToolSpec], tool_choice: str) -> dict[str, Any]:
        system = "\n\n".join(m.content for m in messages if m.role == "system" and m.content)
        turns: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                continue
            role, blocks = self._blocks(m)
            # The API wants alternating roles
            if turns and turns[-1]["role"] == role:
                turns[-1]["content"].extend(blocks)
            else:
                turns.append({"role": role, "content": blocks})

        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens or 4096,
            "messages": turns,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters} for t in tools
            ]
            payload["tool_choice"] = {"type": {"auto": "auto", "required": "any", "none": "none"}[tool_choice]}
        if self.temperature is not None:
            payload["temperature"] = min(self.temperature, 1.0)
        if self.top_p is not None:
            payload["top_p"] = self.top_p
        return payload

    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        tool_choice: str = "auto",
    ) -> CompletionResponse:
        data = await self._post("/v1/messages", self.build_payload(messages, tools, tool_choice), self._headers())
        try:
            blocks = data["content"]
            text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
            uses = [b for b in blocks if b.get("type") == "tool_use"]
            if uses:
                if len(uses) > 1:
                    logger.warning("anthropic returned %d tool calls, using the first", len(uses))
                call = ToolCall(id=uses[0]["id"], name=uses[0]["name"], arguments=uses[0].get("input") or {})
                return ToolCallResponse(call=call, text=text, usage=data.get("usage"))
            return TextResponse(text=text, usage=data.get("usage"))
        except (KeyError, TypeError, AttributeError) as e:
            raise UpstreamError(f"anthropic returned a malformed body: {e!r}") from e


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def resolve_api_key(ref: str, fallback: str = "") -> str:
    """A literal key, ``env:NAME``, or empty for the process default."""
    if ref.startswith("env:"):
        name = ref[4:]
        value = os.environ.get(name, "")
        if not value:
            raise ConfigurationError(
                f"environment variable {name} referenced by api_key_ref is not set",
                {"provider.api_key_ref": f"{name} is not set"},
            )
        return value
    return ref or fallback


def create_completer(config: ProviderConfig, settings: Settings, http: httpx.AsyncClient) -> ChatCompleter:
    common = {
        "temperature": config.temperature,
        "top_p": config.top_p,
        "max_tokens": config.max_tokens or settings.max_tokens,
    }
    if config.type == "openai":
        key = resolve_api_key(config.api_key_ref, settings.openai_api_key)
        if not key:
            raise ConfigurationError("no OpenAI API key configured", {"provider.api_key_ref": "missing"})
        return OpenAICompleter(
            http, config.base_url or settings.openai_base_url, key, config.model or settings.default_model, **common
        )
    if config.type == "anthropic":
        key = resolve_api_key(config.api_key_ref, settings.anthropic_api_key)
        if not key:
            raise ConfigurationError("no Anthropic API key configured", {"provider.api_key_ref": "missing"})
        return AnthropicCompleter(
            http, config.base_url or settings.anthropic_base_url, key, config.model or settings.anthropic_model, **common
        )
    if config.type == "ollama":
        key = resolve_api_key(config.api_key_ref)
        return OllamaCompleter(
            http, config.base_url or settings.ollama_base_url, key, config.model or settings.ollama_model, **common
        )
    raise ConfigurationError(f"unsupported provider: {config.type}", {"provider.type": "unsupported"})
