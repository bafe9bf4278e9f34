"""Reasoning-service backends.

This module provides a unified interface over the HTTP APIs the pipeline can
talk to: Anthropic's Messages API, OpenAI-compatible chat completions
(OpenAI, vLLM, llama.cpp, LM Studio, ...) and Ollama's native chat API.

Conversation history is kept in one neutral shape and translated per backend::

    {"role": "system" | "user" | "assistant", "content": "..."}
    {"role": "assistant", "content": "...", "tool_calls": [{"id", "name", "arguments"}]}
    {"role": "tool", "tool_call_id": "...", "name": "...", "content": "..."}

Every backend reports why a turn ended through ``ChatResponse.stop_reason``:
``end_turn`` (ordinary completion), ``tool_use`` (the model wants tools run)
or ``max_tokens`` (hard length cutoff).

Backends never retry. Rate limits, 5xx responses and network failures raise
TransientServiceError; other HTTP errors raise ExternalServiceError.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from issue_pipeline.agents.sandbox import ToolDefinition
from issue_pipeline.config.settings import ReasoningConfig
from issue_pipeline.exceptions import ConfigurationError, ExternalServiceError, TransientServiceError
from issue_pipeline.models.domain import ToolCall

log = structlog.get_logger(__name__)

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
STOP_MAX_TOKENS = "max_tokens"


@dataclass
class ChatResponse:
    """One turn's reply from the reasoning service."""

    content: str
    stop_reason: str = STOP_END_TURN
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def _parse_arguments(raw: Any) -> tuple[dict[str, Any], str | None]:
    """Decode tool-call arguments into an object.

    Returns:
        The arguments and, when they were not a JSON object, an error message.
    """
    if isinstance(raw, dict):
        return raw, None
    if raw is None or raw == "":
        return {}, None
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        return {}, f"Invalid tool arguments: {e}"
    if not isinstance(parsed, dict):
        return {}, "Invalid tool arguments: expected a JSON object"
    return parsed, None


class LLMBackend(ABC):
    """Abstract base class for reasoning-service backends.

    Example usage:
        backend = create_backend(settings.reasoning)
        response = await backend.chat(messages, model="claude-sonnet-4")
        if response.stop_reason == "tool_use":
            ...
    """

    name = "backend"

    def __init__(
        self,
        base_url: str,
        timeout: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 8000,
        tools: list[ToolDefinition] | None = None,
    ) -> ChatResponse:
        """Send the conversation and return the next turn.

        Raises:
            TransientServiceError: On rate limits, 5xx responses and network failures
            ExternalServiceError: On other API errors
        """

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
        try:
            response = await self.client.post(url, json=payload, headers=headers or {})
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            log.error("backend_request_failed", backend=self.name, error=str(e))
            raise TransientServiceError(f"{self.name} request failed: {e}", service=self.name) from e

        if response.status_code == 429 or response.status_code >= 500:
            log.error("backend_unavailable", backend=self.name, status=response.status_code)
            raise TransientServiceError(
                f"{self.name} API unavailable: {response.text[:500]}",
                status_code=response.status_code,
                service=self.name,
            )
        if response.status_code >= 400:
            log.error("backend_rejected_request", backend=self.name, status=response.status_code)
            raise ExternalServiceError(
                f"{self.name} API error: {response.text[:500]}",
                status_code=response.status_code,
                response_text=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceError(f"{self.name} returned a non-JSON response") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class AnthropicBackend(LLMBackend):
    """Anthropic Messages API backend."""

    name = "anthropic"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.anthropic.com",
        timeout: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(base_url, timeout, transport)
        self.api_key = api_key

    def _convert_messages(self, messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
        """Split out system text and group tool results into user turns."""
        system_parts: list[str] = []
        converted: list[dict[str, Any]] = []

        for message in messages:
            role = message["role"]
            if role == "system":
                system_parts.append(message["content"])
            elif role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": message["tool_call_id"],
                    "content": message["content"],
                }
                # Consecutive tool results belong to one user turn
                if converted and converted[-1]["role"] == "user" and isinstance(converted[-1]["content"], list):
                    converted[-1]["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
            elif role == "assistant" and message.get("tool_calls"):
                blocks: list[dict[str, Any]] = []
                if message.get("content"):
                    blocks.append({"type": "text", "text": message["content"]})
                for call in message["tool_calls"]:
                    blocks.append(
                        {"type": "tool_use", "id": call["id"], "name": call["name"], "input": call["arguments"]}
                    )
                converted.append({"role": "assistant", "content": blocks})
            else:
                converted.append({"role": role, "content": message["content"]})

        return "\n\n".join(system_parts), converted

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 8000,
        tools: list[ToolDefinition] | None = None,
    ) -> ChatResponse:
        system, converted = self._convert_messages(messages)
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": converted,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [
                {"name": tool.name, "description": tool.description, "input_schema": tool.to_json_schema()}
                for tool in tools
            ]

        result = await self._post(
            f"{self.base_url}/v1/messages",
            payload,
            headers={"x-api-key": self.api_key, "anthropic-version": self.API_VERSION},
        )

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in result.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                arguments, error = _parse_arguments(block.get("input"))
                tool_calls.append(ToolCall(id=block["id"], name=block["name"], arguments=arguments, error=error))

        stop_reason = result.get("stop_reason") or STOP_END_TURN
        if stop_reason not in (STOP_TOOL_USE, STOP_MAX_TOKENS):
            stop_reason = STOP_END_TURN

        usage = result.get("usage", {})
        return ChatResponse(
            content="".join(text_parts),
            stop_reason=stop_reason,
            tool_calls=tool_calls,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
        )


class OpenAIBackend(LLMBackend):
    """OpenAI-compatible chat completions backend.

    Works with OpenAI itself and self-hosted servers exposing
    ``/chat/completions`` (vLLM, llama.cpp, LM Studio, Ollama's /v1).
    """

    name = "openai"

    _FINISH_REASONS = {
        "stop": STOP_END_TURN,
        "tool_calls": STOP_TOOL_USE,
        "function_call": STOP_TOOL_USE,
        "length": STOP_MAX_TOKENS,
    }

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        api_key: str | None = None,
        timeout: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(base_url, timeout, transport)
        self.api_key = api_key

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _convert_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        for message in messages:
            if message["role"] == "assistant" and message.get("tool_calls"):
                converted.append(
                    {
                        "role": "assistant",
                        "content": message.get("content") or None,
                        "tool_calls": [
                            {
                                "id": call["id"],
                                "type": "function",
                                "function": {"name": call["name"], "arguments": json.dumps(call["arguments"])},
                            }
                            for call in message["tool_calls"]
                        ],
                    }
                )
            elif message["role"] == "tool":
                converted.append(
                    {"role": "tool", "tool_call_id": message["tool_call_id"], "content": message["content"]}
                )
            else:
                converted.append({"role": message["role"], "content": message["content"]})
        return converted

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 8000,
        tools: list[ToolDefinition] | None = None,
    ) -> ChatResponse:
        payload: dict[str, Any] = {
            "model": model,
            "messages": self._convert_messages(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.to_json_schema(),
                    },
                }
                for tool in tools
            ]

        result = await self._post(f"{self.base_url}/chat/completions", payload, headers=self._get_headers())

        # Some compatible servers return HTTP 200 with an error body
        if "error" in result:
            error = result["error"]
            message = error.get("message", "Unknown error") if isinstance(error, dict) else str(error)
            raise ExternalServiceError(f"openai API error: {message}")

        choices = result.get("choices") or []
        if not choices:
            raise ExternalServiceError("openai API returned no choices")
        choice = choices[0]
        message = choice.get("message", {})

        tool_calls: list[ToolCall] = []
        for raw_call in message.get("tool_calls") or []:
            function = raw_call.get("function", {})
            arguments, error = _parse_arguments(function.get("arguments"))
            tool_calls.append(
                ToolCall(id=raw_call.get("id", ""), name=function.get("name", ""), arguments=arguments, error=error)
            )

        stop_reason = self._FINISH_REASONS.get(choice.get("finish_reason") or "stop", STOP_END_TURN)
        if tool_calls and stop_reason == STOP_END_TURN:
            stop_reason = STOP_TOOL_USE

        usage = result.get("usage") or {}
        return ChatResponse(
            content=message.get("content") or "",
            stop_reason=stop_reason,
            tool_calls=tool_calls,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        )


class OllamaBackend(LLMBackend):
    """Ollama backend for local inference through the native chat API."""

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        timeout: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(base_url, timeout, transport)

    @staticmethod
    def _convert_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        for message in messages:
            if message["role"] == "assistant" and message.get("tool_calls"):
                converted.append(
                    {
                        "role": "assistant",
                        "content": message.get("content", ""),
                        "tool_calls": [
                            {"function": {"name": call["name"], "arguments": call["arguments"]}}
                            for call in message["tool_calls"]
                        ],
                    }
                )
            elif message["role"] == "tool":
                converted.append({"role": "tool", "content": message["content"]})
            else:
                converted.append({"role": message["role"], "content": message["content"]})
        return converted

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 8000,
        tools: list[ToolDefinition] | None = None,
    ) -> ChatResponse:
        payload: dict[str, Any] = {
            "model": model,
            "messages": self._convert_messages(messages),
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.to_json_schema(),
                    },
                }
                for tool in tools
            ]

        result = await self._post(f"{self.base_url}/api/chat", payload)
        message = result.get("message", {})

        tool_calls: list[ToolCall] = []
        for index, raw_call in enumerate(message.get("tool_calls") or []):
            function = raw_call.get("function", {})
            arguments, error = _parse_arguments(function.get("arguments"))
            # Ollama does not assign call ids
            tool_calls.append(
                ToolCall(id=f"call_{index}", name=function.get("name", ""), arguments=arguments, error=error)
            )

        if tool_calls:
            stop_reason = STOP_TOOL_USE
        elif result.get("done_reason") == "length":
            stop_reason = STOP_MAX_TOKENS
        else:
            stop_reason = STOP_END_TURN

        return ChatResponse(
            content=message.get("content") or "",
            stop_reason=stop_reason,
            tool_calls=tool_calls,
            input_tokens=result.get("prompt_eval_count", 0),
            output_tokens=result.get("eval_count", 0),
        )


def create_backend(
    config: ReasoningConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LLMBackend:
    """Create the backend described by the reasoning configuration.

    Raises:
        ConfigurationError: If the backend needs an API key that is not set
    """
    api_key = config.api_key.get_secret_value() if config.api_key else None

    if config.backend == "anthropic":
        if not api_key:
            raise ConfigurationError("reasoning.api_key is required for the anthropic backend")
        return AnthropicBackend(
            api_key=api_key,
            base_url=config.base_url or "https://api.anthropic.com",
            timeout=config.timeout,
            transport=transport,
        )
    if config.backend == "openai":
        if config.requires_api_key and not api_key:
            raise ConfigurationError("reasoning.api_key is required for the hosted openai backend")
        return OpenAIBackend(
            base_url=config.base_url or "https://api.openai.com/v1",
            api_key=api_key,
            timeout=config.timeout,
            transport=transport,
        )
    if config.backend == "ollama":
        return OllamaBackend(
            base_url=config.base_url or "http://localhost:11434",
            timeout=config.timeout,
            transport=transport,
        )
    raise ConfigurationError(f"Unknown reasoning backend: {config.backend}")
