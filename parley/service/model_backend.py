from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
from openai import APIError, AsyncOpenAI

from parley.logging import get_logger
from parley.service.errors import UpstreamModelError

logger = get_logger(__name__)

# Gemini's OpenAI-compatible surface; used when no base URL is configured
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


@dataclass(frozen=True)
class ModelConfig:
    """Generation parameters shared by the agent and the summarizer."""

    model: str = "gemini-2.5-flash"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.4
    max_output_tokens: int = 2048
    timeout_seconds: float = 120.0


class ModelBackend(Protocol):
    """Streaming chat completion with function tools.

    ``stream`` yields event dicts:

    - ``{"event": "token", "data": "<text delta>"}``
    - ``{"event": "tool_call", "data": {"id": ..., "name": ..., "input": ...}}``

    Tool calls are emitted once the model has finished the turn, after all of
    its text deltas.
    """

    def stream(
        self, messages: List[dict], tools: Optional[List[dict]] = None
    ) -> AsyncIterator[Dict[str, Any]]: ...

    async def complete(self, prompt: str) -> str: ...


def _tool_input(raw_arguments: str) -> str:
    """Extract the single ``input`` argument from a tool call's JSON arguments."""
    if not raw_arguments:
        return ""
    try:
        parsed = json.loads(raw_arguments)
    except json.JSONDecodeError:
        return raw_arguments
    if isinstance(parsed, dict):
        value = parsed.get("input", "")
        return value if isinstance(value, str) else json.dumps(value)
    return str(parsed)


class OpenAIChatBackend:
    """Backend for any OpenAI-compatible chat completions endpoint."""

    def __init__(self, config: ModelConfig, *, client: Optional[AsyncOpenAI] = None) -> None:
        self.config = config
        if client is not None:
            self.client = client
        elif config.api_key:
            self.client = AsyncOpenAI(
                api_key=config.api_key,
                base_url=config.base_url or DEFAULT_BASE_URL,
                timeout=httpx.Timeout(config.timeout_seconds, connect=10.0),
                max_retries=1,
            )
        else:
            self.client = None

    def _require_client(self) -> AsyncOpenAI:
        if self.client is None:
            raise UpstreamModelError("model API key is not configured")
        return self.client

    async def stream(
        self, messages: List[dict], tools: Optional[List[dict]] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        client = self._require_client()
        request: Dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_output_tokens,
            "stream": True,
        }
        if tools:
            request["tools"] = tools
        # tool call fragments arrive keyed by index and are stitched together
        pending: Dict[int, Dict[str, str]] = {}
        try:
            response = await client.chat.completions.create(**request)
            async for chunk in response:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = choices[0].delta
                if delta is None:
                    continue
                if delta.content:
                    yield {"event": "token", "data": delta.content}
                for call in delta.tool_calls or []:
                    slot = pending.setdefault(call.index, {"id": "", "name": "", "arguments": ""})
                    if call.id:
                        slot["id"] = call.id
                    if call.function is not None:
                        if call.function.name:
                            slot["name"] += call.function.name
                        if call.function.arguments:
                            slot["arguments"] += call.function.arguments
        except (APIError, httpx.HTTPError) as exc:
            logger.warning("model_stream_failed", model=self.config.model, error=str(exc))
            raise UpstreamModelError("model request failed", detail={"model": self.config.model}) from exc
        for index in sorted(pending):
            slot = pending[index]
            if not slot["name"]:
                continue
            yield {
                "event": "tool_call",
                "data": {
                    "id": slot["id"] or f"call_{index}",
                    "name": slot["name"],
                    "input": _tool_input(slot["arguments"]),
                },
            }

    async def complete(self, prompt: str) -> str:
        client = self._require_client()
        try:
            completion = await client.chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.config.temperature,
                max_tokens=self.config.max_output_tokens,
            )
        except (APIError, httpx.HTTPError) as exc:
            logger.warning("model_completion_failed", model=self.config.model, error=str(exc))
            raise UpstreamModelError("model request failed", detail={"model": self.config.model}) from exc
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("model_completion_empty", model=self.config.model)
            return ""
        return first_choice.message.content or ""


def build_backend(config: ModelConfig) -> ModelBackend:
    return OpenAIChatBackend(config)
