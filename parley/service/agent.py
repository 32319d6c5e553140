"""Tool-using agent loop with per-step checkpoints.

A run walks Start -> Generating -> (ToolCall -> Generating)* -> Done. Each
completed model turn is persisted as one checkpoint on the thread; tool
results are attached to that checkpoint as pending writes and folded into
the next turn's snapshot. Text deltas go to the caller's token sink as they
arrive. A failure before any delta raises; a failure, timeout or cancel
after some output returns what was emitted.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from parley.logging import get_logger
from parley.service.checkpoints import CHECKPOINT_SCHEMA_VERSION, CheckpointSaver, thread_config
from parley.service.errors import PersistenceError, ServiceError, UpstreamModelError
from parley.service.model_backend import ModelBackend, ModelConfig, build_backend
from parley.service.tools import ToolRegistry
from parley.storage.errors import StorageError
from parley.storage.models import Message

logger = get_logger(__name__)

SYSTEM_PROMPT = "You are a really advanced AGI. Like IronMan's Jarvis..."

TokenSink = Callable[[str], Awaitable[None]]
BackendFactory = Callable[[ModelConfig], ModelBackend]


@dataclass
class AgentResult:
    text: str
    partial: bool = False
    cancelled: bool = False
    error: Optional[ServiceError] = None
    steps: int = 0


@dataclass
class _RunState:
    thread_id: str
    messages: List[dict]
    chunks: List[str] = field(default_factory=list)
    steps: int = 0
    tool_rounds: int = 0
    cancelled: bool = False
    config: Optional[dict] = None

    @property
    def text(self) -> str:
        return "".join(self.chunks)


def build_model_input(
    prompt: str, history: Sequence[Message], system_prompt: str = SYSTEM_PROMPT
) -> List[dict]:
    """System instruction, prior user/assistant turns oldest-first, then the prompt."""
    messages: List[dict] = [{"role": "system", "content": system_prompt}]
    for msg in history:
        if msg.role in {"user", "assistant"}:
            messages.append({"role": msg.role, "content": msg.content})
    messages.append({"role": "user", "content": prompt})
    return messages


class AgentRuntime:
    DEFAULT_TOOL_WORKERS = 4

    def __init__(
        self,
        checkpoints: CheckpointSaver,
        config: ModelConfig,
        *,
        backend_factory: BackendFactory = build_backend,
        max_steps: int = 8,
        system_prompt: str = SYSTEM_PROMPT,
        tool_workers: int = DEFAULT_TOOL_WORKERS,
    ) -> None:
        self.checkpoints = checkpoints
        self.config = config
        self.backend_factory = backend_factory
        self.max_steps = max_steps
        self.system_prompt = system_prompt
        self._tool_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, tool_workers), thread_name_prefix="parley-tool"
        )
        self._executor_shutdown = False

    def shutdown(self, wait: bool = True) -> None:
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._tool_executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("agent_executor_shutdown", wait=wait)

    async def run(
        self,
        prompt: str,
        history: Sequence[Message],
        *,
        thread_id: str,
        tools: ToolRegistry,
        on_token: TokenSink,
        api_key: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout_seconds: Optional[float] = None,
    ) -> AgentResult:
        """Execute one run on ``thread_id``.

        ``api_key`` overrides the configured credential for this run only.
        Raises ``UpstreamModelError`` when the model fails before any text was
        emitted and ``PersistenceError`` when a checkpoint write fails before any
        text was emitted. Later failures come back as a partial result.
        """
        config = replace(self.config, api_key=api_key) if api_key else self.config
        state = _RunState(
            thread_id=thread_id,
            messages=build_model_input(prompt, history, self.system_prompt),
        )
        deadline = timeout_seconds if timeout_seconds is not None else config.timeout_seconds
        try:
            await asyncio.wait_for(
                self._execute(state, config, tools, on_token, cancel_event, prompt),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "agent_run_timeout",
                thread_id=thread_id,
                timeout_seconds=deadline,
                emitted_chars=len(state.text),
            )
            return self._failed(state, UpstreamModelError("model run timed out"))
        except StorageError as exc:
            logger.error("agent_checkpoint_failed", thread_id=thread_id, error=str(exc))
            error = PersistenceError("failed to persist agent state")
            if not state.chunks:
                raise error from exc
            return self._failed(state, error)
        except ServiceError as exc:
            return self._failed(state, exc)
        except Exception as exc:
            logger.error(
                "agent_run_failed",
                thread_id=thread_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._failed(state, UpstreamModelError("model run failed"))

        if state.cancelled:
            logger.info("agent_run_cancelled", thread_id=thread_id, steps=state.steps)
            return AgentResult(
                text=state.text, partial=True, cancelled=True, steps=state.steps
            )
        logger.info(
            "agent_run_complete",
            thread_id=thread_id,
            steps=state.steps,
            tool_rounds=state.tool_rounds,
            chars=len(state.text),
        )
        return AgentResult(text=state.text, steps=state.steps)

    def _failed(self, state: _RunState, error: ServiceError) -> AgentResult:
        if not state.chunks:
            raise error
        logger.warning(
            "agent_run_partial",
            thread_id=state.thread_id,
            error=error.message,
            emitted_chars=len(state.text),
        )
        return AgentResult(text=state.text, partial=True, error=error, steps=state.steps)

    async def _execute(
        self,
        state: _RunState,
        config: ModelConfig,
        tools: ToolRegistry,
        on_token: TokenSink,
        cancel_event: Optional[asyncio.Event],
        prompt: str,
    ) -> None:
        backend = self.backend_factory(config)
        previous = await asyncio.to_thread(self.checkpoints.get_latest, state.thread_id)
        if _stopped(state, cancel_event):
            return
        state.config = await asyncio.to_thread(
            self.checkpoints.put,
            thread_config(state.thread_id),
            self._snapshot(state, step=-1),
            {"source": "input", "step": -1, "writes": {"input": prompt}},
            parent_config=previous.config if previous else None,
        )
        tool_specs = tools.specs() if len(tools) else None

        while True:
            turn_text: List[str] = []
            final_message: Optional[str] = None
            calls: List[Dict[str, Any]] = []
            async for event in backend.stream(state.messages, tool_specs):
                if _stopped(state, cancel_event):
                    return
                kind = event.get("event")
                if kind == "token":
                    delta = event.get("data") or ""
                    if delta:
                        turn_text.append(delta)
                        state.chunks.append(delta)
                        await on_token(delta)
                elif kind == "message":
                    final_message = event.get("data") or ""
                elif kind == "tool_call":
                    calls.append(event["data"])
            if _stopped(state, cancel_event):
                return

            content = "".join(turn_text)
            if not turn_text and final_message:
                # backend answered without deltas; relay the whole text once
                content = final_message
                state.chunks.append(final_message)
                await on_token(final_message)

            state.steps += 1
            assistant: Dict[str, Any] = {"role": "assistant", "content": content}
            if calls:
                assistant["tool_calls"] = [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {"name": call["name"], "arguments": _input_arguments(call)},
                    }
                    for call in calls
                ]
            state.messages.append(assistant)
            if _stopped(state, cancel_event):
                return
            state.config = await asyncio.to_thread(
                self.checkpoints.put,
                thread_config(state.thread_id),
                self._snapshot(state, step=state.steps),
                {
                    "source": "loop",
                    "step": state.steps,
                    "writes": {"agent": {"content": content, "tool_calls": [c["name"] for c in calls]}},
                },
                parent_config=state.config,
            )
            if not calls:
                return

            state.tool_rounds += 1
            if state.tool_rounds > self.max_steps:
                raise UpstreamModelError(
                    "agent exceeded its step budget", detail={"max_steps": self.max_steps}
                )
            await self._run_tools(state, tools, calls, cancel_event)
            if state.cancelled:
                return

    async def _run_tools(
        self,
        state: _RunState,
        tools: ToolRegistry,
        calls: List[Dict[str, Any]],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        loop = asyncio.get_running_loop()
        writes = []
        for call in calls:
            output = await loop.run_in_executor(
                self._tool_executor, tools.invoke, call["name"], call.get("input") or ""
            )
            logger.info(
                "agent_tool_invoked",
                thread_id=state.thread_id,
                tool=call["name"],
                output_chars=len(output),
            )
            writes.append(
                (
                    str(uuid.uuid4()),
                    "tools",
                    {"tool_call_id": call["id"], "name": call["name"], "output": output},
                )
            )
            state.messages.append({"role": "tool", "tool_call_id": call["id"], "content": output})
        # a cancelled run may belong to a thread that is being deleted
        if _stopped(state, cancel_event):
            return
        await asyncio.to_thread(self.checkpoints.put_writes, state.config, writes)

    @staticmethod
    def _snapshot(state: _RunState, *, step: int) -> dict:
        return {"v": CHECKPOINT_SCHEMA_VERSION, "step": step, "messages": list(state.messages)}


def _input_arguments(call: Dict[str, Any]) -> str:
    return json.dumps({"input": call.get("input") or ""})


def _stopped(state: _RunState, cancel_event: Optional[asyncio.Event]) -> bool:
    if cancel_event is not None and cancel_event.is_set():
        state.cancelled = True
    return state.cancelled
