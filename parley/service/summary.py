from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Callable, Optional, Set

from parley.logging import get_logger
from parley.service.model_backend import ModelBackend, ModelConfig, build_backend
from parley.storage.memory import MemoryStore
from parley.storage.postgres import PostgresStore

logger = get_logger(__name__)

SUMMARY_PROMPT = (
    "Summarize this conversation in under 60 words. Capture goals, decisions, and context.\n\n{text}"
)


class SummaryGenerator:
    """Best-effort rolling summary of a conversation.

    Runs detached from the chat request; every failure is logged and the
    stored summary is left as it was.
    """

    def __init__(
        self,
        store: PostgresStore | MemoryStore,
        config: ModelConfig,
        *,
        backend_factory: Callable[[ModelConfig], ModelBackend] = build_backend,
        message_limit: int = 20,
        max_chars: int = 4000,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.config = config
        self.backend_factory = backend_factory
        self.message_limit = message_limit
        self.max_chars = max_chars
        self.timeout_seconds = timeout_seconds
        self._tasks: Set[asyncio.Task] = set()

    def render_transcript(self, conversation_id: str) -> str:
        messages = self.store.list_messages(conversation_id, limit=self.message_limit)
        text = "\n".join(f"{msg.role}: {msg.content}" for msg in messages)
        return text[-self.max_chars :]

    async def regenerate(self, conversation_id: str, *, api_key: Optional[str] = None) -> bool:
        """Refresh the stored summary; returns True only when one was written."""
        try:
            text = await asyncio.to_thread(self.render_transcript, conversation_id)
            if not text.strip():
                return False
            config = self.config
            if api_key:
                config = replace(config, api_key=api_key)
            backend = self.backend_factory(config)
            summary = await asyncio.wait_for(
                backend.complete(SUMMARY_PROMPT.format(text=text)),
                timeout=self.timeout_seconds,
            )
            summary = (summary or "").strip()
            if not summary:
                logger.info("summary_empty", conversation_id=conversation_id)
                return False
            return await asyncio.to_thread(
                self.store.set_conversation_summary, conversation_id, summary
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "summary_failed",
                conversation_id=conversation_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def schedule(self, conversation_id: str, *, api_key: Optional[str] = None) -> asyncio.Task:
        """Start ``regenerate`` as an independent task with no join point."""
        task = asyncio.get_running_loop().create_task(
            self.regenerate(conversation_id, api_key=api_key)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
