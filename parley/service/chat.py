"""Chat request orchestration.

``ConversationOrchestrator.start_chat`` performs every check that can reject
a request (identity, blocked flag, daily cap, thread ownership, per-thread
admission) before it writes anything. It then stores the user message and an
empty assistant placeholder, starts the agent run as a background task and
hands back a ``ChatTurn`` whose ``events()`` relays tokens in order. The run
finalizes itself whether or not anyone is still reading.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Set, Tuple

from parley.logging import get_logger
from parley.service.agent import AgentResult, AgentRuntime
from parley.service.checkpoints import CheckpointSaver, CheckpointTuple
from parley.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
    QuotaExceededError,
    ServiceError,
    ValidationError,
)
from parley.service.quota import QuotaLedger, start_of_utc_day
from parley.service.summary import SummaryGenerator
from parley.service.tools import ToolRegistry, build_user_tools
from parley.storage.errors import StorageError
from parley.storage.memory import MemoryStore
from parley.storage.models import Conversation, Message, PinnedMessage, User
from parley.storage.postgres import PostgresStore

logger = get_logger(__name__)

TITLE_MAX_CHARS = 60
RENAME_MAX_CHARS = 200


class RunSlots(Protocol):
    async def acquire_run_slot(self, thread_id: str, run_id: str, ttl_seconds: int) -> bool: ...

    async def release_run_slot(self, thread_id: str, run_id: str) -> bool: ...


class LocalRunSlots:
    """In-process run admission used when Redis is not configured.

    Slots expire after their TTL like the Redis keys do, so a run that never
    released its slot cannot wedge the thread.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._holders: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live_holder(self, thread_id: str) -> Optional[str]:
        entry = self._holders.get(thread_id)
        if entry is None:
            return None
        run_id, expires_at = entry
        if self._clock() >= expires_at:
            del self._holders[thread_id]
            return None
        return run_id

    async def acquire_run_slot(self, thread_id: str, run_id: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live_holder(thread_id) is not None:
                return False
            self._holders[thread_id] = (run_id, self._clock() + max(ttl_seconds, 1))
            return True

    async def release_run_slot(self, thread_id: str, run_id: str) -> bool:
        with self._lock:
            if self._live_holder(thread_id) != run_id:
                return False
            del self._holders[thread_id]
            return True

    async def get_run_holder(self, thread_id: str) -> Optional[str]:
        with self._lock:
            return self._live_holder(thread_id)


@dataclass
class ChatTurn:
    conversation: Conversation
    user_message: Message
    assistant_message: Message
    run_id: str
    limit: Optional[int]
    remaining: Optional[int]
    cancel_event: asyncio.Event
    _queue: "asyncio.Queue[Dict[str, Any]]" = field(repr=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Token events in emission order, then one ``error`` and/or ``done``.

        Closing the iterator early signals the run to stop; the run still
        finalizes with whatever text it produced.
        """
        finished = False
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    finished = True
                    return
                yield event
        finally:
            if not finished:
                self.cancel_event.set()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)


class ConversationOrchestrator:
    def __init__(
        self,
        store: PostgresStore | MemoryStore,
        agent: AgentRuntime,
        checkpoints: CheckpointSaver,
        quota: QuotaLedger,
        summaries: SummaryGenerator,
        *,
        run_slots: RunSlots,
        resolve_model_key: Callable[[User], Optional[str]],
        history_limit: int = 12,
        run_slot_ttl_seconds: int = 600,
        run_timeout_seconds: Optional[float] = None,
        tools_factory: Callable[[str], ToolRegistry] | None = None,
    ) -> None:
        self.store = store
        self.agent = agent
        self.checkpoints = checkpoints
        self.quota = quota
        self.summaries = summaries
        self.run_slots = run_slots
        self.resolve_model_key = resolve_model_key
        self.history_limit = history_limit
        self.run_slot_ttl_seconds = run_slot_ttl_seconds
        self.run_timeout_seconds = run_timeout_seconds
        self.tools_factory = tools_factory or (lambda user_id: build_user_tools(store, user_id))
        self._active: Dict[str, ChatTurn] = {}
        self._active_lock = threading.Lock()
        self._tasks: Set[asyncio.Task] = set()

    # identity
    def require_user(self, user_id: Optional[str]) -> User:
        if not user_id:
            raise AuthenticationError("Unauthorized")
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("Unauthorized")
        if user.is_blocked:
            raise ForbiddenError("account is blocked")
        return user

    def _owned_conversation(self, user_id: str, conversation_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id, user_id=user_id)
        if not conversation:
            raise NotFoundError("conversation not found", detail={"conversation_id": conversation_id})
        return conversation

    # chat
    async def start_chat(
        self, user_id: Optional[str], prompt: str, conversation_id: Optional[str] = None
    ) -> ChatTurn:
        user = self.require_user(user_id)
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValidationError("Message is required")

        personal_key = self.resolve_model_key(user)
        has_personal_key = personal_key is not None
        day = start_of_utc_day()
        limit = self.quota.effective_limit(user, has_personal_key=has_personal_key)
        used = self.quota.get_usage(user.id, day).responses
        if self.quota.is_over_limit(user.id, limit, day, used=used):
            logger.info("quota_exceeded", user_id=user.id, used=used, limit=limit)
            raise QuotaExceededError(
                "Daily response limit reached", detail={"limit": limit, "used": used}
            )

        existing = self._owned_conversation(user.id, conversation_id) if conversation_id else None
        run_id = str(uuid.uuid4())
        admitted: Optional[str] = None
        try:
            if existing is not None:
                await self._admit(existing.id, run_id)
                admitted = existing.id
            conversation = existing or self.store.create_conversation(
                user.id, title=prompt[:TITLE_MAX_CHARS]
            )
            if admitted is None:
                await self._admit(conversation.id, run_id)
                admitted = conversation.id
            history = self.store.list_messages(conversation.id, limit=self.history_limit)
            user_message = self.store.append_message(conversation.id, "user", prompt)
            assistant_message = self.store.append_message(conversation.id, "assistant", "")
        except StorageError as exc:
            await self._release(admitted, run_id)
            logger.error("chat_persist_failed", user_id=user.id, error=str(exc))
            raise PersistenceError("failed to store chat messages") from exc
        except ServiceError:
            await self._release(admitted, run_id)
            raise

        turn = ChatTurn(
            conversation=conversation,
            user_message=user_message,
            assistant_message=assistant_message,
            run_id=run_id,
            limit=limit,
            remaining=max(limit - used - 1, 0) if limit is not None else None,
            cancel_event=asyncio.Event(),
            _queue=asyncio.Queue(),
        )
        with self._active_lock:
            self._active[conversation.id] = turn
        task = asyncio.get_running_loop().create_task(
            self._drive(turn, user, prompt, history, personal_key)
        )
        turn._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            "chat_started",
            user_id=user.id,
            conversation_id=conversation.id,
            run_id=run_id,
            new_conversation=existing is None,
        )
        return turn

    async def _release(self, thread_id: Optional[str], run_id: str) -> None:
        if thread_id is None:
            return
        try:
            await self.run_slots.release_run_slot(thread_id, run_id)
        except Exception as exc:
            logger.warning("run_slot_release_failed", conversation_id=thread_id, error=str(exc))

    async def _admit(self, thread_id: str, run_id: str) -> None:
        admitted = await self.run_slots.acquire_run_slot(
            thread_id, run_id, self.run_slot_ttl_seconds
        )
        if not admitted:
            logger.info("chat_run_rejected", conversation_id=thread_id)
            raise ConflictError(
                "a response is already being generated for this conversation",
                detail={"conversation_id": thread_id},
            )

    async def _drive(
        self,
        turn: ChatTurn,
        user: User,
        prompt: str,
        history: List[Message],
        personal_key: Optional[str],
    ) -> None:
        conversation_id = turn.conversation.id
        queue = turn._queue

        async def relay(token: str) -> None:
            if not turn.cancel_event.is_set():
                await queue.put({"event": "token", "data": token})

        try:
            try:
                result: AgentResult = await self.agent.run(
                    prompt,
                    history,
                    thread_id=conversation_id,
                    tools=self.tools_factory(user.id),
                    on_token=relay,
                    api_key=personal_key,
                    cancel_event=turn.cancel_event,
                    timeout_seconds=self.run_timeout_seconds,
                )
            except ServiceError as exc:
                # the run failed before emitting any text; the placeholder stays empty
                logger.warning(
                    "chat_run_failed",
                    conversation_id=conversation_id,
                    error_code=exc.error_code,
                    error=exc.message,
                )
                await queue.put(_error_event(exc))
                return

            usage_total = await self._finalize(turn, user, result, personal_key)
            if result.error is not None:
                await queue.put(_error_event(result.error))
            await queue.put(
                {
                    "event": "done",
                    "data": {
                        "content": result.text,
                        "partial": result.partial,
                        "cancelled": result.cancelled,
                        "usage_total": usage_total,
                    },
                }
            )
        except ServiceError as exc:
            await queue.put(_error_event(exc))
        finally:
            with self._active_lock:
                if self._active.get(conversation_id) is turn:
                    del self._active[conversation_id]
            await self._release(conversation_id, turn.run_id)
            await queue.put(None)

    async def _finalize(
        self, turn: ChatTurn, user: User, result: AgentResult, personal_key: Optional[str]
    ) -> Optional[int]:
        """Write the assistant text; charge and summarize only complete runs."""
        succeeded = result.error is None and not result.cancelled
        try:
            if succeeded or result.text:
                await asyncio.to_thread(
                    self.store.update_message_content, turn.assistant_message.id, result.text
                )
                turn.assistant_message.content = result.text
            if not succeeded:
                return None
            source = self.quota.source_for(user, has_personal_key=personal_key is not None)
            total = await asyncio.to_thread(
                self.quota.increment_and_get_total, user.id, source
            )
        except StorageError as exc:
            logger.error(
                "chat_finalize_failed",
                conversation_id=turn.conversation.id,
                error=str(exc),
            )
            raise PersistenceError("failed to store assistant response") from exc
        self.summaries.schedule(turn.conversation.id, api_key=personal_key)
        return total

    def cancel(self, user_id: Optional[str], conversation_id: str) -> bool:
        """Signal the in-flight run on an owned thread; False if none is running."""
        user = self.require_user(user_id)
        self._owned_conversation(user.id, conversation_id)
        with self._active_lock:
            turn = self._active.get(conversation_id)
        if turn is None:
            return False
        turn.cancel_event.set()
        logger.info("chat_cancel_requested", conversation_id=conversation_id, run_id=turn.run_id)
        return True

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.summaries.wait_idle()

    # conversations
    def list_conversations(self, user_id: Optional[str], limit: int = 50) -> List[Conversation]:
        user = self.require_user(user_id)
        return self.store.list_conversations(user.id, limit=limit)

    def get_conversation(self, user_id: Optional[str], conversation_id: str) -> Conversation:
        user = self.require_user(user_id)
        return self._owned_conversation(user.id, conversation_id)

    def list_messages(self, user_id: Optional[str], conversation_id: str) -> List[Message]:
        user = self.require_user(user_id)
        self._owned_conversation(user.id, conversation_id)
        return self.store.list_messages(conversation_id)

    def rename_conversation(
        self, user_id: Optional[str], conversation_id: str, title: str
    ) -> Conversation:
        user = self.require_user(user_id)
        title = (title or "").strip()
        if not title or len(title) > RENAME_MAX_CHARS:
            raise ValidationError(
                f"title must be 1-{RENAME_MAX_CHARS} characters", detail={"field": "title"}
            )
        self._owned_conversation(user.id, conversation_id)
        updated = self.store.rename_conversation(conversation_id, title)
        if not updated:
            raise NotFoundError("conversation not found", detail={"conversation_id": conversation_id})
        return updated

    async def delete_conversation(self, user_id: Optional[str], conversation_id: str) -> None:
        """Remove the conversation, its messages, their pins and the thread's checkpoints.

        An in-flight run on the thread is cancelled and awaited first so none of
        its checkpoint writes can land after the delete.
        """
        user = self.require_user(user_id)
        self._owned_conversation(user.id, conversation_id)
        with self._active_lock:
            turn = self._active.get(conversation_id)
        if turn is not None:
            turn.cancel_event.set()
            await turn.wait()
        self.store.delete_conversation(conversation_id)
        self.checkpoints.delete_thread(conversation_id)
        logger.info("conversation_deleted", user_id=user.id, conversation_id=conversation_id)

    def list_checkpoints(
        self, user_id: Optional[str], conversation_id: str, limit: Optional[int] = None
    ) -> List[CheckpointTuple]:
        user = self.require_user(user_id)
        self._owned_conversation(user.id, conversation_id)
        return self.checkpoints.list(conversation_id, limit=limit)

    # messages
    def _owned_message(self, user_id: str, message_id: str) -> Message:
        message = self.store.get_message(message_id)
        if not message or not self.store.get_conversation(message.conversation_id, user_id=user_id):
            raise NotFoundError("message not found", detail={"message_id": message_id})
        return message

    def delete_message(self, user_id: Optional[str], message_id: str) -> None:
        user = self.require_user(user_id)
        self._owned_message(user.id, message_id)
        self.store.delete_message(message_id)
        logger.info("message_deleted", user_id=user.id, message_id=message_id)

    def set_pin(self, user_id: Optional[str], message_id: str, pinned: bool) -> bool:
        user = self.require_user(user_id)
        self._owned_message(user.id, message_id)
        return self.store.set_pin(user.id, message_id, pinned)

    def list_pins(self, user_id: Optional[str]) -> List[PinnedMessage]:
        user = self.require_user(user_id)
        return self.store.list_pins(user.id)


def _error_event(exc: ServiceError) -> Dict[str, Any]:
    return {
        "event": "error",
        "data": {"code": exc.error_code, "message": exc.message, "details": exc.detail},
        "exception": exc,
    }
