from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional, Sequence

from parley.logging import get_logger, sanitize_error_message
from parley.storage.memory import MemoryStore
from parley.storage.postgres import PostgresStore

logger = get_logger(__name__)

SNIPPET_MESSAGE_COUNT = 6
SNIPPET_CONTENT_CHARS = 200
LIST_CONVERSATION_COUNT = 10


def iso_timestamp(moment: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class Tool:
    """One model-callable capability, already bound to its caller."""

    name: str
    description: str
    func: Callable[[str], str]

    def invoke(self, input_text: str) -> str:
        try:
            return self.func(input_text or "")
        except Exception as exc:
            logger.warning("tool_failed", tool=self.name, error=str(exc))
            return f"Tool {self.name} failed: {sanitize_error_message(str(exc))}"

    def spec(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {"input": {"type": "string"}},
                    "required": [],
                },
            },
        }


class ToolRegistry:
    """Ordered list of tools looked up by name."""

    def __init__(self, tools: Sequence[Tool] = ()) -> None:
        self._tools: List[Tool] = list(tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return [tool.name for tool in self._tools]

    def get(self, name: str) -> Optional[Tool]:
        for tool in self._tools:
            if tool.name == name:
                return tool
        return None

    def specs(self) -> List[dict]:
        return [tool.spec() for tool in self._tools]

    def invoke(self, name: str, input_text: str) -> str:
        tool = self.get(name)
        if tool is None:
            logger.warning("tool_unknown", tool=name)
            return f"Unknown tool: {name}"
        return tool.invoke(input_text)


def build_user_tools(
    store: PostgresStore | MemoryStore,
    user_id: str,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> ToolRegistry:
    """Build the tool set scoped to ``user_id``.

    Every lookup passes ``user_id`` to the store, so a tool can only ever see
    the caller's own conversations and profile.
    """
    now = clock or (lambda: datetime.now(timezone.utc))

    def get_time(_: str) -> str:
        return iso_timestamp(now())

    def list_conversations(_: str) -> str:
        conversations = store.list_conversations(user_id, limit=LIST_CONVERSATION_COUNT)
        if not conversations:
            return "No conversations yet."
        return "\n".join(
            f"{conv.id} | {conv.title or 'Untitled'} | {iso_timestamp(conv.updated_at)}"
            for conv in conversations
        )

    def get_conversation_snippet(title: str) -> str:
        query = title.strip()
        if not query:
            return "No title provided."
        conversation = store.find_conversation_by_title(user_id, query)
        if not conversation:
            return "No matching conversation found."
        messages = store.list_messages(conversation.id, limit=SNIPPET_MESSAGE_COUNT)
        lines = [
            f"Conversation: {conversation.title or 'Untitled'} ({iso_timestamp(conversation.updated_at)})"
        ]
        lines.extend(f"{msg.role}: {msg.content[:SNIPPET_CONTENT_CHARS]}" for msg in messages)
        return "\n".join(lines)

    def get_conversation_summary(title: str) -> str:
        query = title.strip()
        if not query:
            return "No title provided."
        conversation = store.find_conversation_by_title(user_id, query)
        if not conversation:
            return "No matching conversation found."
        return conversation.summary or "No summary saved yet."

    def get_user_profile(_: str) -> str:
        user = store.get_user(user_id)
        if not user or not user.profile_summary:
            return "No profile stored yet."
        return user.profile_summary

    def set_user_profile(profile: str) -> str:
        content = profile.strip()
        if not content:
            return "No profile content provided."
        store.set_user_profile(user_id, content)
        return "Profile updated."

    return ToolRegistry(
        [
            Tool("get_time", "Get the current date and time in ISO format.", get_time),
            Tool(
                "list_conversations",
                "List the user's 10 most recent conversations with ids and titles.",
                list_conversations,
            ),
            Tool(
                "get_conversation_snippet",
                "Fetch the latest messages of the user's conversation whose title contains the input.",
                get_conversation_snippet,
            ),
            Tool(
                "get_conversation_summary",
                "Fetch the saved summary of the user's conversation whose title contains the input.",
                get_conversation_summary,
            ),
            Tool("get_user_profile", "Read the stored profile notes about the user.", get_user_profile),
            Tool(
                "set_user_profile",
                "Replace the stored profile notes about the user with the input text.",
                set_user_profile,
            ),
        ]
    )
