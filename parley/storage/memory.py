from __future__ import annotations

import json
import threading
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

from parley.logging import get_logger
from parley.storage.errors import ConstraintViolation, StorageUnavailable
from parley.storage.models import (
    Checkpoint,
    Conversation,
    DailyUsage,
    Message,
    PinnedMessage,
    User,
)

USAGE_SOURCES = ("shared", "personal")


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    All mutation happens under one re-entrant lock, and every write is
    mirrored to ``<fs_root>/state/memory_store.json`` so a restarted process
    sees the same conversations, usage counters and checkpoints.
    """

    def __init__(self, fs_root: str = "/tmp/parley") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.pins: Dict[tuple[str, str], PinnedMessage] = {}
        self.daily_usage: Dict[tuple[str, date], DailyUsage] = {}
        self.checkpoints: Dict[str, List[Checkpoint]] = {}
        self._checkpoint_seq = 0
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        self._state_path()

    # users
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        daily_limit: Optional[int] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                handle=handle,
                role=role,
                daily_limit=daily_limit,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def update_user_quota(
        self,
        user_id: str,
        *,
        daily_limit: Optional[int] = None,
        is_blocked: Optional[bool] = None,
        clear_limit: bool = False,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if clear_limit:
                user.daily_limit = None
            elif daily_limit is not None:
                user.daily_limit = daily_limit
            if is_blocked is not None:
                user.is_blocked = is_blocked
            self._persist_state()
            return user

    def set_user_model_key(self, user_id: str, cipher: Optional[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.model_key_cipher = cipher
            self._persist_state()
            return user

    def set_user_profile(self, user_id: str, profile_summary: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.profile_summary = profile_summary
            self._persist_state()
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # conversations
    def create_conversation(self, user_id: str, title: Optional[str] = None) -> Conversation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "conversation owner missing", {"user_id": user_id}
                )
            now = datetime.utcnow()
            conv = Conversation(
                id=str(uuid.uuid4()),
                user_id=user_id,
                created_at=now,
                updated_at=now,
                title=title,
            )
            self.conversations[conv.id] = conv
            self.messages[conv.id] = []
            self._persist_state()
            return conv

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                return None
            if user_id and conv.user_id != user_id:
                return None
            return conv

    def list_conversations(self, user_id: str, limit: int = 20) -> List[Conversation]:
        with self._data_lock:
            convs = [c for c in self.conversations.values() if c.user_id == user_id]
        convs.sort(key=lambda c: c.updated_at, reverse=True)
        return convs[:limit]

    def find_conversation_by_title(self, user_id: str, query: str) -> Optional[Conversation]:
        needle = query.lower()
        with self._data_lock:
            matches = [
                c
                for c in self.conversations.values()
                if c.user_id == user_id and c.title and needle in c.title.lower()
            ]
        if not matches:
            return None
        return max(matches, key=lambda c: c.updated_at)

    def rename_conversation(self, conversation_id: str, title: str) -> Optional[Conversation]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                return None
            conv.title = title
            conv.updated_at = datetime.utcnow()
            self._persist_state()
            return conv

    def set_conversation_summary(self, conversation_id: str, summary: str) -> bool:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                return False
            conv.summary = summary
            self._persist_state()
            return True

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._data_lock:
            conv = self.conversations.pop(conversation_id, None)
            if not conv:
                return False
            removed = {m.id for m in self.messages.pop(conversation_id, [])}
            for key in [k for k in self.pins if k[1] in removed]:
                self.pins.pop(key, None)
            self._persist_state()
            return True

    # messages
    def append_message(self, conversation_id: str, role: str, content: str) -> Message:
        with self._data_lock:
            if conversation_id not in self.conversations:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            thread = self.messages.setdefault(conversation_id, [])
            msg = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=role,
                content=content,
                seq=(thread[-1].seq + 1) if thread else 0,
                created_at=datetime.utcnow(),
            )
            thread.append(msg)
            self.conversations[conversation_id].updated_at = msg.created_at
            self._persist_state()
            return msg

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._data_lock:
            for msgs in self.messages.values():
                for msg in msgs:
                    if msg.id == message_id:
                        return msg
        return None

    def update_message_content(self, message_id: str, content: str) -> Optional[Message]:
        with self._data_lock:
            msg = self.get_message(message_id)
            if not msg:
                return None
            msg.content = content
            conv = self.conversations.get(msg.conversation_id)
            if conv:
                conv.updated_at = datetime.utcnow()
            self._persist_state()
            return msg

    def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        """Return messages oldest-first; ``limit`` keeps the most recent N."""
        with self._data_lock:
            msgs = list(self.messages.get(conversation_id, []))
        if limit is None:
            return msgs
        return msgs[-limit:] if limit > 0 else []

    def delete_message(self, message_id: str) -> bool:
        with self._data_lock:
            for conversation_id, msgs in self.messages.items():
                for idx, msg in enumerate(msgs):
                    if msg.id == message_id:
                        del msgs[idx]
                        for key in [k for k in self.pins if k[1] == message_id]:
                            self.pins.pop(key, None)
                        self._persist_state()
                        return True
        return False

    # pins
    def set_pin(self, user_id: str, message_id: str, pinned: bool) -> bool:
        with self._data_lock:
            key = (user_id, message_id)
            if pinned:
                self.pins.setdefault(key, PinnedMessage(user_id=user_id, message_id=message_id))
            else:
                self.pins.pop(key, None)
            self._persist_state()
            return key in self.pins

    def list_pins(self, user_id: str) -> List[PinnedMessage]:
        with self._data_lock:
            pins = [p for p in self.pins.values() if p.user_id == user_id]
        pins.sort(key=lambda p: p.created_at, reverse=True)
        return pins

    # daily usage
    def get_daily_usage(self, user_id: str, day: date) -> Optional[DailyUsage]:
        with self._data_lock:
            usage = self.daily_usage.get((user_id, day))
            if not usage:
                return None
            return DailyUsage(**vars(usage))

    def increment_daily_usage(self, user_id: str, day: date, source: str) -> DailyUsage:
        if source not in USAGE_SOURCES:
            raise ValueError(f"unknown usage source: {source}")
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("usage owner missing", {"user_id": user_id})
            usage = self.daily_usage.setdefault(
                (user_id, day), DailyUsage(user_id=user_id, day=day)
            )
            usage.responses += 1
            if source == "personal":
                usage.personal_responses += 1
            else:
                usage.shared_responses += 1
            self._persist_state()
            return DailyUsage(**vars(usage))

    # checkpoints
    def put_checkpoint(
        self,
        thread_id: str,
        *,
        checkpoint_id: str,
        config: str,
        checkpoint: str,
        metadata: str,
        parent_config: Optional[str] = None,
        pending_writes: Optional[List[str]] = None,
        schema_version: int = 1,
    ) -> Checkpoint:
        with self._data_lock:
            self._checkpoint_seq += 1
            row = Checkpoint(
                id=checkpoint_id,
                thread_id=thread_id,
                config=config,
                checkpoint=checkpoint,
                metadata=metadata,
                created_at=datetime.utcnow(),
                parent_config=parent_config,
                pending_writes=list(pending_writes or []),
                schema_version=schema_version,
                seq=self._checkpoint_seq,
            )
            self.checkpoints.setdefault(thread_id, []).append(row)
            self._persist_state()
            return self._copy_checkpoint(row)

    def get_latest_checkpoint(self, thread_id: str) -> Optional[Checkpoint]:
        with self._data_lock:
            rows = self.checkpoints.get(thread_id)
            if not rows:
                return None
            return self._copy_checkpoint(rows[-1])

    def list_checkpoints(self, thread_id: str, limit: int = 20) -> List[Checkpoint]:
        with self._data_lock:
            rows = list(reversed(self.checkpoints.get(thread_id, [])))
            return [self._copy_checkpoint(r) for r in rows[: max(limit, 0)]]

    def append_checkpoint_writes(self, thread_id: str, writes: List[str]) -> Optional[Checkpoint]:
        with self._data_lock:
            rows = self.checkpoints.get(thread_id)
            if not rows:
                return None
            latest = rows[-1]
            latest.pending_writes = [*latest.pending_writes, *writes]
            self._persist_state()
            return self._copy_checkpoint(latest)

    def delete_checkpoints(self, thread_id: str) -> int:
        with self._data_lock:
            removed = self.checkpoints.pop(thread_id, [])
            if removed:
                self._persist_state()
            return len(removed)

    @staticmethod
    def _copy_checkpoint(row: Checkpoint) -> Checkpoint:
        return Checkpoint(**{**vars(row), "pending_writes": list(row.pending_writes)})

    # state file
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "conversations": [
                self._serialize_conversation(c) for c in self.conversations.values()
            ],
            "messages": [
                self._serialize_message(m) for msgs in self.messages.values() for m in msgs
            ],
            "pins": [
                {
                    "user_id": p.user_id,
                    "message_id": p.message_id,
                    "created_at": self._serialize_datetime(p.created_at),
                }
                for p in self.pins.values()
            ],
            "daily_usage": [
                {**vars(u), "day": u.day.isoformat()} for u in self.daily_usage.values()
            ],
            "checkpoints": [
                {**vars(cp), "created_at": self._serialize_datetime(cp.created_at)}
                for rows in self.checkpoints.values()
                for cp in rows
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.conversations = {
            c["id"]: self._deserialize_conversation(c) for c in data.get("conversations", [])
        }
        self.messages = {conv_id: [] for conv_id in self.conversations}
        for raw in data.get("messages", []):
            msg = self._deserialize_message(raw)
            self.messages.setdefault(msg.conversation_id, []).append(msg)
        for msgs in self.messages.values():
            msgs.sort(key=lambda m: m.seq)
        self.pins = {}
        for raw in data.get("pins", []):
            pin = PinnedMessage(
                user_id=raw["user_id"],
                message_id=raw["message_id"],
                created_at=self._deserialize_datetime(raw["created_at"]),
            )
            self.pins[(pin.user_id, pin.message_id)] = pin
        self.daily_usage = {}
        for raw in data.get("daily_usage", []):
            usage = DailyUsage(**{**raw, "day": date.fromisoformat(raw["day"])})
            self.daily_usage[(usage.user_id, usage.day)] = usage
        self.checkpoints = {}
        for raw in data.get("checkpoints", []):
            row = Checkpoint(
                **{**raw, "created_at": self._deserialize_datetime(raw["created_at"])}
            )
            self.checkpoints.setdefault(row.thread_id, []).append(row)
        for rows in self.checkpoints.values():
            rows.sort(key=lambda r: r.seq)
        self._checkpoint_seq = max(
            (r.seq for rows in self.checkpoints.values() for r in rows), default=0
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "handle": user.handle,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "is_blocked": user.is_blocked,
            "daily_limit": user.daily_limit,
            "model_key_cipher": user.model_key_cipher,
            "profile_summary": user.profile_summary,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            handle=data.get("handle"),
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_blocked=data.get("is_blocked", False),
            daily_limit=data.get("daily_limit"),
            model_key_cipher=data.get("model_key_cipher"),
            profile_summary=data.get("profile_summary"),
            meta=data.get("meta"),
        )

    def _serialize_conversation(self, conversation: Conversation) -> dict:
        return {
            "id": conversation.id,
            "user_id": conversation.user_id,
            "created_at": self._serialize_datetime(conversation.created_at),
            "updated_at": self._serialize_datetime(conversation.updated_at),
            "title": conversation.title,
            "summary": conversation.summary,
        }

    def _deserialize_conversation(self, data: dict) -> Conversation:
        return Conversation(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            title=data.get("title"),
            summary=data.get("summary"),
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "id": message.id,
            "conversation_id": message.conversation_id,
            "role": message.role,
            "content": message.content,
            "seq": message.seq,
            "created_at": self._serialize_datetime(message.created_at),
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data["content"],
            seq=data["seq"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )
