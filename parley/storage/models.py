from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=datetime.utcnow)
    is_blocked: bool = False
    daily_limit: Optional[int] = None
    model_key_cipher: Optional[str] = None
    profile_summary: Optional[str] = None
    meta: Dict | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def has_personal_key(self) -> bool:
        return bool(self.model_key_cipher)


@dataclass
class Conversation:
    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    title: Optional[str] = None
    summary: Optional[str] = None


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    seq: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Checkpoint:
    """One persisted agent step for a thread.

    ``config``, ``checkpoint`` and ``metadata`` hold serialized JSON text and
    are returned exactly as written. ``pending_writes`` holds one serialized
    entry per proposed write, in arrival order.
    """

    id: str
    thread_id: str
    config: str
    checkpoint: str
    metadata: str
    created_at: datetime
    parent_config: Optional[str] = None
    pending_writes: List[str] = field(default_factory=list)
    schema_version: int = 1
    seq: int = 0


@dataclass
class DailyUsage:
    user_id: str
    day: date
    responses: int = 0
    shared_responses: int = 0
    personal_responses: int = 0


@dataclass
class PinnedMessage:
    user_id: str
    message_id: str
    created_at: datetime = field(default_factory=datetime.utcnow)
