from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from parley.service.checkpoints import CheckpointTuple
from parley.storage.models import Conversation, Message, PinnedMessage, User

# Maximum length for free-text fields such as chat prompts
MAX_STRING_LENGTH = 65536

_VALID_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", value)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_HANDLE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class SignupRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=128)
    handle: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("handle")
    @classmethod
    def _validate_handle(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _HANDLE_PATTERN.match(value):
            raise ValueError("handle must contain only alphanumeric characters, underscores, and hyphens")
        return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    email: str
    handle: Optional[str] = None
    role: str
    daily_limit: Optional[int] = None
    has_personal_key: bool = False
    profile_summary: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            handle=user.handle,
            role=user.role,
            daily_limit=user.daily_limit,
            has_personal_key=user.has_personal_key,
            profile_summary=user.profile_summary,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    user_id: str
    access_token: str
    token_type: str = "bearer"
    role: str = "user"


class ModelKeyRequest(BaseModel):
    api_key: str = Field(..., min_length=1, max_length=512)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(default="", max_length=MAX_STRING_LENGTH)
    conversation_id: Optional[str] = Field(
        default=None,
        max_length=128,
        validation_alias=AliasChoices("conversation_id", "conversationId"),
    )
    stream: bool = True


class ChatResponse(BaseModel):
    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    content: str
    partial: bool = False
    cancelled: bool = False
    error: Optional[ErrorBody] = None
    usage: dict = Field(default_factory=dict)


class ChatCancelRequest(BaseModel):
    conversation_id: str = Field(
        ...,
        max_length=128,
        validation_alias=AliasChoices("conversation_id", "conversationId"),
    )


class ChatCancelResponse(BaseModel):
    conversation_id: str
    cancelled: bool


class UsageResponse(BaseModel):
    used_total: int
    used_shared: int
    used_personal: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    default_limit: int
    has_personal_key: bool


class ConversationSummary(BaseModel):
    id: str
    title: Optional[str] = None
    summary: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, conversation: Conversation) -> "ConversationSummary":
        return cls(
            id=conversation.id,
            title=conversation.title,
            summary=conversation.summary,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class ConversationListResponse(BaseModel):
    items: List[ConversationSummary]


class RenameConversationRequest(BaseModel):
    title: str = Field(..., max_length=1024)


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str
    seq: int
    created_at: datetime

    @classmethod
    def from_model(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            seq=message.seq,
            created_at=message.created_at,
        )


class MessageListResponse(BaseModel):
    items: List[MessageResponse]


class PinRequest(BaseModel):
    message_id: str = Field(
        ...,
        max_length=128,
        validation_alias=AliasChoices("message_id", "messageId"),
    )
    pinned: bool = True


class PinResponse(BaseModel):
    message_id: str
    pinned: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, pin: PinnedMessage) -> "PinResponse":
        return cls(message_id=pin.message_id, pinned=True, created_at=pin.created_at)


class PinListResponse(BaseModel):
    items: List[PinResponse]


class CheckpointResponse(BaseModel):
    config: dict
    checkpoint: dict
    metadata: dict
    parent_config: Optional[dict] = None
    pending_writes: List[list] = Field(default_factory=list)
    schema_version: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_tuple(cls, item: CheckpointTuple) -> "CheckpointResponse":
        return cls(
            config=item.config,
            checkpoint=item.checkpoint,
            metadata=item.metadata,
            parent_config=item.parent_config,
            pending_writes=[list(write) for write in item.pending_writes],
            schema_version=item.schema_version,
            created_at=item.created_at,
        )


class CheckpointListResponse(BaseModel):
    items: List[CheckpointResponse]
