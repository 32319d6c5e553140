from __future__ import annotations

from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse

from parley.api.schemas import (
    AuthResponse,
    ChatCancelRequest,
    ChatCancelResponse,
    ChatRequest,
    ChatResponse,
    CheckpointListResponse,
    CheckpointResponse,
    ConversationListResponse,
    ConversationSummary,
    Envelope,
    ErrorBody,
    LoginRequest,
    MessageListResponse,
    MessageResponse,
    ModelKeyRequest,
    PinListResponse,
    PinRequest,
    PinResponse,
    RenameConversationRequest,
    SignupRequest,
    UsageResponse,
    UserResponse,
)
from parley.logging import get_logger
from parley.service.auth import AuthContext
from parley.service.chat import ChatTurn
from parley.service.errors import ServiceError
from parley.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MAX_CHECKPOINT_PAGE = 100


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "Unauthorized", status_code=401)
    return ctx


# auth
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    runtime = get_runtime()
    user, token = await runtime.auth.signup(
        email=body.email, password=body.password, handle=body.handle
    )
    return Envelope(
        status="ok",
        data=AuthResponse(user_id=user.id, access_token=token, role=user.role),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    user, token = await runtime.auth.login(body.email, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(user_id=user.id, access_token=token, role=user.role),
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.chat.require_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.put("/me/model-key", response_model=Envelope, tags=["auth"])
async def set_model_key(body: ModelKeyRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.chat.require_user(principal.user_id)
    user = runtime.auth.set_model_key(principal.user_id, body.api_key)
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.delete("/me/model-key", response_model=Envelope, tags=["auth"])
async def clear_model_key(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.chat.require_user(principal.user_id)
    user = runtime.auth.clear_model_key(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_model(user))


# chat
def _chat_headers(turn: ChatTurn) -> Dict[str, str]:
    headers = {
        "Cache-Control": "no-cache",
        "X-Conversation-Id": turn.conversation.id,
        "X-User-Message-Id": turn.user_message.id,
        "X-Assistant-Message-Id": turn.assistant_message.id,
    }
    if turn.limit is not None:
        headers["X-Usage-Limit"] = str(turn.limit)
        headers["X-Usage-Remaining"] = str(turn.remaining)
    return headers


async def _next_event(events: AsyncIterator[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


async def _relay_tokens(
    first: Optional[Dict[str, Any]], events: AsyncIterator[Dict[str, Any]]
) -> AsyncIterator[str]:
    event = first
    while event is not None:
        if event["event"] == "token":
            yield event["data"]
        elif event["event"] == "error":
            # headers are gone; the interruption is reported in-band
            yield f"\n\n[Response interrupted: {event['data']['message']}]"
        event = await _next_event(events)


async def _collect(turn: ChatTurn, events: AsyncIterator[Dict[str, Any]]) -> Envelope:
    chunks = []
    error: Optional[Dict[str, Any]] = None
    done: Dict[str, Any] = {}
    async for event in events:
        if event["event"] == "token":
            chunks.append(event["data"])
        elif event["event"] == "error":
            error = event
        elif event["event"] == "done":
            done = event["data"]
    if error is not None and not chunks:
        raise error["exception"]
    usage: Dict[str, Any] = {"limit": turn.limit, "remaining": turn.remaining}
    if done.get("usage_total") is not None:
        usage["used_total"] = done["usage_total"]
    return Envelope(
        status="ok",
        data=ChatResponse(
            conversation_id=turn.conversation.id,
            user_message_id=turn.user_message.id,
            assistant_message_id=turn.assistant_message.id,
            content="".join(chunks),
            partial=bool(done.get("partial")) or error is not None,
            cancelled=bool(done.get("cancelled")),
            error=ErrorBody(**error["data"]) if error else None,
            usage=usage,
        ),
    )


@router.post("/chat", tags=["chat"])
async def chat(body: ChatRequest, principal: AuthContext = Depends(get_user)):
    """Run the agent on a prompt.

    Streams ``text/plain`` by default. A run that fails before producing any
    text returns the error envelope instead; one that fails later ends the
    stream with a bracketed interruption notice.
    """
    runtime = get_runtime()
    turn = await runtime.chat.start_chat(
        principal.user_id, body.message, body.conversation_id
    )
    events = turn.events()
    if not body.stream:
        return await _collect(turn, events)
    first = await _next_event(events)
    if first is not None and first["event"] == "error":
        await events.aclose()
        exc: ServiceError = first["exception"]
        raise exc
    return StreamingResponse(
        _relay_tokens(first, events),
        media_type="text/plain; charset=utf-8",
        headers=_chat_headers(turn),
    )


@router.post("/chat/cancel", response_model=Envelope, tags=["chat"])
async def cancel_chat(body: ChatCancelRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    cancelled = runtime.chat.cancel(principal.user_id, body.conversation_id)
    return Envelope(
        status="ok",
        data=ChatCancelResponse(conversation_id=body.conversation_id, cancelled=cancelled),
    )


@router.get("/usage", response_model=Envelope, tags=["usage"])
async def get_usage(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.chat.require_user(principal.user_id)
    snapshot = runtime.quota.snapshot(
        user, has_personal_key=runtime.auth.resolve_model_key(user) is not None
    )
    return Envelope(status="ok", data=UsageResponse(**snapshot.as_dict()))


# conversations
@router.get("/conversations", response_model=Envelope, tags=["conversations"])
async def list_conversations(
    limit: int = Query(50, ge=1, le=200), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    conversations = runtime.chat.list_conversations(principal.user_id, limit=limit)
    return Envelope(
        status="ok",
        data=ConversationListResponse(
            items=[ConversationSummary.from_model(c) for c in conversations]
        ),
    )


@router.get("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def get_conversation(conversation_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    conversation = runtime.chat.get_conversation(principal.user_id, conversation_id)
    return Envelope(status="ok", data=ConversationSummary.from_model(conversation))


@router.patch("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def rename_conversation(
    conversation_id: str,
    body: RenameConversationRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    conversation = runtime.chat.rename_conversation(
        principal.user_id, conversation_id, body.title
    )
    return Envelope(status="ok", data=ConversationSummary.from_model(conversation))


@router.delete("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def delete_conversation(conversation_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.chat.delete_conversation(principal.user_id, conversation_id)
    return Envelope(status="ok", data={"id": conversation_id, "deleted": True})


@router.get(
    "/conversations/{conversation_id}/messages", response_model=Envelope, tags=["conversations"]
)
async def list_messages(conversation_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    messages = runtime.chat.list_messages(principal.user_id, conversation_id)
    return Envelope(
        status="ok",
        data=MessageListResponse(items=[MessageResponse.from_model(m) for m in messages]),
    )


@router.get(
    "/conversations/{conversation_id}/checkpoints", response_model=Envelope, tags=["conversations"]
)
async def list_checkpoints(
    conversation_id: str,
    limit: Optional[int] = Query(None, ge=1, le=MAX_CHECKPOINT_PAGE),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    items = runtime.chat.list_checkpoints(principal.user_id, conversation_id, limit=limit)
    return Envelope(
        status="ok",
        data=CheckpointListResponse(items=[CheckpointResponse.from_tuple(i) for i in items]),
    )


# messages and pins
@router.delete("/messages/{message_id}", response_model=Envelope, tags=["messages"])
async def delete_message(message_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.chat.delete_message(principal.user_id, message_id)
    return Envelope(status="ok", data={"id": message_id, "deleted": True})


@router.post("/pins", response_model=Envelope, tags=["messages"])
async def set_pin(body: PinRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    pinned = runtime.chat.set_pin(principal.user_id, body.message_id, body.pinned)
    return Envelope(status="ok", data=PinResponse(message_id=body.message_id, pinned=pinned))


@router.get("/pins", response_model=Envelope, tags=["messages"])
async def list_pins(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    pins = runtime.chat.list_pins(principal.user_id)
    return Envelope(
        status="ok", data=PinListResponse(items=[PinResponse.from_model(p) for p in pins])
    )
