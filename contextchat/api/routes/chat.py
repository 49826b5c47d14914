"""Chat endpoint routes.

Provides:
- POST /api/ai - Non-streaming chat with persistence
- POST /api/ai-stream - Streaming chat (SSE); ``stream: false`` answers JSON
- GET /api/conversations - List the caller's conversations
- GET /api/conversations/{id} - Get a conversation with its messages
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from contextchat.core.container import Services
from contextchat.core.deps import get_current_user, get_services
from contextchat.errors import InvalidRequestError

router = APIRouter(prefix="/api", tags=["chat"])


class ChatTurn(BaseModel):
    role: str = Field(..., description="'system', 'user' or 'assistant'")
    content: str = ""


class ChatRequest(BaseModel):
    """Request model for a chat message."""
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[int] = Field(default=None, alias="conversationId")
    message: Optional[str] = None
    assistant_text: Optional[str] = Field(default=None, alias="assistantText")
    model: Optional[str] = None
    system: Optional[str] = None
    mode: str = "normal"
    long_mode: Optional[bool] = Field(default=None, alias="longMode")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    use_internet: bool = Field(default=False, alias="useInternet")
    use_persona: Optional[bool] = Field(default=None, alias="usePersona")
    use_workspace: Optional[bool] = Field(default=None, alias="useWorkspace")

    def chat_options(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "model": self.model,
            "system": self.system,
            "mode": "thinking" if self.mode == "thinking" else "normal",
            "long_mode": self.long_mode,
            "temperature": self.temperature,
            "use_internet": self.use_internet,
            "use_persona": self.use_persona,
            "use_workspace": self.use_workspace,
        }


class StreamRequest(ChatRequest):
    """Streaming request: the message may come as the last entry of ``messages``."""
    messages: Optional[List[ChatTurn]] = None
    stream: bool = True


class MessageResponse(BaseModel):
    """Response model for a single message."""
    id: int
    role: str
    content: str
    timestamp: datetime


class ConversationDetail(BaseModel):
    """Response model for conversation with messages."""
    id: int
    title: Optional[str]
    model: Optional[str]
    long_mode: bool
    created_at: datetime
    messages: list[MessageResponse]


class ConversationSummary(BaseModel):
    """Response model for conversation list."""
    id: int
    title: Optional[str]
    model: Optional[str]
    created_at: datetime
    updated_at: datetime


def _require_message(text: Optional[str]) -> str:
    if not text or not text.strip():
        raise InvalidRequestError("message required")
    return text


def split_stream_messages(request: StreamRequest) -> tuple[str, List[Dict[str, str]]]:
    """
    Resolve (message, client history) for a streaming request.

    An explicit ``message`` wins; otherwise the last ``messages`` entry must
    be the user's turn and the earlier entries are history.
    """
    turns = [t.model_dump() for t in (request.messages or [])]
    if request.message and request.message.strip():
        return request.message, turns
    if not turns:
        raise InvalidRequestError("Missing messages[]")
    last = turns[-1]
    if last["role"] != "user" or not last["content"].strip():
        raise InvalidRequestError("Last entry of messages[] must be a non-empty user message")
    return last["content"], turns[:-1]


@router.post("/ai")
async def send_chat_message(
    request: ChatRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Send a message and wait for the full reply.

    Flow:
    1. Get/create conversation
    2. Assemble prompt from history, memories, rollup and web snippets
    3. Call the chat provider (unless assistantText is supplied)
    4. Store user + assistant messages
    5. Check the rollup trigger in the background

    Raises:
        InvalidRequestError: 400 if message is empty
        ConversationNotFoundError: 404 if conversation not owned
        UpstreamProviderError: 502 if the provider fails
    """
    message = _require_message(request.message)
    return await services.chat.chat(
        user_id,
        message,
        assistant_text=request.assistant_text,
        **request.chat_options(),
    )


@router.post("/ai-stream")
async def stream_chat_message(
    request: StreamRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """
    Stream the reply as server-sent events.

    Provider frames are relayed byte-for-byte. The assistant message is
    stored after the stream closes, without delaying the close.
    """
    message, history = split_stream_messages(request)
    options = request.chat_options()
    options["client_history"] = history

    if not request.stream:
        return await services.chat.complete_once(user_id, message, **options)

    turn, body = await services.chat.open_stream(user_id, message, **options)
    return StreamingResponse(
        body,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "X-Conversation-Id": str(turn.conversation_id),
        },
    )


@router.get("/conversations", response_model=list[ConversationSummary])
async def list_conversations(
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> list[ConversationSummary]:
    """List all conversations for the authenticated user, most recent first."""
    conversations = await services.store.list_conversations(user_id)
    return [
        ConversationSummary(
            id=conv.id,
            title=conv.title,
            model=conv.model,
            created_at=conv.created_at,
            updated_at=conv.updated_at,
        )
        for conv in conversations
    ]


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: int,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ConversationDetail:
    """
    Get conversation with all messages.

    Raises:
        ConversationNotFoundError: 404 if conversation not found or not owned
    """
    conversation = await services.store.get_conversation(conversation_id, user_id)
    messages = await services.store.get_all_messages(conversation.id)
    return ConversationDetail(
        id=conversation.id,
        title=conversation.title,
        model=conversation.model,
        long_mode=conversation.long_mode_enabled,
        created_at=conversation.created_at,
        messages=[
            MessageResponse(
                id=msg.id,
                role=msg.role,
                content=msg.content,
                timestamp=msg.created_at,
            )
            for msg in messages
        ],
    )
