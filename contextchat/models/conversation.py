"""SQLModel tables for the conversation-context pipeline.

Models:
- Conversation: chat conversation owned by one user
- Message: append-only message in a conversation
- Rollup: compressed summary of a conversation up to a watermark message
- UserMemory / WorkspaceMemory / UserSettings: per-user prompt inputs (read-only here)
- Translation: user-keyed record of a translation request
"""
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp (the store compares timestamps without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Conversation(SQLModel, table=True):
    """
    Conversation entity.

    Ownership: each conversation belongs to exactly one user via user_id.
    Only updated_at and long_mode_enabled change after creation.
    """
    __tablename__ = "conversation"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, nullable=False)
    title: Optional[str] = Field(max_length=255, default=None)
    model: Optional[str] = Field(max_length=255, default=None)
    long_mode_enabled: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Message(SQLModel, table=True):
    """
    Message entity for conversations.

    Role: "system", "user" or "assistant". Content is immutable once written;
    created_at is strictly increasing within a conversation.
    """
    __tablename__ = "message"

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: int = Field(foreign_key="conversation.id", index=True, nullable=False)
    role: str = Field(default="user", max_length=20)
    content: str = Field()
    created_at: datetime = Field(default_factory=utcnow, index=True)


class Rollup(SQLModel, table=True):
    """
    Summary of a conversation's history for one mode bucket.

    up_to_message_id is the watermark: the last message folded into this
    summary. The latest row per (conversation, mode) is authoritative.
    """
    __tablename__ = "rollup"

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: int = Field(foreign_key="conversation.id", index=True, nullable=False)
    mode: str = Field(max_length=20)  # "regular" or "long"
    up_to_message_id: int = Field(foreign_key="message.id", nullable=False)
    summary_text: str = Field()
    input_tokens: Optional[int] = Field(default=None)
    output_tokens: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, index=True)


class UserMemory(SQLModel, table=True):
    __tablename__ = "user_memory"

    user_id: str = Field(primary_key=True)
    persona_summary: Optional[str] = Field(default=None)


class WorkspaceMemory(SQLModel, table=True):
    __tablename__ = "workspace_memory"

    user_id: str = Field(primary_key=True)
    note: Optional[str] = Field(default=None)


class UserSettings(SQLModel, table=True):
    """Default toggles applied when a request does not override them."""
    __tablename__ = "user_settings"

    user_id: str = Field(primary_key=True)
    use_persona: bool = Field(default=False)
    use_workspace: bool = Field(default=False)


class Translation(SQLModel, table=True):
    __tablename__ = "translation"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, nullable=False)
    source_text: str = Field()
    source_lang: str = Field(max_length=32)
    target_lang: str = Field(max_length=32)
    output_text: str = Field()
    model: Optional[str] = Field(max_length=255, default=None)
    created_at: datetime = Field(default_factory=utcnow)
