"""Persistence operations over conversations, messages and rollups.

Every operation is awaitable; each runs one short SQLModel session on a
worker thread. Backend failures surface as PersistenceError and nothing
is retried here; retry policy belongs to the caller.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, List, Optional, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from contextchat.errors import ConversationNotFoundError, InvalidRequestError, PersistenceError
from contextchat.models.conversation import (
    Conversation,
    Message,
    Rollup,
    Translation,
    UserMemory,
    UserSettings,
    WorkspaceMemory,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLES = {"system", "user", "assistant"}
ROLLUP_MODES = {"regular", "long"}
TIMESTAMP_STEP = timedelta(microseconds=1)


@dataclass
class UserContext:
    """Per-user prompt inputs and their default toggles."""
    persona: str = ""
    workspace: str = ""
    use_persona: bool = False
    use_workspace: bool = False


class ConversationStore:
    """
    Store for the chat pipeline.

    The engine is injected; the store keeps no other state.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    async def _run(self, label: str, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with Session(self.engine, expire_on_commit=False) as session:
                return fn(session)

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            logger.error(f"Store operation {label} failed: {e}")
            raise PersistenceError(f"DB error during {label}") from e

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        user_id: str,
        title: Optional[str] = None,
        model: Optional[str] = None,
        long_mode: bool = False,
    ) -> int:
        """Create a conversation owned by user_id and return its id."""
        def work(session: Session) -> int:
            conversation = Conversation(
                user_id=user_id,
                title=(title or "").strip()[:255] or None,
                model=model,
                long_mode_enabled=long_mode,
            )
            session.add(conversation)
            session.commit()
            session.refresh(conversation)
            return conversation.id

        return await self._run("create_conversation", work)

    async def discard_empty_conversation(self, conversation_id: int) -> bool:
        """Delete a conversation that never received a message. Returns True if deleted."""
        def work(session: Session) -> bool:
            has_message = session.exec(
                select(Message.id).where(Message.conversation_id == conversation_id).limit(1)
            ).first()
            if has_message is not None:
                return False
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                return False
            session.delete(conversation)
            session.commit()
            return True

        return await self._run("discard_empty_conversation", work)

    async def get_conversation(self, conversation_id: int, user_id: str) -> Conversation:
        """
        Fetch a conversation owned by user_id.

        Raises:
            ConversationNotFoundError: missing, or owned by someone else
        """
        def work(session: Session) -> Optional[Conversation]:
            statement = select(Conversation).where(
                Conversation.id == conversation_id,
                Conversation.user_id == user_id,
            )
            return session.exec(statement).first()

        conversation = await self._run("get_conversation", work)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        def work(session: Session) -> List[Conversation]:
            statement = (
                select(Conversation)
                .where(Conversation.user_id == user_id)
                .order_by(col(Conversation.updated_at).desc(), col(Conversation.id).desc())
            )
            return list(session.exec(statement).all())

        return await self._run("list_conversations", work)

    async def set_long_mode(self, conversation_id: int, enabled: bool) -> None:
        def work(session: Session) -> None:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            conversation.long_mode_enabled = enabled
            session.add(conversation)
            session.commit()

        await self._run("set_long_mode", work)

    async def touch_conversation(self, conversation_id: int) -> None:
        """Bump updated_at; the only other mutation a conversation sees."""
        def work(session: Session) -> None:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                return
            conversation.updated_at = utcnow()
            session.add(conversation)
            session.commit()

        await self._run("touch_conversation", work)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def save_message(self, conversation_id: int, role: str, content: str) -> Message:
        """
        Append a message to a conversation.

        created_at is forced strictly past the conversation's latest message,
        so ordered reads never swap roles written within one clock tick.

        Raises:
            InvalidRequestError: unknown role
            PersistenceError: the write failed (callers must not assume success)
        """
        if role not in ROLES:
            raise InvalidRequestError(f"role must be one of {sorted(ROLES)}")

        def work(session: Session) -> Message:
            latest = session.exec(
                select(Message.created_at)
                .where(Message.conversation_id == conversation_id)
                .order_by(col(Message.created_at).desc())
                .limit(1)
            ).first()
            created_at = utcnow()
            if latest is not None and created_at <= latest:
                created_at = latest + TIMESTAMP_STEP

            message = Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                created_at=created_at,
            )
            session.add(message)
            session.commit()
            session.refresh(message)
            return message

        return await self._run("save_message", work)

    async def get_recent_messages(self, conversation_id: int, n: int) -> List[Message]:
        """Last n messages, ascending by time."""
        if n <= 0:
            return []

        def work(session: Session) -> List[Message]:
            statement = (
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(col(Message.created_at).desc(), col(Message.id).desc())
                .limit(n)
            )
            return list(reversed(session.exec(statement).all()))

        return await self._run("get_recent_messages", work)

    async def get_all_messages(self, conversation_id: int) -> List[Message]:
        """All messages, ascending by time."""
        def work(session: Session) -> List[Message]:
            statement = (
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(col(Message.created_at), col(Message.id))
            )
            return list(session.exec(statement).all())

        return await self._run("get_all_messages", work)

    async def get_last_message_id(self, conversation_id: int) -> Optional[int]:
        def work(session: Session) -> Optional[int]:
            statement = (
                select(Message.id)
                .where(Message.conversation_id == conversation_id)
                .order_by(col(Message.created_at).desc(), col(Message.id).desc())
                .limit(1)
            )
            return session.exec(statement).first()

        return await self._run("get_last_message_id", work)

    # ------------------------------------------------------------------
    # Rollups
    # ------------------------------------------------------------------

    async def get_latest_rollup(self, conversation_id: int, mode: str) -> Optional[Rollup]:
        """Most recent rollup for (conversation, mode); latest created_at wins."""
        def work(session: Session) -> Optional[Rollup]:
            statement = (
                select(Rollup)
                .where(Rollup.conversation_id == conversation_id, Rollup.mode == mode)
                .order_by(col(Rollup.created_at).desc(), col(Rollup.id).desc())
                .limit(1)
            )
            return session.exec(statement).first()

        return await self._run("get_latest_rollup", work)

    async def upsert_rollup(
        self,
        conversation_id: int,
        mode: str,
        up_to_message_id: int,
        summary_text: str,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
    ) -> Rollup:
        """
        Record a new rollup for the (conversation, mode) chain.

        Rollups are never updated or deleted; the newest row supersedes
        older ones.
        """
        if mode not in ROLLUP_MODES:
            raise InvalidRequestError(f"mode must be one of {sorted(ROLLUP_MODES)}")

        def work(session: Session) -> Rollup:
            rollup = Rollup(
                conversation_id=conversation_id,
                mode=mode,
                up_to_message_id=up_to_message_id,
                summary_text=summary_text,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )
            session.add(rollup)
            session.commit()
            session.refresh(rollup)
            return rollup

        return await self._run("upsert_rollup", work)

    async def count_user_turns_since_last_rollup(self, conversation_id: int, mode: str) -> int:
        """
        Number of user messages strictly after the latest rollup's watermark.

        Counts from the start when there is no prior rollup (or its
        watermark message is gone).
        """
        messages = await self.get_all_messages(conversation_id)
        rollup = await self.get_latest_rollup(conversation_id, mode)
        start = messages_after_watermark(messages, rollup.up_to_message_id if rollup else None)
        return sum(1 for m in messages[start:] if m.role == "user")

    # ------------------------------------------------------------------
    # User-owned inputs and records
    # ------------------------------------------------------------------

    async def get_user_context(self, user_id: str) -> UserContext:
        def work(session: Session) -> UserContext:
            memory = session.get(UserMemory, user_id)
            workspace = session.get(WorkspaceMemory, user_id)
            user_settings = session.get(UserSettings, user_id)
            return UserContext(
                persona=(memory.persona_summary if memory else None) or "",
                workspace=(workspace.note if workspace else None) or "",
                use_persona=bool(user_settings and user_settings.use_persona),
                use_workspace=bool(user_settings and user_settings.use_workspace),
            )

        return await self._run("get_user_context", work)

    async def save_translation(
        self,
        user_id: str,
        source_text: str,
        source_lang: str,
        target_lang: str,
        output_text: str,
        model: Optional[str] = None,
    ) -> Translation:
        def work(session: Session) -> Translation:
            record = Translation(
                user_id=user_id,
                source_text=source_text,
                source_lang=source_lang,
                target_lang=target_lang,
                output_text=output_text,
                model=model,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

        return await self._run("save_translation", work)


def messages_after_watermark(messages: List[Any], watermark_id: Optional[int]) -> int:
    """Index of the first message after the watermark (0 if not found)."""
    if watermark_id is None:
        return 0
    for index, message in enumerate(messages):
        if message.id == watermark_id:
            return index + 1
    return 0
