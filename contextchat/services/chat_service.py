"""Chat service layer.

Handles:
- Lazy conversation creation and ownership checks
- Context loading (history window, persona/workspace, latest rollup)
- Prompt assembly and provider calls (non-streaming and streaming)
- Persistence of user + assistant turns and rollup triggering
"""
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional
import logging

from contextchat.core.tasks import run_in_background
from contextchat.errors import ChatServiceError
from contextchat.services import reasoning
from contextchat.services.conversation_store import ConversationStore
from contextchat.services.prompt import AssembledPrompt, PromptAssembler, WINDOW_TURNS, WINDOW_TURNS_LONG
from contextchat.services.provider import ProviderGateway
from contextchat.services.rollup import RollupEngine, bucket_for
from contextchat.services.stream_relay import StreamRelay
from contextchat.services.text import normalize

logger = logging.getLogger(__name__)

FAST_MAX_TOKENS = 1024
THINK_MAX_TOKENS = 2048
LONG_MODE_TOKEN_FACTOR = 2
THINKING_TEMPERATURE_CAP = 0.5
THINKING_REASONING = {"effort": "high"}
TITLE_CHARS = 60


def generation_params(mode: str, long_mode: bool, temperature: float) -> tuple[int, float]:
    """
    Max tokens and temperature for a chat mode.

    Long mode doubles the base token budget of the mode; thinking mode caps
    temperature.
    """
    base = THINK_MAX_TOKENS if mode == "thinking" else FAST_MAX_TOKENS
    max_tokens = base * LONG_MODE_TOKEN_FACTOR if long_mode else base
    if mode == "thinking":
        temperature = min(THINKING_TEMPERATURE_CAP, temperature)
    return max_tokens, temperature


@dataclass
class PreparedTurn:
    """Everything needed to call a provider for one user message."""
    conversation_id: int
    message: str
    mode: str
    long_mode: bool
    prompt: AssembledPrompt
    max_tokens: int
    temperature: float
    reasoning: Optional[Dict[str, Any]] = None
    created: bool = False


class ChatService:
    """Service layer for chat operations."""

    def __init__(
        self,
        store: ConversationStore,
        gateway: ProviderGateway,
        assembler: PromptAssembler,
        rollups: RollupEngine,
    ):
        """Initialize chat service with its collaborators."""
        self.store = store
        self.gateway = gateway
        self.assembler = assembler
        self.rollups = rollups

    async def ensure_conversation(
        self,
        user_id: str,
        conversation_id: Optional[int],
        first_message: str,
        model: Optional[str] = None,
        long_mode: Optional[bool] = None,
    ) -> tuple[int, bool, bool]:
        """
        Get an owned conversation or create a new one.

        Args:
            user_id: Authenticated user ID
            conversation_id: Existing conversation ID or None for new
            first_message: Used to title a new conversation
            model: Model recorded on a new conversation
            long_mode: Request override; persisted onto the conversation

        Returns:
            (conversation_id, effective long mode, created)

        Raises:
            ConversationNotFoundError: conversation not found or not owned by user
        """
        if conversation_id is None:
            new_id = await self.store.create_conversation(
                user_id,
                title=normalize(first_message)[:TITLE_CHARS],
                model=model,
                long_mode=bool(long_mode),
            )
            logger.info(f"Conversation created: user={user_id}, conversation={new_id}")
            return new_id, bool(long_mode), True

        conversation = await self.store.get_conversation(conversation_id, user_id)
        if long_mode is None:
            return conversation.id, conversation.long_mode_enabled, False
        if long_mode != conversation.long_mode_enabled:
            await self.store.set_long_mode(conversation.id, long_mode)
        return conversation.id, long_mode, False

    async def prepare_turn(
        self,
        user_id: str,
        message: str,
        *,
        conversation_id: Optional[int] = None,
        model: Optional[str] = None,
        system: Optional[str] = None,
        mode: str = "normal",
        long_mode: Optional[bool] = None,
        temperature: float = 0.3,
        use_internet: bool = False,
        use_persona: Optional[bool] = None,
        use_workspace: Optional[bool] = None,
        client_history: Optional[List[Dict[str, str]]] = None,
    ) -> PreparedTurn:
        """
        Resolve the conversation and assemble the prompt for one message.

        Flow:
        1. Get or create conversation (long mode override persisted)
        2. Load the recent history window (or the client's turns for a new conversation)
        3. Load persona/workspace, honoring per-request toggles
        4. Load the latest rollup for the active bucket
        5. Assemble the prompt
        """
        conv_id, effective_long, created = await self.ensure_conversation(
            user_id, conversation_id, message, model=model, long_mode=long_mode
        )

        window = WINDOW_TURNS_LONG if effective_long else WINDOW_TURNS
        if created:
            history: List[Any] = list(client_history or [])[-window:]
        else:
            history = await self.store.get_recent_messages(conv_id, window)

        user_context = await self.store.get_user_context(user_id)
        persona_on = user_context.use_persona if use_persona is None else use_persona
        workspace_on = user_context.use_workspace if use_workspace is None else use_workspace

        rollup = await self.store.get_latest_rollup(conv_id, bucket_for(effective_long))

        prompt = await self.assembler.assemble(
            message,
            system=system,
            history=history,
            persona=user_context.persona if persona_on else None,
            workspace=user_context.workspace if workspace_on else None,
            summary=rollup.summary_text if rollup else None,
            mode=mode,
            use_internet=use_internet,
            long_mode=effective_long,
        )

        max_tokens, model_temperature = generation_params(mode, effective_long, temperature)
        return PreparedTurn(
            conversation_id=conv_id,
            message=message,
            mode=mode,
            long_mode=effective_long,
            prompt=prompt,
            max_tokens=max_tokens,
            temperature=model_temperature,
            reasoning=THINKING_REASONING if prompt.is_thinking else None,
            created=created,
        )

    async def persist_turn(self, turn: PreparedTurn, reply: str) -> None:
        """
        Store user then assistant message and trigger the rollup check.

        Write failures propagate; the rollup check runs detached.
        """
        await self.store.save_message(turn.conversation_id, "user", turn.message)
        await self.store.save_message(turn.conversation_id, "assistant", reply)
        await self.store.touch_conversation(turn.conversation_id)
        run_in_background(
            self.rollups.maybe_rollup(turn.conversation_id, bucket_for(turn.long_mode)),
            label=f"rollup-{turn.conversation_id}",
        )

    async def _abandon_turn(self, turn: PreparedTurn) -> None:
        """Drop a conversation this turn created if the provider call failed before any write."""
        if turn.created and await self.store.discard_empty_conversation(turn.conversation_id):
            logger.info(f"Discarded empty conversation after provider failure: conversation={turn.conversation_id}")

    async def chat(
        self,
        user_id: str,
        message: str,
        *,
        assistant_text: Optional[str] = None,
        **options: Any,
    ) -> Dict[str, Any]:
        """
        Non-streaming chat with persistence.

        Args:
            user_id: Authenticated user ID
            message: User message
            assistant_text: Exact reply to store instead of calling the provider
            **options: prepare_turn options

        Returns:
            {conversationId, reply, mode, longMode, usedInternet, sources, raw}
        """
        turn = await self.prepare_turn(user_id, message, **options)

        raw: Any = None
        if assistant_text is not None:
            reply = reasoning.strip(assistant_text)
        else:
            try:
                result = await self.gateway.chat(
                    turn.prompt.messages,
                    model=options.get("model"),
                    temperature=turn.temperature,
                    max_tokens=turn.max_tokens,
                )
            except ChatServiceError:
                await self._abandon_turn(turn)
                raise
            raw = result.data
            reply = reasoning.strip(result.text)

        await self.persist_turn(turn, reply)
        logger.info(
            f"Chat message processed: user={user_id}, conversation={turn.conversation_id}, "
            f"mode={turn.mode}, long_mode={turn.long_mode}, sources={len(turn.prompt.sources)}"
        )
        return {
            "conversationId": turn.conversation_id,
            "reply": reply,
            "mode": turn.mode,
            "longMode": turn.long_mode,
            "usedInternet": bool(turn.prompt.sources),
            "sources": [s.model_dump() for s in turn.prompt.sources],
            "raw": raw,
        }

    async def complete_once(self, user_id: str, message: str, **options: Any) -> Dict[str, Any]:
        """Non-streaming variant of the streaming endpoint: {conversationId, reply, raw}."""
        turn = await self.prepare_turn(user_id, message, **options)
        try:
            result = await self.gateway.complete_json(
                turn.prompt.messages,
                model=options.get("model"),
                temperature=turn.temperature,
                max_tokens=turn.max_tokens,
            )
        except ChatServiceError:
            await self._abandon_turn(turn)
            raise
        reply = reasoning.strip(result.text)
        await self.persist_turn(turn, reply)
        return {"conversationId": turn.conversation_id, "reply": reply, "raw": result.data}

    async def open_stream(
        self,
        user_id: str,
        message: str,
        **options: Any,
    ) -> tuple[PreparedTurn, AsyncIterator[bytes]]:
        """
        Start a streamed answer.

        The upstream stream is opened before anything is returned, so provider
        failures still surface as errors. The user message is stored once the
        stream is open; the assistant reply is stored by a background task
        after the stream ends, and the client's stream never waits on it.

        Returns:
            (prepared turn, byte iterator to hand to the HTTP response)
        """
        turn = await self.prepare_turn(user_id, message, **options)
        try:
            upstream = await self.gateway.stream_complete(
                turn.prompt.messages,
                temperature=turn.temperature,
                max_tokens=turn.max_tokens,
                reasoning=turn.reasoning,
                model=options.get("model"),
            )
        except ChatServiceError:
            await self._abandon_turn(turn)
            raise

        try:
            await self.store.save_message(turn.conversation_id, "user", message)
        except ChatServiceError:
            await upstream.aclose()
            raise

        async def on_complete(text: str) -> None:
            reply = reasoning.strip(text)
            if not reply:
                logger.warning(f"Stream ended without content: conversation={turn.conversation_id}")
                return
            await self.rollups.save_assistant_and_maybe_rollup(
                turn.conversation_id, reply, mode=turn.mode, long_mode=turn.long_mode
            )

        relay = StreamRelay(on_complete=on_complete, label=f"stream-persist-{turn.conversation_id}")
        return turn, relay.relay(upstream)
