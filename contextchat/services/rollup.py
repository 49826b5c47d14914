"""Incremental conversation summaries ("rollups").

Each (conversation, mode) pair owns a chain of rollups whose watermark only
moves forward. A rollup is triggered once enough user turns have landed
after the latest watermark, and summarizes only those new messages.

Two concurrent requests may both see the trigger and both write a rollup.
That is tolerated: readers always take the newest row, and the watermark
is read at write time, so a late writer covers everything it saw.
"""
import logging
from typing import Optional

from contextchat.models.conversation import Rollup
from contextchat.services import reasoning
from contextchat.services.conversation_store import ConversationStore, messages_after_watermark
from contextchat.services.prompt import build_rollup_prompt
from contextchat.services.provider import ProviderGateway

logger = logging.getLogger(__name__)

REGULAR = "regular"
LONG = "long"

TURN_THRESHOLDS = {REGULAR: 4, LONG: 8}
TARGET_TOKENS = {REGULAR: 500, LONG: 1000}
MAX_TOKENS_HEADROOM = 1.2
SUMMARY_TEMPERATURE = 0.1


def bucket_for(long_mode: bool) -> str:
    return LONG if long_mode else REGULAR


class RollupEngine:
    """Decides when to compress history and performs the compression."""

    def __init__(
        self,
        store: ConversationStore,
        gateway: ProviderGateway,
        model: Optional[str] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.model = model

    async def should_rollup(self, conversation_id: int, mode: str) -> bool:
        turns = await self.store.count_user_turns_since_last_rollup(conversation_id, mode)
        return turns >= TURN_THRESHOLDS[mode]

    async def maybe_rollup(self, conversation_id: int, mode: str) -> Optional[Rollup]:
        """Run a rollup for the bucket if its turn threshold is met."""
        if not await self.should_rollup(conversation_id, mode):
            return None
        logger.info(f"Rollup triggered: conversation={conversation_id} mode={mode}")
        return await self.compute_and_save_rollup(conversation_id, mode)

    async def compute_and_save_rollup(self, conversation_id: int, mode: str) -> Optional[Rollup]:
        """
        Summarize every message after the latest watermark and store a rollup.

        Args:
            conversation_id: Conversation to compress
            mode: "regular" or "long" bucket

        Returns:
            The new rollup; the prior rollup when there is nothing new or the
            provider produced no usable summary; None for an empty conversation

        Raises:
            UpstreamProviderError: summarization call failed
            PersistenceError: store read/write failed
        """
        messages = await self.store.get_all_messages(conversation_id)
        if not messages:
            return None

        target_tokens = TARGET_TOKENS[mode]
        latest = await self.store.get_latest_rollup(conversation_id, mode)
        start = messages_after_watermark(messages, latest.up_to_message_id if latest else None)
        chunk = messages[start:]
        if not chunk:
            return latest

        result = await self.gateway.complete_json(
            build_rollup_prompt(chunk, target_tokens),
            model=self.model,
            temperature=SUMMARY_TEMPERATURE,
            max_tokens=round(target_tokens * MAX_TOKENS_HEADROOM),
        )
        summary_text = reasoning.strip(result.text)

        # Read the watermark now, so messages written meanwhile are absorbed
        up_to = await self.store.get_last_message_id(conversation_id)
        if not up_to or not summary_text:
            logger.warning(
                f"Rollup produced nothing usable: conversation={conversation_id} mode={mode}"
            )
            return latest

        saved = await self.store.upsert_rollup(
            conversation_id,
            mode,
            up_to_message_id=up_to,
            summary_text=summary_text,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        logger.info(
            f"Rollup saved: id={saved.id} conversation={conversation_id} mode={mode} "
            f"messages={len(chunk)} up_to={up_to}"
        )
        return saved

    async def save_assistant_and_maybe_rollup(
        self,
        conversation_id: int,
        assistant_text: str,
        mode: str = "normal",
        long_mode: bool = False,
    ) -> Optional[Rollup]:
        """
        Persist the assistant reply, then roll up the bucket if due.

        ``mode`` is the chat mode ("normal"/"thinking") and is only logged;
        the rollup bucket comes from long_mode.
        """
        await self.store.save_message(conversation_id, "assistant", assistant_text)
        await self.store.touch_conversation(conversation_id)
        logger.debug(f"Assistant reply saved: conversation={conversation_id} chat_mode={mode}")
        return await self.maybe_rollup(conversation_id, bucket_for(long_mode))

    async def force_rollup(self, conversation_id: int, long_mode: bool = False) -> Optional[Rollup]:
        """Roll up the bucket now, ignoring the turn threshold."""
        return await self.compute_and_save_rollup(conversation_id, bucket_for(long_mode))
