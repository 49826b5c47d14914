"""Rollup facade.

Lets a client (or another worker) persist a streamed reply and trigger
rollups without holding a stream open, or force a rollup on demand.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from contextchat.core.container import Services
from contextchat.core.deps import get_current_user, get_services
from contextchat.errors import InvalidRequestError
from contextchat.services import reasoning
from contextchat.services.rollup import bucket_for

router = APIRouter(prefix="/api", tags=["rollup"])

SAVE_AND_MAYBE_ROLLUP = "save_and_maybe_rollup"
FORCE_ROLLUP = "force_rollup"


class RollupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str
    conversation_id: Optional[int] = Field(default=None, alias="conversationId")
    assistant_text: Optional[str] = Field(default=None, alias="assistantText")
    mode: str = "normal"
    long_mode: bool = Field(default=False, alias="longMode")


@router.post("/rollup")
async def rollup(
    request: RollupRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Run a rollup action for one of the caller's conversations.

    Returns:
        {ok, rollupId, mode}; rollupId is null when no rollup exists yet
    """
    if request.conversation_id is None:
        raise InvalidRequestError("Missing conversationId")

    conversation = await services.store.get_conversation(request.conversation_id, user_id)

    if request.action == SAVE_AND_MAYBE_ROLLUP:
        if request.assistant_text is None:
            raise InvalidRequestError("assistantText required")
        saved = await services.rollups.save_assistant_and_maybe_rollup(
            conversation.id,
            reasoning.strip(request.assistant_text),
            mode=request.mode,
            long_mode=request.long_mode,
        )
    elif request.action == FORCE_ROLLUP:
        saved = await services.rollups.force_rollup(conversation.id, long_mode=request.long_mode)
    else:
        raise InvalidRequestError("Unknown action")

    return {
        "ok": True,
        "mode": bucket_for(request.long_mode),
        "rollupId": saved.id if saved else None,
    }
