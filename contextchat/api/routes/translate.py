"""Translation endpoint."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field

from contextchat.core.container import Services
from contextchat.core.deps import get_current_user, get_services
from contextchat.errors import InvalidRequestError

router = APIRouter(prefix="/api", tags=["translate"])


class TranslateRequest(BaseModel):
    """Accepts {text, source, target} and the sourceLang/targetLang aliases."""
    text: Optional[str] = None
    source: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("source", "sourceLang", "source_lang", "src"),
    )
    target: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("target", "targetLang", "target_lang", "tgt"),
    )
    model: Optional[str] = None


@router.post("/translate")
async def translate(
    request: TranslateRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Translate text and record it for the user.

    Returns:
        {output, translated, raw}
    """
    text = (request.text or "").strip()
    target = (request.target or "").strip()
    if not text or not target:
        raise InvalidRequestError("Missing { text, target }")

    return await services.translation.translate(
        user_id,
        text,
        target,
        source=request.source,
        model=request.model,
    )
