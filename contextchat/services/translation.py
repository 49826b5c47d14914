"""Translation through the MADLAD pod or the RunPod translate worker."""
import json
import logging
import re
from typing import Any, Dict, Optional

from contextchat.config import Settings
from contextchat.errors import ConfigurationError, UpstreamProviderError
from contextchat.services.conversation_store import ConversationStore
from contextchat.services.provider import ProviderGateway, extract_text

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "auto"
MADLAD_MODEL = "madlad-400"

# Leading "(ro)" / "(en-US)" language hints and tokenizer tags like <2en>
_LANG_HINT = re.compile(r"^\s*\([^)]+\)\s*")
_TOKENIZER_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")

_TRANSLATED_PATHS = (
    ("output", "translated_text"),
    ("output", "text"),
    ("translated",),
    ("text",),
)


def clean_translation(raw: str) -> str:
    out = _LANG_HINT.sub("", raw or "", count=1)
    out = _TOKENIZER_TAG.sub("", out)
    return _WHITESPACE.sub(" ", out).strip()


class TranslationService:
    """Translates text and records the result for the user."""

    def __init__(self, settings: Settings, gateway: ProviderGateway, store: ConversationStore):
        self.settings = settings
        self.gateway = gateway
        self.store = store

    async def translate(
        self,
        user_id: str,
        text: str,
        target: str,
        source: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Translate ``text`` into ``target``.

        The MADLAD pod is used when MADLAD_RUNPOD_URL is set, otherwise the
        RunPod translate worker.

        Returns:
            {output, translated, raw}

        Raises:
            ConfigurationError: no translation backend configured
            UpstreamProviderError: backend failed
        """
        source = (source or "").strip() or DEFAULT_SOURCE
        if (self.settings.MADLAD_RUNPOD_URL or "").strip():
            output, raw = await self._translate_madlad(text, source, target)
            used_model = model or MADLAD_MODEL
        elif (self.settings.RUNPOD_TRANSLATE_URL or "").strip():
            output, raw = await self._translate_runpod(text, source, target, model)
            used_model = model or MADLAD_MODEL
        else:
            raise ConfigurationError(["MADLAD_RUNPOD_URL", "RUNPOD_TRANSLATE_URL"])

        await self.store.save_translation(
            user_id,
            source_text=text,
            source_lang=source,
            target_lang=target,
            output_text=output,
            model=used_model,
        )
        logger.info(f"Translation stored: user={user_id}, {source}->{target}, chars={len(text)}")
        return {"output": output, "translated": output, "raw": raw}

    async def _translate_madlad(self, text: str, source: str, target: str) -> tuple[str, Any]:
        endpoint = self.settings.MADLAD_RUNPOD_URL.strip().rstrip("/")
        if not re.match(r"^https?://", endpoint, re.IGNORECASE):
            endpoint = f"https://{endpoint}"

        payload = {"text": text, "source": source, "target": target}
        token = (self.settings.MADLAD_API_KEY or "").strip() or None
        try:
            data = await self.gateway.complete(
                endpoint,
                token,
                payload,
                self.settings.RUNPOD_TRANSLATE_TIMEOUT,
                envelope=False,
            )
        except UpstreamProviderError as e:
            # Some pods answer plain text; anything 2xx that is not JSON is the translation
            if e.status < 200 or e.status >= 300:
                raise
            data = {"translation": e.body}

        if isinstance(data, dict):
            raw = data.get("translation") or data.get("output") or data.get("text") or ""
        else:
            raw = data if isinstance(data, str) else json.dumps(data)
        return clean_translation(str(raw)), raw

    async def _translate_runpod(
        self,
        text: str,
        source: str,
        target: str,
        model: Optional[str],
    ) -> tuple[str, Any]:
        self.settings.require("RUNPOD_TRANSLATE_URL", "RUNPOD_TRANSLATE_TOKEN")
        job = {
            "task": "translate",
            "model": model or MADLAD_MODEL,
            "text": text,
            "source_lang": source,
            "target_lang": target,
        }
        data = await self.gateway.complete(
            self.settings.RUNPOD_TRANSLATE_URL.strip(),
            self.settings.RUNPOD_TRANSLATE_TOKEN.strip(),
            job,
            self.settings.RUNPOD_TRANSLATE_TIMEOUT,
        )
        return extract_text(data, _TRANSLATED_PATHS), data
