"""Process-wide service handles, built once and injected into request handlers."""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from contextchat.config import Settings
from contextchat.database import init_db, make_engine
from contextchat.services.chat_service import ChatService
from contextchat.services.conversation_store import ConversationStore
from contextchat.services.prompt import PromptAssembler
from contextchat.services.provider import ProviderGateway
from contextchat.services.rollup import RollupEngine
from contextchat.services.translation import TranslationService
from contextchat.services.web import WebAugmenter


@dataclass
class Services:
    settings: Settings
    store: ConversationStore
    gateway: ProviderGateway
    web: WebAugmenter
    assembler: PromptAssembler
    rollups: RollupEngine
    chat: ChatService
    translation: TranslationService

    async def aclose(self) -> None:
        await self.gateway.aclose()


def build_services(
    settings: Settings,
    engine: Optional[Engine] = None,
    gateway: Optional[ProviderGateway] = None,
    web: Optional[WebAugmenter] = None,
) -> Services:
    """
    Wire the pipeline components together.

    Any component may be passed in pre-built (tests inject gateways with
    mock transports and in-memory engines).
    """
    if engine is None:
        engine = make_engine(settings.DATABASE_URL)
        init_db(engine)

    store = ConversationStore(engine)
    gateway = gateway or ProviderGateway(settings)
    web = web or WebAugmenter(settings.SEARXNG_URL, timeout=settings.SEARXNG_TIMEOUT)
    assembler = PromptAssembler(web)
    rollups = RollupEngine(store, gateway, model=settings.ROLLUP_MODEL)
    return Services(
        settings=settings,
        store=store,
        gateway=gateway,
        web=web,
        assembler=assembler,
        rollups=rollups,
        chat=ChatService(store, gateway, assembler, rollups),
        translation=TranslationService(settings, gateway, store),
    )
