"""
Shared pytest fixtures for the chat backend tests.

Provides:
- Temporary SQLite database engine and store
- Settings pointing every provider at fake hosts
- A fake upstream (httpx MockTransport) shared by the RunPod, OpenRouter
  and search clients, recording every request it sees
- Service container, API client and bearer tokens
"""
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Union

import httpx
import jwt
import pytest
from openai import AsyncOpenAI

from contextchat.config import Settings
from contextchat.core.container import build_services
from contextchat.core.tasks import drain_background
from contextchat.database import init_db, make_engine
from contextchat.main import create_app
from contextchat.services.conversation_store import ConversationStore
from contextchat.services.provider import ProviderGateway
from contextchat.services.web import WebAugmenter

JWT_SECRET = "test-secret"
OPENROUTER_BASE = "https://openrouter.test/api/v1"
OPENROUTER_CHAT = f"{OPENROUTER_BASE}/chat/completions"
RUNPOD_CHAT = "https://runpod.test/v2/chat/runsync"
RUNPOD_TRANSLATE = "https://runpod.test/v2/translate/runsync"
SEARXNG = "https://search.test"

Handler = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeUpstream:
    """
    MockTransport handler keyed by URL (scheme://host/path, no query).

    Each route holds a queue of responses; the last one repeats. A queued
    callable (sync or async) is invoked with the request and may raise httpx errors.
    """

    def __init__(self):
        self.routes: Dict[str, List[Handler]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, url: str, *responses: Handler) -> None:
        self.routes[url] = list(responses)

    def calls(self, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if _route_key(r) == url]

    def bodies(self, url: str) -> List[Any]:
        return [json.loads(r.content) for r in self.calls(url)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(_route_key(request))
        if not queue:
            return httpx.Response(404, text="no route")
        handler = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(handler) and not isinstance(handler, httpx.Response):
            return handler(request)
        # Fresh copy so a repeated route never hands out a consumed response
        return httpx.Response(handler.status_code, headers=handler.headers, content=handler.content)


def _route_key(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


def completion_json(content: str, prompt_tokens: int = 120, completion_tokens: int = 40) -> Dict[str, Any]:
    """A minimal OpenAI-shaped chat completion."""
    return {
        "id": "cmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "test-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def sse_body(*pieces: str, done: bool = True) -> bytes:
    """SSE frames carrying each piece as a delta."""
    frames = [
        "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": piece}}]}) + "\n\n"
        for piece in pieces
    ]
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def runpod_output(text: str) -> Dict[str, Any]:
    return {"id": "job-1", "status": "COMPLETED", "output": {"text": text}}


def make_token(sub: str = "user-1", secret: str = JWT_SECRET, expires_in: int = 3600) -> str:
    payload = {
        "sub": sub,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        AUTH_JWT_SECRET=JWT_SECRET,
        DATABASE_URL="sqlite://",
        LOG_LEVEL="WARNING",
        OPENROUTER_API_KEY="or-test-key",
        OPENROUTER_BASE_URL=OPENROUTER_BASE,
        OPENROUTER_MODEL="test/stream-model",
        ROLLUP_MODEL="test/rollup-model",
        RUNPOD_CHAT_URL=RUNPOD_CHAT,
        RUNPOD_CHAT_TOKEN="rp-test-token",
        RUNPOD_TRANSLATE_URL=RUNPOD_TRANSLATE,
        RUNPOD_TRANSLATE_TOKEN="rp-translate-token",
        MADLAD_RUNPOD_URL=None,
        SEARXNG_URL=SEARXNG,
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def engine(tmp_path):
    # File-backed so request handlers and background tasks get separate connections
    engine = make_engine(f"sqlite:///{tmp_path / 'chat.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> ConversationStore:
    return ConversationStore(engine)


@pytest.fixture
async def http_client(upstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        yield client


@pytest.fixture
async def gateway(settings, upstream, http_client):
    openrouter = AsyncOpenAI(
        api_key=settings.OPENROUTER_API_KEY,
        base_url=settings.OPENROUTER_BASE_URL,
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
    )
    gateway = ProviderGateway(settings, http_client=http_client, openrouter=openrouter)
    yield gateway
    await openrouter.close()


@pytest.fixture
def web(settings, http_client) -> WebAugmenter:
    return WebAugmenter(settings.SEARXNG_URL, timeout=settings.SEARXNG_TIMEOUT, http_client=http_client)


@pytest.fixture
def services(settings, engine, gateway, web):
    return build_services(settings, engine=engine, gateway=gateway, web=web)


@pytest.fixture
async def client(services):
    app = create_app(services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    await drain_background()


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token('user-1')}"}


@pytest.fixture
def other_auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token('user-2')}"}
