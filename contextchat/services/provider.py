"""Uniform call contract to the upstream model providers.

Two provider shapes exist:
- RunPod serverless workers ("runsync"), which expect ``{"input": {...}}``
- OpenAI-compatible endpoints (RunPod vLLM ``/v1/chat/completions`` and
  OpenRouter), which take the chat body directly

RunPod calls go through httpx; OpenRouter calls go through the OpenAI SDK
pointed at OpenRouter's base URL.
"""
import logging
import re
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import anyio
import httpx
import openai
from openai import AsyncOpenAI

from contextchat.config import Settings
from contextchat.errors import ProviderTimeoutError, UpstreamProviderError

logger = logging.getLogger(__name__)

LogHook = Callable[[Dict[str, Any]], None]

LOG_BODY_CHARS = 800
NETWORK_ERROR_STATUS = 599

_OPENAI_CHAT_PATH = re.compile(r"/v1/chat/completions/?$")
_MISSING_FIELD = re.compile(r"missing|required", re.IGNORECASE)


def log_provider_call(info: Dict[str, Any]) -> None:
    """Default logging hook: success at INFO, failure at WARNING."""
    if info.get("error") is not None:
        logger.warning(
            f"Provider call failed: url={info.get('url')} status={info.get('status')} "
            f"error={info.get('error')}"
        )
    else:
        logger.info(
            f"Provider call: url={info.get('url')} status={info.get('status')} "
            f"body={str(info.get('body') or '')[:200]!r}"
        )


# Ordered extraction strategies for assistant text; first non-empty wins
_TEXT_PATHS = (
    ("output", "text"),
    ("output", "choices", 0, "message", "content"),
    ("output", "choices", 0, "text"),
    ("choices", 0, "message", "content"),
    ("text",),
)


def _dig(data: Any, path: tuple) -> Any:
    node = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, list) or len(node) <= key:
                return None
        elif not isinstance(node, dict):
            return None
        node = node[key] if isinstance(key, int) else node.get(key)
    return node


def extract_text(data: Any, paths: tuple = _TEXT_PATHS) -> str:
    """Return the first non-empty string found along ``paths``, else ""."""
    for path in paths:
        value = _dig(data, path)
        if isinstance(value, str) and value:
            return value
    return ""


@dataclass
class ProviderResult:
    data: Any
    text: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class UpstreamStream:
    """An open server-sent-events response from the streaming provider."""

    def __init__(self, response: Any, exit_stack: AsyncExitStack, url: str):
        self._response = response
        self._exit_stack = exit_stack
        self.url = url

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        async for chunk in self._response.iter_bytes():
            yield chunk

    async def aclose(self) -> None:
        await self._exit_stack.aclose()


class ProviderGateway:
    """
    Calls the model providers and reports failures as structured errors.

    Endpoint and credential resolution comes from Settings; the HTTP and
    OpenAI clients can be injected (tests pass mock transports).
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        openrouter: Optional[AsyncOpenAI] = None,
        log_hook: Optional[LogHook] = None,
    ):
        self.settings = settings
        self._http = http_client
        self._openrouter = openrouter
        self.log_hook = log_hook or log_provider_call

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    @property
    def openrouter(self) -> AsyncOpenAI:
        if self._openrouter is None:
            self.settings.require("OPENROUTER_API_KEY")
            self._openrouter = AsyncOpenAI(
                api_key=self.settings.OPENROUTER_API_KEY,
                base_url=self.settings.OPENROUTER_BASE_URL,
                max_retries=0,
                default_headers={
                    "HTTP-Referer": self.settings.OPENROUTER_SITE_URL,
                    "X-Title": self.settings.OPENROUTER_APP_NAME,
                },
            )
        return self._openrouter

    @property
    def openrouter_url(self) -> str:
        return f"{self.settings.OPENROUTER_BASE_URL.rstrip('/')}/chat/completions"

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
        if self._openrouter is not None:
            await self._openrouter.close()

    def _log(self, **info: Any) -> None:
        try:
            self.log_hook(info)
        except Exception:
            logger.exception("Provider logging hook failed")

    async def complete(
        self,
        url: str,
        token: Optional[str],
        input: Any,
        timeout: float,
        envelope: bool = True,
    ) -> Any:
        """
        POST a single non-streaming request and return the decoded JSON.

        Args:
            url: Provider endpoint
            token: Bearer token, sent when present
            input: Request payload
            timeout: Deadline in seconds
            envelope: Wrap the payload as ``{"input": ...}`` (RunPod runsync)

        Returns:
            Decoded provider response ({} for an empty body)

        Raises:
            ProviderTimeoutError: deadline exceeded (status 0, "aborted")
            UpstreamProviderError: network failure, non-2xx status, or malformed JSON
        """
        body = {"input": input} if envelope else input
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            # httpx times each phase separately; fail_after bounds the whole call
            with anyio.fail_after(timeout):
                response = await self.http.post(url, json=body, headers=headers, timeout=timeout)
        except (httpx.TimeoutException, TimeoutError) as e:
            self._log(url=url, status=0, error=f"timeout after {timeout}s")
            raise ProviderTimeoutError(url, timeout) from e
        except httpx.HTTPError as e:
            self._log(url=url, status=NETWORK_ERROR_STATUS, error=str(e))
            raise UpstreamProviderError(NETWORK_ERROR_STATUS, str(e), url) from e

        text = response.text
        if not response.is_success:
            self._log(url=url, status=response.status_code, body=text[:LOG_BODY_CHARS], error=text[:200] or "no body")
            raise UpstreamProviderError(response.status_code, text, url)

        self._log(url=url, status=response.status_code, body=text[:LOG_BODY_CHARS])
        if not text.strip():
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamProviderError(
                response.status_code, text, url, message="Malformed JSON from upstream"
            ) from e

    async def chat(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> ProviderResult:
        """
        Non-streaming chat against the RunPod chat worker.

        The body shape is chosen from the URL (OpenAI-style path or runsync
        envelope). A 400-class "missing required field" rejection is retried
        once with the other shape before the failure is surfaced.
        """
        self.settings.require("RUNPOD_CHAT_URL", "RUNPOD_CHAT_TOKEN")
        url = self.settings.RUNPOD_CHAT_URL.strip()
        token = self.settings.RUNPOD_CHAT_TOKEN.strip()
        timeout = self.settings.RUNPOD_CHAT_TIMEOUT

        payload = {
            "model": model or self.settings.CHAT_MODEL,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": False,
        }
        envelope = not _OPENAI_CHAT_PATH.search(url)

        try:
            data = await self.complete(url, token, payload, timeout, envelope=envelope)
        except UpstreamProviderError as e:
            if not _is_missing_field(e):
                raise
            logger.warning(
                f"Provider rejected {'envelope' if envelope else 'direct'} body "
                f"({e.status}); retrying with alternate shape"
            )
            data = await self.complete(url, token, payload, timeout, envelope=not envelope)

        return ProviderResult(data=data, text=extract_text(data))

    async def complete_json(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> ProviderResult:
        """Non-streaming OpenRouter completion, with token usage when reported."""
        url = self.openrouter_url
        timeout = self.settings.OPENROUTER_TIMEOUT
        try:
            completion = await self.openrouter.chat.completions.create(
                model=model or self.settings.OPENROUTER_MODEL,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=False,
                timeout=timeout,
            )
        except openai.OpenAIError as e:
            raise self._translate_openai_error(e, url, timeout) from e

        data = completion.model_dump()
        usage = data.get("usage") or {}
        self._log(url=url, status=200, body=extract_text(data)[:LOG_BODY_CHARS])
        return ProviderResult(
            data=data,
            text=extract_text(data),
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
        )

    async def stream_complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
        reasoning: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> UpstreamStream:
        """
        Open a streaming completion on OpenRouter.

        Fails before any byte is returned when the provider answers non-OK,
        so callers can still reply with a JSON error.

        Returns:
            UpstreamStream over the raw SSE bytes; the caller must aclose() it
        """
        url = self.openrouter_url
        timeout = self.settings.OPENROUTER_TIMEOUT
        extra_body = {"reasoning": reasoning} if reasoning else None

        stack = AsyncExitStack()
        try:
            response = await stack.enter_async_context(
                self.openrouter.chat.completions.with_streaming_response.create(
                    model=model or self.settings.OPENROUTER_MODEL,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    stream=True,
                    extra_body=extra_body,
                    timeout=timeout,
                )
            )
        except openai.OpenAIError as e:
            await stack.aclose()
            raise self._translate_openai_error(e, url, timeout) from e

        self._log(url=url, status=response.status_code, body="<stream>")
        return UpstreamStream(response, stack, url)

    def _translate_openai_error(self, e: Exception, url: str, timeout: float) -> UpstreamProviderError:
        if isinstance(e, openai.APITimeoutError):
            self._log(url=url, status=0, error=f"timeout after {timeout}s")
            return ProviderTimeoutError(url, timeout)
        if isinstance(e, openai.APIStatusError):
            body = _response_text(e.response)
            self._log(url=url, status=e.status_code, body=body[:LOG_BODY_CHARS], error=body[:200] or str(e))
            return UpstreamProviderError(e.status_code, body, url)
        if isinstance(e, openai.APIConnectionError):
            self._log(url=url, status=NETWORK_ERROR_STATUS, error=str(e))
            return UpstreamProviderError(NETWORK_ERROR_STATUS, str(e), url)
        self._log(url=url, status=None, error=str(e))
        return UpstreamProviderError(NETWORK_ERROR_STATUS, str(e), url, message="Malformed upstream response")


def _is_missing_field(error: UpstreamProviderError) -> bool:
    return error.status in (400, 422) and bool(_MISSING_FIELD.search(error.body))


def _response_text(response: httpx.Response) -> str:
    try:
        return response.text
    except httpx.ResponseNotRead:
        return ""
