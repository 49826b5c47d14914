"""Tee a provider SSE stream to the client while accumulating the answer."""
import asyncio
import codecs
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

import anyio

from contextchat.core.tasks import run_in_background

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

CompletionAction = Callable[[str], Awaitable[Any]]


def delta_text(payload: Any) -> str:
    """Content of one streamed frame: choices[0].delta.content, else .message.content."""
    try:
        choice = payload["choices"][0]
    except (KeyError, IndexError, TypeError):
        return ""
    if not isinstance(choice, dict):
        return ""
    for key in ("delta", "message"):
        part = choice.get(key)
        if isinstance(part, dict) and isinstance(part.get("content"), str) and part["content"]:
            return part["content"]
    return ""


class SSEAccumulator:
    """
    Incremental decoder for ``data:`` frames.

    Chunks may split frames (and UTF-8 sequences) anywhere; the partial
    tail is carried over to the next chunk.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._carry = ""
        self.parts: List[str] = []

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def feed(self, chunk: bytes) -> None:
        buffered = (self._carry + self._decoder.decode(chunk)).replace("\r\n", "\n")
        frames = buffered.split("\n\n")
        self._carry = frames.pop()
        for frame in frames:
            self._consume(frame)

    def finish(self) -> None:
        tail = self._carry + self._decoder.decode(b"", final=True)
        self._carry = ""
        if tail.strip():
            self._consume(tail.replace("\r\n", "\n"))

    def _consume(self, frame: str) -> None:
        for line in frame.split("\n"):
            if not line.startswith("data:"):
                continue
            data = line[5:].strip()
            if not data or data == DONE_SENTINEL:
                continue
            try:
                payload = json.loads(data)
            except ValueError:
                # keepalive or comment line
                continue
            content = delta_text(payload)
            if content:
                self.parts.append(content)


class StreamRelay:
    """
    Single-pass transform over an upstream byte stream.

    Every chunk is forwarded unchanged and in order. When the upstream is
    exhausted, fails, or the client goes away, the upstream is closed and
    ``on_complete`` is dispatched exactly once, as a detached background
    task, with the full accumulated text.
    """

    def __init__(self, on_complete: Optional[CompletionAction] = None, label: str = "stream"):
        self.on_complete = on_complete
        self.label = label
        self._accumulator = SSEAccumulator()
        self._dispatched = False
        self.completion_task: Optional[asyncio.Task] = None
        self.error: Optional[BaseException] = None

    @property
    def text(self) -> str:
        return self._accumulator.text

    async def relay(self, upstream: Any) -> AsyncIterator[bytes]:
        """
        Yield upstream chunks to the client.

        Args:
            upstream: UpstreamStream (iter_bytes/aclose) or any async iterable of bytes
        """
        source = upstream.iter_bytes() if hasattr(upstream, "iter_bytes") else upstream
        try:
            async for chunk in source:
                if not chunk:
                    continue
                self._accumulator.feed(chunk)
                yield chunk
        except asyncio.CancelledError:
            logger.info(f"{self.label}: client disconnected, upstream aborted")
            self.error = asyncio.CancelledError()
            raise
        except Exception as e:
            logger.warning(f"{self.label}: upstream stream failed: {e}")
            self.error = e
        finally:
            self._accumulator.finish()
            # Dispatch before any await; the enclosing scope may already be cancelled
            self._dispatch()
            with anyio.CancelScope(shield=True):
                await self._close(upstream)

    async def _close(self, upstream: Any) -> None:
        closer = getattr(upstream, "aclose", None)
        if closer is None:
            return
        try:
            await closer()
        except Exception as e:
            logger.debug(f"{self.label}: ignoring upstream close failure: {e}")

    def _dispatch(self) -> None:
        if self._dispatched or self.on_complete is None:
            return
        self._dispatched = True
        self.completion_task = run_in_background(self.on_complete(self.text), label=self.label)
