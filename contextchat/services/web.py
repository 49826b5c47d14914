"""Web search snippets for grounding answers (SearxNG backend)."""
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from contextchat.services.text import normalize

logger = logging.getLogger(__name__)

MAX_QUERY_CHARS = 200


class WebSource(BaseModel):
    """Search result injected into a prompt. Never persisted."""
    id: str
    title: str
    url: str
    snippet: str


class WebAugmenter:
    """
    Fetches search snippets from a SearxNG-compatible backend.

    Any failure (network error, timeout, non-OK status, malformed JSON)
    yields an empty result list; augmentation never fails a request.
    """

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        timeout: float = 8.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint_url = (endpoint_url or "").strip().rstrip("/") or None
        self.timeout = timeout
        self._http = http_client

    @property
    def enabled(self) -> bool:
        return self.endpoint_url is not None

    async def search(
        self,
        query: str,
        max_results: int,
        endpoint_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[WebSource]:
        """
        Search the backend and return up to max_results normalized sources.

        Args:
            query: User text (truncated before sending)
            max_results: Upper bound on returned sources
            endpoint_url: Override for the configured backend URL
            timeout: Override for the configured timeout in seconds

        Returns:
            Sources with ids "S1".."Sn"; empty when no backend is configured
        """
        base = (endpoint_url or "").strip().rstrip("/") or self.endpoint_url
        if not base or max_results <= 0:
            return []

        params = {
            "q": query.strip()[:MAX_QUERY_CHARS],
            "format": "json",
            "language": "en",
            "categories": "general",
        }
        try:
            data = await self._fetch(f"{base}/search", params, timeout or self.timeout)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Web search failed ({base}): {e}")
            return []

        return self._normalize(data, max_results)

    async def _fetch(self, url: str, params: Dict[str, str], timeout: float) -> Any:
        headers = {"accept": "application/json"}
        if self._http is not None:
            response = await self._http.get(url, params=params, headers=headers, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(url, params=params, headers=headers)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _normalize(data: Any, max_results: int) -> List[WebSource]:
        raw_items = data.get("results") if isinstance(data, dict) else None
        if not isinstance(raw_items, list):
            return []

        sources: List[WebSource] = []
        seen_urls = set()
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            url = str(item.get("url") or item.get("link") or "").strip()
            title = normalize(item.get("title"))
            snippet = normalize(item.get("content") or item.get("snippet"))
            if not url or not (title or snippet) or url in seen_urls:
                continue
            seen_urls.add(url)
            sources.append(
                WebSource(id=f"S{len(sources) + 1}", title=title, url=url, snippet=snippet)
            )
            if len(sources) >= max_results:
                break
        return sources
