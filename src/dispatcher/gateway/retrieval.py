"""Context retrieval (RAG search) and plain web fetches."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from dispatcher.errors import GatewayError

logger = logging.getLogger(__name__)

SNIPPET_MAX_CHARS = 1000


class Retriever(Protocol):
    def retrieve(self, query: str, k: int) -> list[str]: ...


class HttpRetriever:
    """Client for a RAG service exposing ``POST /search {query, k}``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def retrieve(self, query: str, k: int) -> list[str]:
        if k <= 0:
            return []
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(f"{self.base_url}/search", json={"query": query, "k": k})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayError(f"Retrieval failed: {e}") from e
        return _snippets(data)[:k]


def _snippets(data: Any) -> list[str]:
    items = data.get("results", []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        return []
    snippets: list[str] = []
    for item in items:
        if isinstance(item, str):
            text = item
        elif isinstance(item, dict):
            text = item.get("snippet") or item.get("text") or item.get("content") or ""
        else:
            continue
        if text:
            snippets.append(str(text)[:SNIPPET_MAX_CHARS])
    return snippets


class WebFetcher:
    """GET a URL and return its body, or None on any failure."""

    def __init__(self, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> None:
        self.timeout = timeout
        self._transport = transport

    def fetch(self, url: str) -> str | None:
        try:
            with httpx.Client(
                timeout=self.timeout, transport=self._transport, follow_redirects=True
            ) as client:
                response = client.get(url)
                response.raise_for_status()
                return response.text
        except httpx.HTTPError as e:
            logger.warning("Fetch of %s failed: %s", url, e)
            return None
