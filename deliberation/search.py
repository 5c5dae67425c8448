"""Web lookup collaborator: titles, URLs and snippets for a query."""

import html
import logging
import re
from typing import Protocol
from urllib.parse import quote

import httpx

from deliberation.models import SearchResult

logger = logging.getLogger(__name__)

_API_URL = "https://en.wikipedia.org/w/api.php"
_PAGE_URL = "https://en.wikipedia.org/wiki/"
_TAG = re.compile(r"<[^>]+>")
_SNIPPET_CHARS = 200


class WebLookup(Protocol):
    async def search(self, query: str, limit: int = 3) -> list[SearchResult]:
        ...


def clean_snippet(raw: str) -> str:
    text = html.unescape(_TAG.sub("", raw))
    return " ".join(text.split())[:_SNIPPET_CHARS]


class WikipediaLookup:
    """MediaWiki full-text search. Failures are logged and yield no results."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": "deliberation/0.1 (research lookup)"},
        )

    async def search(self, query: str, limit: int = 3) -> list[SearchResult]:
        params = {
            "action": "query",
            "list": "search",
            "srsearch": query,
            "srlimit": str(limit),
            "format": "json",
        }
        try:
            response = await self._client.get(_API_URL, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("Lookup '%s' returned HTTP %d", query, exc.response.status_code)
            return []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Lookup '%s' failed: %s", query, exc)
            return []

        if not isinstance(data, dict):
            logger.warning("Lookup '%s' returned unexpected JSON: %s", query, type(data).__name__)
            return []
        found = data.get("query")
        hits = found.get("search") if isinstance(found, dict) else None
        if not isinstance(hits, list):
            hits = []
        results = [
            SearchResult(
                title=hit["title"],
                url=_PAGE_URL + quote(hit["title"].replace(" ", "_")),
                snippet=clean_snippet(str(hit.get("snippet") or "")),
            )
            for hit in hits
            if isinstance(hit, dict) and isinstance(hit.get("title"), str) and hit["title"]
        ][:limit]
        logger.info("Lookup '%s': %d results", query, len(results))
        return results

    async def aclose(self) -> None:
        await self._client.aclose()


def format_context(results: list[SearchResult]) -> str:
    """Numbered snippet block spliced into a task."""
    return "\n".join(
        f"[{i}] {r.title}: {r.snippet} ({r.url})" for i, r in enumerate(results, 1)
    )
