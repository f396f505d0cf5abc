# -*- coding: utf-8 -*-
"""Web evidence and image lookups for guessed entities.

Serper (Google) when SERPER_API_KEY is set, otherwise DuckDuckGo, which
needs no key. Every function returns plain text / a URL or None; network
failures never propagate.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import httpx
from duckduckgo_search import DDGS

from settings import env_float, env_str

SERPER_SEARCH_URL = "https://google.serper.dev/search"
SERPER_IMAGES_URL = "https://google.serper.dev/images"


def _fix_encoding(value):
    if not isinstance(value, str):
        return value
    try:
        return value.encode("latin-1").decode("utf-8")
    except (UnicodeDecodeError, UnicodeEncodeError):
        return value


def format_serper_results(data: dict) -> Optional[str]:
    lines = []
    kg = data.get("knowledgeGraph") or {}
    if kg:
        lines.append(f"Quick facts: {kg.get('title') or ''} - {kg.get('type') or ''}".strip())
        if kg.get("description"):
            lines.append(str(kg["description"]))
        for key, value in (kg.get("attributes") or {}).items():
            lines.append(f"- {key}: {value}")
    organic = data.get("organic") or []
    if organic:
        lines.append("Search results:")
        for i, r in enumerate(organic[:3], 1):
            lines.append(f"{i}. {r.get('title') or ''}: {r.get('snippet') or ''}")
    return "\n".join(lines) if lines else None


def format_ddg_results(results: list) -> Optional[str]:
    lines = []
    for i, r in enumerate(results, 1):
        title = (_fix_encoding(r.get("title")) or "").strip()
        body = (_fix_encoding(r.get("body")) or "").strip()
        if title and body:
            lines.append(f"{i}. {title}: {body[:200]}")
    if not lines:
        return None
    return "Web search results:\n" + "\n".join(lines)


class SearchService:
    available = True

    def __init__(
        self,
        serper_api_key: Optional[str] = None,
        timeout_sec: float = 12.0,
        region: str = "xa-ar",
        entity_hint: str = "لاعب كرة قدم",
    ):
        self.serper_api_key = serper_api_key
        self.timeout_sec = timeout_sec
        self.region = region
        self.entity_hint = entity_hint

    @property
    def provider(self) -> str:
        return "serper" if self.serper_api_key else "duckduckgo"

    async def _serper(self, url: str, query: str, num: int) -> Optional[dict]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_sec) as client:
                r = await client.post(
                    url,
                    json={"q": query, "gl": "eg", "hl": "ar", "num": num},
                    headers={"X-API-KEY": self.serper_api_key, "Content-Type": "application/json"},
                )
            if r.status_code != 200:
                return None
            return r.json()
        except Exception as exc:
            print(f"[search] serper error: {exc}")
            return None

    def _ddg_text(self, query: str, max_results: int) -> list:
        with DDGS() as ddgs:
            return list(ddgs.text(query, region=self.region, max_results=max_results))

    def _ddg_images(self, query: str, max_results: int) -> list:
        with DDGS() as ddgs:
            return list(ddgs.images(query, region=self.region, max_results=max_results))

    async def _ddg(self, fn, query: str, max_results: int) -> list:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, query, max_results), timeout=self.timeout_sec)
        except Exception as exc:
            print(f"[search] duckduckgo error: {type(exc).__name__}: {str(exc)[:160]}")
            return []

    async def search(self, query: str) -> Optional[str]:
        query = (query or "").strip()
        if not query:
            return None
        if self.serper_api_key:
            data = await self._serper(SERPER_SEARCH_URL, query, 5)
            return format_serper_results(data) if data else None
        return format_ddg_results(await self._ddg(self._ddg_text, query, 4))

    async def lookup_entity_evidence(self, name: str) -> Optional[str]:
        if not (name or "").strip():
            return None
        year = datetime.now(timezone.utc).year
        return await self.search(f"{name} {self.entity_hint} wikipedia position club nationality {year}")

    async def lookup_entity_image(self, name: str) -> Optional[str]:
        if not (name or "").strip():
            return None
        query = f"{name} {self.entity_hint}"
        if self.serper_api_key:
            data = await self._serper(SERPER_IMAGES_URL, query, 6)
            images = (data or {}).get("images") or []
            if images:
                return images[0].get("imageUrl") or images[0].get("thumbnailUrl")
            return None
        images = await self._ddg(self._ddg_images, query, 1)
        if images:
            return images[0].get("image") or images[0].get("thumbnail")
        return None


class NullSearchService:
    """Used when web lookups are disabled."""

    available = False
    provider = "none"

    async def search(self, query: str) -> Optional[str]:
        return None

    async def lookup_entity_evidence(self, name: str) -> Optional[str]:
        return None

    async def lookup_entity_image(self, name: str) -> Optional[str]:
        return None


def build_search_service():
    provider = (env_str("SEARCH_PROVIDER", "auto") or "auto").lower()
    if provider in ("none", "off", "disabled"):
        return NullSearchService()
    timeout = env_float("GAME_EXTERNAL_TIMEOUT_SEC", 12.0, 1.0, 120.0)
    key = env_str("SERPER_API_KEY")
    if provider == "duckduckgo":
        key = None
    return SearchService(serper_api_key=key, timeout_sec=timeout)
