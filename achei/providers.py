"""Web search provider used by enrichment and the Maps-style business search."""

import asyncio
import json
import logging
import math
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from achei.cleaning import is_generic_result, parse_search_result

logger = logging.getLogger("achei_leads")

FIRECRAWL_SEARCH_URL = "https://api.firecrawl.dev/v1/search"


class ProviderResponseError(RuntimeError):
    """Raised when an upstream provider returns an error or a non-JSON response.

    ``payload`` carries extra fields that are merged into the JSON body sent
    back to the caller (``details``, ``companies``, ``required``...).
    """

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": str(self)}
        body.update(self.payload)
        return body


def _redact_api_key(text: str) -> str:
    if not text:
        return ""
    return re.sub(r"((?:api_key|token|key)=)[^&\s]+", r"\1***", text, flags=re.IGNORECASE)


class SearchProvider(ABC):
    name: str = "base"

    @abstractmethod
    async def search(self, session: aiohttp.ClientSession, query: str, limit: int = 10, **options: Any) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def _safe_json(self, resp: aiohttp.ClientResponse) -> Dict[str, Any]:
        content_type = resp.headers.get("Content-Type", "")
        text = await resp.text()
        if resp.status >= 400:
            excerpt = _redact_api_key(text).replace("\n", " ")[:200]
            payload: Dict[str, Any] = {}
            try:
                payload = json.loads(text)
                message = payload.get("message") or payload.get("error") or excerpt
            except json.JSONDecodeError:
                message = excerpt
            raise ProviderResponseError(
                f"{self.name} HTTP {resp.status}: {message}",
                status_code=resp.status,
                payload={"details": excerpt},
            )
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            excerpt = _redact_api_key(text).replace("\n", " ")[:200]
            if content_type:
                raise ProviderResponseError(
                    f"{self.name} resposta nao-JSON (content-type={content_type}): {excerpt}",
                    status_code=502,
                )
            raise ProviderResponseError(f"{self.name} resposta nao-JSON: {excerpt}", status_code=502)


class FirecrawlProvider(SearchProvider):
    name = "firecrawl"

    def __init__(self, api_key: str, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url or os.getenv("FIRECRAWL_BASE_URL", FIRECRAWL_SEARCH_URL)

    async def search(
        self,
        session: aiohttp.ClientSession,
        query: str,
        limit: int = 10,
        formats: Iterable[str] = ("markdown", "links"),
        lang: Optional[str] = None,
        country: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "query": query,
            "limit": limit,
            "scrapeOptions": {"formats": list(formats)},
        }
        if lang:
            payload["lang"] = lang
        if country:
            payload["country"] = country
        async with session.post(self.base_url, headers=headers, json=payload) as resp:
            data = await self._safe_json(resp)
        results = data.get("data") if isinstance(data, dict) else None
        return [item for item in results or [] if isinstance(item, dict)]


def select_provider(name: str = "firecrawl") -> SearchProvider:
    name = (name or "").lower().strip()
    if name == "firecrawl":
        key = os.getenv("FIRECRAWL_API_KEY")
        if not key:
            raise ProviderResponseError("Firecrawl não está configurado", status_code=500)
        return FirecrawlProvider(key)
    raise RuntimeError("Search provider invalido (use 'firecrawl')")


async def search_businesses(
    provider: SearchProvider,
    query: str,
    limit: int = 20,
    timeout: int = 30,
) -> Dict[str, Any]:
    """Maps-style business search: two web searches parsed into listings."""
    queries = [f"{query} telefone contato endereço", f"{query} site oficial"]
    per_query = max(1, math.ceil(limit / 2))
    companies: List[Dict[str, Any]] = []
    seen = set()
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        for search_query in queries:
            try:
                results = await provider.search(
                    session,
                    search_query,
                    limit=per_query,
                    formats=("markdown",),
                    lang="pt",
                    country="BR",
                )
            except (ProviderResponseError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning(
                    "Busca de empresas falhou",
                    extra={"event_type": "search", "query": search_query, "error": str(exc)[:200]},
                )
                continue
            for result in results:
                company = parse_search_result(result)
                if not company or not company["name"] or is_generic_result(company["name"]):
                    continue
                key = company["name"].lower()
                if key in seen:
                    continue
                seen.add(key)
                companies.append(company)

    logger.info("Busca de empresas concluida", extra={"event_type": "search", "total": len(companies)})
    return {"success": True, "companies": companies[:limit], "total": len(companies), "query": query}
