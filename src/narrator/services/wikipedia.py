"""Wikipedia topic outline and short extracts used to ground narration."""

from __future__ import annotations

import asyncio
import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ..config import Settings
from ..resilience.circuit_breaker import CircuitBreakerRegistry
from ..resilience.rate_limiter import RateLimiter, RateLimitPolicy
from ..resilience.timeouts import TimeoutConfig

logger = logging.getLogger(__name__)

SUMMARY_URL = "https://en.wikipedia.org/api/rest_v1/page/summary/{title}"
ACTION_API_URL = "https://en.wikipedia.org/w/api.php"

MAX_SECTIONS = 15
MAX_EXTRACT_SECTIONS = 10
EXTRACT_SENTENCES = 2
SKIPPED_SECTIONS = frozenset(
    {"see also", "references", "external links", "notes", "bibliography", "further reading"}
)

# Enrichment is optional: one short attempt, no retries
WIKIPEDIA_TIMEOUT = TimeoutConfig(timeout=2.0, retries=0)

_TAG = re.compile(r"<[^>]+>")
_CITATION = re.compile(r"\[\d+\]")
_WHITESPACE = re.compile(r"\s+")
_SENTENCE_SPLIT = re.compile(r"(?<=\.)\s+")


@dataclass(frozen=True)
class WikipediaSection:
    title: str
    level: int
    index: int


@dataclass(frozen=True)
class WikipediaData:
    found: bool
    page_title: Optional[str] = None
    page_url: Optional[str] = None
    sections: list[WikipediaSection] = field(default_factory=list)
    extracts: dict[str, str] = field(default_factory=dict)


NOT_FOUND = WikipediaData(found=False)


def extract_sentences(markup: str, max_sentences: int = EXTRACT_SENTENCES) -> str:
    """Plain text of the first ``max_sentences`` sentences in an HTML fragment."""

    text = html.unescape(_TAG.sub(" ", markup))
    text = _CITATION.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()
    if not text:
        return ""
    sentences = _SENTENCE_SPLIT.split(text)
    extracted = " ".join(sentences[:max_sentences]).strip()
    return extracted if extracted.endswith(".") else f"{extracted}."


def parse_sections(payload: dict[str, Any]) -> list[WikipediaSection]:
    raw_sections = (payload.get("parse") or {}).get("sections") or []
    sections: list[WikipediaSection] = []
    for raw in raw_sections:
        title = html.unescape(_TAG.sub("", str(raw.get("line", "")))).strip()
        if not title or title.lower() in SKIPPED_SECTIONS:
            continue
        try:
            sections.append(
                WikipediaSection(title=title, level=int(raw.get("level", 2)), index=int(raw["index"]))
            )
        except (KeyError, TypeError, ValueError):
            continue
        if len(sections) >= MAX_SECTIONS:
            break
    return sections


class WikipediaService:
    """Looks up an attraction's article; every failure degrades to ``NOT_FOUND``."""

    def __init__(
        self,
        settings: Settings,
        breakers: CircuitBreakerRegistry,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._enabled = settings.enable_wikipedia_integration
        self._breakers = breakers
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={
                "User-Agent": settings.wikipedia_user_agent,
                "Api-User-Agent": settings.wikipedia_user_agent,
            },
            timeout=httpx.Timeout(5.0),
        )
        self._budget = RateLimiter(
            RateLimitPolicy(
                "wikipedia",
                window_seconds=3600,
                max_requests=settings.wikipedia_requests_per_hour,
                key_prefix="wikipedia:",
            )
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def enrich(self, attraction_name: str) -> WikipediaData:
        if not self._enabled:
            return NOT_FOUND
        try:
            page = await self._find_page(attraction_name)
            if page is None:
                return NOT_FOUND
            title, url = page
            sections = await self._fetch_sections(title)
            if not sections:
                return NOT_FOUND
            extracts = await self._fetch_extracts(title, sections)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Wikipedia enrichment failed for %r: %s", attraction_name, exc)
            return NOT_FOUND

        logger.info(
            "Wikipedia enrichment for %r: %d sections, %d extracts",
            attraction_name,
            len(sections),
            len(extracts),
        )
        return WikipediaData(
            found=True, page_title=title, page_url=url, sections=sections, extracts=extracts
        )

    def _take_budget(self) -> bool:
        result = self._budget.check_limit("global")
        if not result.allowed:
            logger.warning("Wikipedia hourly budget exhausted; skipping lookup")
        return result.allowed

    async def _get_json(self, url: str, params: Optional[dict[str, Any]] = None) -> Optional[dict[str, Any]]:
        if not self._take_budget():
            return None

        async def _request() -> httpx.Response:
            response = await self._client.get(url, params=params)
            # Server errors count against the breaker, 4xx answers do not
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        response = await self._breakers.guard_external(
            _request, name="wikipedia lookup", timeout=WIKIPEDIA_TIMEOUT
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, dict) else None

    async def _find_page(self, attraction_name: str) -> Optional[tuple[str, str]]:
        term = re.sub(r"[,.]", "", attraction_name).strip()
        if not term:
            return None
        data = await self._get_json(SUMMARY_URL.format(title=quote(term.replace(" ", "_"), safe="")))
        if not data:
            logger.info("No Wikipedia page for %r", term)
            return None
        if data.get("type") != "standard":
            logger.info("Wikipedia page for %r is %s, not an article", term, data.get("type"))
            return None
        title = data.get("title") or term
        url = ((data.get("content_urls") or {}).get("desktop") or {}).get("page")
        return title, url or f"https://en.wikipedia.org/wiki/{quote(title.replace(' ', '_'))}"

    async def _fetch_sections(self, title: str) -> list[WikipediaSection]:
        data = await self._get_json(
            ACTION_API_URL,
            params={"action": "parse", "page": title, "prop": "sections", "format": "json"},
        )
        if not data or "error" in data:
            return []
        return parse_sections(data)

    async def _fetch_extracts(
        self, title: str, sections: list[WikipediaSection]
    ) -> dict[str, str]:
        async def _one(section: WikipediaSection) -> Optional[tuple[str, str]]:
            try:
                data = await self._get_json(
                    ACTION_API_URL,
                    params={
                        "action": "parse",
                        "page": title,
                        "section": section.index,
                        "prop": "text",
                        "format": "json",
                    },
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("Skipping extract for section %r: %s", section.title, exc)
                return None
            markup = ((data or {}).get("parse") or {}).get("text") or {}
            if isinstance(markup, dict):
                markup = markup.get("*", "")
            text = extract_sentences(str(markup)) if markup else ""
            return (section.title, text) if text else None

        results = await asyncio.gather(*(_one(section) for section in sections[:MAX_EXTRACT_SECTIONS]))
        return {item[0]: item[1] for item in results if item}

    def budget_stats(self) -> dict[str, Any]:
        return self._budget.stats()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
