"""
Deep crawl of persisted entities.

Fetches each entity's live page, extracts its SEO metadata (title, meta
description, Open Graph and Twitter cards, canonical link, JSON-LD), and
merges it into the stored record without overwriting data a person or the
REST API already provided.

Entities are selected in batches. Under a normal run the selection is every
entity without SEO data; with ``force_rescan`` it is every entity last
updated before the run started. Enriched entities leave the selection, so
the batch cursor only advances past entities that stay in it (failed or
skipped ones).

A single entity can also be refreshed on demand. A refresh trusts the live
page over stored values: the title comes from the page's only H1, then
og:title, then the cleaned ``<title>``, and an optional focus keyword is
added to the snapshot.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html.parser import HTMLParser
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from entity_scan.config import LOCALE, ScanSettings, get_settings
from entity_scan.errors import EntityNotCrawlableError, SourceUnavailableError
from entity_scan.fetcher import HttpFetcher
from entity_scan.lookups import HOME_PAGE_TITLES
from entity_scan.models import CrawlResult, EntityRecord, SeoMetadataSnapshot
from entity_scan.store import EntityQuery, EntityStore
from entity_scan.urls import clean_page_title, humanize_slug, is_generic_title

logger = logging.getLogger("entity_scan.crawler")

ProgressCallback = Callable[[int, str], Awaitable[None]]
FocusKeywordSource = Callable[["PageMetadata"], Awaitable[Optional[str]]]

ENRICHED = "enriched"
FAILED = "failed"
SKIPPED = "skipped"

# meta name/property -> PageMetadata attribute
_META_FIELDS = {
    "description": "description",
    "keywords": "keywords",
    "author": "author",
    "og:title": "og_title",
    "og:description": "og_description",
    "og:image": "og_image",
    "og:url": "og_url",
    "og:type": "og_type",
    "og:site_name": "og_site_name",
    "og:locale": "og_locale",
    "twitter:card": "twitter_card",
    "twitter:title": "twitter_title",
    "twitter:description": "twitter_description",
    "twitter:image": "twitter_image",
    "article:published_time": "published_time",
    "article:modified_time": "modified_time",
}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


@dataclass
class PageMetadata:
    """Raw metadata read from one HTML page."""

    title: Optional[str] = None
    description: Optional[str] = None
    keywords: Optional[str] = None
    author: Optional[str] = None
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_image: Optional[str] = None
    og_url: Optional[str] = None
    og_type: Optional[str] = None
    og_site_name: Optional[str] = None
    og_locale: Optional[str] = None
    twitter_card: Optional[str] = None
    twitter_title: Optional[str] = None
    twitter_description: Optional[str] = None
    twitter_image: Optional[str] = None
    published_time: Optional[str] = None
    modified_time: Optional[str] = None
    canonical_url: Optional[str] = None
    schema: List[Any] = field(default_factory=list)
    h1s: List[str] = field(default_factory=list)
    word_count: int = 0

    @property
    def primary_h1(self) -> Optional[str]:
        """
        The page heading, when there is exactly one H1 and it is not a
        generic label. Several H1s usually mean a listing page.
        """
        if len(self.h1s) == 1 and not is_generic_title(self.h1s[0]):
            return self.h1s[0]
        return None

    def to_snapshot(self, focus_keyword: Optional[str] = None) -> SeoMetadataSnapshot:
        return SeoMetadataSnapshot(
            title=self.og_title or self.title,
            description=self.og_description or self.description,
            canonical_url=self.canonical_url,
            og_title=self.og_title,
            og_description=self.og_description,
            og_image=self.og_image,
            og_url=self.og_url,
            og_type=self.og_type,
            og_site_name=self.og_site_name,
            og_locale=self.og_locale,
            twitter_card=self.twitter_card,
            twitter_title=self.twitter_title,
            twitter_description=self.twitter_description,
            twitter_image=self.twitter_image,
            keywords=self.keywords,
            focus_keyword=focus_keyword,
            schema=list(self.schema),
        )


class PageMetadataParser(HTMLParser):
    """
    Collects ``<title>``, meta tags, the canonical link, JSON-LD blocks,
    H1 headings, and the number of words in the body.

    Only the first occurrence of each meta field is kept. Malformed JSON-LD
    blocks are skipped.
    """

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.metadata = PageMetadata()
        self._in_title = False
        self._title_parts: List[str] = []
        self._svg_depth = 0
        self._in_jsonld = False
        self._jsonld_data: List[str] = []
        self._raw_depth = 0
        self._h1_depth = 0
        self._h1_parts: List[str] = []
        self._in_body = False

    def handle_starttag(self, tag: str, attrs: List[Tuple[str, Optional[str]]]) -> None:
        tag_lower = tag.lower()
        attrs_dict = {k.lower(): (v or "") for k, v in attrs}

        if tag_lower == "svg":
            self._svg_depth += 1

        # <title> inside inline SVG is an accessibility label, not the page title
        elif tag_lower == "title" and self._svg_depth == 0 and self.metadata.title is None:
            self._in_title = True
            self._title_parts = []

        elif tag_lower == "meta":
            key = (attrs_dict.get("property") or attrs_dict.get("name") or "").strip().lower()
            attr = _META_FIELDS.get(key)
            content = attrs_dict.get("content", "").strip()
            if attr and content and getattr(self.metadata, attr) is None:
                setattr(self.metadata, attr, content)

        elif tag_lower == "link":
            rel = attrs_dict.get("rel", "").lower().split()
            href = attrs_dict.get("href", "").strip()
            if "canonical" in rel and href and self.metadata.canonical_url is None:
                self.metadata.canonical_url = href

        elif tag_lower == "body":
            self._in_body = True

        elif tag_lower == "h1":
            self._h1_depth += 1
            if self._h1_depth == 1:
                self._h1_parts = []

        elif tag_lower in ("script", "style"):
            self._raw_depth += 1
            if tag_lower == "script" and attrs_dict.get("type", "").strip().lower() == "application/ld+json":
                self._in_jsonld = True
                self._jsonld_data = []

    def handle_startendtag(self, tag: str, attrs: List[Tuple[str, Optional[str]]]) -> None:
        if tag.lower() in ("svg", "title", "script", "style", "h1"):
            return
        self.handle_starttag(tag, attrs)

    def handle_endtag(self, tag: str) -> None:
        tag_lower = tag.lower()

        if tag_lower == "svg" and self._svg_depth:
            self._svg_depth -= 1

        elif tag_lower == "title" and self._in_title:
            text = " ".join("".join(self._title_parts).split())
            self.metadata.title = text or None
            self._in_title = False

        elif tag_lower == "h1" and self._h1_depth:
            self._h1_depth -= 1
            if not self._h1_depth:
                text = " ".join("".join(self._h1_parts).split())
                if text:
                    self.metadata.h1s.append(text)

        elif tag_lower in ("script", "style") and self._raw_depth:
            self._raw_depth -= 1
            if tag_lower == "script" and self._in_jsonld:
                raw = "".join(self._jsonld_data).strip()
                if raw:
                    try:
                        self.metadata.schema.append(json.loads(raw))
                    except ValueError:
                        logger.debug("Skipping malformed JSON-LD block (%d chars)", len(raw))
                self._in_jsonld = False
                self._jsonld_data = []

    def handle_data(self, data: str) -> None:
        if self._in_jsonld:
            self._jsonld_data.append(data)
            return
        if self._in_title:
            self._title_parts.append(data)
            return
        if self._h1_depth:
            self._h1_parts.append(data)
        if self._in_body and not self._raw_depth:
            self.metadata.word_count += len(data.split())


def extract_page_metadata(html_text: str) -> PageMetadata:
    """Parse *html_text* and return whatever metadata it carries."""
    parser = PageMetadataParser()
    parser.feed(html_text or "")
    parser.close()
    return parser.metadata


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def merge_crawl(entity: EntityRecord, page: PageMetadata, crawled_at: Optional[str] = None) -> Dict[str, Any]:
    """
    Changes to apply to *entity* after crawling its page.

    The SEO snapshot is replaced whole, except for a focus keyword set by an
    earlier refresh. The featured image keeps its stored value, then
    og:image, then twitter:image. Title and excerpt are only filled when
    they are empty (or, for the title, still the raw slug).
    """
    crawled_at = crawled_at or datetime.now(timezone.utc).isoformat()
    snapshot = page.to_snapshot(focus_keyword=(entity.seo_data or {}).get("focusKeyword"))
    snapshot.crawled_at = crawled_at

    metadata = dict(entity.metadata or {})
    metadata["needsDeepCrawl"] = False
    metadata["lastCrawledAt"] = crawled_at
    for key, value in (
        ("author", page.author),
        ("publishDate", page.published_time),
        ("modifiedDate", page.modified_time),
    ):
        if value:
            metadata[key] = value

    changes: Dict[str, Any] = {
        "seo_data": snapshot.to_dict(),
        "metadata": metadata,
        "featured_image": entity.featured_image or page.og_image or page.twitter_image,
    }

    if page.title and (not entity.title or entity.title == entity.slug):
        cleaned = clean_page_title(page.title)
        if cleaned:
            changes["title"] = cleaned

    if page.description and not entity.excerpt:
        changes["excerpt"] = page.description

    return changes


def refresh_title(entity: EntityRecord, page: PageMetadata, locale: str = LOCALE) -> str:
    """
    Title chosen by a refresh.

    The page's single H1, then og:title, then the cleaned ``<title>``, each
    skipped when it is a generic label. A site root with none of them gets
    the localized home-page title; anything else keeps its stored title.
    """
    for candidate in (page.primary_h1, page.og_title, clean_page_title(page.title)):
        if not is_generic_title(candidate):
            return candidate.strip()
    if not entity.slug or urlparse(entity.url or "").path in ("", "/"):
        return HOME_PAGE_TITLES.get(locale, HOME_PAGE_TITLES["en"])
    return entity.title or humanize_slug(entity.slug)


def merge_refresh(
    entity: EntityRecord,
    page: PageMetadata,
    focus_keyword: Optional[str] = None,
    crawled_at: Optional[str] = None,
    locale: str = LOCALE,
) -> Dict[str, Any]:
    """
    Changes to apply to *entity* after an on-demand refresh.

    Unlike a batch crawl, fresh page values win: excerpt and featured image
    come from the page when it has them. Stored values are only kept where
    the page is silent.
    """
    crawled_at = crawled_at or datetime.now(timezone.utc).isoformat()
    snapshot = page.to_snapshot(focus_keyword=focus_keyword)
    snapshot.crawled_at = crawled_at

    metadata = dict(entity.metadata or {})
    metadata["needsDeepCrawl"] = False
    metadata["lastCrawledAt"] = crawled_at
    metadata["wordCount"] = page.word_count
    metadata["h1Issue"] = page.primary_h1 is None
    for key, value in (
        ("author", page.author),
        ("publishDate", page.published_time),
        ("modifiedDate", page.modified_time),
    ):
        if value:
            metadata[key] = value

    return {
        "title": refresh_title(entity, page, locale),
        "excerpt": page.description or page.og_description or entity.excerpt,
        "featured_image": page.og_image or page.twitter_image or entity.featured_image,
        "seo_data": snapshot.to_dict(),
        "metadata": metadata,
    }


# ---------------------------------------------------------------------------
# Crawler
# ---------------------------------------------------------------------------


class DeepCrawler:
    """Batch crawler that enriches stored entities with live-page metadata."""

    def __init__(self, store: EntityStore, http: HttpFetcher, settings: Optional[ScanSettings] = None):
        self.store = store
        self.http = http
        self.settings = settings or get_settings()

    async def fetch_metadata(self, url: str) -> Optional[PageMetadata]:
        """Metadata of the page at *url*; None when it cannot be fetched."""
        result = await self.http.get(
            url,
            timeout=self.settings.page_timeout,
            headers={"Accept": "text/html,application/xhtml+xml"},
        )
        if result is None:
            return None
        if not result.ok:
            logger.info("Page %s returned HTTP %d", url, result.status)
            return None
        return extract_page_metadata(result.text)

    async def crawl_entity(self, entity: EntityRecord) -> str:
        """Crawl one entity; returns ``enriched``, ``failed``, or ``skipped``."""
        if not entity.url:
            return SKIPPED

        page = await self.fetch_metadata(entity.url)
        if page is None:
            return FAILED

        try:
            await self.store.update_entity(entity.id, merge_crawl(entity, page))
        except Exception as exc:
            logger.error("Failed to save crawl data for %s: %s", entity.url, exc)
            return FAILED
        return ENRICHED

    async def refresh_entity(
        self,
        entity: EntityRecord,
        focus_keyword_for: Optional[FocusKeywordSource] = None,
    ) -> Tuple[EntityRecord, Optional[str]]:
        """
        Re-crawl one entity and store what its page says now.

        Parameters
        ----------
        entity : EntityRecord
            The stored entity to refresh.
        focus_keyword_for : callable, optional
            ``await focus_keyword_for(page)`` returning a keyword or None.

        Returns
        -------
        tuple of (EntityRecord, str or None)
            The updated entity and the focus keyword stored with it.

        Raises
        ------
        EntityNotCrawlableError
            When the entity has no URL.
        SourceUnavailableError
            When the page cannot be fetched.
        """
        if not entity.url:
            raise EntityNotCrawlableError(f"Entity {entity.id} has no URL to crawl")

        logger.info("Refreshing entity %s from %s", entity.id, entity.url)
        page = await self.fetch_metadata(entity.url)
        if page is None:
            raise SourceUnavailableError(f"Failed to crawl {entity.url}", url=entity.url)

        focus_keyword = None
        if focus_keyword_for is not None:
            focus_keyword = await focus_keyword_for(page)

        changes = merge_refresh(entity, page, focus_keyword, locale=self.settings.locale)
        updated = await self.store.update_entity(entity.id, changes)
        await self.store.flush()
        logger.debug(
            "Refreshed %s: title=%r h1s=%d keyword=%r", entity.url, updated.title, len(page.h1s), focus_keyword,
        )
        return updated, focus_keyword

    async def crawl(
        self,
        site_id: str,
        batch_size: Optional[int] = None,
        force_rescan: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CrawlResult:
        """
        Crawl every selected entity of *site_id* once.

        Parameters
        ----------
        site_id : str
            Site whose entities are crawled.
        batch_size : int, optional
            Entities fetched from the store per query.
        force_rescan : bool
            Re-crawl entities that already have SEO data.
        on_progress : callable, optional
            ``await on_progress(percent, message)`` after each entity.

        Returns
        -------
        CrawlResult
        """
        batch_size = max(1, batch_size or self.settings.crawl_batch_size)
        started_at = datetime.now(timezone.utc).isoformat()
        query = EntityQuery(
            site_id=site_id,
            missing_seo_only=not force_rescan,
            updated_before=started_at if force_rescan else None,
        )
        order_by = "updated_at" if force_rescan else "created_at"

        total = await self.store.count_entities(query)
        result = CrawlResult(total=total)
        logger.info("Deep crawl of %s: %d entities selected (force=%s)", site_id, total, force_rescan)

        cursor = 0
        processed = 0
        while processed < total:
            batch = await self.store.find_entities(query, skip=cursor, take=batch_size, order_by=order_by)
            if not batch:
                break

            for entity in batch:
                if processed >= total:
                    break
                processed += 1

                outcome = await self.crawl_entity(entity)
                if outcome == SKIPPED:
                    result.skipped += 1
                    cursor += 1
                else:
                    result.crawled += 1
                    if outcome == ENRICHED:
                        result.enriched += 1
                    else:
                        result.failed += 1
                        cursor += 1

                if on_progress is not None:
                    title = (entity.title or entity.slug or "")[:30]
                    await on_progress((processed * 100) // total, f"Crawling ({processed}/{total}): {title}...")

                if outcome != SKIPPED and processed < total and self.settings.crawl_delay > 0:
                    await asyncio.sleep(self.settings.crawl_delay)

            await self.store.flush()

        logger.info(
            "Deep crawl of %s finished: %d crawled, %d enriched, %d failed, %d skipped",
            site_id, result.crawled, result.enriched, result.failed, result.skipped,
        )
        return result
