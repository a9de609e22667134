"""
Entity population.

For every confirmed content type, enumerate its items through the REST API
and fall back to the type's sub-sitemaps when REST yields nothing. Each item
is upserted: matched by external id when it has one, otherwise by
``(site, type, slug)``, then updated field by field or inserted.

A failure on one item is counted and logged; the run always continues.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from entity_scan.config import ScanSettings, get_settings
from entity_scan.fetcher import HttpFetcher
from entity_scan.models import (
    ContentTypeDescriptor,
    DiscoveredItem,
    EntityRecord,
    EntityTypeRecord,
    PopulateResult,
    TypeStats,
)
from entity_scan.sitemap import SitemapFetcher, SitemapUrlEntry
from entity_scan.store import EntityStore
from entity_scan.urls import extract_slug, humanize_slug, is_archive_page, parse_timestamp
from entity_scan.wordpress_rest import WordPressRestClient

logger = logging.getLogger("entity_scan.populator")

ProgressCallback = Callable[[int, str], Awaitable[None]]

CREATED = "created"
UPDATED = "updated"

# Types whose single-segment URLs are legitimate items, not archives
ARCHIVE_FILTER_EXEMPT = frozenset({"pages"})


# ---------------------------------------------------------------------------
# Item building and merging
# ---------------------------------------------------------------------------


def item_from_sitemap(entry: SitemapUrlEntry) -> Optional[DiscoveredItem]:
    """Build a DiscoveredItem from a sitemap ``<url>``; None for a site root."""
    slug = extract_slug(entry.loc)
    if not slug:
        return None
    metadata: Dict[str, Any] = {"source": "sitemap", "needsDeepCrawl": True}
    title = entry.image_title
    if not title:
        title = humanize_slug(slug)
        metadata["titleFromSlug"] = True
    lastmod = parse_timestamp(entry.lastmod)
    return DiscoveredItem(
        source_url=entry.loc,
        slug=slug,
        title=title,
        published_at=lastmod,
        modified_at=lastmod,
        featured_image=entry.image_loc,
        metadata=metadata,
    )


def merge_item(existing: EntityRecord, item: DiscoveredItem) -> Dict[str, Any]:
    """
    Changes to apply when *item* matches *existing*.

    Incoming values win, except that a null never replaces a stored value
    and a title derived from the slug never replaces a stored title.
    """
    title = item.title
    if item.metadata.get("titleFromSlug") and existing.title:
        title = existing.title

    metadata = dict(existing.metadata)
    metadata.update({k: v for k, v in item.metadata.items() if k != "needsDeepCrawl"})
    if not item.metadata.get("titleFromSlug"):
        metadata.pop("titleFromSlug", None)
    metadata.setdefault("needsDeepCrawl", not existing.has_seo_data)
    if item.external_id:
        metadata["externalId"] = item.external_id

    changes: Dict[str, Any] = {
        "url": item.source_url,
        "title": title,
        "excerpt": item.excerpt if item.excerpt is not None else existing.excerpt,
        "featured_image": item.featured_image or existing.featured_image,
        "published_at": item.published_at or existing.published_at,
        "modified_at": item.modified_at or existing.modified_at,
        "metadata": metadata,
    }
    if item.external_id and not existing.external_id:
        changes["external_id"] = item.external_id
    return changes


def new_record(site_id: str, entity_type_id: str, item: DiscoveredItem) -> EntityRecord:
    metadata = dict(item.metadata)
    metadata["needsDeepCrawl"] = True
    if item.external_id:
        metadata["externalId"] = item.external_id
    return EntityRecord(
        site_id=site_id,
        entity_type_id=entity_type_id,
        slug=item.slug,
        title=item.title,
        url=item.source_url,
        excerpt=item.excerpt,
        featured_image=item.featured_image,
        published_at=item.published_at,
        modified_at=item.modified_at,
        external_id=item.external_id,
        status="PUBLISHED",
        metadata=metadata,
    )


def entity_type_from_descriptor(site_id: str, descriptor: ContentTypeDescriptor) -> EntityTypeRecord:
    return EntityTypeRecord(
        site_id=site_id,
        slug=descriptor.slug,
        name=descriptor.display_name,
        localized_name=descriptor.localized_name,
        api_endpoint=descriptor.rest_endpoint or descriptor.slug,
        description=descriptor.description,
        is_core=descriptor.is_core,
        is_enabled=True,
        sort_order=0 if descriptor.is_core else 10,
        sitemaps=list(descriptor.source_sitemap_urls),
    )


# ---------------------------------------------------------------------------
# Populator
# ---------------------------------------------------------------------------


class EntityPopulator:
    """Enumerates and upserts the items of confirmed content types."""

    def __init__(self, store: EntityStore, http: HttpFetcher, settings: Optional[ScanSettings] = None):
        self.store = store
        self.http = http
        self.settings = settings or get_settings()

    async def ensure_entity_type(self, site_id: str, descriptor: ContentTypeDescriptor) -> EntityTypeRecord:
        """Stored type for *descriptor*, created on first use."""
        existing = await self.store.get_entity_type(site_id, descriptor.slug)
        if existing is not None:
            if descriptor.source_sitemap_urls and not existing.sitemaps:
                existing.sitemaps = list(descriptor.source_sitemap_urls)
                existing = await self.store.upsert_entity_type(existing)
            return existing
        logger.info("Registering content type %r for site %s", descriptor.slug, site_id)
        return await self.store.upsert_entity_type(entity_type_from_descriptor(site_id, descriptor))

    async def upsert_item(self, site_id: str, entity_type_id: str, item: DiscoveredItem) -> str:
        """
        Insert or update one item.

        Returns
        -------
        str
            ``"created"`` or ``"updated"``.

        Raises
        ------
        PersistenceError
            When the store rejects the write.
        """
        existing = None
        if item.external_id:
            existing = await self.store.find_entity_by_external_id(site_id, item.external_id)
        if existing is None:
            candidate = await self.store.find_entity_by_slug(site_id, entity_type_id, item.slug)
            # A slug match that belongs to another REST item is not ours to claim
            if candidate is not None and (
                item.external_id is None or candidate.external_id in (None, item.external_id)
            ):
                existing = candidate

        if existing is not None:
            await self.store.update_entity(existing.id, merge_item(existing, item))
            return UPDATED

        await self.store.create_entity(new_record(site_id, entity_type_id, item))
        return CREATED

    async def collect_rest_items(
        self,
        rest: WordPressRestClient,
        endpoint: str,
        cap: Optional[int] = None,
    ) -> List[DiscoveredItem]:
        """Page through ``/wp/v2/{endpoint}`` until the last page or the cap."""
        items: List[DiscoveredItem] = []
        if cap is not None and cap <= 0:
            return items
        page = 1
        while True:
            result = await rest.list_items(endpoint, page=page, per_page=self.settings.rest_per_page)
            items.extend(result.items)
            if cap is not None and len(items) >= cap:
                return items[:cap]
            if not result.items or page >= result.total_pages:
                return items
            page += 1

    async def collect_sitemap_items(
        self,
        sitemaps: SitemapFetcher,
        descriptor: ContentTypeDescriptor,
        sitemap_urls: Sequence[str],
        cap: Optional[int] = None,
    ) -> List[DiscoveredItem]:
        """Items listed in the type's sub-sitemaps, minus archive pages."""
        items: List[DiscoveredItem] = []
        if cap is not None and cap <= 0:
            return items
        seen = set()
        apply_filter = descriptor.slug not in ARCHIVE_FILTER_EXEMPT
        for sitemap_url in sitemap_urls:
            for entry in await sitemaps.fetch_entries(sitemap_url):
                if apply_filter and is_archive_page(entry.loc, descriptor.slug):
                    logger.debug("Skipping archive page %s for %s", entry.loc, descriptor.slug)
                    continue
                item = item_from_sitemap(entry)
                if item is None or item.slug in seen:
                    continue
                seen.add(item.slug)
                items.append(item)
                if len(items) == cap:
                    return items
        return items

    async def populate(
        self,
        site_id: str,
        site_url: str,
        types: Sequence[ContentTypeDescriptor],
        item_cap_per_type: Optional[int] = None,
        use_rest: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PopulateResult:
        """
        Enumerate and upsert the items of each type, in the given order.

        Parameters
        ----------
        site_id : str
            Site whose entities are written.
        site_url : str
            Base URL used for REST and as the owner of the sitemaps.
        types : sequence of ContentTypeDescriptor
            Confirmed types; ``source_sitemap_urls`` drive the fallback.
        item_cap_per_type : int, optional
            Maximum items per type.
        use_rest : bool
            False for platforms without the WordPress REST API.
        on_progress : callable, optional
            ``await on_progress(percent, message)`` at each checkpoint.

        Returns
        -------
        PopulateResult
        """
        result = PopulateResult()
        rest = WordPressRestClient(site_url, self.http, self.settings) if use_rest else None
        sitemaps = SitemapFetcher(self.http, self.settings)
        total = len(types)

        for index, descriptor in enumerate(types):
            if on_progress is not None and total:
                await on_progress(10 + (index * 80) // total, f"Populating {descriptor.display_name}...")

            entity_type = await self.ensure_entity_type(site_id, descriptor)
            stats = result.per_type.setdefault(descriptor.slug, TypeStats())

            items: List[DiscoveredItem] = []
            if rest is not None:
                items = await self.collect_rest_items(
                    rest, descriptor.rest_endpoint or descriptor.slug, item_cap_per_type
                )
            if not items:
                sitemap_urls = descriptor.source_sitemap_urls or entity_type.sitemaps
                items = await self.collect_sitemap_items(sitemaps, descriptor, sitemap_urls, item_cap_per_type)

            logger.info("Found %d items for %s on %s", len(items), descriptor.slug, site_id)

            for item in items:
                try:
                    outcome = await self.upsert_item(site_id, entity_type.id, item)
                except Exception as exc:
                    result.errors += 1
                    logger.error("Failed to save %s (%s): %s", item.source_url, descriptor.slug, exc)
                    continue
                if outcome == CREATED:
                    stats.created += 1
                    result.created += 1
                else:
                    stats.updated += 1
                    result.updated += 1

            await self.store.flush()

        if on_progress is not None:
            await on_progress(90, "Finalizing...")

        logger.info(
            "Populate finished for %s: %d created, %d updated, %d errors",
            site_id, result.created, result.updated, result.errors,
        )
        return result
