"""
Entity Scanner -- discover, populate, and deep-crawl a site's content.

The scanner owns the collaborators (store, HTTP fetcher, AI classifier,
usage meter) and runs the three phases. Discovery is read-only. Population
and deep crawl write durable progress to the site's sync state: ``SYNCING``
while running, ``COMPLETED`` with a summary message, or ``ERROR`` with the
failure message when an unexpected exception escapes.

Usage:
    from entity_scan.scanner import get_scanner

    scanner = get_scanner()
    result = await scanner.discover("https://example.com")
    await scanner.confirm_types("example", result.content_types)
    stats = await scanner.populate(scanner.registry.get("example"))
    crawl = await scanner.deep_crawl("example", batch_size=50)

CLI:
    python -m entity_scan discover --site example
    python -m entity_scan populate --site example --cap 200
    python -m entity_scan crawl --site example --force
    python -m entity_scan refresh --site example --entity <entity-id>
    python -m entity_scan status --site example
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from entity_scan.classifier import FocusKeywordSuggester, TypeClassifier, merge_ai_suggestions
from entity_scan.config import ScanSettings, get_settings
from entity_scan.crawler import DeepCrawler, PageMetadata
from entity_scan.errors import RecordNotFoundError
from entity_scan.fetcher import HttpFetcher
from entity_scan.metering import OPERATION_REFRESH, JsonUsageLedger, UsageEvent, UsageMeter, UsageResult
from entity_scan.models import (
    SYNC_COMPLETED,
    SYNC_ERROR,
    SYNC_RUNNING,
    ContentTypeDescriptor,
    CrawlResult,
    DiscoveryResult,
    DiscoverySourceRecord,
    EntityTypeRecord,
    PopulateResult,
    RefreshResult,
)
from entity_scan.populator import EntityPopulator, entity_type_from_descriptor
from entity_scan.reconciler import SitemapSignals, finalize_types, reconcile_types
from entity_scan.sitemap import SitemapDocument, SitemapFetcher, parse_sitemap
from entity_scan.sites import SiteConfig, SiteRegistry
from entity_scan.store import EntityQuery, EntityStore, JsonEntityStore
from entity_scan.urls import normalize_site_url
from entity_scan.wordpress_rest import WordPressRestClient

logger = logging.getLogger("entity_scan.scanner")

ResultT = TypeVar("ResultT")
ProgressCallback = Callable[[int, str], Awaitable[None]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _completion_message(error_count: int) -> str:
    if error_count:
        return f"Completed with {error_count} error(s)"
    return "Completed successfully"


class EntityScanner:
    """Runs discovery, population, and deep crawl for registered sites."""

    def __init__(
        self,
        store: Optional[EntityStore] = None,
        http: Optional[HttpFetcher] = None,
        classifier: Optional[TypeClassifier] = None,
        meter: Optional[UsageMeter] = None,
        registry: Optional[SiteRegistry] = None,
        settings: Optional[ScanSettings] = None,
        keywords: Optional[FocusKeywordSuggester] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or JsonEntityStore(self.settings.data_dir / "store")
        self.http = http or HttpFetcher(self.settings)
        self.classifier = classifier if classifier is not None else TypeClassifier(settings=self.settings)
        self.meter = meter or JsonUsageLedger(self.settings.data_dir / "usage" / "ledger.json")
        self.registry = registry or SiteRegistry.from_file(self.settings.sites_file)
        self.keywords = keywords if keywords is not None else FocusKeywordSuggester(settings=self.settings)

    async def close(self) -> None:
        await self.http.close()

    # ------------------------------------------------------------------
    # Discover
    # ------------------------------------------------------------------

    async def _collect_sitemap_signals(self, document: SitemapDocument) -> SitemapSignals:
        parsed = parse_sitemap(document.content)
        signals = SitemapSignals()

        if parsed.is_index:
            sitemaps = SitemapFetcher(self.http, self.settings)
            signals.groups = parsed.groups
            for token, urls in parsed.groups.items():
                signals.counts[token] = 0
                for url in urls:
                    signals.counts[token] += await sitemaps.count_entries(url)
                    signals.sample_urls.append(url)
        else:
            signals.groups = {"posts": [document.url]}
            signals.counts = {"posts": len(parsed.entries)}
            signals.sample_urls = [entry.loc for entry in parsed.entries]

        logger.info(
            "Sitemap %s lists %d content types (%s)",
            document.url, len(signals.groups), ", ".join(signals.groups) or "none",
        )
        return signals

    async def _track_usage(self, event: UsageEvent) -> UsageResult:
        try:
            return await self.meter.track(event)
        except Exception as exc:
            logger.warning("Usage metering failed for account %s: %s", event.account_id, exc)
            return UsageResult(success=False)

    async def discover(
        self,
        site_base_url: str,
        platform_hint: str = "wordpress",
        *,
        site_id: Optional[str] = None,
        account_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> DiscoveryResult:
        """
        Infer the content types of a site.

        Reads the REST type registry (WordPress only) and the sitemap,
        reconciles both, and, when either source answered and an AI client
        is configured, enriches names and descriptions. Nothing is persisted
        except one metered usage unit per AI call.

        Parameters
        ----------
        site_base_url : str
            Site root URL.
        platform_hint : str
            ``"wordpress"`` enables REST introspection; other platforms are
            discovered from the sitemap alone.
        site_id, account_id, user_id : str, optional
            Attribution for usage metering.

        Returns
        -------
        DiscoveryResult
        """
        base = normalize_site_url(site_base_url)
        locale = self.settings.locale
        sources = DiscoverySourceRecord()

        rest_types = None
        if (platform_hint or "").lower() == "wordpress":
            rest_types = await WordPressRestClient(base, self.http, self.settings).fetch_types()
        else:
            logger.info("Platform %r has no REST introspection, using sitemap only", platform_hint)
        sources.rest_api_available = rest_types is not None

        document = await SitemapFetcher(self.http, self.settings).find(base)
        signals = None
        if document is not None:
            sources.sitemap_found = True
            sources.sitemap_url = document.url
            sources.sitemap_flavor = document.flavor
            signals = await self._collect_sitemap_signals(document)

        types = reconcile_types(rest_types, signals, locale)

        credits_used = None
        if (document is not None or rest_types is not None) and self.classifier.is_available:
            suggestions = await self.classifier.classify(signals, rest_types)
            usage = await self._track_usage(UsageEvent(
                account_id=account_id,
                user_id=user_id,
                site_id=site_id,
                metadata={"siteUrl": base, "typesFound": len(types)},
            ))
            credits_used = usage.total_used
            if suggestions is not None:
                types, changed = merge_ai_suggestions(types, suggestions, signals)
                types = finalize_types(types, locale)
                sources.ai_enrichment_applied = True
                logger.debug("AI enrichment changed types: %s", changed)

        logger.info(
            "Discovered %d content types on %s (sitemap=%s, rest=%s, ai=%s)",
            len(types), base, sources.sitemap_found, sources.rest_api_available,
            sources.ai_enrichment_applied,
        )
        return DiscoveryResult(content_types=types, sources=sources, credits_used=credits_used)

    async def confirm_types(
        self,
        site_id: str,
        types: Sequence[ContentTypeDescriptor],
    ) -> List[EntityTypeRecord]:
        """Persist the caller's selection of content types as enabled."""
        saved = []
        for descriptor in types:
            record = entity_type_from_descriptor(site_id, descriptor)
            existing = await self.store.get_entity_type(site_id, record.slug)
            if existing is not None and not record.sitemaps:
                record.sitemaps = list(existing.sitemaps)
            saved.append(await self.store.upsert_entity_type(record))
        logger.info("Confirmed %d content types for %s", len(saved), site_id)
        return saved

    # ------------------------------------------------------------------
    # Tracked phases
    # ------------------------------------------------------------------

    async def _flush_partial(self, site_id: str) -> None:
        try:
            await self.store.flush()
        except Exception as exc:
            logger.error("Could not save partial results for %s: %s", site_id, exc)

    async def _run_tracked(
        self,
        site_id: str,
        phase: str,
        start_message: str,
        runner: Callable[[ProgressCallback], Awaitable[ResultT]],
        error_count: Callable[[ResultT], int],
        done_message: Optional[str] = None,
    ) -> ResultT:
        await self.store.update_sync_state(
            site_id,
            status=SYNC_RUNNING,
            phase=phase,
            progress=0,
            message=start_message,
            error=None,
        )

        async def report(percent: int, message: str) -> None:
            await self.store.update_sync_state(site_id, progress=percent, message=message)

        try:
            result = await runner(report)
            await self.store.flush()
        except Exception as exc:
            logger.error("%s failed for %s: %s", phase, site_id, exc, exc_info=True)
            await self._flush_partial(site_id)
            await self.store.update_sync_state(
                site_id,
                status=SYNC_ERROR,
                message=f"{phase} failed: {exc}",
                error=str(exc),
            )
            raise

        errors = error_count(result)
        await self.store.update_sync_state(
            site_id,
            status=SYNC_COMPLETED,
            progress=100,
            message=done_message if done_message and not errors else _completion_message(errors),
            last_sync_at=_now_iso(),
        )
        return result

    async def populate(
        self,
        site: SiteConfig,
        confirmed_types: Optional[Sequence[ContentTypeDescriptor]] = None,
        item_cap_per_type: Optional[int] = None,
    ) -> PopulateResult:
        """
        Enumerate and upsert the items of the confirmed types.

        When *confirmed_types* is omitted, the site's enabled stored types
        are used.
        """
        if confirmed_types is None:
            records = await self.store.list_entity_types(site.site_id, enabled_only=True)
            confirmed_types = [record.to_descriptor() for record in records]

        populator = EntityPopulator(self.store, self.http, self.settings)
        return await self._run_tracked(
            site.site_id,
            "populate",
            "Starting entity population...",
            lambda report: populator.populate(
                site.site_id,
                site.base_url,
                list(confirmed_types),
                item_cap_per_type=item_cap_per_type,
                use_rest=site.is_wordpress,
                on_progress=report,
            ),
            lambda result: result.errors,
        )

    async def deep_crawl(
        self,
        site_id: str,
        batch_size: Optional[int] = None,
        force_rescan: bool = False,
    ) -> CrawlResult:
        """Fetch live pages of stored entities and merge their SEO metadata."""
        crawler = DeepCrawler(self.store, self.http, self.settings)
        return await self._run_tracked(
            site_id,
            "crawl",
            "Starting deep crawl...",
            lambda report: crawler.crawl(
                site_id,
                batch_size=batch_size,
                force_rescan=force_rescan,
                on_progress=report,
            ),
            lambda result: result.failed,
            done_message="Deep crawl complete",
        )

    async def refresh_entity(
        self,
        site_id: str,
        entity_id: str,
        *,
        account_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RefreshResult:
        """
        Re-crawl one entity and, when AI is available, suggest its focus keyword.

        One usage unit is metered only when a keyword was produced. The
        site's sync state is left alone.
        """
        entity = await self.store.get_entity(entity_id)
        if entity is None or entity.site_id != site_id:
            raise RecordNotFoundError(f"Entity {entity_id} not found for site {site_id}")

        usage = UsageResult(success=False)

        async def suggest(page: PageMetadata) -> Optional[str]:
            nonlocal usage
            if not self.keywords.is_available:
                return None
            keyword = await self.keywords.suggest(
                page.primary_h1 or page.og_title or page.title,
                page.og_description or page.description,
            )
            if keyword:
                usage = await self._track_usage(UsageEvent(
                    account_id=account_id,
                    user_id=user_id,
                    site_id=site_id,
                    operation=OPERATION_REFRESH,
                    description=f"Extracted focus keyword for {entity.url}",
                    metadata={"websiteUrl": entity.url, "focusKeyword": keyword, "entityId": entity.id},
                ))
            return keyword

        crawler = DeepCrawler(self.store, self.http, self.settings)
        updated, keyword = await crawler.refresh_entity(entity, focus_keyword_for=suggest)
        return RefreshResult(entity=updated, focus_keyword=keyword, credits_used=usage.total_used)

    async def sync_status(self, site_id: str) -> Dict[str, Any]:
        """Sync state of a site plus entity and entity-type counts."""
        state = await self.store.get_sync_state(site_id)
        status = state.to_dict()
        status["counts"] = {
            "entities": await self.store.count_entities(EntityQuery(site_id=site_id)),
            "entityTypes": len(await self.store.list_entity_types(site_id)),
        }
        return status


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

_scanner: Optional[EntityScanner] = None


def get_scanner() -> EntityScanner:
    """Get or create the singleton EntityScanner instance."""
    global _scanner
    if _scanner is None:
        _scanner = EntityScanner()
    return _scanner
