"""
Tests for the deep crawler: metadata extraction, merge rules, and batch
selection.
"""

from unittest.mock import AsyncMock

import pytest

try:
    from entity_scan.crawler import (
        DeepCrawler,
        PageMetadata,
        extract_page_metadata,
        merge_crawl,
        merge_refresh,
        refresh_title,
    )
    from entity_scan.errors import EntityNotCrawlableError, SourceUnavailableError
    from entity_scan.models import EntityRecord
    HAS_CRAWLER = True
except ImportError:
    HAS_CRAWLER = False

pytestmark = pytest.mark.skipif(not HAS_CRAWLER, reason="crawler module not available")

SITE = "https://acme.test"

SAMPLE_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>Web Design | Acme Studio</title>
  <meta name="description" content="We build fast websites.">
  <meta name="description" content="Second description">
  <meta property="og:title" content="Web Design Services">
  <meta property="og:image" content="https://acme.test/og.jpg">
  <meta name="twitter:image" content="https://acme.test/tw.jpg">
  <meta name="author" content="Dana">
  <meta property="article:published_time" content="2024-01-01T08:00:00+00:00">
  <link rel="canonical" href="https://acme.test/services/web-design/">
  <script type="application/ld+json">{"@type": "Service", "name": "Web Design"}</script>
  <script type="application/ld+json">{not valid json</script>
</head>
<body>
  <svg><title>Menu icon</title></svg>
  <h1>Web Design</h1>
</body>
</html>
"""


def _page(title, description=None):
    meta = f'<meta name="description" content="{description}">' if description else ""
    return f"<html><head><title>{title} | Acme</title>{meta}</head><body></body></html>"


def _entity(slug, index=0, **overrides):
    data = {
        "site_id": "acme",
        "entity_type_id": "t1",
        "slug": slug,
        "title": slug,
        "url": f"{SITE}/{slug}/",
        "created_at": f"2024-01-01T00:00:{index:02d}+00:00",
    }
    data.update(overrides)
    return EntityRecord(**data)


# ===================================================================
# Extraction
# ===================================================================


class TestExtractPageMetadata:

    @pytest.mark.unit
    def test_extracts_all_fields(self):
        page = extract_page_metadata(SAMPLE_PAGE)

        assert page.title == "Web Design | Acme Studio"
        assert page.description == "We build fast websites."
        assert page.og_title == "Web Design Services"
        assert page.og_image == "https://acme.test/og.jpg"
        assert page.twitter_image == "https://acme.test/tw.jpg"
        assert page.canonical_url == "https://acme.test/services/web-design/"
        assert page.author == "Dana"
        assert page.published_time == "2024-01-01T08:00:00+00:00"
        assert page.schema == [{"@type": "Service", "name": "Web Design"}]

    @pytest.mark.unit
    def test_svg_title_is_not_page_title(self):
        page = extract_page_metadata("<html><body><svg><title>Icon</title></svg></body></html>")
        assert page.title is None

    @pytest.mark.unit
    def test_empty_document(self):
        page = extract_page_metadata("")
        assert page.title is None
        assert page.schema == []

    @pytest.mark.unit
    def test_snapshot_prefers_open_graph(self):
        snapshot = extract_page_metadata(SAMPLE_PAGE).to_snapshot().to_dict()
        assert snapshot["title"] == "Web Design Services"
        assert snapshot["description"] == "We build fast websites."
        assert snapshot["canonicalUrl"] == "https://acme.test/services/web-design/"

    @pytest.mark.unit
    def test_open_graph_identity_fields(self):
        page = extract_page_metadata(
            "<head>"
            '<meta property="og:url" content="https://acme.test/a/">'
            '<meta property="og:type" content="article">'
            '<meta property="og:site_name" content="Acme">'
            '<meta property="og:locale" content="he_IL">'
            '<meta name="twitter:card" content="summary_large_image">'
            "</head>"
        )

        snapshot = page.to_snapshot(focus_keyword="web design").to_dict()

        assert snapshot["ogUrl"] == "https://acme.test/a/"
        assert snapshot["ogType"] == "article"
        assert snapshot["ogSiteName"] == "Acme"
        assert snapshot["ogLocale"] == "he_IL"
        assert snapshot["twitterCard"] == "summary_large_image"
        assert snapshot["focusKeyword"] == "web design"

    @pytest.mark.unit
    def test_headings_and_word_count(self):
        page = extract_page_metadata(
            "<html><head><title>T</title><style>p { color: red }</style></head>"
            "<body><h1>  Web <em>Design</em> </h1>"
            "<p>We build fast websites.</p>"
            "<script>var ignored = 1;</script></body></html>"
        )

        assert page.h1s == ["Web Design"]
        assert page.primary_h1 == "Web Design"
        assert page.word_count == 6

    @pytest.mark.unit
    @pytest.mark.parametrize("h1s", [[], ["Services", "Blog"], ["Home"], ["עמוד הבית"]])
    def test_no_primary_heading(self, h1s):
        assert PageMetadata(h1s=h1s).primary_h1 is None


# ===================================================================
# Merge
# ===================================================================


class TestMergeCrawl:

    @pytest.mark.unit
    def test_fills_empty_fields(self):
        entity = _entity("web-design")
        page = extract_page_metadata(SAMPLE_PAGE)

        changes = merge_crawl(entity, page, crawled_at="2024-05-01T00:00:00+00:00")

        assert changes["title"] == "Web Design"
        assert changes["excerpt"] == "We build fast websites."
        assert changes["featured_image"] == "https://acme.test/og.jpg"
        assert changes["seo_data"]["crawledAt"] == "2024-05-01T00:00:00+00:00"
        assert changes["metadata"]["needsDeepCrawl"] is False
        assert changes["metadata"]["lastCrawledAt"] == "2024-05-01T00:00:00+00:00"
        assert changes["metadata"]["author"] == "Dana"
        assert changes["metadata"]["publishDate"] == "2024-01-01T08:00:00+00:00"

    @pytest.mark.unit
    def test_never_clobbers_existing_values(self):
        entity = _entity(
            "web-design",
            title="Custom Title",
            excerpt="Hand-written excerpt",
            featured_image=f"{SITE}/hero.jpg",
        )
        page = extract_page_metadata(SAMPLE_PAGE)

        changes = merge_crawl(entity, page)

        assert "title" not in changes
        assert "excerpt" not in changes
        assert changes["featured_image"] == f"{SITE}/hero.jpg"

    @pytest.mark.unit
    def test_twitter_image_fallback(self):
        entity = _entity("a")
        page = PageMetadata(twitter_image=f"{SITE}/tw.jpg")
        assert merge_crawl(entity, page)["featured_image"] == f"{SITE}/tw.jpg"

    @pytest.mark.unit
    def test_keeps_focus_keyword_from_refresh(self):
        entity = _entity("a", seo_data={"title": "Old", "focusKeyword": "web design"})
        page = extract_page_metadata(SAMPLE_PAGE)

        changes = merge_crawl(entity, page)

        assert changes["seo_data"]["title"] == "Web Design Services"
        assert changes["seo_data"]["focusKeyword"] == "web design"


class TestRefreshTitle:

    @pytest.mark.unit
    def test_heading_wins(self):
        page = PageMetadata(title="Page | Acme", og_title="OG Title", h1s=["Heading"])
        assert refresh_title(_entity("a"), page) == "Heading"

    @pytest.mark.unit
    def test_open_graph_when_heading_is_ambiguous(self):
        page = PageMetadata(title="Page | Acme", og_title="OG Title", h1s=["One", "Two"])
        assert refresh_title(_entity("a"), page) == "OG Title"

    @pytest.mark.unit
    def test_cleaned_page_title_last(self):
        page = PageMetadata(title="Pricing - Plans | Acme", og_title="Home")
        assert refresh_title(_entity("a"), page) == "Pricing"

    @pytest.mark.unit
    def test_site_root_gets_localized_home_title(self):
        root = _entity("", url=f"{SITE}/", title="")
        page = PageMetadata(title="Home", h1s=["Home"])

        assert refresh_title(root, page, "he") == "עמוד הבית"
        assert refresh_title(root, page, "en") == "Home"
        assert refresh_title(root, page, "fr") == "Home"

    @pytest.mark.unit
    def test_inner_page_keeps_stored_title(self):
        entity = _entity("about", title="About Us")
        assert refresh_title(entity, PageMetadata(title="Menu")) == "About Us"


class TestMergeRefresh:

    @pytest.mark.unit
    def test_page_values_win(self):
        entity = _entity(
            "web-design",
            title="Old Title",
            excerpt="Old excerpt",
            featured_image=f"{SITE}/old.jpg",
            metadata={"needsDeepCrawl": True, "source": "sitemap"},
        )
        page = extract_page_metadata(SAMPLE_PAGE)

        changes = merge_refresh(entity, page, "web design", crawled_at="2024-05-01T00:00:00+00:00")

        assert changes["title"] == "Web Design"
        assert changes["excerpt"] == "We build fast websites."
        assert changes["featured_image"] == "https://acme.test/og.jpg"
        assert changes["seo_data"]["focusKeyword"] == "web design"
        assert changes["seo_data"]["crawledAt"] == "2024-05-01T00:00:00+00:00"
        metadata = changes["metadata"]
        assert metadata["source"] == "sitemap"
        assert metadata["needsDeepCrawl"] is False
        assert metadata["h1Issue"] is False
        assert metadata["wordCount"] == page.word_count
        assert metadata["author"] == "Dana"

    @pytest.mark.unit
    def test_stored_values_kept_where_page_is_silent(self):
        entity = _entity("a", excerpt="Stored", featured_image=f"{SITE}/hero.jpg")

        changes = merge_refresh(entity, PageMetadata(title="A | Acme", h1s=["A", "B"]))

        assert changes["excerpt"] == "Stored"
        assert changes["featured_image"] == f"{SITE}/hero.jpg"
        assert changes["metadata"]["h1Issue"] is True
        assert changes["seo_data"]["focusKeyword"] is None


# ===================================================================
# Crawl
# ===================================================================


class TestDeepCrawl:

    @pytest.fixture
    def crawler(self, memory_store, fake_http, settings):
        return DeepCrawler(memory_store, fake_http, settings)

    async def _seed(self, store, http, slugs, fail=()):
        for index, slug in enumerate(slugs):
            await store.create_entity(_entity(slug, index))
            if slug in fail:
                http.add(f"{SITE}/{slug}/", (500, "error"))
            else:
                http.add(f"{SITE}/{slug}/", _page(slug.upper(), f"About {slug}"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_crawls_every_entity_across_batches(self, crawler, memory_store, fake_http):
        slugs = ["a", "b", "c", "d", "e"]
        await self._seed(memory_store, fake_http, slugs)

        result = await crawler.crawl("acme", batch_size=2)

        assert result.total == 5
        assert result.crawled == 5
        assert result.enriched == 5
        assert sorted(fake_http.urls_called()) == sorted(f"{SITE}/{s}/" for s in slugs)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failures_do_not_cause_revisits_or_skips(self, crawler, memory_store, fake_http):
        slugs = ["a", "b", "c", "d", "e"]
        await self._seed(memory_store, fake_http, slugs, fail=("b", "d"))

        result = await crawler.crawl("acme", batch_size=2)

        assert result.crawled == 5
        assert result.enriched == 3
        assert result.failed == 2
        assert sorted(fake_http.urls_called()) == sorted(f"{SITE}/{s}/" for s in slugs)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entity_without_url_is_skipped(self, crawler, memory_store, fake_http):
        await self._seed(memory_store, fake_http, ["a"])
        await memory_store.create_entity(_entity("nourl", 5, url=None))

        result = await crawler.crawl("acme")

        assert result.total == 2
        assert result.skipped == 1
        assert result.crawled == 1
        assert fake_http.urls_called() == [f"{SITE}/a/"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_default_run_skips_entities_with_seo_data(self, crawler, memory_store, fake_http):
        await self._seed(memory_store, fake_http, ["a", "b"])
        entity = await memory_store.find_entity_by_slug("acme", "t1", "a")
        await memory_store.update_entity(entity.id, {"seo_data": {"title": "A"}})

        result = await crawler.crawl("acme")

        assert result.total == 1
        assert fake_http.urls_called() == [f"{SITE}/b/"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_rescan_visits_everything_once(self, crawler, memory_store, fake_http):
        await self._seed(memory_store, fake_http, ["a", "b", "c"])
        await crawler.crawl("acme")
        fake_http.calls.clear()

        result = await crawler.crawl("acme", batch_size=1, force_rescan=True)

        assert result.total == 3
        assert result.enriched == 3
        assert sorted(fake_http.urls_called()) == [f"{SITE}/a/", f"{SITE}/b/", f"{SITE}/c/"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_enriches_stored_record(self, crawler, memory_store, fake_http):
        await self._seed(memory_store, fake_http, ["web-design"])

        await crawler.crawl("acme")

        entity = await memory_store.find_entity_by_slug("acme", "t1", "web-design")
        assert entity.title == "WEB-DESIGN"
        assert entity.excerpt == "About web-design"
        assert entity.has_seo_data is True
        assert entity.metadata["needsDeepCrawl"] is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_progress_messages(self, crawler, memory_store, fake_http):
        await self._seed(memory_store, fake_http, ["a", "b"])
        on_progress = AsyncMock()

        await crawler.crawl("acme", on_progress=on_progress)

        calls = [c.args for c in on_progress.call_args_list]
        assert calls == [(50, "Crawling (1/2): a..."), (100, "Crawling (2/2): b...")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nothing_to_crawl(self, crawler):
        result = await crawler.crawl("acme")
        assert result.to_dict() == {"crawled": 0, "enriched": 0, "failed": 0, "skipped": 0, "total": 0}


# ===================================================================
# Single-entity refresh
# ===================================================================


class TestRefreshEntity:

    @pytest.fixture
    def crawler(self, memory_store, fake_http, settings):
        return DeepCrawler(memory_store, fake_http, settings)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_stores_page_and_keyword(self, crawler, memory_store, fake_http):
        entity = await memory_store.create_entity(_entity("web-design"))
        fake_http.add(f"{SITE}/web-design/", SAMPLE_PAGE)
        seen = []

        async def keyword_for(page):
            seen.append(page.primary_h1)
            return "web design"

        updated, keyword = await crawler.refresh_entity(entity, focus_keyword_for=keyword_for)

        assert keyword == "web design"
        assert seen == ["Web Design"]
        stored = await memory_store.get_entity(entity.id)
        assert stored.title == "Web Design"
        assert stored.seo_data["focusKeyword"] == "web design"
        assert stored.metadata["needsDeepCrawl"] is False
        assert updated.id == entity.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_without_keyword_source(self, crawler, memory_store, fake_http):
        entity = await memory_store.create_entity(_entity("a"))
        fake_http.add(f"{SITE}/a/", _page("Alpha", "About alpha"))

        updated, keyword = await crawler.refresh_entity(entity)

        assert keyword is None
        assert updated.title == "Alpha"
        assert updated.excerpt == "About alpha"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entity_without_url(self, crawler, memory_store, fake_http):
        entity = await memory_store.create_entity(_entity("nourl", url=None))

        with pytest.raises(EntityNotCrawlableError):
            await crawler.refresh_entity(entity)
        assert fake_http.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unreachable_page_changes_nothing(self, crawler, memory_store, fake_http):
        entity = await memory_store.create_entity(_entity("gone"))
        fake_http.add(f"{SITE}/gone/", (500, "error"))
        keyword_for = AsyncMock(return_value="never")

        with pytest.raises(SourceUnavailableError):
            await crawler.refresh_entity(entity, focus_keyword_for=keyword_for)

        keyword_for.assert_not_awaited()
        stored = await memory_store.get_entity(entity.id)
        assert stored.seo_data is None
        assert stored.title == "gone"
