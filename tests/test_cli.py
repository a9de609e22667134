"""
Tests for the command-line interface and the site registry.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

try:
    from entity_scan.cli import _build_parser, _run_cli, main
    from entity_scan.errors import SiteNotConfiguredError, SiteNotFoundError
    from entity_scan.models import CrawlResult, EntityRecord, PopulateResult, RefreshResult, TypeStats
    from entity_scan.scanner import EntityScanner
    from entity_scan.sites import SiteConfig, SiteRegistry, load_site_registry
    HAS_CLI = True
except ImportError:
    HAS_CLI = False

pytestmark = pytest.mark.skipif(not HAS_CLI, reason="cli module not available")

SITE = "https://acme.test"


@pytest.fixture
def scanner(memory_store, fake_http, settings, site_registry_file):
    classifier = MagicMock()
    classifier.is_available = False
    return EntityScanner(
        store=memory_store,
        http=fake_http,
        classifier=classifier,
        meter=MagicMock(track=AsyncMock()),
        registry=SiteRegistry.from_file(site_registry_file),
        settings=settings,
    )


# ===================================================================
# Site registry
# ===================================================================


class TestSiteRegistry:

    @pytest.mark.unit
    def test_load(self, site_registry_file):
        sites = load_site_registry(site_registry_file)
        assert [s.site_id for s in sites] == ["acme", "shop"]
        assert sites[1].is_wordpress is False
        assert sites[1].base_url == "https://shop.test"

    @pytest.mark.unit
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_site_registry(tmp_path / "none.json")
        assert len(SiteRegistry.from_file(tmp_path / "none.json")) == 0

    @pytest.mark.unit
    def test_domain_key(self, tmp_path):
        path = tmp_path / "sites.json"
        path.write_text(json.dumps({"sites": [{"id": "x", "domain": "x.test"}, {"url": "no-id"}]}), encoding="utf-8")
        sites = load_site_registry(path)
        assert len(sites) == 1
        assert sites[0].base_url == "https://x.test"

    @pytest.mark.unit
    def test_get_unknown(self, site_registry_file):
        registry = SiteRegistry.from_file(site_registry_file)
        with pytest.raises(SiteNotFoundError):
            registry.get("ghost")

    @pytest.mark.unit
    def test_base_url_requires_url(self):
        with pytest.raises(SiteNotConfiguredError):
            SiteConfig(site_id="empty").base_url


# ===================================================================
# CLI
# ===================================================================


class TestParser:

    @pytest.mark.unit
    def test_discover_requires_target(self):
        parser = _build_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["discover"])

    @pytest.mark.unit
    def test_crawl_defaults(self):
        args = _build_parser().parse_args(["crawl", "--site", "acme"])
        assert args.batch_size == 50
        assert args.force is False

    @pytest.mark.unit
    @pytest.mark.parametrize("argv", [
        ["populate", "--site", "acme", "--cap", "0"],
        ["populate", "--site", "acme", "--cap", "-3"],
        ["crawl", "--site", "acme", "--batch-size", "0"],
    ])
    def test_rejects_non_positive_limits(self, argv, capsys):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(argv)
        assert "must be at least 1" in capsys.readouterr().err

    @pytest.mark.unit
    def test_refresh_requires_entity(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["refresh", "--site", "acme"])

    @pytest.mark.unit
    def test_no_command_prints_help(self, capsys):
        main([])
        assert "usage" in capsys.readouterr().out.lower()


class TestRunCli:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_discover_url_as_json(self, scanner, fake_http, urlset_xml, capsys):
        fake_http.add(f"{SITE}/sitemap.xml", urlset_xml([f"{SITE}/a/"]))
        args = _build_parser().parse_args(["discover", "--url", SITE, "--json"])

        await _run_cli(args, scanner)

        data = json.loads(capsys.readouterr().out)
        assert [t["slug"] for t in data["contentTypes"]] == ["posts", "pages"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_discover_site_and_save(self, scanner, memory_store, capsys):
        args = _build_parser().parse_args(["discover", "--site", "acme", "--save"])

        await _run_cli(args, scanner)

        out = capsys.readouterr().out
        assert "Saved 2 content types for acme" in out
        assert len(await memory_store.list_entity_types("acme")) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_populate_prints_stats(self, scanner, capsys):
        stats = PopulateResult(created=4, updated=1, per_type={"posts": TypeStats(created=4, updated=1)})
        args = _build_parser().parse_args(["populate", "--site", "acme", "--cap", "10"])

        with patch.object(scanner, "populate", new=AsyncMock(return_value=stats)) as populate:
            await _run_cli(args, scanner)

        assert populate.await_args.kwargs["item_cap_per_type"] == 10
        assert "Created: 4" in capsys.readouterr().out

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_crawl_prints_stats(self, scanner, capsys):
        args = _build_parser().parse_args(["crawl", "--site", "acme", "--batch-size", "5", "--force"])

        with patch.object(scanner, "deep_crawl", new=AsyncMock(return_value=CrawlResult(crawled=2, enriched=2, total=2))) as crawl:
            await _run_cli(args, scanner)

        crawl.assert_awaited_once_with("acme", 5, True)
        assert "Enriched: 2" in capsys.readouterr().out

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_prints_entity(self, scanner, capsys):
        entity = EntityRecord(site_id="acme", entity_type_id="t1", slug="a", title="A", id="e1")
        args = _build_parser().parse_args(["refresh", "--site", "acme", "--entity", "e1"])

        with patch.object(scanner, "refresh_entity", new=AsyncMock(return_value=RefreshResult(entity=entity))) as refresh:
            await _run_cli(args, scanner)

        refresh.assert_awaited_once_with("acme", "e1")
        data = json.loads(capsys.readouterr().out)
        assert data["entity"]["id"] == "e1"
        assert data["creditsUpdated"] is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status(self, scanner, capsys):
        args = _build_parser().parse_args(["status", "--site", "acme"])

        await _run_cli(args, scanner)

        data = json.loads(capsys.readouterr().out)
        assert data["status"] == "IDLE"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_site_raises(self, scanner):
        args = _build_parser().parse_args(["populate", "--site", "ghost"])
        with pytest.raises(SiteNotFoundError):
            await _run_cli(args, scanner)

    @pytest.mark.unit
    def test_main_exits_on_failure(self):
        with patch("entity_scan.cli._run_cli", new=AsyncMock(side_effect=RuntimeError("boom"))):
            with pytest.raises(SystemExit) as exc_info:
                main(["status", "--site", "acme"])
        assert exc_info.value.code == 1
