"""
Command-line interface.

    python -m entity_scan discover --site acme [--save] [--json]
    python -m entity_scan discover --url https://acme.example
    python -m entity_scan populate --site acme [--cap 200]
    python -m entity_scan crawl --site acme [--batch-size 50] [--force]
    python -m entity_scan refresh --site acme --entity <entity-id>
    python -m entity_scan status --site acme
    python -m entity_scan serve [--host 0.0.0.0] [--port 8790]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import List, Optional

from entity_scan.config import API_HOST, API_PORT, CRAWL_BATCH_SIZE
from entity_scan.scanner import EntityScanner, get_scanner

logger = logging.getLogger("entity_scan.cli")


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="entity_scan",
        description="Discover, populate, and deep-crawl the content of WordPress sites.",
    )
    sub = parser.add_subparsers(dest="command", help="Command to run")

    # discover
    discover_p = sub.add_parser("discover", help="Discover content types")
    target = discover_p.add_mutually_exclusive_group(required=True)
    target.add_argument("--site", type=str, help="Registered site ID")
    target.add_argument("--url", type=str, help="Site URL (not registered)")
    discover_p.add_argument(
        "--platform", type=str, default=None, help="Platform hint (default: registry value or wordpress)"
    )
    discover_p.add_argument("--save", action="store_true", help="Confirm all discovered types for --site")
    discover_p.add_argument("--json", action="store_true", dest="as_json", help="Print raw JSON")

    # populate
    populate_p = sub.add_parser("populate", help="Populate entities of the confirmed types")
    populate_p.add_argument("--site", type=str, required=True, help="Registered site ID")
    populate_p.add_argument("--cap", type=_positive_int, default=None, help="Max items per type")

    # crawl
    crawl_p = sub.add_parser("crawl", help="Deep-crawl stored entities")
    crawl_p.add_argument("--site", type=str, required=True, help="Registered site ID")
    crawl_p.add_argument(
        "--batch-size",
        type=_positive_int,
        default=CRAWL_BATCH_SIZE,
        help=f"Entities per batch (default: {CRAWL_BATCH_SIZE})",
    )
    crawl_p.add_argument("--force", action="store_true", help="Re-crawl entities that have SEO data")

    # refresh
    refresh_p = sub.add_parser("refresh", help="Re-crawl one entity and suggest its focus keyword")
    refresh_p.add_argument("--site", type=str, required=True, help="Registered site ID")
    refresh_p.add_argument("--entity", type=str, required=True, help="Entity ID")

    # status
    status_p = sub.add_parser("status", help="Show sync status")
    status_p.add_argument("--site", type=str, required=True, help="Registered site ID")

    # serve
    serve_p = sub.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", type=str, default=API_HOST)
    serve_p.add_argument("--port", type=int, default=API_PORT)

    return parser


async def _run_cli(args: argparse.Namespace, scanner: Optional[EntityScanner] = None) -> None:
    """Execute the CLI command."""
    scanner = scanner or get_scanner()
    try:
        if args.command == "discover":
            if args.site:
                site = scanner.registry.get(args.site)
                url, platform, site_id = site.base_url, args.platform or site.platform, site.site_id
            else:
                url, platform, site_id = args.url, args.platform or "wordpress", None

            result = await scanner.discover(url, platform, site_id=site_id)
            if args.as_json:
                print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
            else:
                src = result.sources
                print(f"Content types on {url}:")
                for t in result.content_types:
                    core = "core" if t.is_core else "    "
                    print(
                        f"  {t.slug:25s} {core}  {t.discovered_entity_count:5d}  "
                        f"{t.display_name} / {t.localized_name}"
                    )
                print(
                    f"\n  Sitemap: {src.sitemap_url or 'not found'}"
                    f"  REST: {'yes' if src.rest_api_available else 'no'}"
                    f"  AI: {'yes' if src.ai_enrichment_applied else 'no'}"
                )

            if args.save:
                if not site_id:
                    print("--save requires --site")
                else:
                    saved = await scanner.confirm_types(site_id, result.content_types)
                    print(f"Saved {len(saved)} content types for {site_id}")

        elif args.command == "populate":
            site = scanner.registry.get(args.site)
            print(f"Populating entities for {site.site_id}...")
            result = await scanner.populate(site, item_cap_per_type=args.cap)
            print(f"  Created: {result.created}")
            print(f"  Updated: {result.updated}")
            print(f"  Errors:  {result.errors}")
            for slug, stats in result.per_type.items():
                print(f"    {slug:25s} +{stats.created} ~{stats.updated}")

        elif args.command == "crawl":
            scanner.registry.get(args.site)
            print(f"Deep-crawling entities for {args.site}...")
            result = await scanner.deep_crawl(args.site, args.batch_size, args.force)
            print(f"  Total:    {result.total}")
            print(f"  Crawled:  {result.crawled}")
            print(f"  Enriched: {result.enriched}")
            print(f"  Failed:   {result.failed}")
            print(f"  Skipped:  {result.skipped}")

        elif args.command == "refresh":
            scanner.registry.get(args.site)
            result = await scanner.refresh_entity(args.site, args.entity)
            print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))

        elif args.command == "status":
            status = await scanner.sync_status(args.site)
            print(json.dumps(status, indent=2, ensure_ascii=False))
    finally:
        await scanner.close()


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    if args.command == "serve":
        from entity_scan.api import run_server

        run_server(args.host, args.port)
        return

    try:
        asyncio.run(_run_cli(args))
    except KeyboardInterrupt:
        print("\nAborted.")
    except Exception as exc:
        logger.error("Command failed: %s", exc, exc_info=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
