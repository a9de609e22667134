"""
Entity Scan

Discovers the content taxonomy of a WordPress site from its sitemap XML and
REST API, reconciles the signals into a clean list of content types, and
populates a persisted entity store with every content item found.

Usage:
    from entity_scan.scanner import get_scanner

    scanner = get_scanner()
    result = await scanner.discover("https://example.com")
    await scanner.confirm_types("example", result.content_types)
    stats = await scanner.populate(site)
    crawl = await scanner.deep_crawl("example")
"""

import logging
import os

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_package_logger = logging.getLogger("entity_scan")
_package_logger.setLevel(os.getenv("ENTITY_SCAN_LOG_LEVEL", "INFO").upper())

if not _package_logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    _package_logger.addHandler(_handler)
