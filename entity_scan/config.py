"""
Runtime configuration for Entity Scan.

Every value is read from the environment once at import time, with a
default that matches the behavior of a stock installation. Components take
a ``ScanSettings`` snapshot so tests can override individual values without
touching the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("ENTITY_SCAN_DATA_DIR", str(BASE_DIR / "data")))
SITES_FILE = Path(os.getenv("ENTITY_SCAN_SITES_FILE", str(BASE_DIR / "configs" / "sites.json")))

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

USER_AGENT = os.getenv("ENTITY_SCAN_USER_AGENT", "EntityScan/1.0")

# Timeouts in seconds
SITEMAP_TIMEOUT = _env_float("ENTITY_SCAN_SITEMAP_TIMEOUT", 10.0)
SUB_SITEMAP_COUNT_TIMEOUT = _env_float("ENTITY_SCAN_SUB_SITEMAP_COUNT_TIMEOUT", 8.0)
SUB_SITEMAP_TIMEOUT = _env_float("ENTITY_SCAN_SUB_SITEMAP_TIMEOUT", 15.0)
REST_TYPES_TIMEOUT = _env_float("ENTITY_SCAN_REST_TYPES_TIMEOUT", 10.0)
REST_ITEMS_TIMEOUT = _env_float("ENTITY_SCAN_REST_ITEMS_TIMEOUT", 20.0)
PAGE_TIMEOUT = _env_float("ENTITY_SCAN_PAGE_TIMEOUT", 15.0)
AI_TIMEOUT = _env_float("ENTITY_SCAN_AI_TIMEOUT", 20.0)

# WP REST API pagination limit
REST_PER_PAGE = _env_int("ENTITY_SCAN_REST_PER_PAGE", 100)

# ---------------------------------------------------------------------------
# Deep crawl
# ---------------------------------------------------------------------------

CRAWL_BATCH_SIZE = _env_int("ENTITY_SCAN_CRAWL_BATCH_SIZE", 50)
CRAWL_DELAY = _env_float("ENTITY_SCAN_CRAWL_DELAY", 0.15)

# ---------------------------------------------------------------------------
# AI enrichment
# ---------------------------------------------------------------------------

AI_ENABLED = _env_bool("ENTITY_SCAN_AI_ENABLED", True)
AI_MODEL = os.getenv("ENTITY_SCAN_AI_MODEL", "claude-haiku-4-5-20251001")
AI_MAX_TOKENS = _env_int("ENTITY_SCAN_AI_MAX_TOKENS", 2000)
AI_TEMPERATURE = _env_float("ENTITY_SCAN_AI_TEMPERATURE", 0.2)
AI_SAMPLE_URLS = 30

# Language of ContentTypeDescriptor.localized_name ("he" or "en")
LOCALE = os.getenv("ENTITY_SCAN_LOCALE", "he")

# ---------------------------------------------------------------------------
# API server
# ---------------------------------------------------------------------------

API_HOST = os.getenv("ENTITY_SCAN_API_HOST", "0.0.0.0")
API_PORT = _env_int("ENTITY_SCAN_API_PORT", 8790)


@dataclass(frozen=True)
class ScanSettings:
    """Snapshot of the tunables used by fetchers, populator, and crawler."""

    data_dir: Path = DATA_DIR
    sites_file: Path = SITES_FILE
    user_agent: str = USER_AGENT
    sitemap_timeout: float = SITEMAP_TIMEOUT
    sub_sitemap_count_timeout: float = SUB_SITEMAP_COUNT_TIMEOUT
    sub_sitemap_timeout: float = SUB_SITEMAP_TIMEOUT
    rest_types_timeout: float = REST_TYPES_TIMEOUT
    rest_items_timeout: float = REST_ITEMS_TIMEOUT
    page_timeout: float = PAGE_TIMEOUT
    ai_timeout: float = AI_TIMEOUT
    rest_per_page: int = REST_PER_PAGE
    crawl_batch_size: int = CRAWL_BATCH_SIZE
    crawl_delay: float = CRAWL_DELAY
    ai_enabled: bool = AI_ENABLED
    ai_model: str = AI_MODEL
    ai_max_tokens: int = AI_MAX_TOKENS
    ai_temperature: float = AI_TEMPERATURE
    locale: str = LOCALE

    def with_overrides(self, **changes) -> "ScanSettings":
        return replace(self, **changes)


_settings: Optional[ScanSettings] = None


def get_settings() -> ScanSettings:
    """Return the process-wide settings snapshot."""
    global _settings
    if _settings is None:
        _settings = ScanSettings()
    return _settings
