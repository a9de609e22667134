"""
Data models shared by the discovery, population, and crawl phases.

Wire serialization (``to_dict``) uses camelCase keys; attributes are
snake_case.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@dataclass
class ContentTypeDescriptor:
    """One content type (WordPress post type) found on a site."""

    slug: str
    display_name: str
    localized_name: str
    rest_endpoint: Optional[str] = None
    description: str = ""
    is_core: bool = False
    discovered_entity_count: int = 0
    source_sitemap_urls: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.rest_endpoint:
            self.rest_endpoint = self.slug

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "displayName": self.display_name,
            "localizedName": self.localized_name,
            "restEndpoint": self.rest_endpoint,
            "description": self.description,
            "isCore": self.is_core,
            "discoveredEntityCount": self.discovered_entity_count,
            "sourceSitemapUrls": list(self.source_sitemap_urls),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentTypeDescriptor":
        """Build from either camelCase wire data or snake_case attributes."""
        def pick(camel: str, snake: str, default: Any = None) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        slug = str(data["slug"]).lower()
        name = pick("displayName", "display_name") or data.get("name") or slug
        return cls(
            slug=slug,
            display_name=name,
            localized_name=pick("localizedName", "localized_name") or name,
            rest_endpoint=pick("restEndpoint", "rest_endpoint") or data.get("apiEndpoint"),
            description=pick("description", "description", "") or "",
            is_core=bool(pick("isCore", "is_core", False)),
            discovered_entity_count=int(pick("discoveredEntityCount", "discovered_entity_count", 0) or 0),
            source_sitemap_urls=list(pick("sourceSitemapUrls", "source_sitemap_urls", []) or []),
        )


@dataclass
class DiscoverySourceRecord:
    """Which signals contributed to a discovery run."""

    sitemap_found: bool = False
    sitemap_url: Optional[str] = None
    sitemap_flavor: Optional[str] = None
    rest_api_available: bool = False
    ai_enrichment_applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sitemapFound": self.sitemap_found,
            "sitemapUrl": self.sitemap_url,
            "sitemapFlavor": self.sitemap_flavor,
            "restApiAvailable": self.rest_api_available,
            "aiEnrichmentApplied": self.ai_enrichment_applied,
        }


@dataclass
class DiscoveryResult:
    content_types: List[ContentTypeDescriptor]
    sources: DiscoverySourceRecord
    credits_used: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentTypes": [t.to_dict() for t in self.content_types],
            "sources": self.sources.to_dict(),
            "creditsUsed": self.credits_used,
        }


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


@dataclass
class DiscoveredItem:
    """A content item found by REST enumeration or a sitemap walk."""

    source_url: str
    slug: str
    title: str
    external_id: Optional[str] = None
    published_at: Optional[str] = None
    modified_at: Optional[str] = None
    excerpt: Optional[str] = None
    featured_image: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SeoMetadataSnapshot:
    """SEO metadata extracted from a live page. Replaced whole on re-crawl."""

    title: Optional[str] = None
    description: Optional[str] = None
    canonical_url: Optional[str] = None
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_image: Optional[str] = None
    twitter_title: Optional[str] = None
    twitter_description: Optional[str] = None
    twitter_image: Optional[str] = None
    twitter_card: Optional[str] = None
    og_url: Optional[str] = None
    og_type: Optional[str] = None
    og_site_name: Optional[str] = None
    og_locale: Optional[str] = None
    keywords: Optional[str] = None
    focus_keyword: Optional[str] = None
    schema: List[Any] = field(default_factory=list)
    crawled_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "canonicalUrl": self.canonical_url,
            "ogTitle": self.og_title,
            "ogDescription": self.og_description,
            "ogImage": self.og_image,
            "twitterTitle": self.twitter_title,
            "twitterDescription": self.twitter_description,
            "twitterImage": self.twitter_image,
            "twitterCard": self.twitter_card,
            "ogUrl": self.og_url,
            "ogType": self.og_type,
            "ogSiteName": self.og_site_name,
            "ogLocale": self.og_locale,
            "keywords": self.keywords,
            "focusKeyword": self.focus_keyword,
            "schema": list(self.schema),
            "crawledAt": self.crawled_at,
        }


# ---------------------------------------------------------------------------
# Phase results
# ---------------------------------------------------------------------------


@dataclass
class TypeStats:
    created: int = 0
    updated: int = 0


@dataclass
class PopulateResult:
    created: int = 0
    updated: int = 0
    errors: int = 0
    per_type: Dict[str, TypeStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
            "perType": {slug: asdict(stats) for slug, stats in self.per_type.items()},
        }


@dataclass
class CrawlResult:
    crawled: int = 0
    enriched: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class EntityTypeRecord:
    """A confirmed content type stored for a site."""

    site_id: str
    slug: str
    name: str
    localized_name: str = ""
    api_endpoint: str = ""
    description: str = ""
    is_core: bool = False
    is_enabled: bool = True
    sort_order: int = 10
    sitemaps: List[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_descriptor(self) -> ContentTypeDescriptor:
        return ContentTypeDescriptor(
            slug=self.slug,
            display_name=self.name,
            localized_name=self.localized_name or self.name,
            rest_endpoint=self.api_endpoint or self.slug,
            description=self.description,
            is_core=self.is_core,
            source_sitemap_urls=list(self.sitemaps),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityTypeRecord":
        return cls(**data)


@dataclass
class EntityRecord:
    """A content item stored for a site."""

    site_id: str
    entity_type_id: str
    slug: str
    title: str = ""
    url: Optional[str] = None
    excerpt: Optional[str] = None
    featured_image: Optional[str] = None
    published_at: Optional[str] = None
    modified_at: Optional[str] = None
    external_id: Optional[str] = None
    status: str = "PUBLISHED"
    metadata: Dict[str, Any] = field(default_factory=dict)
    seo_data: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def has_seo_data(self) -> bool:
        return bool(self.seo_data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityRecord":
        return cls(**data)


SYNC_IDLE = "IDLE"
SYNC_RUNNING = "SYNCING"
SYNC_COMPLETED = "COMPLETED"
SYNC_ERROR = "ERROR"


@dataclass
class SyncState:
    """Durable progress checkpoint for one site."""

    site_id: str
    status: str = SYNC_IDLE
    progress: int = 0
    message: str = ""
    error: Optional[str] = None
    phase: Optional[str] = None
    last_sync_at: Optional[str] = None
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "siteId": self.site_id,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "phase": self.phase,
            "lastSyncAt": self.last_sync_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncState":
        return cls(**data)


@dataclass
class RefreshResult:
    """Outcome of re-crawling a single entity."""

    entity: EntityRecord
    focus_keyword: Optional[str] = None
    credits_used: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "entity": {
                "id": self.entity.id,
                "title": self.entity.title,
                "excerpt": self.entity.excerpt,
                "featuredImage": self.entity.featured_image,
                "seoData": self.entity.seo_data,
                "metadata": self.entity.metadata,
            },
            "creditsUpdated": {"used": self.credits_used} if self.credits_used else None,
        }
