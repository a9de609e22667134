"""
WordPress REST API reader.

Reads the post-type registry (``/wp/v2/types``) and pages through the items
of a post type. The client never writes and never retries: a failed call
makes the source unavailable and the caller falls back to the sitemap.

Usage:
    from entity_scan.wordpress_rest import WordPressRestClient

    client = WordPressRestClient("https://example.com", http_fetcher)
    types = await client.fetch_types()
    page = await client.list_items("posts", page=1)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from entity_scan.config import LOCALE, ScanSettings, get_settings
from entity_scan.errors import NotFoundError, WordPressError
from entity_scan.fetcher import HttpFetcher
from entity_scan.lookups import CORE_SINGULAR_TO_PLURAL, EXCLUDED_REST_TYPES
from entity_scan.models import DiscoveredItem
from entity_scan.naming import display_name_for, localized_name_for
from entity_scan.urls import extract_slug, humanize_slug, normalize_site_url, parse_timestamp, strip_html

logger = logging.getLogger("entity_scan.wordpress_rest")

ITEM_FIELDS = (
    "id,slug,title,link,date,modified,status,excerpt,featured_media,_links,_embedded"
)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass
class RestPostType:
    """A post type as reported by ``/wp/v2/types``."""

    key: str
    slug: str
    rest_base: str
    label: str
    display_name: str
    localized_name: str
    description: str = ""
    hierarchical: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_core(self) -> bool:
        return self.slug in ("posts", "pages")

    def summary(self) -> Dict[str, Any]:
        """Compact form used in the classifier prompt."""
        return {
            "slug": self.key,
            "name": self.label,
            "rest_base": self.rest_base,
            "hierarchical": self.hierarchical,
        }


@dataclass
class RestItemPage:
    items: List[DiscoveredItem] = field(default_factory=list)
    total_pages: int = 0
    total: int = 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _rendered(value: Any) -> str:
    """WP fields are either plain strings or ``{"rendered": ...}`` objects."""
    if isinstance(value, dict):
        value = value.get("rendered", "")
    return value if isinstance(value, str) else ""


def _header_int(headers: Dict[str, str], name: str) -> int:
    try:
        return int(headers.get(name.lower(), "0") or 0)
    except ValueError:
        return 0


def canonical_type_slug(key: str, rest_base: Optional[str]) -> str:
    """``rest_base`` when present, with the singular core names pluralized."""
    slug = (rest_base or key or "").strip().lower()
    return CORE_SINGULAR_TO_PLURAL.get(slug, slug)


def parse_post_type(key: str, info: Dict[str, Any], locale: Optional[str] = None) -> RestPostType:
    """Resolve slug and names for one entry of the types registry."""
    rest_base = info.get("rest_base") or ""
    if not isinstance(rest_base, str):
        rest_base = ""
    slug = canonical_type_slug(key, rest_base)

    labels = info.get("labels") if isinstance(info.get("labels"), dict) else {}
    label = _rendered(labels.get("name")) or _rendered(info.get("name")) or key
    label = strip_html(label)

    display = display_name_for(slug, label)
    localized = localized_name_for(slug, display, label, locale=locale or LOCALE)

    return RestPostType(
        key=key,
        slug=slug,
        rest_base=rest_base or key,
        label=label,
        display_name=display,
        localized_name=localized,
        description=strip_html(_rendered(info.get("description"))),
        hierarchical=bool(info.get("hierarchical")),
        raw=info,
    )


def item_from_rest(raw: Dict[str, Any]) -> Optional[DiscoveredItem]:
    """Build a DiscoveredItem from one REST post object; None if it has no URL."""
    link = raw.get("link")
    if not isinstance(link, str) or not link:
        return None
    slug = raw.get("slug") or extract_slug(link)
    if not slug:
        return None

    title = strip_html(_rendered(raw.get("title"))) or humanize_slug(slug)
    excerpt = strip_html(_rendered(raw.get("excerpt"))) or None

    featured_image = None
    embedded = raw.get("_embedded") or {}
    media = embedded.get("wp:featuredmedia") if isinstance(embedded, dict) else None
    if isinstance(media, list) and media and isinstance(media[0], dict):
        featured_image = media[0].get("source_url") or None

    metadata: Dict[str, Any] = {"source": "rest", "needsDeepCrawl": True}
    if raw.get("featured_media"):
        metadata["featuredMediaId"] = raw["featured_media"]
    if raw.get("status"):
        metadata["wpStatus"] = raw["status"]

    external_id = raw.get("id")
    return DiscoveredItem(
        source_url=link,
        slug=str(slug),
        title=title,
        external_id=str(external_id) if external_id is not None else None,
        published_at=parse_timestamp(raw.get("date")),
        modified_at=parse_timestamp(raw.get("modified")),
        excerpt=excerpt,
        featured_image=featured_image,
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class WordPressRestClient:
    """Read-only client for the ``/wp-json/wp/v2`` namespace of one site."""

    def __init__(self, site_url: str, http: HttpFetcher, settings: Optional[ScanSettings] = None):
        self.site_url = normalize_site_url(site_url)
        self.http = http
        self.settings = settings or get_settings()

    @property
    def api_url(self) -> str:
        """WP REST API v2 base URL."""
        return f"{self.site_url}/wp-json/wp/v2"

    def __repr__(self) -> str:
        return f"WordPressRestClient({self.site_url!r})"

    async def _get_json(
        self,
        path: str,
        *,
        timeout: float,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Any, Dict[str, str]]:
        """
        GET a REST resource and decode it.

        Returns
        -------
        tuple of (decoded_json, lower_cased_headers)

        Raises
        ------
        NotFoundError
            On 404 responses.
        WordPressError
            On network failure, other non-2xx responses, or invalid JSON.
        """
        url = f"{self.api_url}/{path.lstrip('/')}"
        result = await self.http.get(url, timeout=timeout, params=params)
        if result is None:
            raise WordPressError(f"Request failed: {url}", url=url)
        if result.status == 404:
            raise NotFoundError(
                f"Resource not found: {url}",
                url=url,
                status_code=404,
                response_body=result.text[:500],
            )
        if not result.ok:
            raise WordPressError(
                f"HTTP {result.status} from {url}",
                url=url,
                status_code=result.status,
                response_body=result.text[:500],
            )
        try:
            return result.json(), result.headers
        except ValueError as exc:
            raise WordPressError(f"Invalid JSON from {url}: {exc}", url=url, status_code=result.status)

    async def fetch_types(self) -> Optional[List[RestPostType]]:
        """
        Content-bearing post types registered on the site.

        Internal types are excluded and a type is kept only when it is
        viewable or exposes a ``rest_base``.

        Returns
        -------
        list of RestPostType or None
            None when the REST API is unavailable.
        """
        try:
            data, _ = await self._get_json(
                "types",
                params={"context": "view"},
                timeout=self.settings.rest_types_timeout,
            )
        except WordPressError as exc:
            logger.info("REST types unavailable for %s: %s", self.site_url, exc)
            return None

        if not isinstance(data, dict):
            logger.info("REST types for %s returned unexpected payload", self.site_url)
            return None

        types: List[RestPostType] = []
        for key, info in data.items():
            if key in EXCLUDED_REST_TYPES or not isinstance(info, dict):
                continue
            if info.get("viewable") is not True and not info.get("rest_base"):
                continue
            types.append(parse_post_type(key, info, locale=self.settings.locale))

        logger.info("REST API reports %d content types on %s", len(types), self.site_url)
        return types

    async def list_items(self, endpoint: str, page: int = 1, per_page: Optional[int] = None) -> RestItemPage:
        """
        One page of items for a post type.

        Returns an empty page on any failure; ``total_pages`` comes from the
        ``X-WP-TotalPages`` header.
        """
        params = {
            "page": page,
            "per_page": per_page or self.settings.rest_per_page,
            "_fields": ITEM_FIELDS,
            "_embed": "wp:featuredmedia",
        }
        try:
            data, headers = await self._get_json(
                endpoint,
                params=params,
                timeout=self.settings.rest_items_timeout,
            )
        except WordPressError as exc:
            logger.info("REST items unavailable for %s page %d: %s", endpoint, page, exc)
            return RestItemPage()

        if not isinstance(data, list):
            return RestItemPage()

        items = []
        for raw in data:
            if not isinstance(raw, dict):
                continue
            item = item_from_rest(raw)
            if item is None:
                logger.debug("Skipping REST item without link in %s: %s", endpoint, raw.get("id"))
                continue
            items.append(item)

        return RestItemPage(
            items=items,
            total_pages=_header_int(headers, "X-WP-TotalPages"),
            total=_header_int(headers, "X-WP-Total"),
        )
