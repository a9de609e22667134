"""
Sitemap discovery and parsing.

The fetcher tries the conventional sitemap locations of a WordPress site
(core, Yoast, RankMath) and returns the first document that looks like a
sitemap. The parser reads either a sitemap index, grouping sub-sitemaps by
the post type named in their file name, or a flat ``<urlset>`` of content
URLs with their lastmod and image metadata.

Parsing uses ElementTree with namespace-agnostic tag matching. Documents that
are not well formed fall back to a tolerant pattern scan with the same
extraction rules, so a broken sitemap degrades to fewer entries rather than
an error.

Usage:
    from entity_scan.sitemap import SitemapFetcher, parse_sitemap

    fetcher = SitemapFetcher(http_fetcher)
    document = await fetcher.find("https://example.com")
    parsed = parse_sitemap(document.content)
"""

from __future__ import annotations

import html
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlparse

from entity_scan.config import ScanSettings, get_settings
from entity_scan.fetcher import HttpFetcher
from entity_scan.lookups import (
    CORE_SINGULAR_TO_PLURAL,
    NON_CONTENT_SITEMAP_TOKENS,
    SITEMAP_CANDIDATE_PATHS,
    SITEMAP_FLAVORS,
)
from entity_scan.urls import normalize_site_url

logger = logging.getLogger("entity_scan.sitemap")

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

# WordPress core: wp-sitemap-posts-1.xml, wp-sitemap-posts-product-1.xml
_WP_SITEMAP_RE = re.compile(r"wp-sitemap-([a-z0-9_-]+)-\d+\.xml", re.IGNORECASE)
# Yoast / RankMath: post-sitemap.xml, portfolio-sitemap2.xml
_PLUGIN_SITEMAP_RE = re.compile(r"([a-z0-9_-]+)-sitemap\d*\.xml", re.IGNORECASE)

_URL_BLOCK_RE = re.compile(r"<(?:\w+:)?url\b[^>]*>(.*?)</(?:\w+:)?url>", re.IGNORECASE | re.DOTALL)
_SITEMAP_BLOCK_RE = re.compile(r"<(?:\w+:)?sitemap\b[^>]*>(.*?)</(?:\w+:)?sitemap>", re.IGNORECASE | re.DOTALL)
_LOC_RE = re.compile(r"<(?:\w+:)?loc\b[^>]*>(.*?)</(?:\w+:)?loc>", re.IGNORECASE | re.DOTALL)
_LASTMOD_RE = re.compile(r"<(?:\w+:)?lastmod\b[^>]*>(.*?)</(?:\w+:)?lastmod>", re.IGNORECASE | re.DOTALL)
_IMAGE_LOC_RE = re.compile(r"<image:loc\b[^>]*>(.*?)</image:loc>", re.IGNORECASE | re.DOTALL)
_IMAGE_TITLE_RE = re.compile(r"<image:title\b[^>]*>(.*?)</image:title>", re.IGNORECASE | re.DOTALL)
_URL_OPEN_RE = re.compile(r"<(?:\w+:)?url[\s>]", re.IGNORECASE)
_CDATA_RE = re.compile(r"^<!\[CDATA\[(.*)\]\]>$", re.DOTALL)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass
class SitemapDocument:
    """The sitemap that answered at one of the candidate locations."""

    url: str
    content: str
    flavor: str = "generic"

    @property
    def is_index(self) -> bool:
        return "<sitemapindex" in self.content


@dataclass
class SitemapUrlEntry:
    """One ``<url>`` of a flat sitemap."""

    loc: str
    lastmod: Optional[str] = None
    image_loc: Optional[str] = None
    image_title: Optional[str] = None


@dataclass
class ParsedSitemap:
    """Either index groups or flat entries, depending on the root element."""

    is_index: bool
    groups: Dict[str, List[str]] = field(default_factory=dict)
    entries: List[SitemapUrlEntry] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def is_sitemap_document(text: Optional[str]) -> bool:
    """Substring check used to accept a candidate response."""
    return bool(text) and ("<urlset" in text or "<sitemapindex" in text)


def sitemap_type_token(sitemap_url: str) -> Optional[str]:
    """
    Post type named by a sub-sitemap URL, or None.

    Tokens for taxonomies, users, and authors are discarded, and the
    singular core tokens ``post``/``page`` become ``posts``/``pages``.
    """
    filename = urlparse(sitemap_url).path.rsplit("/", 1)[-1]
    token: Optional[str] = None

    match = _WP_SITEMAP_RE.search(filename)
    if match:
        token = match.group(1).lower()
        # Core WordPress nests the post type: wp-sitemap-posts-{type}-1.xml
        if token.startswith("posts-"):
            token = token[len("posts-"):]
        elif token.startswith("taxonomies-"):
            return None
    else:
        match = _PLUGIN_SITEMAP_RE.search(filename)
        if match:
            token = match.group(1).lower()

    if not token or token in NON_CONTENT_SITEMAP_TOKENS:
        return None
    return CORE_SINGULAR_TO_PLURAL.get(token, token)


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].split(":")[-1].lower()


def _child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _local_name(child.tag) == name:
            return child
    return None


def _text(element: Optional[ET.Element]) -> Optional[str]:
    if element is None or element.text is None:
        return None
    value = element.text.strip()
    return value or None


def _clean_fragment(raw: str) -> Optional[str]:
    value = raw.strip()
    match = _CDATA_RE.match(value)
    if match:
        value = match.group(1).strip()
    else:
        value = html.unescape(value)
    return value or None


def _group_sitemap_urls(urls: List[str]) -> Dict[str, List[str]]:
    groups: Dict[str, List[str]] = {}
    for url in urls:
        token = sitemap_type_token(url)
        if token is None:
            logger.debug("Ignoring sub-sitemap without a content type: %s", url)
            continue
        bucket = groups.setdefault(token, [])
        if url not in bucket:
            bucket.append(url)
    return groups


def _entry_from_element(url_el: ET.Element) -> Optional[SitemapUrlEntry]:
    loc = _text(_child(url_el, "loc"))
    if not loc:
        return None
    entry = SitemapUrlEntry(loc=loc, lastmod=_text(_child(url_el, "lastmod")))
    image_el = _child(url_el, "image")
    if image_el is not None:
        entry.image_loc = _text(_child(image_el, "loc"))
        entry.image_title = _text(_child(image_el, "title"))
    return entry


def _entry_from_fragment(block: str) -> Optional[SitemapUrlEntry]:
    # Image tags also contain <image:loc>, so take the first plain <loc>
    stripped = _IMAGE_LOC_RE.sub("", block)
    loc_match = _LOC_RE.search(stripped)
    loc = _clean_fragment(loc_match.group(1)) if loc_match else None
    if not loc:
        return None
    entry = SitemapUrlEntry(loc=loc)
    lastmod = _LASTMOD_RE.search(block)
    if lastmod:
        entry.lastmod = _clean_fragment(lastmod.group(1))
    image_loc = _IMAGE_LOC_RE.search(block)
    if image_loc:
        entry.image_loc = _clean_fragment(image_loc.group(1))
    image_title = _IMAGE_TITLE_RE.search(block)
    if image_title:
        entry.image_title = _clean_fragment(image_title.group(1))
    return entry


def _parse_with_patterns(content: str) -> ParsedSitemap:
    if "<sitemapindex" in content:
        urls = []
        for block in _SITEMAP_BLOCK_RE.findall(content):
            loc = _LOC_RE.search(block)
            value = _clean_fragment(loc.group(1)) if loc else None
            if value:
                urls.append(value)
        return ParsedSitemap(is_index=True, groups=_group_sitemap_urls(urls))

    entries = []
    for block in _URL_BLOCK_RE.findall(content):
        entry = _entry_from_fragment(block)
        if entry is None:
            logger.debug("Skipping <url> without <loc>")
            continue
        entries.append(entry)
    return ParsedSitemap(is_index=False, entries=entries)


# ---------------------------------------------------------------------------
# Public parsing API
# ---------------------------------------------------------------------------


def parse_sitemap(content: str) -> ParsedSitemap:
    """
    Parse a sitemap index or urlset.

    Parameters
    ----------
    content : str
        Raw XML text.

    Returns
    -------
    ParsedSitemap
        ``groups`` maps post-type tokens to sub-sitemap URLs for an index;
        ``entries`` lists content URLs for a urlset. Malformed documents
        yield whatever entries the tolerant scan can recover.
    """
    if not content:
        return ParsedSitemap(is_index=False)

    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        logger.debug("Sitemap is not well-formed XML (%s), using pattern scan", exc)
        return _parse_with_patterns(content)

    if _local_name(root.tag) == "sitemapindex":
        urls = []
        for sitemap_el in root:
            if _local_name(sitemap_el.tag) != "sitemap":
                continue
            loc = _text(_child(sitemap_el, "loc"))
            if loc:
                urls.append(loc)
        return ParsedSitemap(is_index=True, groups=_group_sitemap_urls(urls))

    entries = []
    for url_el in root:
        if _local_name(url_el.tag) != "url":
            continue
        entry = _entry_from_element(url_el)
        if entry is None:
            logger.debug("Skipping <url> without <loc>")
            continue
        entries.append(entry)
    return ParsedSitemap(is_index=False, entries=entries)


def count_url_entries(content: Optional[str]) -> int:
    """Number of ``<url>`` elements in a sub-sitemap."""
    if not content:
        return 0
    return len(_URL_OPEN_RE.findall(content))


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class SitemapFetcher:
    """Locates a site's sitemap and reads its sub-sitemaps."""

    def __init__(self, http: HttpFetcher, settings: Optional[ScanSettings] = None):
        self.http = http
        self.settings = settings or get_settings()

    async def find(self, site_url: str) -> Optional[SitemapDocument]:
        """
        Try the candidate sitemap locations in order.

        Returns
        -------
        SitemapDocument or None
            The first 2xx response whose body contains ``<urlset`` or
            ``<sitemapindex``; None when no candidate qualifies.
        """
        base = normalize_site_url(site_url)
        for path in SITEMAP_CANDIDATE_PATHS:
            url = f"{base}{path}"
            result = await self.http.get(url, timeout=self.settings.sitemap_timeout)
            if result is None:
                continue
            if not result.ok:
                logger.debug("Sitemap candidate %s returned HTTP %d", url, result.status)
                continue
            if not is_sitemap_document(result.text):
                logger.debug("Sitemap candidate %s is not a sitemap document", url)
                continue
            flavor = SITEMAP_FLAVORS.get(path, "generic")
            logger.info("Found %s sitemap at %s", flavor, url)
            return SitemapDocument(url=url, content=result.text, flavor=flavor)

        logger.info("No sitemap found for %s", base)
        return None

    async def fetch_text(self, url: str, timeout: Optional[float] = None) -> Optional[str]:
        """Body of a sub-sitemap, or None when it cannot be read."""
        result = await self.http.get(url, timeout=timeout or self.settings.sub_sitemap_timeout)
        if result is None or not result.ok:
            return None
        return result.text

    async def count_entries(self, url: str) -> int:
        """Count ``<url>`` elements in a sub-sitemap; 0 when unreadable."""
        content = await self.fetch_text(url, timeout=self.settings.sub_sitemap_count_timeout)
        return count_url_entries(content)

    async def fetch_entries(self, url: str) -> List[SitemapUrlEntry]:
        """Parse a sub-sitemap into its content URLs."""
        content = await self.fetch_text(url, timeout=self.settings.sub_sitemap_timeout)
        if content is None:
            logger.warning("Could not read sub-sitemap %s", url)
            return []
        parsed = parse_sitemap(content)
        if parsed.is_index:
            logger.debug("Sub-sitemap %s is itself an index, skipping", url)
            return []
        return parsed.entries
