"""
URL, slug, and text helpers, including the archive-page filter.
"""

from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import unquote, urlparse

from entity_scan.lookups import ARCHIVE_PAGE_SLUGS, GENERIC_TITLES, POST_ARCHIVE_SLUGS, TITLE_SEPARATORS

_STRIP_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_HEBREW_RE = re.compile(r"[\u0590-\u05FF]")
_SLUG_SEPARATOR_RE = re.compile(r"[-_]+")


def normalize_site_url(url: str) -> str:
    """Strip whitespace and trailing slashes; default to https when no scheme."""
    url = (url or "").strip()
    if url and "://" not in url:
        url = f"https://{url}"
    return url.rstrip("/")


def path_segments(url: str):
    """Non-empty path segments of *url*, or None if it cannot be parsed."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return [segment for segment in parsed.path.split("/") if segment]


def extract_slug(url: str) -> Optional[str]:
    """Last non-empty path segment of *url*; None for a site root or bad URL."""
    segments = path_segments(url)
    if not segments:
        return None
    return segments[-1]


def humanize_slug(slug: str) -> str:
    """``case-studies`` -> ``Case Studies``; percent-encoding is decoded."""
    words = _SLUG_SEPARATOR_RE.split(unquote(slug or ""))
    return " ".join(word[:1].upper() + word[1:] for word in words if word)


def singular_key(slug: str) -> str:
    """Strip one trailing ``s``. Imprecise for words like ``news``."""
    slug = (slug or "").lower()
    return slug[:-1] if slug.endswith("s") else slug


def is_same_type(left: str, right: str) -> bool:
    """True when two type slugs are equal or singular/plural variants."""
    left, right = (left or "").lower(), (right or "").lower()
    return left == right or singular_key(left) == singular_key(right)


def is_archive_page(url: str, type_slug: str) -> bool:
    """
    Decide whether *url* is a listing page for a content type.

    Only single-segment paths can be archives. The segment qualifies when
    it is a known archive slug, when it names the type itself (singular or
    plural), or, for posts, when it is a blog/news/articles index.
    """
    segments = path_segments(url)
    if not segments or len(segments) != 1:
        return False

    segment = segments[0].lower()
    if segment in ARCHIVE_PAGE_SLUGS:
        return True
    if singular_key(segment) == singular_key(type_slug):
        return True
    if (type_slug or "").lower() == "posts" and segment in POST_ARCHIVE_SLUGS:
        return True
    return False


def contains_hebrew(text: Optional[str]) -> bool:
    return bool(text) and bool(_HEBREW_RE.search(text))


def strip_html(text: Optional[str]) -> str:
    """Remove tags, decode entities, and collapse whitespace."""
    if not text:
        return ""
    text = _STRIP_RE.sub(" ", text)
    text = html.unescape(text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def clean_page_title(title: Optional[str]) -> str:
    """
    Drop the site-name suffix from a page title.

    ``"Web Design | Acme"`` becomes ``"Web Design"``. Titles without a
    recognized separator are returned trimmed.
    """
    if not title:
        return ""
    title = _WHITESPACE_RE.sub(" ", html.unescape(title)).strip()
    cut = len(title)
    for separator in TITLE_SEPARATORS:
        index = title.find(separator)
        if 0 < index < cut:
            cut = index
    return title[:cut].strip()


def is_generic_title(text: Optional[str]) -> bool:
    """True for empty text and for labels like "Home" or "Menu"."""
    return not text or text.strip().casefold() in GENERIC_TITLES


def parse_timestamp(value: Optional[str]) -> Optional[str]:
    """Normalize an ISO-8601 timestamp or date; None when unparseable."""
    if not value:
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.isoformat()
