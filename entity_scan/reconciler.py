"""
Content-type reconciliation.

Merges the post types reported by the REST API with the tokens found in the
sitemap into one deduplicated, localized, sorted list. REST types are
authoritative for slug and naming; sitemap tokens only add types the REST
API did not report. ``posts`` and ``pages`` are always present.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from entity_scan.config import LOCALE
from entity_scan.lookups import CORE_SINGULAR_TO_PLURAL, CORE_SLUGS, CORE_TYPE_DEFAULTS
from entity_scan.models import ContentTypeDescriptor
from entity_scan.naming import display_name_for, localized_name_for
from entity_scan.urls import is_same_type
from entity_scan.wordpress_rest import RestPostType

logger = logging.getLogger("entity_scan.reconciler")


@dataclass
class SitemapSignals:
    """Post-type tokens seen in the sitemap with their sub-sitemaps and item counts."""

    groups: Dict[str, List[str]] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)
    sample_urls: List[str] = field(default_factory=list)

    @property
    def tokens(self) -> List[str]:
        return list(self.groups)


def matches_type(descriptor: ContentTypeDescriptor, slug: str, rest_endpoint: Optional[str] = None) -> bool:
    """Exact slug, exact REST endpoint, or singular/plural equivalence."""
    slug = (slug or "").lower()
    if descriptor.slug == slug or is_same_type(descriptor.slug, slug):
        return True
    if rest_endpoint and descriptor.rest_endpoint:
        return descriptor.rest_endpoint.lower() == rest_endpoint.lower()
    return False


def _merge_candidates(candidates: List[ContentTypeDescriptor]) -> List[ContentTypeDescriptor]:
    merged: List[ContentTypeDescriptor] = []
    for candidate in candidates:
        if any(matches_type(existing, candidate.slug, candidate.rest_endpoint) for existing in merged):
            logger.debug("Dropping duplicate content type %r", candidate.slug)
            continue
        merged.append(candidate)
    return merged


def _attach_sitemap_signals(types: List[ContentTypeDescriptor], signals: SitemapSignals) -> None:
    for token, urls in signals.groups.items():
        target = next((t for t in types if matches_type(t, token, token)), None)
        if target is None:
            continue
        for url in urls:
            if url not in target.source_sitemap_urls:
                target.source_sitemap_urls.append(url)
        target.discovered_entity_count += signals.counts.get(token, 0)


def core_descriptor(slug: str, locale: str = LOCALE) -> ContentTypeDescriptor:
    """Synthesized ``posts`` or ``pages`` descriptor with zero counts."""
    defaults = CORE_TYPE_DEFAULTS[slug]
    return ContentTypeDescriptor(
        slug=slug,
        display_name=defaults["en"],
        localized_name=defaults.get(locale) or defaults["en"],
        rest_endpoint=slug,
        description=defaults["description"],
        is_core=True,
    )


def finalize_types(types: List[ContentTypeDescriptor], locale: str = LOCALE) -> List[ContentTypeDescriptor]:
    """
    Collapse singular core duplicates, guarantee both core types, and sort.

    Safe to call repeatedly; the output of one call is a fixed point.
    """
    present = {t.slug for t in types}
    result: List[ContentTypeDescriptor] = []
    for descriptor in types:
        plural = CORE_SINGULAR_TO_PLURAL.get(descriptor.slug)
        if plural is not None:
            if plural in present:
                continue
            descriptor.slug = plural
            descriptor.rest_endpoint = plural
            present.add(plural)
        if any(existing.slug == descriptor.slug for existing in result):
            continue
        descriptor.is_core = descriptor.slug in CORE_SLUGS
        result.append(descriptor)

    for slug in CORE_SLUGS:
        if not any(t.slug == slug for t in result):
            logger.debug("Synthesizing missing core type %r", slug)
            result.append(core_descriptor(slug, locale))

    core_order = {slug: index for index, slug in enumerate(CORE_SLUGS)}
    result.sort(key=lambda t: (
        0 if t.is_core else 1,
        core_order.get(t.slug, 0),
        t.display_name.casefold(),
    ))
    return result


def reconcile_types(
    rest_types: Optional[List[RestPostType]],
    signals: Optional[SitemapSignals],
    locale: str = LOCALE,
) -> List[ContentTypeDescriptor]:
    """
    Build the content-type list for a site.

    Parameters
    ----------
    rest_types : list of RestPostType, optional
        Types from the REST registry; None when the API was unavailable.
    signals : SitemapSignals, optional
        Sitemap tokens and counts; None when no sitemap was found.
    locale : str
        Language of ``localized_name``.

    Returns
    -------
    list of ContentTypeDescriptor
        Core types first (posts, pages), then the rest alphabetically by
        display name.
    """
    candidates: List[ContentTypeDescriptor] = []

    for rest_type in rest_types or []:
        candidates.append(ContentTypeDescriptor(
            slug=rest_type.slug,
            display_name=rest_type.display_name,
            localized_name=rest_type.localized_name,
            rest_endpoint=rest_type.rest_base,
            description=rest_type.description,
            is_core=rest_type.is_core,
        ))

    if signals is not None:
        for token in signals.tokens:
            display = display_name_for(token)
            candidates.append(ContentTypeDescriptor(
                slug=token,
                display_name=display,
                localized_name=localized_name_for(token, display, locale=locale),
                rest_endpoint=token,
                is_core=token in CORE_SLUGS,
            ))

    types = _merge_candidates(candidates)
    if signals is not None:
        _attach_sitemap_signals(types, signals)
    return finalize_types(types, locale)
