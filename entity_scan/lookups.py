"""
Static lookup tables used during discovery and population.

All tables are immutable: frozensets for membership checks and read-only
mapping proxies for translations, so no component can mutate shared state.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Tuple

# ---------------------------------------------------------------------------
# Sitemap
# ---------------------------------------------------------------------------

# Tried in this order; the first valid document wins.
SITEMAP_CANDIDATE_PATHS: Tuple[str, ...] = (
    "/wp-sitemap.xml",
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemap-index.xml",
)

# Sitemap generator inferred from the path that answered.
SITEMAP_FLAVORS: Mapping[str, str] = MappingProxyType({
    "/wp-sitemap.xml": "wordpress",
    "/sitemap.xml": "yoast",
    "/sitemap_index.xml": "rankmath",
    "/sitemap-index.xml": "rankmath",
})

# Sub-sitemap tokens that never describe a content type.
NON_CONTENT_SITEMAP_TOKENS = frozenset({
    "taxonomies",
    "users",
    "author",
    "category",
    "tag",
    "post_tag",
})

CORE_SLUGS: Tuple[str, ...] = ("posts", "pages")

# Singular core tokens and the canonical slug they collapse into.
CORE_SINGULAR_TO_PLURAL: Mapping[str, str] = MappingProxyType({
    "post": "posts",
    "page": "pages",
})

# ---------------------------------------------------------------------------
# WordPress REST
# ---------------------------------------------------------------------------

# Internal or builder-only post types that never hold site content.
EXCLUDED_REST_TYPES = frozenset({
    "attachment",
    "nav_menu_item",
    "wp_block",
    "wp_template",
    "wp_template_part",
    "wp_navigation",
    "wp_font_family",
    "wp_font_face",
    "wp_global_styles",
    "wp_pattern",
    "revision",
    "custom_css",
    "customize_changeset",
    "oembed_cache",
    "user_request",
    # Elementor
    "elementor_library",
    "elementor_font",
    "elementor_icons",
    "elementor_snippet",
    "e-landing-page",
    "e-floating-buttons",
    # ACF
    "acf-field-group",
    "acf-field",
    "acf-post-type",
    "acf-taxonomy",
    "acf-ui-options-page",
})

# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

def _names(en: str, he: str) -> Mapping[str, str]:
    return MappingProxyType({"en": en, "he": he})


TYPE_TRANSLATIONS: Mapping[str, Mapping[str, str]] = MappingProxyType({
    "posts": _names("Posts", "פוסטים"),
    "post": _names("Posts", "פוסטים"),
    "pages": _names("Pages", "עמודים"),
    "page": _names("Pages", "עמודים"),
    "products": _names("Products", "מוצרים"),
    "product": _names("Products", "מוצרים"),
    "services": _names("Services", "שירותים"),
    "service": _names("Services", "שירותים"),
    "projects": _names("Projects", "פרויקטים"),
    "project": _names("Projects", "פרויקטים"),
    "portfolio": _names("Portfolio", "תיק עבודות"),
    "testimonials": _names("Testimonials", "המלצות"),
    "testimonial": _names("Testimonials", "המלצות"),
    "team": _names("Team", "צוות"),
    "events": _names("Events", "אירועים"),
    "event": _names("Events", "אירועים"),
    "news": _names("News", "חדשות"),
    "faq": _names("FAQ", "שאלות נפוצות"),
    "faqs": _names("FAQ", "שאלות נפוצות"),
    "gallery": _names("Gallery", "גלריה"),
    "galleries": _names("Galleries", "גלריות"),
    "locations": _names("Locations", "מיקומים"),
    "location": _names("Locations", "מיקומים"),
    "careers": _names("Careers", "קריירה"),
    "jobs": _names("Jobs", "משרות"),
    "job": _names("Jobs", "משרות"),
    "case_studies": _names("Case Studies", "מקרי בוחן"),
    "case_study": _names("Case Studies", "מקרי בוחן"),
    "blog": _names("Blog", "בלוג"),
    "articles": _names("Articles", "מאמרים"),
    "article": _names("Articles", "מאמרים"),
})

CORE_TYPE_DEFAULTS: Mapping[str, Mapping[str, str]] = MappingProxyType({
    "posts": MappingProxyType({"en": "Posts", "he": "פוסטים", "description": "Blog posts"}),
    "pages": MappingProxyType({"en": "Pages", "he": "עמודים", "description": "Static pages"}),
})

# ---------------------------------------------------------------------------
# Archive pages
# ---------------------------------------------------------------------------

# Single-segment paths that are listing pages rather than content items.
ARCHIVE_PAGE_SLUGS = frozenset({
    "blog", "posts", "articles", "news",
    "services", "service",
    "projects", "portfolio", "work", "our-work", "case-studies",
    "products", "shop", "store",
    "testimonials", "reviews",
    "team", "our-team", "about-us", "about",
    "events", "calendar",
    "faq", "faqs",
    "gallery", "galleries", "photos",
    "locations", "branches", "contact",
    "careers", "jobs", "job-openings",
    "categories", "tags", "archive", "archives",
})

# Extra listing slugs that belong to the posts type.
POST_ARCHIVE_SLUGS = frozenset({"blog", "news", "articles"})

# ---------------------------------------------------------------------------
# Page titles
# ---------------------------------------------------------------------------

# Separators between a page title and the site name; the earliest one wins.
TITLE_SEPARATORS: Tuple[str, ...] = (" | ", " - ")

# Headings and titles that name site chrome rather than the page (casefolded)
GENERIC_TITLES = frozenset({
    "home", "homepage", "home page", "welcome", "main", "index", "menu", "navigation",
    "עמוד הבית", "דף הבית", "ראשי", "תפריט",
})

# Title given to a site root whose page offers nothing better
HOME_PAGE_TITLES: Mapping[str, str] = MappingProxyType({"en": "Home", "he": "עמוד הבית"})
