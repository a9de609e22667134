"""Display and localized names for content types."""

from __future__ import annotations

from typing import Optional

from entity_scan.config import LOCALE
from entity_scan.lookups import TYPE_TRANSLATIONS
from entity_scan.urls import contains_hebrew, humanize_slug, singular_key


def lookup_translation(slug: str, lang: str) -> Optional[str]:
    """Name of *slug* in *lang* from the static table, trying common variants."""
    slug = (slug or "").lower()
    for key in (slug, slug.replace("-", "_"), singular_key(slug)):
        names = TYPE_TRANSLATIONS.get(key)
        if names and names.get(lang):
            return names[lang]
    return None


def is_real_label(slug: str, label: Optional[str]) -> bool:
    """A label that says more than the slug itself."""
    if not label or not label.strip():
        return False
    label = label.strip()
    return label.lower() != (slug or "").lower() and label != humanize_slug(slug)


def display_name_for(slug: str, label: Optional[str] = None) -> str:
    """Site label when meaningful, else the English table name, else the humanized slug."""
    if is_real_label(slug, label):
        return label.strip()
    return lookup_translation(slug, "en") or humanize_slug(slug)


def localized_name_for(
    slug: str,
    display_name: str,
    label: Optional[str] = None,
    locale: str = LOCALE,
) -> str:
    """
    Name in the configured locale.

    A Hebrew-script site label wins for the ``he`` locale; otherwise the
    static table is consulted, falling back to the display name.
    """
    if locale == "he" and contains_hebrew(label):
        return label.strip()
    return lookup_translation(slug, locale) or display_name
