"""
AI enrichment of discovered content types.

Sends the sitemap tokens, a sample of sitemap URLs, and the REST type
registry to Claude and asks for a structured list of content types. The
answer may only improve localized names and descriptions of types already
found, or add types the other signals missed. Any failure (timeout, API
error, unparseable or invalid output) means "no enrichment".
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any, List, Optional, Sequence, Tuple, Type, TypeVar

import anthropic
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from entity_scan.config import AI_SAMPLE_URLS, LOCALE, ScanSettings, get_settings
from entity_scan.errors import EnrichmentError
from entity_scan.lookups import CORE_SINGULAR_TO_PLURAL, CORE_SLUGS
from entity_scan.models import ContentTypeDescriptor
from entity_scan.reconciler import SitemapSignals, matches_type
from entity_scan.wordpress_rest import RestPostType

logger = logging.getLogger("entity_scan.classifier")

SchemaT = TypeVar("SchemaT", bound=BaseModel)

SYSTEM_PROMPT = (
    "You are an expert WordPress developer. Analyze sitemap and REST API data to "
    "identify all content types on a WordPress site. Be accurate and only return "
    "post types that actually exist."
)

_LANGUAGE_NAMES = {"he": "Hebrew", "en": "English"}


# ---------------------------------------------------------------------------
# Output schema
# ---------------------------------------------------------------------------


class AiEntityType(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    slug: str
    name: str
    localized_name: str = Field("", alias="localizedName")
    api_endpoint: str = Field("", alias="apiEndpoint")
    description: str = ""
    is_core: bool = Field(False, alias="isCore")


class AiEntityTypeList(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_types: List[AiEntityType] = Field(default_factory=list, alias="entityTypes")


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def extract_json_from_response(text: str) -> Any:
    """JSON object from a model reply, bare, fenced, or wrapped in prose."""
    text = (text or "").strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            pass

    logger.warning("Failed to extract JSON from response (%d chars)", len(text))
    return None


def response_text(response: Any) -> str:
    """Concatenated text of the reply's text blocks; other block types are ignored."""
    return "".join(
        getattr(block, "text", "") or ""
        for block in (getattr(response, "content", None) or [])
        if getattr(block, "type", None) == "text"
    )


# ---------------------------------------------------------------------------
# Anthropic client
# ---------------------------------------------------------------------------


class StructuredCompletionClient:
    """
    Thin wrapper around the Anthropic async SDK that returns schema-validated
    output.

    The SDK client is created lazily from ``ANTHROPIC_API_KEY`` unless one is
    injected.
    """

    def __init__(self, settings: Optional[ScanSettings] = None, client: Any = None) -> None:
        self.settings = settings or get_settings()
        self._async_client = client

    @property
    def is_configured(self) -> bool:
        return self._async_client is not None or bool(os.environ.get("ANTHROPIC_API_KEY"))

    def _ensure_async_client(self) -> None:
        """Lazily initialize the async Anthropic client."""
        if self._async_client is None:
            api_key = os.environ.get("ANTHROPIC_API_KEY")
            if not api_key:
                raise EnrichmentError("ANTHROPIC_API_KEY environment variable is not set.")
            self._async_client = anthropic.AsyncAnthropic(
                api_key=api_key,
                timeout=self.settings.ai_timeout,
                max_retries=0,
            )

    async def generate_structured(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: Type[SchemaT],
        temperature: float = 0.2,
    ) -> SchemaT:
        """
        Ask the model for JSON matching *schema*.

        Parameters
        ----------
        system_prompt : str
            System-level instructions.
        user_prompt : str
            The request itself.
        schema : type of pydantic.BaseModel
            Model the JSON answer must validate against.
        temperature : float
            Sampling temperature.

        Returns
        -------
        An instance of *schema*.

        Raises
        ------
        EnrichmentError
            On API errors, missing JSON, or schema violations.
        """
        self._ensure_async_client()

        schema_text = json.dumps(schema.model_json_schema(), ensure_ascii=False)
        system = (
            f"{system_prompt}\n\nRespond with a single JSON object that matches this "
            f"JSON schema, and nothing else:\n{schema_text}"
        )

        logger.debug(
            "API call: model=%s temperature=%.1f user_len=%d",
            self.settings.ai_model, temperature, len(user_prompt),
        )
        start_time = time.monotonic()
        try:
            response = await self._async_client.messages.create(
                model=self.settings.ai_model,
                max_tokens=self.settings.ai_max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.AnthropicError as exc:
            elapsed = time.monotonic() - start_time
            raise EnrichmentError(f"API call failed after {elapsed:.1f}s: {exc}") from exc

        text = response_text(response)
        logger.debug("API response: %d chars in %.1fs", len(text), time.monotonic() - start_time)

        payload = extract_json_from_response(text)
        if payload is None:
            raise EnrichmentError("Model response contained no JSON")
        try:
            return schema.model_validate(payload)
        except ValidationError as exc:
            raise EnrichmentError(f"Model response does not match schema: {exc}") from exc


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


def build_user_prompt(
    signals: Optional[SitemapSignals],
    rest_types: Optional[Sequence[RestPostType]],
    locale: str = LOCALE,
) -> str:
    rest_json = (
        json.dumps([t.summary() for t in rest_types], indent=2, ensure_ascii=False)
        if rest_types
        else "Not available"
    )
    tokens = ", ".join(signals.tokens) if signals and signals.tokens else "None detected"
    samples = "\n".join(signals.sample_urls[:AI_SAMPLE_URLS]) if signals else ""
    language = _LANGUAGE_NAMES.get(locale, locale)

    return f"""Analyze this WordPress site data and identify ALL content types (post types) that exist on the site.

WordPress REST API Types (if available):
{rest_json}

Sitemap Post Types Found:
{tokens}

Sample URLs from Sitemap (for pattern analysis):
{samples}

Instructions:
1. Identify all post types including:
   - Core types: posts, pages
   - Custom post types: portfolio, projects, products, services, team, testimonials, etc.
2. For each post type, determine the REST API endpoint
3. Provide the name in English (name) and in {language} (localizedName)
4. Only include post types that appear to have actual content
5. Do NOT include taxonomies (categories, tags), users, or media
6. The apiEndpoint should be the REST API path (e.g., "posts", "pages", "portfolio")

Return ONLY post types that actually exist on this site based on the data provided."""


class TypeClassifier:
    """Asks the AI model to name and describe a site's content types."""

    def __init__(self, client: Optional[StructuredCompletionClient] = None, settings: Optional[ScanSettings] = None):
        self.settings = settings or get_settings()
        self.client = client or StructuredCompletionClient(self.settings)

    @property
    def is_available(self) -> bool:
        return self.settings.ai_enabled and self.client.is_configured

    async def classify(
        self,
        signals: Optional[SitemapSignals],
        rest_types: Optional[Sequence[RestPostType]],
    ) -> Optional[List[AiEntityType]]:
        """Suggested content types, or None when the call fails in any way."""
        prompt = build_user_prompt(signals, rest_types, self.settings.locale)
        try:
            result = await self.client.generate_structured(
                SYSTEM_PROMPT,
                prompt,
                AiEntityTypeList,
                temperature=self.settings.ai_temperature,
            )
        except EnrichmentError as exc:
            logger.warning("AI classification failed: %s", exc)
            return None
        logger.info("AI suggested %d content types", len(result.entity_types))
        return result.entity_types


def merge_ai_suggestions(
    types: List[ContentTypeDescriptor],
    suggestions: Sequence[AiEntityType],
    signals: Optional[SitemapSignals] = None,
) -> Tuple[List[ContentTypeDescriptor], bool]:
    """
    Fold AI suggestions into reconciled types.

    Matching types get an upgraded localized name (only when the AI's
    localized name differs from its English name) and description. Slug,
    core flag, and counts are never changed. New types are appended unless
    they are the core singular ``post``/``page``.

    Returns
    -------
    tuple of (types, changed)
    """
    changed = False
    for suggestion in suggestions:
        slug = (suggestion.slug or "").strip().lower()
        if not slug:
            continue
        endpoint = (suggestion.api_endpoint or "").strip() or None
        existing = next((t for t in types if matches_type(t, slug, endpoint)), None)

        if existing is not None:
            localized = suggestion.localized_name.strip()
            if localized and localized != suggestion.name.strip() and localized != existing.localized_name:
                existing.localized_name = localized
                changed = True
            description = suggestion.description.strip()
            if description and description != existing.description:
                existing.description = description
                changed = True
            continue

        if slug in CORE_SINGULAR_TO_PLURAL or slug in CORE_SLUGS:
            continue

        name = suggestion.name.strip() or slug
        descriptor = ContentTypeDescriptor(
            slug=slug,
            display_name=name,
            localized_name=suggestion.localized_name.strip() or name,
            rest_endpoint=endpoint or slug,
            description=suggestion.description.strip(),
            is_core=False,
        )
        if signals is not None:
            for token, urls in signals.groups.items():
                if matches_type(descriptor, token):
                    descriptor.source_sitemap_urls.extend(u for u in urls if u not in descriptor.source_sitemap_urls)
                    descriptor.discovered_entity_count += signals.counts.get(token, 0)
        types.append(descriptor)
        changed = True

    return types, changed


# ---------------------------------------------------------------------------
# Focus keyword
# ---------------------------------------------------------------------------

KEYWORD_SYSTEM_PROMPT = (
    "You are an SEO expert. Extract the main focus keyword from the given page "
    "metadata."
)


class FocusKeyword(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    focus_keyword: str = Field("", alias="focusKeyword")


class FocusKeywordSuggester:
    """Asks the AI model for the 1-3 word focus keyword of a page."""

    def __init__(self, client: Optional[StructuredCompletionClient] = None, settings: Optional[ScanSettings] = None):
        self.settings = settings or get_settings()
        self.client = client or StructuredCompletionClient(self.settings)

    @property
    def is_available(self) -> bool:
        return self.settings.ai_enabled and self.client.is_configured

    async def suggest(self, title: Optional[str], description: Optional[str]) -> Optional[str]:
        """Focus keyword for a page, or None without metadata or on any failure."""
        title, description = (title or "").strip(), (description or "").strip()
        if not title and not description:
            return None

        language = _LANGUAGE_NAMES.get(self.settings.locale, self.settings.locale)
        prompt = (
            "Analyze this webpage and determine its main focus keyword: the 1-3 words "
            "that best describe what the page is about for SEO purposes.\n\n"
            f"Page Title: {title}\n"
            f"Meta Description: {description}\n\n"
            f"Answer in the language of the content (usually {language})."
        )
        try:
            result = await self.client.generate_structured(
                KEYWORD_SYSTEM_PROMPT,
                prompt,
                FocusKeyword,
                temperature=0.3,
            )
        except EnrichmentError as exc:
            logger.warning("Focus keyword extraction failed: %s", exc)
            return None
        return result.focus_keyword.strip() or None
