"""Exception hierarchy for Entity Scan."""

from __future__ import annotations


class EntityScanError(Exception):
    """Base exception for all Entity Scan errors."""
    pass


class SourceUnavailableError(EntityScanError):
    """A sitemap, REST endpoint, or page could not be fetched."""

    def __init__(self, message: str, url: str = "", status_code: int = 0):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class WordPressError(SourceUnavailableError):
    """Base exception for WordPress REST API errors."""

    def __init__(self, message: str, url: str = "", status_code: int = 0, response_body: str = ""):
        self.response_body = response_body
        super().__init__(message, url=url, status_code=status_code)


class NotFoundError(WordPressError):
    """Raised on 404 responses."""
    pass


class EnrichmentError(EntityScanError):
    """The AI classifier failed or returned output that violates the schema."""
    pass


class PersistenceError(EntityScanError):
    """A store operation failed."""
    pass


class DuplicateEntityError(PersistenceError):
    """A unique key (external id or site/type/slug) is already taken."""
    pass


class RecordNotFoundError(PersistenceError):
    """An update targeted a record that does not exist."""
    pass


class SiteNotFoundError(EntityScanError):
    """Raised when a site ID is not in the registry."""
    pass


class SiteNotConfiguredError(EntityScanError):
    """Raised when a site has no URL configured."""
    pass


class EntityNotCrawlableError(EntityScanError):
    """Raised when an entity has no URL to fetch."""
    pass
