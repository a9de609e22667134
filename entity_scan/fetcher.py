"""
Async HTTP fetcher shared by the sitemap, REST, and page crawl components.

One ``aiohttp.ClientSession`` per fetcher with the scan user agent; each call
sets its own timeout. Network failures and timeouts never raise: ``get``
returns None and the caller chooses its fallback.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from entity_scan.config import ScanSettings, get_settings

logger = logging.getLogger("entity_scan.fetcher")


@dataclass
class FetchResult:
    """Status, body, and lower-cased headers of one HTTP response."""

    url: str
    status: int
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    def json(self) -> Any:
        """Decode the body as JSON; raises ValueError on invalid content."""
        return json.loads(self.text)


class HttpFetcher:
    """Thin GET-only wrapper over an aiohttp session."""

    def __init__(self, settings: Optional[ScanSettings] = None):
        self.settings = settings or get_settings()
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {"User-Agent": self.settings.user_agent}
            connector = aiohttp.TCPConnector(limit=10, ttl_dns_cache=300)
            self._session = aiohttp.ClientSession(headers=headers, connector=connector)
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def get(
        self,
        url: str,
        *,
        timeout: float,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[FetchResult]:
        """
        GET *url* and read the body as text.

        Parameters
        ----------
        url : str
            Absolute URL.
        timeout : float
            Total time budget for the request in seconds.
        params : dict, optional
            Query parameters; None values are dropped.
        headers : dict, optional
            Extra request headers.

        Returns
        -------
        FetchResult or None
            None on connection errors, timeouts, or undecodable bodies.
            Non-2xx responses are returned, not raised.
        """
        session = await self._get_session()
        kwargs: Dict[str, Any] = {"timeout": aiohttp.ClientTimeout(total=timeout)}
        if params is not None:
            kwargs["params"] = {k: v for k, v in params.items() if v is not None}
        if headers is not None:
            kwargs["headers"] = headers

        try:
            async with session.request("GET", url, **kwargs) as resp:
                text = await resp.text()
                return FetchResult(
                    url=url,
                    status=resp.status,
                    text=text,
                    headers={str(k).lower(): str(v) for k, v in dict(resp.headers).items()},
                )
        except asyncio.TimeoutError:
            logger.info("Timed out after %.0fs: %s", timeout, url)
        except (aiohttp.ClientError, UnicodeDecodeError) as exc:
            logger.info("Fetch failed for %s: %s", url, exc)
        return None
