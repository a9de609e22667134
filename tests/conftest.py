"""
Shared fixtures for the Entity Scan test suite.

Provides an in-memory HTTP fake, sitemap builders, settings, stores, and
reusable mock objects so that all tests run WITHOUT any external services.
"""

import json
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from entity_scan.config import ScanSettings
from entity_scan.fetcher import FetchResult
from entity_scan.store import MemoryEntityStore

SITE = "https://acme.test"


# ---------------------------------------------------------------------------
# HTTP fakes
# ---------------------------------------------------------------------------


class FakeHttp:
    """
    Stand-in for HttpFetcher that serves canned responses by URL.

    Routes map a URL (optionally suffixed with ``?page=N`` for paginated
    REST calls) to a FetchResult, a ``(status, body)`` tuple, a body string
    (status 200), or None for a network failure. Unknown URLs return 404.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []

    def add(self, url: str, response: Any) -> None:
        self.routes[url] = response

    def urls_called(self) -> List[str]:
        return [c["url"] for c in self.calls]

    async def get(self, url, *, timeout, params=None, headers=None):
        self.calls.append({"url": url, "timeout": timeout, "params": params, "headers": headers})
        key = url
        if params and "page" in params and f"{url}?page={params['page']}" in self.routes:
            key = f"{url}?page={params['page']}"
        if key not in self.routes:
            return FetchResult(url=url, status=404, text="Not Found")
        response = self.routes[key]
        if response is None or isinstance(response, FetchResult):
            return response
        if isinstance(response, tuple):
            status, body = response[0], response[1]
            hdrs = response[2] if len(response) > 2 else {}
        else:
            status, body, hdrs = 200, response, {}
        if not isinstance(body, str):
            body = json.dumps(body)
        return FetchResult(url=url, status=status, text=body, headers={k.lower(): v for k, v in hdrs.items()})

    async def close(self):
        pass


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, text="", headers=None):
        resp = AsyncMock()
        resp.status = status
        resp.text = AsyncMock(return_value=text)
        resp.headers = headers or {"Content-Type": "text/html"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


def make_mock_session(resp=None, side_effect=None):
    """MagicMock session whose ``request`` returns *resp* as an async context manager."""
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    if side_effect is not None:
        session.request = MagicMock(side_effect=side_effect)
    else:
        session.request = MagicMock(return_value=resp)
    return session


@pytest.fixture
def mock_session_factory():
    return make_mock_session


# ---------------------------------------------------------------------------
# Sitemap builders
# ---------------------------------------------------------------------------


def _urlset(entries) -> str:
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9" '
        'xmlns:image="http://www.google.com/schemas/sitemap-image/1.1">',
    ]
    for entry in entries:
        if isinstance(entry, str):
            entry = {"loc": entry}
        parts.append("<url>")
        parts.append(f"<loc>{entry['loc']}</loc>")
        if entry.get("lastmod"):
            parts.append(f"<lastmod>{entry['lastmod']}</lastmod>")
        if entry.get("image"):
            parts.append("<image:image>")
            parts.append(f"<image:loc>{entry['image']}</image:loc>")
            if entry.get("image_title"):
                parts.append(f"<image:title>{entry['image_title']}</image:title>")
            parts.append("</image:image>")
        parts.append("</url>")
    parts.append("</urlset>")
    return "\n".join(parts)


def _sitemap_index(urls) -> str:
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">',
    ]
    for url in urls:
        parts.append(f"<sitemap><loc>{url}</loc></sitemap>")
    parts.append("</sitemapindex>")
    return "\n".join(parts)


@pytest.fixture
def urlset_xml():
    return _urlset


@pytest.fixture
def sitemap_index_xml():
    return _sitemap_index


# ---------------------------------------------------------------------------
# Settings and stores
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path):
    return ScanSettings(
        data_dir=tmp_path,
        sites_file=tmp_path / "sites.json",
        crawl_delay=0,
        ai_enabled=False,
        locale="he",
    )


@pytest.fixture
def memory_store():
    return MemoryEntityStore()


# ---------------------------------------------------------------------------
# Site registry fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def site_registry():
    """Return test site registry data."""
    return {
        "sites": [
            {
                "id": "acme",
                "name": "Acme",
                "url": SITE,
                "platform": "wordpress",
                "account_id": "acct_1",
            },
            {
                "id": "shop",
                "url": "https://shop.test/",
                "platform": "shopify",
                "account_id": "acct_2",
            },
        ],
    }


@pytest.fixture
def site_registry_file(tmp_path, site_registry):
    """Write site registry to a temp JSON file and return its path."""
    path = tmp_path / "sites.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(site_registry, f)
    return path


# ---------------------------------------------------------------------------
# Anthropic mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_anthropic():
    """Mock AsyncAnthropic client whose messages.create returns a JSON answer."""
    client = MagicMock()
    mock_response = MagicMock()
    mock_response.content = [MagicMock(type="text", text='{"entityTypes": []}')]
    mock_response.usage = MagicMock(input_tokens=100, output_tokens=50)
    client.messages.create = AsyncMock(return_value=mock_response)
    return client


def set_anthropic_reply(client, text: str) -> None:
    response = MagicMock()
    response.content = [MagicMock(type="text", text=text)]
    client.messages.create = AsyncMock(return_value=response)


@pytest.fixture
def anthropic_reply():
    return set_anthropic_reply
