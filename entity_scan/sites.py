"""
Site registry.

Sites are listed in a JSON file (``configs/sites.json`` by default)::

    {"sites": [{"id": "acme", "url": "https://acme.example",
                "platform": "wordpress", "account_id": "acct_1"}]}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from entity_scan.config import SITES_FILE
from entity_scan.errors import SiteNotConfiguredError, SiteNotFoundError
from entity_scan.urls import normalize_site_url

logger = logging.getLogger("entity_scan.sites")


@dataclass
class SiteConfig:
    """Configuration for a single site."""

    site_id: str
    url: str = ""
    platform: str = "wordpress"
    account_id: Optional[str] = None
    name: str = ""

    @property
    def base_url(self) -> str:
        """Normalized site root without a trailing slash."""
        if not self.url:
            raise SiteNotConfiguredError(f"Site {self.site_id!r} has no URL configured")
        return normalize_site_url(self.url)

    @property
    def is_wordpress(self) -> bool:
        return (self.platform or "").lower() == "wordpress"

    def __repr__(self) -> str:
        return f"SiteConfig({self.site_id!r}, {self.url!r}, {self.platform!r})"


def load_site_registry(registry_path: Optional[Path] = None) -> List[SiteConfig]:
    """
    Load all site configurations from the registry file.

    Parameters
    ----------
    registry_path : Path, optional
        Path to the registry JSON. Defaults to ``ENTITY_SCAN_SITES_FILE``.

    Returns
    -------
    list of SiteConfig

    Raises
    ------
    FileNotFoundError
        When the registry file does not exist.
    """
    path = Path(registry_path) if registry_path else SITES_FILE

    if not path.exists():
        logger.error("Site registry not found at %s", path)
        raise FileNotFoundError(f"Site registry not found: {path}")

    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)

    configs: List[SiteConfig] = []
    for entry in data.get("sites", []):
        if not entry.get("id"):
            logger.warning("Skipping registry entry without id: %s", entry)
            continue
        configs.append(SiteConfig(
            site_id=str(entry["id"]),
            url=entry.get("url") or (f"https://{entry['domain']}" if entry.get("domain") else ""),
            platform=entry.get("platform", "wordpress"),
            account_id=entry.get("account_id"),
            name=entry.get("name", ""),
        ))

    logger.debug("Loaded %d sites from %s", len(configs), path)
    return configs


class SiteRegistry:
    """Lookup of SiteConfig by id."""

    def __init__(self, sites: Optional[List[SiteConfig]] = None):
        self._sites: Dict[str, SiteConfig] = {s.site_id: s for s in sites or []}

    @classmethod
    def from_file(cls, registry_path: Optional[Path] = None) -> "SiteRegistry":
        try:
            return cls(load_site_registry(registry_path))
        except FileNotFoundError:
            return cls()

    def get(self, site_id: str) -> SiteConfig:
        """
        Raises
        ------
        SiteNotFoundError
            If *site_id* is not registered.
        """
        site = self._sites.get(site_id)
        if site is None:
            raise SiteNotFoundError(f"Site {site_id!r} not found in registry")
        return site

    def add(self, site: SiteConfig) -> None:
        self._sites[site.site_id] = site

    def all(self) -> List[SiteConfig]:
        return list(self._sites.values())

    def __len__(self) -> int:
        return len(self._sites)
