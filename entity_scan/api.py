"""
Entity Scan API Server
======================

FastAPI server exposing discovery, population, deep crawl, and sync status
for registered sites.

Run directly:
    python -m entity_scan serve
    uvicorn entity_scan.api:app --host 0.0.0.0 --port 8790

Callers identify themselves with the ``X-Account-Id`` header; a site that
belongs to another account is reported as not found.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from entity_scan import __version__
from entity_scan.config import API_HOST, API_PORT
from entity_scan.errors import (
    EntityNotCrawlableError,
    RecordNotFoundError,
    SiteNotConfiguredError,
    SiteNotFoundError,
    SourceUnavailableError,
)
from entity_scan.models import ContentTypeDescriptor
from entity_scan.scanner import EntityScanner, get_scanner
from entity_scan.sites import SiteConfig

logger = logging.getLogger("entity_scan.api")

ALLOWED_ORIGINS = os.getenv(
    "ENTITY_SCAN_CORS_ORIGINS",
    "http://localhost:3000",
).split(",")

# ---------------------------------------------------------------------------
# Pydantic Models -- Requests
# ---------------------------------------------------------------------------


class ContentTypeIn(BaseModel):
    slug: str
    displayName: Optional[str] = None
    localizedName: Optional[str] = None
    restEndpoint: Optional[str] = None
    description: str = ""
    isCore: bool = False
    sourceSitemapUrls: List[str] = Field(default_factory=list)

    def to_descriptor(self) -> ContentTypeDescriptor:
        return ContentTypeDescriptor.from_dict(self.model_dump())


class ConfirmTypesRequest(BaseModel):
    types: List[ContentTypeIn]


class PopulateRequest(BaseModel):
    types: Optional[List[ContentTypeIn]] = Field(
        None, description="Confirmed types; defaults to the site's enabled stored types"
    )
    itemCapPerType: Optional[int] = Field(None, ge=1)


class CrawlRequest(BaseModel):
    batchSize: int = Field(50, ge=1, le=500)
    forceRescan: bool = False


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


class AppState:
    def __init__(self) -> None:
        self.scanner: Optional[EntityScanner] = None
        self.start_time: float = 0.0
        self.running_tasks: Set[asyncio.Task] = set()


state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    state.start_time = time.monotonic()
    if state.scanner is None:
        state.scanner = get_scanner()
    logger.info("Entity Scan API started (%d sites registered)", len(state.scanner.registry))
    yield
    if state.running_tasks:
        logger.info("Waiting for %d running operations", len(state.running_tasks))
        await asyncio.gather(*state.running_tasks, return_exceptions=True)
    await state.scanner.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Entity Scan API",
    description="Content-type discovery and entity reconciliation for WordPress sites.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _require_scanner() -> EntityScanner:
    if state.scanner is None:
        raise HTTPException(503, "Scanner not initialized")
    return state.scanner


def require_account(x_account_id: Optional[str] = Header(None)) -> str:
    if not x_account_id:
        raise HTTPException(401, "Unauthorized")
    return x_account_id


def _owned_site(site_id: str, account_id: str, scanner: EntityScanner) -> SiteConfig:
    try:
        site = scanner.registry.get(site_id)
    except SiteNotFoundError:
        raise HTTPException(404, "Site not found")
    if site.account_id is None or site.account_id != account_id:
        raise HTTPException(404, "Site not found")
    return site


async def _run_shielded(coro) -> Any:
    """Run *coro* as a task that keeps going if the client disconnects."""
    task = asyncio.ensure_future(coro)
    state.running_tasks.add(task)
    task.add_done_callback(state.running_tasks.discard)
    return await asyncio.shield(task)


# ===================================================================
# Health
# ===================================================================


@app.get("/health", tags=["Health"])
async def health():
    """Server health check."""
    uptime = time.monotonic() - state.start_time if state.start_time else 0
    return {
        "status": "ok",
        "timestamp": _now_iso(),
        "version": __version__,
        "running_operations": len(state.running_tasks),
        "uptime_seconds": round(uptime),
    }


# ===================================================================
# Entity types
# ===================================================================


@app.get("/sites/{site_id}/entity-types/discover", tags=["Entity Types"])
async def discover_types(
    site_id: str,
    account_id: str = Depends(require_account),
    scanner: EntityScanner = Depends(_require_scanner),
):
    """Discover content types from the site's sitemap and REST API."""
    site = _owned_site(site_id, account_id, scanner)
    try:
        result = await scanner.discover(
            site.base_url,
            site.platform,
            site_id=site.site_id,
            account_id=account_id,
        )
    except SiteNotConfiguredError:
        raise HTTPException(400, "Site URL not configured")
    except Exception as exc:
        logger.error("Discovery failed for %s: %s", site_id, exc, exc_info=True)
        raise HTTPException(500, "Failed to discover entity types")
    return result.to_dict()


@app.post("/sites/{site_id}/entity-types", tags=["Entity Types"])
async def confirm_types(
    site_id: str,
    req: ConfirmTypesRequest,
    account_id: str = Depends(require_account),
    scanner: EntityScanner = Depends(_require_scanner),
):
    """Save the selected content types for the site."""
    site = _owned_site(site_id, account_id, scanner)
    records = await scanner.confirm_types(site.site_id, [t.to_descriptor() for t in req.types])
    return {"entityTypes": [r.to_dict() for r in records]}


# ===================================================================
# Entities
# ===================================================================


@app.post("/sites/{site_id}/entities/populate", tags=["Entities"])
async def populate_entities(
    site_id: str,
    req: PopulateRequest,
    account_id: str = Depends(require_account),
    scanner: EntityScanner = Depends(_require_scanner),
):
    """Enumerate and upsert the items of the confirmed content types."""
    site = _owned_site(site_id, account_id, scanner)
    if not site.url:
        raise HTTPException(400, "Site URL not configured")
    types = [t.to_descriptor() for t in req.types] if req.types is not None else None
    try:
        result = await _run_shielded(scanner.populate(site, types, req.itemCapPerType))
    except Exception:
        raise HTTPException(500, "Failed to populate entities")
    return {"success": True, "stats": result.to_dict()}


@app.post("/sites/{site_id}/entities/crawl", tags=["Entities"])
async def crawl_entities(
    site_id: str,
    req: CrawlRequest,
    account_id: str = Depends(require_account),
    scanner: EntityScanner = Depends(_require_scanner),
):
    """Deep-crawl stored entities and merge their page metadata."""
    site = _owned_site(site_id, account_id, scanner)
    try:
        result = await _run_shielded(scanner.deep_crawl(site.site_id, req.batchSize, req.forceRescan))
    except Exception:
        raise HTTPException(500, "Failed to crawl entities")
    return {"success": True, "stats": result.to_dict()}


@app.post("/sites/{site_id}/entities/{entity_id}/refresh", tags=["Entities"])
async def refresh_entity(
    site_id: str,
    entity_id: str,
    account_id: str = Depends(require_account),
    scanner: EntityScanner = Depends(_require_scanner),
):
    """Re-crawl one entity and suggest its focus keyword."""
    site = _owned_site(site_id, account_id, scanner)
    try:
        result = await _run_shielded(scanner.refresh_entity(site.site_id, entity_id, account_id=account_id))
    except RecordNotFoundError:
        raise HTTPException(404, "Entity not found")
    except EntityNotCrawlableError:
        raise HTTPException(400, "Entity has no URL")
    except SourceUnavailableError as exc:
        raise HTTPException(502, f"Failed to crawl page: {exc}")
    except Exception as exc:
        logger.error("Refresh failed for %s/%s: %s", site_id, entity_id, exc, exc_info=True)
        raise HTTPException(500, "Failed to refresh entity")
    return result.to_dict()


@app.get("/sites/{site_id}/sync-status", tags=["Entities"])
async def sync_status(
    site_id: str,
    account_id: str = Depends(require_account),
    scanner: EntityScanner = Depends(_require_scanner),
) -> Dict[str, Any]:
    """Progress of the latest populate or crawl run."""
    site = _owned_site(site_id, account_id, scanner)
    return await scanner.sync_status(site.site_id)


# ===================================================================
# Entry Point
# ===================================================================


def run_server(host: str = API_HOST, port: int = API_PORT) -> None:
    import uvicorn

    uvicorn.run(
        "entity_scan.api:app",
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    run_server()
