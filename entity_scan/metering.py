"""
Usage metering for AI calls.

Each dispatched classification call records one unit against the caller's
account, and so does each focus keyword produced by a single-entity
refresh. Metering is best-effort: a failure is logged and never undoes or
blocks the operation it belongs to.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from entity_scan.config import DATA_DIR
from entity_scan.store import load_json, save_json

logger = logging.getLogger("entity_scan.metering")

USAGE_LEDGER_PATH = DATA_DIR / "usage" / "ledger.json"

OPERATION_DISCOVERY = "GENERIC"
OPERATION_REFRESH = "ENTITY_REFRESH"


@dataclass
class UsageEvent:
    account_id: Optional[str]
    user_id: Optional[str]
    site_id: Optional[str]
    operation: str = OPERATION_DISCOVERY
    description: str = "Entity types discovery with AI enhancement"
    units: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class UsageResult:
    success: bool
    total_used: Optional[int] = None


class UsageMeter(ABC):
    """Records usage units for an account."""

    @abstractmethod
    async def track(self, event: UsageEvent) -> UsageResult:
        """Record *event*; must not raise."""


class NullUsageMeter(UsageMeter):
    """Meter that records nothing."""

    async def track(self, event: UsageEvent) -> UsageResult:
        return UsageResult(success=True, total_used=None)


class JsonUsageLedger(UsageMeter):
    """Appends usage events to a JSON ledger and keeps per-account totals."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else USAGE_LEDGER_PATH
        self._lock = asyncio.Lock()

    def _record(self, event: UsageEvent, account: str) -> int:
        ledger = load_json(self.path, {"totals": {}, "events": []})
        totals = ledger.setdefault("totals", {})
        ledger.setdefault("events", []).append(asdict(event))
        totals[account] = int(totals.get(account, 0)) + event.units
        save_json(self.path, ledger)
        return totals[account]

    async def track(self, event: UsageEvent) -> UsageResult:
        account = event.account_id or "anonymous"
        try:
            async with self._lock:
                total = await asyncio.to_thread(self._record, event, account)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to record usage for account %s: %s", account, exc)
            return UsageResult(success=False)

        logger.debug("Recorded %d unit(s) of %s for account %s (total %d)", event.units, event.operation, account, total)
        return UsageResult(success=True, total_used=total)
