"""
Tests for usage metering.
"""

import json

import pytest

try:
    from entity_scan.metering import JsonUsageLedger, NullUsageMeter, UsageEvent
    HAS_METERING = True
except ImportError:
    HAS_METERING = False

pytestmark = pytest.mark.skipif(not HAS_METERING, reason="metering module not available")


class TestJsonUsageLedger:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accumulates_per_account(self, tmp_path):
        ledger = JsonUsageLedger(tmp_path / "usage" / "ledger.json")

        first = await ledger.track(UsageEvent(account_id="acct_1", user_id="u1", site_id="acme"))
        second = await ledger.track(UsageEvent(account_id="acct_1", user_id="u1", site_id="acme"))
        other = await ledger.track(UsageEvent(account_id="acct_2", user_id=None, site_id=None))

        assert (first.success, first.total_used) == (True, 1)
        assert second.total_used == 2
        assert other.total_used == 1

        data = json.loads((tmp_path / "usage" / "ledger.json").read_text(encoding="utf-8"))
        assert data["totals"] == {"acct_1": 2, "acct_2": 1}
        assert len(data["events"]) == 3
        assert data["events"][0]["description"] == "Entity types discovery with AI enhancement"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_anonymous_account(self, tmp_path):
        ledger = JsonUsageLedger(tmp_path / "ledger.json")
        result = await ledger.track(UsageEvent(account_id=None, user_id=None, site_id=None))
        assert result.total_used == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unwritable_path_reports_failure(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        ledger = JsonUsageLedger(blocker / "ledger.json")

        result = await ledger.track(UsageEvent(account_id="acct_1", user_id=None, site_id=None))

        assert result.success is False


class TestNullUsageMeter:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_records_nothing(self):
        result = await NullUsageMeter().track(UsageEvent(account_id="a", user_id=None, site_id=None))
        assert result.success is True
        assert result.total_used is None
