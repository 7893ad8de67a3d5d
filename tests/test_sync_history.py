"""Tests for the sync history ledger."""

from datetime import datetime, timedelta

import pytest

from crm_sync.core.exceptions import RunNotFoundError
from crm_sync.models import SyncRun
from crm_sync.services import SyncHistoryLedger


def finished_run(company_id="company-1", provider="servicetitan", minutes=0):
    run = SyncRun(
        company_id=company_id,
        provider=provider,
        started_at=datetime(2024, 1, 1) + timedelta(minutes=minutes),
    )
    run.start()
    return run.finalize()


@pytest.fixture
def ledger(db, settings):
    return SyncHistoryLedger(db, settings)


class TestSyncHistoryLedger:
    """Test append and listing."""

    @pytest.mark.asyncio
    async def test_most_recent_first(self, ledger):
        runs = [finished_run(minutes=i) for i in range(3)]
        for run in runs:
            await ledger.append(run)

        listed = await ledger.list("company-1")

        assert [r.id for r in listed] == [r.id for r in reversed(runs)]

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, ledger, settings):
        for i in range(5):
            await ledger.append(finished_run(minutes=i))

        assert len(await ledger.list("company-1", limit=2)) == 2
        assert len(await ledger.list("company-1", limit=0)) == 1
        assert len(await ledger.list("company-1", limit=settings.sync_history_max_limit + 50)) == 5

    @pytest.mark.asyncio
    async def test_filters(self, ledger):
        await ledger.append(finished_run(provider="servicetitan"))
        await ledger.append(finished_run(provider="housecallpro", minutes=1))
        await ledger.append(finished_run(company_id="company-2"))

        assert [r.provider for r in await ledger.list("company-1", provider="housecallpro")] == ["housecallpro"]
        assert len(await ledger.list("company-1")) == 2
        assert (await ledger.last_run("company-1", "servicetitan")).provider == "servicetitan"
        assert await ledger.last_run("company-3", "servicetitan") is None

    @pytest.mark.asyncio
    async def test_get(self, ledger):
        run = finished_run()
        await ledger.append(run)

        assert (await ledger.get("company-1", run.id)).status == "success"
        with pytest.raises(RunNotFoundError):
            await ledger.get("company-2", run.id)
        with pytest.raises(RunNotFoundError):
            await ledger.get("company-1", "missing")

    @pytest.mark.asyncio
    async def test_unfinished_runs_are_rejected(self, ledger):
        run = SyncRun(company_id="company-1", provider="servicetitan")
        run.start()

        with pytest.raises(ValueError):
            await ledger.append(run)
