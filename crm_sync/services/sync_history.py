"""Append-only ledger of finished sync runs."""

from typing import List, Optional
import logging

from crm_sync.core.config import Settings, get_settings
from crm_sync.core.database import Database
from crm_sync.core.exceptions import RunNotFoundError
from crm_sync.models import SyncRun

logger = logging.getLogger(__name__)


class SyncHistoryLedger:
    """Finished runs, newest first."""

    def __init__(self, db: Database, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    @property
    def collection(self):
        return self.db.get_collection("sync_runs")

    async def append(self, run: SyncRun) -> None:
        if not run.is_finished:
            raise ValueError(f"Run {run.id} has not been finalized")
        await self.collection.insert_one(run.model_dump(by_alias=True))

    async def list(
        self,
        company_id: str,
        limit: int = 20,
        provider: Optional[str] = None,
    ) -> List[SyncRun]:
        """Most recent runs for a company, at most ``limit`` of them."""
        limit = max(1, min(limit, self.settings.sync_history_max_limit))
        query = {"company_id": company_id}
        if provider:
            query["provider"] = provider

        cursor = self.collection.find(query).sort("started_at", -1).limit(limit)
        return [SyncRun(**doc) async for doc in cursor]

    async def get(self, company_id: str, run_id: str) -> SyncRun:
        doc = await self.collection.find_one({"_id": run_id, "company_id": company_id})
        if not doc:
            raise RunNotFoundError(run_id)
        return SyncRun(**doc)

    async def last_run(self, company_id: str, provider: str) -> Optional[SyncRun]:
        runs = await self.list(company_id, limit=1, provider=provider)
        return runs[0] if runs else None
