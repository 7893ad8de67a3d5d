"""Local entity to remote record links."""

from typing import List, Optional
from datetime import datetime
import logging

from pymongo.errors import DuplicateKeyError

from crm_sync.core.database import Database
from crm_sync.models import LocalEntityType, RemoteMapping

logger = logging.getLogger(__name__)


class RemoteMappingRepository:
    """Stores the remote id of every synced customer and check-in.

    The unique index on (company_id, provider, local_entity_type, local_id)
    guarantees at most one remote record per local entity.
    """

    def __init__(self, db: Database):
        self.db = db

    @property
    def collection(self):
        return self.db.get_collection("remote_mappings")

    @staticmethod
    def _key(company_id: str, provider: str, entity_type: LocalEntityType, local_id: str):
        return {
            "company_id": company_id,
            "provider": provider,
            "local_entity_type": LocalEntityType(entity_type).value,
            "local_id": local_id,
        }

    async def get(
        self,
        company_id: str,
        provider: str,
        entity_type: LocalEntityType,
        local_id: str,
    ) -> Optional[RemoteMapping]:
        doc = await self.collection.find_one(self._key(company_id, provider, entity_type, local_id))
        if doc:
            doc.pop("_id", None)
            return RemoteMapping(**doc)
        return None

    async def upsert(
        self,
        company_id: str,
        provider: str,
        entity_type: LocalEntityType,
        local_id: str,
        remote_id: str,
    ) -> RemoteMapping:
        """Record the remote id for a local entity and clear any requeue flag."""
        key = self._key(company_id, provider, entity_type, local_id)
        now = datetime.utcnow()
        fields = {"remote_id": remote_id, "requeued": False, "updated_at": now}

        try:
            await self.collection.update_one(
                key,
                {"$set": fields, "$setOnInsert": {"created_at": now}},
                upsert=True,
            )
        except DuplicateKeyError:
            # Lost an insert race; the row exists now
            await self.collection.update_one(key, {"$set": fields})

        return await self.get(company_id, provider, entity_type, local_id)

    async def is_synced(
        self,
        company_id: str,
        provider: str,
        entity_type: LocalEntityType,
        local_id: str,
    ) -> bool:
        """Mapped and not waiting for another push."""
        query = self._key(company_id, provider, entity_type, local_id)
        query["requeued"] = {"$ne": True}
        return await self.collection.count_documents(query, limit=1) > 0

    async def requeue(
        self,
        company_id: str,
        provider: str,
        local_ids: List[str],
        entity_type: LocalEntityType = LocalEntityType.CHECKIN,
    ) -> int:
        """Flag mapped entities so the next run pushes them again."""
        if not local_ids:
            return 0
        result = await self.collection.update_many(
            {
                "company_id": company_id,
                "provider": provider,
                "local_entity_type": LocalEntityType(entity_type).value,
                "local_id": {"$in": list(local_ids)},
            },
            {"$set": {"requeued": True, "updated_at": datetime.utcnow()}},
        )
        logger.info(f"Requeued {result.matched_count} {provider} mappings for company {company_id}")
        return result.matched_count

    async def count(self, company_id: str, provider: str) -> int:
        return await self.collection.count_documents(
            {"company_id": company_id, "provider": provider}
        )

    async def delete_for(self, company_id: str, provider: str) -> int:
        result = await self.collection.delete_many({"company_id": company_id, "provider": provider})
        if result.deleted_count:
            logger.info(f"Purged {result.deleted_count} {provider} mappings for company {company_id}")
        return result.deleted_count
