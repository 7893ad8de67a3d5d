"""Read side of the technician check-in store."""

from typing import Any, AsyncIterator, Dict
import logging

from pydantic import ValidationError as PydanticValidationError

from crm_sync.core.database import Database
from crm_sync.integrations.base import InvalidItemError
from crm_sync.models import CheckIn

logger = logging.getLogger(__name__)


class CheckInRepository:
    """Check-ins are written by the check-in service; this side only reads."""

    def __init__(self, db: Database):
        self.db = db

    @property
    def collection(self):
        return self.db.get_collection("check_ins")

    async def iter_check_ins(self, company_id: str, batch_size: int = 500) -> AsyncIterator[Dict[str, Any]]:
        """Every raw check-in document of a company, oldest first."""
        cursor = (
            self.collection.find({"company_id": company_id}, {"_id": 0})
            .sort("created_at", 1)
            .batch_size(batch_size)
        )
        try:
            async for doc in cursor:
                yield doc
        finally:
            await cursor.close()

    @staticmethod
    def to_model(doc: Dict[str, Any]) -> CheckIn:
        """Parse a stored document; malformed records become item errors."""
        try:
            return CheckIn(**doc)
        except PydanticValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise InvalidItemError(f"Check-in {doc.get('id')} is malformed: {fields}") from e

    async def save(self, check_in: CheckIn) -> None:
        await self.collection.replace_one(
            {"id": check_in.id},
            check_in.model_dump(),
            upsert=True,
        )
