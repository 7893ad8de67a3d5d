"""Per-company sync settings."""

from typing import Any, Dict
from datetime import datetime
import logging

from pydantic import ValidationError as PydanticValidationError

from crm_sync.core.database import Database
from crm_sync.core.exceptions import ValidationError
from crm_sync.integrations.registry import ProviderRegistry
from crm_sync.models import SyncSettings
from crm_sync.services.credential_vault import describe_validation_error

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(SyncSettings.model_fields) - {"company_id", "provider", "updated_at"}


class ConfigurationRegistry:
    """Reads and writes SyncSettings, filling in defaults for unset fields."""

    def __init__(self, db: Database):
        self.db = db

    @property
    def collection(self):
        return self.db.get_collection("sync_settings")

    async def get(self, company_id: str, provider: str) -> SyncSettings:
        ProviderRegistry.require(provider)
        doc = await self.collection.find_one({"company_id": company_id, "provider": provider})
        if doc:
            doc.pop("_id", None)
            return SyncSettings(**doc)
        return SyncSettings(company_id=company_id, provider=provider)

    def merge(self, current: SyncSettings, partial: Dict[str, Any]) -> SyncSettings:
        """Apply a partial update on top of existing settings."""
        unknown = sorted(set(partial) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown sync settings: {', '.join(unknown)}")

        merged = current.model_dump()
        merged.update({key: value for key, value in partial.items() if value is not None})
        merged["updated_at"] = datetime.utcnow()
        try:
            return SyncSettings(**merged)
        except PydanticValidationError as e:
            raise ValidationError(describe_validation_error("sync settings", e)) from e

    async def update(self, company_id: str, provider: str, partial: Dict[str, Any]) -> SyncSettings:
        """Merge, validate and persist a partial settings update."""
        current = await self.get(company_id, provider)
        settings = self.merge(current, partial)

        await self.collection.update_one(
            {"company_id": company_id, "provider": provider},
            {"$set": settings.model_dump()},
            upsert=True,
        )
        logger.info(f"Updated {provider} sync settings for company {company_id}")
        return settings

    async def delete(self, company_id: str, provider: str) -> None:
        await self.collection.delete_one({"company_id": company_id, "provider": provider})
